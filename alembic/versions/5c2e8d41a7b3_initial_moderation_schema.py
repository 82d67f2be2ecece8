"""Initial moderation schema

Revision ID: 5c2e8d41a7b3
Revises:
Create Date: 2026-10-18 09:12:04.518233

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e8d41a7b3'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, *, nullable: bool = True, now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if now else None,
    )


def upgrade() -> None:
    """Create rooms, memberships, posts, badges, notifications and the audit log."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("pseudo", sa.String(50), primary_key=True),
        _ts("created_at", now=True),
        sa.Column("post_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reply_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_banned", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("ban_until"),
    )

    # --- rooms ---
    op.create_table(
        "rooms",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("state_reason", sa.Text, nullable=True),
        _ts("state_changed_at"),
        sa.Column("member_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("unique_posters_72h", sa.Integer, nullable=False, server_default="0"),
        _ts("activated_at"),
        _ts("locked_at"),
        _ts("deleted_at"),
        sa.Column("last_moderator_id", sa.String(50), nullable=True),
        _ts("last_activity_check"),
        _ts("created_at", now=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
    )
    op.create_index("ix_rooms_status", "rooms", ["status"])
    op.create_index("ix_rooms_deleted_at", "rooms", ["deleted_at"])

    # --- room_memberships ---
    op.create_table(
        "room_memberships",
        sa.Column("room_id", sa.Integer,
                  sa.ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_pseudo", sa.String(50),
                  sa.ForeignKey("users.pseudo", ondelete="CASCADE"), nullable=False),
        _ts("joined_at", now=True),
        _ts("left_at"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_founder", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("last_post_at"),
        _ts("last_view_at"),
        sa.Column("meets_post_requirement", sa.Boolean, nullable=False,
                  server_default=sa.false()),
        sa.Column("meets_view_requirement", sa.Boolean, nullable=False,
                  server_default=sa.false()),
        _ts("last_requirement_check"),
        sa.PrimaryKeyConstraint("room_id", "user_pseudo"),
    )
    op.create_index("ix_room_memberships_user", "room_memberships", ["user_pseudo"])
    op.create_index(
        "ix_room_memberships_room_active", "room_memberships", ["room_id", "is_active"],
    )

    # --- posts ---
    op.create_table(
        "posts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("room_id", sa.Integer,
                  sa.ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False),
        sa.Column("author_pseudo", sa.String(50),
                  sa.ForeignKey("users.pseudo"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False, server_default=""),
        _ts("created_at", now=True),
        _ts("expires_at"),
        sa.Column("lifetime_days", sa.Integer, nullable=False, server_default="30"),
        sa.Column("is_pinned", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_expired", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("no_expire_reason", sa.Text, nullable=True),
        sa.Column("extension_reason", sa.Text, nullable=True),
        sa.Column("bulk_extended", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("deleted_at"),
    )
    op.create_index("ix_posts_room_created", "posts", ["room_id", "created_at"])
    op.create_index("ix_posts_expiry", "posts", ["expires_at", "is_expired"])
    op.create_index("ix_posts_author", "posts", ["author_pseudo"])

    # --- replies ---
    op.create_table(
        "replies",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("post_id", sa.Integer,
                  sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("author_pseudo", sa.String(50),
                  sa.ForeignKey("users.pseudo"), nullable=False),
        _ts("created_at", now=True),
        _ts("deleted_at"),
    )
    op.create_index("ix_replies_post_created", "replies", ["post_id", "created_at"])

    # --- badges ---
    op.create_table(
        "badges",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(50), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("badge_type", sa.String(20), nullable=False, server_default="milestone"),
        sa.Column("criteria_type", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("criteria_value", sa.Integer, nullable=True),
    )

    # --- user_badge_awards ---
    op.create_table(
        "user_badge_awards",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_pseudo", sa.String(50),
                  sa.ForeignKey("users.pseudo", ondelete="CASCADE"), nullable=False),
        sa.Column("badge_id", sa.Integer,
                  sa.ForeignKey("badges.id", ondelete="CASCADE"), nullable=False),
        _ts("awarded_at", now=True),
        sa.Column("awarded_by", sa.String(50), nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.UniqueConstraint("user_pseudo", "badge_id", name="uq_user_badge_awards_user_badge"),
    )

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("recipient", sa.String(50), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        _ts("created_at", now=True),
        _ts("scheduled_for", now=True),
        _ts("sent_at"),
    )
    op.create_index("ix_notifications_pending", "notifications", ["sent_at", "scheduled_for"])
    op.create_index("ix_notifications_recipient", "notifications", ["recipient", "sent_at"])

    # --- room_state_log ---
    op.create_table(
        "room_state_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("room_id", sa.Integer, nullable=False),
        sa.Column("event", sa.String(30), nullable=False),
        sa.Column("from_state", sa.String(20), nullable=False),
        sa.Column("to_state", sa.String(20), nullable=False),
        sa.Column("member_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("unique_posters_72h", sa.Integer, nullable=False, server_default="0"),
        sa.Column("user_pseudo", sa.String(50), nullable=True),
        sa.Column("moderator_id", sa.String(50), nullable=True),
        _ts("timestamp", now=True),
    )
    op.create_index("ix_room_state_log_room_time", "room_state_log", ["room_id", "timestamp"])


def downgrade() -> None:
    """Drop every moderation table (reverse dependency order)."""
    op.drop_table("room_state_log")
    op.drop_table("notifications")
    op.drop_table("user_badge_awards")
    op.drop_table("badges")
    op.drop_table("replies")
    op.drop_table("posts")
    op.drop_table("room_memberships")
    op.drop_table("rooms")
    op.drop_table("users")
