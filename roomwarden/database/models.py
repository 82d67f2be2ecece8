"""
roomwarden.database.models — SQLAlchemy 2.0 Data Models
========================================================

The persistence interface consumed by the lifecycle engines.

Tables:
- users              — Community member accounts (pseudo PK)
- rooms              — Discussion rooms and their lifecycle state
- room_memberships   — Who belongs to which room, with activity timestamps
- posts              — Room posts with expiry bookkeeping
- replies            — Replies to posts (soft-deleted with their post)
- badges             — Static badge catalogue
- user_badge_awards  — Earned badges, one row per (user, badge)
- notifications      — Outbound notification queue
- room_state_log     — Append-only audit of room state transitions
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all roomwarden ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class RoomStatus(enum.StrEnum):
    """Lifecycle states of a room.  ``DELETED`` is terminal."""
    PENDING = "pending"
    ACTIVE = "active"
    LOCKED = "locked"
    DELETED = "deleted"


class CriteriaType(enum.StrEnum):
    """How a badge is earned."""
    MANUAL = "manual"
    CLEAN_TIME = "clean_time"
    POST_COUNT = "post_count"


class BadgeType(enum.StrEnum):
    MILESTONE = "milestone"
    ACHIEVEMENT = "achievement"
    MODERATION = "moderation"
    SPECIAL = "special"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    pseudo: Mapped[str] = mapped_column(String(50), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    post_count: Mapped[int] = mapped_column(Integer, default=0)
    reply_count: Mapped[int] = mapped_column(Integer, default=0)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False)
    ban_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    memberships: Mapped[list[RoomMembership]] = relationship(back_populates="user")
    awards: Mapped[list[UserBadgeAward]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User pseudo={self.pseudo!r} banned={self.is_banned}>"


# ---------------------------------------------------------------------------
# Rooms — lifecycle owned by the room state machine
# ---------------------------------------------------------------------------
class Room(Base):
    """A community discussion room.

    ``status`` only changes through :mod:`roomwarden.services.room_service`.
    ``version`` is an optimistic-concurrency counter: an UPDATE issued
    against a stale version raises ``StaleDataError``.
    """
    __tablename__ = "rooms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RoomStatus.PENDING.value
    )
    state_reason: Mapped[str | None] = mapped_column(Text, default=None)
    state_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    unique_posters_72h: Mapped[int] = mapped_column(Integer, default=0)
    activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_moderator_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_activity_check: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    memberships: Mapped[list[RoomMembership]] = relationship(back_populates="room")
    posts: Mapped[list[Post]] = relationship(back_populates="room")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_rooms_status", "status"),
        Index("ix_rooms_deleted_at", "deleted_at"),
    )

    def __repr__(self) -> str:
        return f"<Room id={self.id} name={self.name!r} status={self.status}>"


# ---------------------------------------------------------------------------
# RoomMembership — one row per (room, user); soft-marked on leave
# ---------------------------------------------------------------------------
class RoomMembership(Base):
    __tablename__ = "room_memberships"

    room_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rooms.id", ondelete="CASCADE"), primary_key=True
    )
    user_pseudo: Mapped[str] = mapped_column(
        String(50), ForeignKey("users.pseudo", ondelete="CASCADE"), primary_key=True
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    left_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_founder: Mapped[bool] = mapped_column(Boolean, default=False)
    last_post_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_view_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Compliance bookkeeping, refreshed by the member-activity job
    meets_post_requirement: Mapped[bool] = mapped_column(Boolean, default=False)
    meets_view_requirement: Mapped[bool] = mapped_column(Boolean, default=False)
    last_requirement_check: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    room: Mapped[Room] = relationship(back_populates="memberships")
    user: Mapped[User] = relationship(back_populates="memberships")

    __table_args__ = (
        Index("ix_room_memberships_user", "user_pseudo"),
        Index("ix_room_memberships_room_active", "room_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoomMembership room={self.room_id} user={self.user_pseudo!r} "
            f"active={self.is_active}>"
        )


# ---------------------------------------------------------------------------
# Posts & replies
# ---------------------------------------------------------------------------
class Post(Base):
    """A room post.  Created by the forum layer; expiry is managed here."""
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    room_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False
    )
    author_pseudo: Mapped[str] = mapped_column(
        String(50), ForeignKey("users.pseudo"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    lifetime_days: Mapped[int] = mapped_column(Integer, default=30)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_expired: Mapped[bool] = mapped_column(Boolean, default=False)
    no_expire_reason: Mapped[str | None] = mapped_column(Text, default=None)
    extension_reason: Mapped[str | None] = mapped_column(Text, default=None)
    bulk_extended: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    room: Mapped[Room] = relationship(back_populates="posts")
    replies: Mapped[list[Reply]] = relationship(back_populates="post")

    __table_args__ = (
        Index("ix_posts_room_created", "room_id", "created_at"),
        Index("ix_posts_expiry", "expires_at", "is_expired"),
        Index("ix_posts_author", "author_pseudo"),
    )

    def __repr__(self) -> str:
        return f"<Post id={self.id} room={self.room_id} author={self.author_pseudo!r}>"


class Reply(Base):
    __tablename__ = "replies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False
    )
    author_pseudo: Mapped[str] = mapped_column(
        String(50), ForeignKey("users.pseudo"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    post: Mapped[Post] = relationship(back_populates="replies")

    __table_args__ = (
        Index("ix_replies_post_created", "post_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Reply id={self.id} post={self.post_id}>"


# ---------------------------------------------------------------------------
# Badge — static catalogue
# ---------------------------------------------------------------------------
class Badge(Base):
    __tablename__ = "badges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    badge_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BadgeType.MILESTONE.value
    )
    criteria_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CriteriaType.MANUAL.value
    )
    criteria_value: Mapped[int | None] = mapped_column(Integer, nullable=True)

    awards: Mapped[list[UserBadgeAward]] = relationship(back_populates="badge")

    def __repr__(self) -> str:
        return f"<Badge id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# UserBadgeAward — earned badges (at most one row per user+badge)
# ---------------------------------------------------------------------------
class UserBadgeAward(Base):
    __tablename__ = "user_badge_awards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_pseudo: Mapped[str] = mapped_column(
        String(50), ForeignKey("users.pseudo", ondelete="CASCADE"), nullable=False
    )
    badge_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("badges.id", ondelete="CASCADE"), nullable=False
    )
    awarded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    awarded_by: Mapped[str | None] = mapped_column(String(50), nullable=True)  # None = system
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    user: Mapped[User] = relationship(back_populates="awards")
    badge: Mapped[Badge] = relationship(back_populates="awards")

    __table_args__ = (
        UniqueConstraint("user_pseudo", "badge_id", name="uq_user_badge_awards_user_badge"),
    )

    def __repr__(self) -> str:
        return f"<UserBadgeAward user={self.user_pseudo!r} badge={self.badge_id}>"


# ---------------------------------------------------------------------------
# Notification — outbound queue, drained by the notification batcher
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_notifications_pending", "sent_at", "scheduled_for"),
        Index("ix_notifications_recipient", "recipient", "sent_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Notification id={self.id} to={self.recipient!r} type={self.type!r} "
            f"sent={self.sent_at is not None}>"
        )


# ---------------------------------------------------------------------------
# RoomStateLog — append-only transition audit
# ---------------------------------------------------------------------------
class RoomStateLog(Base):
    __tablename__ = "room_state_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    room_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event: Mapped[str] = mapped_column(String(30), nullable=False)
    from_state: Mapped[str] = mapped_column(String(20), nullable=False)
    to_state: Mapped[str] = mapped_column(String(20), nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    unique_posters_72h: Mapped[int] = mapped_column(Integer, default=0)
    user_pseudo: Mapped[str | None] = mapped_column(String(50), nullable=True)
    moderator_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_room_state_log_room_time", "room_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoomStateLog room={self.room_id} {self.from_state}->{self.to_state} "
            f"event={self.event}>"
        )
