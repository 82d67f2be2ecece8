"""
roomwarden.services.post_service — Post Expiration Engine
==========================================================

Posts carry an ``expires_at`` (30 days after creation by default).  The
nightly job:

1. Soft-deletes every expired post (and its replies) unless it has a
   ``no_expire_reason`` or is in the middle of an active discussion, in
   which case it gets one more day.
2. Sends the author a ``post_expiring_soon`` notice for posts that run
   out within the next few days.

Each post is its own transaction, so one bad row never blocks the rest.
Moderator tooling (extend, bulk extend, disable) lives here as well.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update

from roomwarden.config import Thresholds
from roomwarden.constants import ACTIVE_DISCUSSION_REASON, NOTIFY_POST_EXPIRING_SOON
from roomwarden.database.engine import get_session
from roomwarden.database.models import Post, Reply, Room
from roomwarden.engine.timeutil import as_utc, utcnow
from roomwarden.services.notification_service import enqueue_notification

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Replies inside this trailing window count towards an "active discussion"
ACTIVE_DISCUSSION_WINDOW = timedelta(hours=1)


def _live_posts():
    """Base filter: not soft-deleted, not already expired."""
    return (Post.deleted_at.is_(None), Post.is_expired.is_(False))


# ---------------------------------------------------------------------------
# Expiration run
# ---------------------------------------------------------------------------
def _expired_post_ids(engine: Engine, now: datetime) -> list[int]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(Post.id)
            .where(
                *_live_posts(),
                Post.expires_at.is_not(None),
                Post.expires_at <= now,
                Post.no_expire_reason.is_(None),
            )
            .order_by(Post.expires_at, Post.id)
        ).all())


def _expire_post(
    engine: Engine,
    post_id: int,
    now: datetime,
    active_discussion_replies: int,
) -> tuple[str, int]:
    """Expire or extend one post.

    Returns ``(outcome, replies_deleted)`` where *outcome* is
    ``"deleted"``, ``"extended"`` or ``"skipped"``.
    """
    with get_session(engine) as session:
        post = session.get(Post, post_id)
        if post is None or post.deleted_at is not None or post.no_expire_reason:
            return "skipped", 0

        recent_replies = session.scalar(
            select(func.count())
            .select_from(Reply)
            .where(
                Reply.post_id == post_id,
                Reply.deleted_at.is_(None),
                Reply.created_at >= now - ACTIVE_DISCUSSION_WINDOW,
            )
        ) or 0

        if recent_replies >= active_discussion_replies:
            post.expires_at = now + timedelta(days=1)
            post.extension_reason = ACTIVE_DISCUSSION_REASON
            logger.info(
                "Extended post %d: %d replies in the last hour", post_id, recent_replies,
                extra={"post_id": post_id},
            )
            return "extended", 0

        post.is_expired = True
        post.deleted_at = now
        replies = session.execute(
            update(Reply)
            .where(Reply.post_id == post_id, Reply.deleted_at.is_(None))
            .values(deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info("Deleted expired post %d: %s", post_id, post.title, extra={"post_id": post_id})
        return "deleted", replies.rowcount


def _notify_expiring_soon(engine: Engine, now: datetime, days: int) -> tuple[int, int]:
    """Queue a reminder to the author of each post expiring within *days*.

    Returns ``(notified, errors)``.
    """
    horizon = now + timedelta(days=days)
    with get_session(engine) as session:
        rows = session.execute(
            select(Post.id, Post.author_pseudo, Post.title, Post.expires_at, Room.name)
            .join(Room, Room.id == Post.room_id)
            .where(
                *_live_posts(),
                Post.no_expire_reason.is_(None),
                Post.expires_at > now,
                Post.expires_at <= horizon,
            )
            .order_by(Post.expires_at)
        ).all()

    notified = errors = 0
    for post_id, author, title, expires_at, room_name in rows:
        try:
            with get_session(engine) as session:
                enqueue_notification(session, author, NOTIFY_POST_EXPIRING_SOON, {
                    "post_id": post_id,
                    "post_title": title,
                    "room_name": room_name,
                    "expires_at": as_utc(expires_at).isoformat(),
                }, now=now)
            notified += 1
        except Exception:
            errors += 1
            logger.exception(
                "Error queueing expiry reminder for post %d", post_id,
                extra={"post_id": post_id},
            )
    return notified, errors


def run_post_expiration(
    engine: Engine,
    thresholds: Thresholds | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Expire overdue posts and remind authors of upcoming expiries.

    Returns ``{"processed", "changed", "errors", "deleted", "extended",
    "replies_deleted", "expiring_notified"}``.
    """
    started = time.monotonic()
    thresholds = thresholds or Thresholds()
    now = now or utcnow()

    post_ids = _expired_post_ids(engine, now)
    results = {
        "processed": len(post_ids),
        "changed": 0,
        "errors": 0,
        "deleted": 0,
        "extended": 0,
        "replies_deleted": 0,
        "expiring_notified": 0,
    }

    for post_id in post_ids:
        try:
            outcome, replies_deleted = _expire_post(
                engine, post_id, now, thresholds.active_discussion_replies,
            )
        except Exception:
            results["errors"] += 1
            logger.exception("Error expiring post %d", post_id, extra={"post_id": post_id})
            continue
        if outcome == "skipped":
            continue
        results["changed"] += 1
        results[outcome] += 1
        results["replies_deleted"] += replies_deleted

    notified, errors = _notify_expiring_soon(engine, now, thresholds.expiring_soon_days)
    results["expiring_notified"] = notified
    results["errors"] += errors

    logger.info(
        "Post expiration complete: %d deleted (%d replies), %d extended, "
        "%d reminders, %d errors (%.0f ms)",
        results["deleted"], results["replies_deleted"], results["extended"],
        results["expiring_notified"], results["errors"],
        (time.monotonic() - started) * 1000,
    )
    return results


# ---------------------------------------------------------------------------
# Moderator tooling
# ---------------------------------------------------------------------------
def _extend(post: Post, days: int, reason: str | None) -> None:
    post.expires_at = as_utc(post.expires_at) + timedelta(days=days)
    post.lifetime_days = (post.lifetime_days or 0) + days
    if reason:
        post.extension_reason = reason


def extend_post(
    engine: Engine, post_id: int, days: int, *, reason: str | None = None,
) -> bool:
    """Push a post's expiry back by *days*.  Returns False if the post is
    deleted, missing, or never expires."""
    if days <= 0:
        raise ValueError("days must be positive")
    with get_session(engine) as session:
        post = session.get(Post, post_id)
        if post is None or post.deleted_at is not None or post.expires_at is None:
            return False
        _extend(post, days, reason)
    logger.info("Extended post %d by %d day(s)", post_id, days)
    return True


def bulk_extend_posts(
    engine: Engine, post_ids: Iterable[int], days: int, *, reason: str | None = None,
) -> int:
    """Extend several posts in one transaction.  Returns how many changed."""
    if days <= 0:
        raise ValueError("days must be positive")
    ids = list(post_ids)
    if not ids:
        return 0
    with get_session(engine) as session:
        posts = session.scalars(
            select(Post).where(
                Post.id.in_(ids), Post.deleted_at.is_(None), Post.expires_at.is_not(None),
            )
        ).all()
        for post in posts:
            _extend(post, days, reason)
            post.bulk_extended = True
        count = len(posts)
    logger.info("Bulk-extended %d of %d post(s) by %d day(s)", count, len(ids), days)
    return count


def disable_expiration(engine: Engine, post_id: int, reason: str) -> bool:
    """Make a post permanent.  *reason* is required and kept on the row."""
    if not reason:
        raise ValueError("A reason is required to disable expiration")
    with get_session(engine) as session:
        post = session.get(Post, post_id)
        if post is None or post.deleted_at is not None:
            return False
        post.expires_at = None
        post.no_expire_reason = reason
    logger.info("Disabled expiration for post %d: %s", post_id, reason)
    return True


def get_user_expiring_posts(
    engine: Engine,
    user_pseudo: str,
    days: int = 7,
    *,
    now: datetime | None = None,
) -> dict[str, list[dict[str, Any]]]:
    """A user's live posts expiring within *days*, grouped by urgency.

    Groups are ``expired``, ``today``, ``tomorrow`` and ``this_week`` and
    are based on calendar days (UTC) between now and ``expires_at``.
    """
    now = as_utc(now) if now else utcnow()
    with get_session(engine) as session:
        rows = session.execute(
            select(Post.id, Post.room_id, Post.title, Post.expires_at, Room.name)
            .join(Room, Room.id == Post.room_id)
            .where(
                Post.author_pseudo == user_pseudo,
                *_live_posts(),
                Post.expires_at.is_not(None),
                Post.expires_at <= now + timedelta(days=days),
            )
            .order_by(Post.expires_at)
        ).all()

    grouped: dict[str, list[dict[str, Any]]] = {
        "expired": [], "today": [], "tomorrow": [], "this_week": [],
    }
    for post_id, room_id, title, expires_at, room_name in rows:
        expires_at = as_utc(expires_at)
        days_left = (expires_at.date() - now.date()).days
        entry = {
            "id": post_id,
            "room_id": room_id,
            "room_name": room_name,
            "title": title,
            "expires_at": expires_at,
            "days_until_expiration": days_left,
        }
        if days_left < 0:
            grouped["expired"].append(entry)
        elif days_left == 0:
            grouped["today"].append(entry)
        elif days_left == 1:
            grouped["tomorrow"].append(entry)
        else:
            grouped["this_week"].append(entry)
    return grouped
