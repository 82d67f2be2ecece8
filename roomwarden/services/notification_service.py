"""
roomwarden.services.notification_service — Notification Queue & Batcher
========================================================================

Two halves:

* **Enqueue helpers** — :func:`enqueue_notification` and
  :func:`notify_room_members` add rows inside the *caller's* session, so
  a room transition and the notifications it causes commit together.
* **Batcher** — :func:`run_notification_batch` drains due rows in
  per-recipient groups, hands each row to a
  :class:`NotificationDispatcher`, marks the group sent, and sends one
  digest when a recipient's group is larger than the digest threshold.

Delivery (email, push, websockets) lives outside this package; the
default :class:`LoggingDispatcher` only writes a log line.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from roomwarden.database.engine import get_session
from roomwarden.database.models import Notification, RoomMembership
from roomwarden.engine.timeutil import utcnow

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dispatch protocol
# ---------------------------------------------------------------------------
class NotificationDispatcher(Protocol):
    def deliver(self, notification: Notification) -> None: ...

    def deliver_digest(self, recipient: str, notifications: Sequence[Notification]) -> None: ...


class LoggingDispatcher:
    """Default dispatcher: notifications already live in the DB, so
    "delivery" is just an audit line."""

    def deliver(self, notification: Notification) -> None:
        logger.info(
            "Delivering %s to %s (id=%d)",
            notification.type, notification.recipient, notification.id,
        )

    def deliver_digest(self, recipient: str, notifications: Sequence[Notification]) -> None:
        logger.info("Sending digest of %d notification(s) to %s", len(notifications), recipient)


# ---------------------------------------------------------------------------
# Enqueue helpers
# ---------------------------------------------------------------------------
def enqueue_notification(
    session: Session,
    recipient: str,
    notification_type: str,
    payload: dict[str, Any] | None = None,
    *,
    now: datetime | None = None,
    scheduled_for: datetime | None = None,
) -> Notification:
    """Add a pending notification to *session* (not committed here)."""
    now = now or utcnow()
    notification = Notification(
        recipient=recipient,
        type=notification_type,
        payload=payload or {},
        created_at=now,
        scheduled_for=scheduled_for or now,
    )
    session.add(notification)
    return notification


def notify_room_members(
    session: Session,
    room_id: int,
    notification_type: str,
    payload: dict[str, Any] | None = None,
    *,
    now: datetime | None = None,
) -> int:
    """Queue one notification per active member of *room_id*.

    Returns the number of notifications queued.
    """
    members = session.scalars(
        select(RoomMembership.user_pseudo).where(
            RoomMembership.room_id == room_id,
            RoomMembership.is_active.is_(True),
        )
    ).all()
    for pseudo in members:
        enqueue_notification(session, pseudo, notification_type, payload, now=now)
    return len(members)


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------
def _due_recipients(engine: Engine, now: datetime, limit: int) -> list[str]:
    """Recipients with unsent, due notifications — oldest backlog first."""
    with get_session(engine) as session:
        rows = session.execute(
            select(Notification.recipient, func.min(Notification.created_at).label("oldest"))
            .where(Notification.sent_at.is_(None), Notification.scheduled_for <= now)
            .group_by(Notification.recipient)
            .order_by("oldest", Notification.recipient)
            .limit(limit)
        ).all()
    return [row.recipient for row in rows]


def _dispatch_recipient(
    engine: Engine,
    dispatcher: NotificationDispatcher,
    recipient: str,
    now: datetime,
    digest_threshold: int,
) -> tuple[int, bool]:
    """Deliver and mark one recipient's due notifications in one transaction.

    Returns ``(delivered, digest_sent)``.  Any exception rolls the whole
    group back so it is retried on the next run.
    """
    with get_session(engine) as session:
        pending = session.scalars(
            select(Notification)
            .where(
                Notification.recipient == recipient,
                Notification.sent_at.is_(None),
                Notification.scheduled_for <= now,
            )
            .order_by(Notification.created_at.desc(), Notification.id.desc())
        ).all()

        for notification in pending:
            dispatcher.deliver(notification)
            notification.sent_at = now

        digest_sent = False
        if len(pending) > digest_threshold:
            dispatcher.deliver_digest(recipient, pending)
            digest_sent = True

    return len(pending), digest_sent


def run_notification_batch(
    engine: Engine,
    *,
    batch_size: int = 50,
    digest_threshold: int = 5,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Drain due notifications for up to *batch_size* recipients.

    Returns ``{"processed", "changed", "errors", "notifications_sent",
    "digests_sent"}`` where *processed* counts recipients and *changed*
    counts recipients whose group was delivered.
    """
    started = time.monotonic()
    now = now or utcnow()
    dispatcher = dispatcher or LoggingDispatcher()

    recipients = _due_recipients(engine, now, batch_size)
    results = {
        "processed": len(recipients),
        "changed": 0,
        "errors": 0,
        "notifications_sent": 0,
        "digests_sent": 0,
    }

    for recipient in recipients:
        try:
            delivered, digest_sent = _dispatch_recipient(
                engine, dispatcher, recipient, now, digest_threshold,
            )
        except Exception:
            results["errors"] += 1
            logger.exception(
                "Error dispatching notifications for %s", recipient,
                extra={"recipient": recipient},
            )
            continue
        results["changed"] += 1
        results["notifications_sent"] += delivered
        results["digests_sent"] += int(digest_sent)

    logger.info(
        "Notification batch complete: %d recipients, %d sent, %d digests, %d errors (%.0f ms)",
        results["changed"], results["notifications_sent"], results["digests_sent"],
        results["errors"], (time.monotonic() - started) * 1000,
    )
    return results
