"""
roomwarden.services.compliance_service — Member Activity Monitor
=================================================================

Daily sweep over every active membership of a live (pending or active)
room:

* refreshes the membership's ``meets_*_requirement`` flags,
* warns members who are close to the posting / viewing limit,
* reports members past a limit to every configured moderator.

Banned members are left alone until their ban expires.  Each membership
is handled in its own transaction.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from roomwarden.config import Thresholds
from roomwarden.constants import (
    NOTIFY_MEMBER_VIOLATION,
    NOTIFY_POSTING_WARNING,
    NOTIFY_VIEWING_WARNING,
)
from roomwarden.database.engine import get_session
from roomwarden.database.models import Room, RoomMembership, RoomStatus, User
from roomwarden.engine.compliance import evaluate_member, is_ban_active
from roomwarden.engine.timeutil import utcnow
from roomwarden.services.notification_service import enqueue_notification

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_LIVE_STATES = (RoomStatus.PENDING.value, RoomStatus.ACTIVE.value)


def _memberships_to_check(engine: Engine) -> list[tuple[int, str]]:
    with get_session(engine) as session:
        rows = session.execute(
            select(RoomMembership.room_id, RoomMembership.user_pseudo)
            .join(Room, Room.id == RoomMembership.room_id)
            .where(
                RoomMembership.is_active.is_(True),
                Room.deleted_at.is_(None),
                Room.status.in_(_LIVE_STATES),
            )
            .order_by(RoomMembership.room_id, RoomMembership.user_pseudo)
        ).all()
    return [(room_id, pseudo) for room_id, pseudo in rows]


def _check_membership(
    engine: Engine,
    room_id: int,
    user_pseudo: str,
    thresholds: Thresholds,
    moderators: Sequence[str],
    now: datetime,
) -> dict[str, int]:
    """Evaluate one membership; returns per-item counters."""
    counts = {
        "banned": 0,
        "posting_warnings": 0,
        "viewing_warnings": 0,
        "violations": 0,
        "moderator_notifications": 0,
    }

    with get_session(engine) as session:
        membership = session.get(RoomMembership, (room_id, user_pseudo))
        if membership is None or not membership.is_active:
            return counts

        user = session.get(User, user_pseudo)
        if user is not None and is_ban_active(user.is_banned, user.ban_until, now):
            counts["banned"] = 1
            return counts

        verdict = evaluate_member(
            joined_at=membership.joined_at,
            last_post_at=membership.last_post_at,
            last_view_at=membership.last_view_at,
            now=now,
            thresholds=thresholds,
        )
        membership.meets_post_requirement = verdict.meets_post_requirement
        membership.meets_view_requirement = verdict.meets_view_requirement
        membership.last_requirement_check = now

        room_name = session.scalar(select(Room.name).where(Room.id == room_id))

        if verdict.posting_warning:
            enqueue_notification(session, user_pseudo, NOTIFY_POSTING_WARNING, {
                "room_id": room_id,
                "room_name": room_name,
                "days_since_post": verdict.days_since_post,
                "required": thresholds.posting_frequency_days,
            }, now=now)
            counts["posting_warnings"] = 1

        if verdict.viewing_warning:
            enqueue_notification(session, user_pseudo, NOTIFY_VIEWING_WARNING, {
                "room_id": room_id,
                "room_name": room_name,
                "days_since_view": verdict.days_since_view,
                "required": thresholds.viewing_frequency_days,
            }, now=now)
            counts["viewing_warnings"] = 1

        if verdict.violations:
            counts["violations"] = len(verdict.violations)
            payload = {
                "room_id": room_id,
                "room_name": room_name,
                "user_pseudo": user_pseudo,
                "violations": [v.to_dict() for v in verdict.violations],
            }
            for moderator in moderators:
                enqueue_notification(session, moderator, NOTIFY_MEMBER_VIOLATION, payload, now=now)
            counts["moderator_notifications"] = len(moderators)
            logger.info(
                "Member %s in room %d violates %s",
                user_pseudo, room_id, ", ".join(v.type for v in verdict.violations),
                extra={"room_id": room_id, "user_pseudo": user_pseudo},
            )

    return counts


def run_compliance_checks(
    engine: Engine,
    thresholds: Thresholds | None = None,
    moderators: Sequence[str] = (),
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Check posting/viewing frequency for every live membership.

    Returns ``{"processed", "changed", "errors", "banned_skipped",
    "posting_warnings", "viewing_warnings", "violations",
    "moderator_notifications"}``; *changed* counts members who got a
    warning or a violation.
    """
    started = time.monotonic()
    thresholds = thresholds or Thresholds()
    now = now or utcnow()

    memberships = _memberships_to_check(engine)
    results = {
        "processed": len(memberships),
        "changed": 0,
        "errors": 0,
        "banned_skipped": 0,
        "posting_warnings": 0,
        "viewing_warnings": 0,
        "violations": 0,
        "moderator_notifications": 0,
    }

    for room_id, user_pseudo in memberships:
        try:
            counts = _check_membership(
                engine, room_id, user_pseudo, thresholds, moderators, now,
            )
        except Exception:
            results["errors"] += 1
            logger.exception(
                "Error checking member %s in room %d", user_pseudo, room_id,
                extra={"room_id": room_id, "user_pseudo": user_pseudo},
            )
            continue

        results["banned_skipped"] += counts["banned"]
        results["posting_warnings"] += counts["posting_warnings"]
        results["viewing_warnings"] += counts["viewing_warnings"]
        results["violations"] += counts["violations"]
        results["moderator_notifications"] += counts["moderator_notifications"]
        if counts["posting_warnings"] or counts["viewing_warnings"] or counts["violations"]:
            results["changed"] += 1

    if results["violations"] and not moderators:
        logger.warning("Found %d violation(s) but no moderators are configured", results["violations"])

    logger.info(
        "Member activity check complete: %d members, %d warnings, %d violations, "
        "%d banned skipped, %d errors (%.0f ms)",
        results["processed"], results["posting_warnings"] + results["viewing_warnings"],
        results["violations"], results["banned_skipped"], results["errors"],
        (time.monotonic() - started) * 1000,
    )
    return results
