"""
roomwarden.services.badge_service — Badge Awards
=================================================

Evaluates the badge catalogue for every user and writes
``user_badge_awards`` rows.

Idempotence is enforced twice: an existence check before insert, and
the ``uq_user_badge_awards_user_badge`` constraint behind a SAVEPOINT
for the case where a concurrent run got there first.  Either way a
(user, badge) pair is awarded at most once.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from roomwarden.constants import NOTIFY_BADGE_AWARDED
from roomwarden.database.engine import get_session
from roomwarden.database.models import Badge, User, UserBadgeAward
from roomwarden.engine.badges import BadgeContext, eligible_badges
from roomwarden.engine.compliance import is_ban_active
from roomwarden.engine.timeutil import utcnow, whole_days_between
from roomwarden.services.notification_service import enqueue_notification

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CatalogueBadge:
    """Detached copy of a :class:`Badge` row, safe to share across sessions."""

    id: int
    name: str
    display_name: str
    criteria_type: str
    criteria_value: int | None


def load_catalogue(session: Session) -> list[CatalogueBadge]:
    return [
        CatalogueBadge(b.id, b.name, b.display_name, b.criteria_type, b.criteria_value)
        for b in session.scalars(select(Badge).order_by(Badge.id)).all()
    ]


def get_awarded_badge_names(session: Session, user_pseudo: str) -> set[str]:
    """Names of badges *user_pseudo* already holds."""
    return set(session.scalars(
        select(Badge.name)
        .join(UserBadgeAward, UserBadgeAward.badge_id == Badge.id)
        .where(UserBadgeAward.user_pseudo == user_pseudo)
    ).all())


def _insert_award(
    session: Session,
    user_pseudo: str,
    badge: CatalogueBadge,
    *,
    awarded_by: str | None,
    reason: str | None,
    now: datetime,
) -> bool:
    """Insert one award and its notification.  False if it already exists."""
    existing = session.scalar(
        select(UserBadgeAward.id).where(
            UserBadgeAward.user_pseudo == user_pseudo,
            UserBadgeAward.badge_id == badge.id,
        )
    )
    if existing is not None:
        return False

    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(UserBadgeAward(
                user_pseudo=user_pseudo,
                badge_id=badge.id,
                awarded_at=now,
                awarded_by=awarded_by,
                reason=reason,
            ))
            session.flush()
    except IntegrityError:
        # Lost a race with another writer; the savepoint is rolled back
        # and the outer transaction is still usable.
        return False

    enqueue_notification(session, user_pseudo, NOTIFY_BADGE_AWARDED, {
        "badge": badge.name,
        "display_name": badge.display_name,
    }, now=now)
    return True


def award_badge(
    engine: Engine,
    user_pseudo: str,
    badge_name: str,
    *,
    awarded_by: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> tuple[bool, str]:
    """Award a single badge (system or moderator).

    Returns (success, message).  Unknown badges and repeat awards are
    reported, not raised.
    """
    now = now or utcnow()
    with get_session(engine) as session:
        row = session.scalar(select(Badge).where(Badge.name == badge_name))
        if row is None:
            return False, f"Unknown badge '{badge_name}'."
        badge = CatalogueBadge(row.id, row.name, row.display_name,
                               row.criteria_type, row.criteria_value)

        if not _insert_award(session, user_pseudo, badge,
                             awarded_by=awarded_by, reason=reason, now=now):
            return False, f"{user_pseudo} already has '{badge_name}'."

    logger.info(
        "Awarded %s to %s (by %s)", badge_name, user_pseudo, awarded_by or "system",
        extra={"user_pseudo": user_pseudo},
    )
    return True, f"Badge '{badge.display_name}' awarded."


def _evaluate_user(
    engine: Engine,
    user_pseudo: str,
    catalogue: list[CatalogueBadge],
    now: datetime,
) -> list[str]:
    """Award every badge *user_pseudo* newly qualifies for.  Returns names."""
    awarded: list[str] = []
    with get_session(engine) as session:
        user = session.get(User, user_pseudo)
        if user is None:
            return awarded

        ctx = BadgeContext(
            account_age_days=whole_days_between(user.created_at, now),
            contributions=(user.post_count or 0) + (user.reply_count or 0),
        )
        held = get_awarded_badge_names(session, user_pseudo)
        by_name = {badge.name: badge for badge in catalogue}

        for name in eligible_badges(catalogue, ctx, held):
            if _insert_award(session, user_pseudo, by_name[name],
                             awarded_by=None, reason=None, now=now):
                awarded.append(name)
    return awarded


def run_badge_awards(engine: Engine, *, now: datetime | None = None) -> dict[str, int]:
    """Evaluate the catalogue for every user who is not currently banned.

    Returns ``{"processed", "changed", "errors", "banned_skipped",
    "badges_awarded"}``.
    """
    started = time.monotonic()
    now = now or utcnow()

    with get_session(engine) as session:
        catalogue = load_catalogue(session)
        users = session.execute(
            select(User.pseudo, User.is_banned, User.ban_until).order_by(User.pseudo)
        ).all()

    eligible = [pseudo for pseudo, banned, until in users if not is_ban_active(banned, until, now)]
    results = {
        "processed": len(eligible),
        "changed": 0,
        "errors": 0,
        "banned_skipped": len(users) - len(eligible),
        "badges_awarded": 0,
    }

    for pseudo in eligible:
        try:
            awarded = _evaluate_user(engine, pseudo, catalogue, now)
        except Exception:
            results["errors"] += 1
            logger.exception("Error awarding badges to %s", pseudo, extra={"user_pseudo": pseudo})
            continue
        if awarded:
            results["changed"] += 1
            results["badges_awarded"] += len(awarded)
            logger.info("Awarded %s to %s", ", ".join(awarded), pseudo)

    logger.info(
        "Badge awards complete: %d users, %d badges awarded, %d errors (%.0f ms)",
        results["processed"], results["badges_awarded"], results["errors"],
        (time.monotonic() - started) * 1000,
    )
    return results
