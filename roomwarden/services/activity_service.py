"""
roomwarden.services.activity_service — Room Activity Evaluator
===============================================================

Counts *unique posters*: distinct active members of a room with at
least one non-deleted post inside the trailing window (72 h by default).

Read-only.  The room-check job uses it to build ACTIVITY_CHECK events,
and :func:`evaluate_room_activity` exposes the same numbers for
diagnostics without touching room state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from roomwarden.database.engine import get_session
from roomwarden.database.models import Post, Room, RoomMembership
from roomwarden.engine.timeutil import utcnow

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from roomwarden.config import Thresholds


class RoomNotFound(LookupError):
    """Raised when a room id does not exist."""


@dataclass(frozen=True, slots=True)
class RoomActivity:
    room_id: int
    member_count: int
    unique_posters: int
    meets_requirement: bool


def count_unique_posters(
    session: Session,
    room_id: int,
    now: datetime,
    window_hours: int = 72,
) -> int:
    """Distinct current members who posted in *room_id* within the window."""
    cutoff = now - timedelta(hours=window_hours)
    return session.scalar(
        select(func.count(func.distinct(Post.author_pseudo)))
        .join(
            RoomMembership,
            (RoomMembership.room_id == Post.room_id)
            & (RoomMembership.user_pseudo == Post.author_pseudo),
        )
        .where(
            Post.room_id == room_id,
            Post.deleted_at.is_(None),
            Post.created_at >= cutoff,
            Post.created_at <= now,
            RoomMembership.is_active.is_(True),
        )
    ) or 0


def count_active_members(session: Session, room_id: int) -> int:
    return session.scalar(
        select(func.count())
        .select_from(RoomMembership)
        .where(RoomMembership.room_id == room_id, RoomMembership.is_active.is_(True))
    ) or 0


def evaluate_room_activity(
    engine: Engine,
    room_id: int,
    thresholds: Thresholds,
    now: datetime | None = None,
) -> RoomActivity:
    """Diagnostic snapshot of one room's activity.  Raises :class:`RoomNotFound`
    for unknown rooms."""
    now = now or utcnow()
    with get_session(engine) as session:
        if session.get(Room, room_id) is None:
            raise RoomNotFound(f"Room {room_id} not found")
        members = count_active_members(session, room_id)
        posters = count_unique_posters(
            session, room_id, now, thresholds.poster_window_hours,
        )
    return RoomActivity(
        room_id=room_id,
        member_count=members,
        unique_posters=posters,
        meets_requirement=posters >= thresholds.min_posters,
    )
