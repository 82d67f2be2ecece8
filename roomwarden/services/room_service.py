"""
roomwarden.services.room_service — Room Lifecycle Service
==========================================================

Runs :func:`roomwarden.engine.room_machine.transition` against stored
rooms and carries out the effects it returns.

Every state change follows the same pattern:
  1. Take the per-room lock (one writer per room inside this process)
  2. Open a transaction and load the room
  3. Evaluate the pure transition
  4. Persist context + status, queue member notifications,
     cascade soft-deletes, append to room_state_log
  5. Commit — the ``version`` column rejects the write if another
     process changed the room in the meantime (``StaleDataError``)

A rejected event changes nothing and is returned to the caller with
``accepted=False``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from roomwarden.database.engine import get_session
from roomwarden.database.models import (
    Post,
    Reply,
    Room,
    RoomMembership,
    RoomStateLog,
    RoomStatus,
    User,
)
from roomwarden.engine.room_machine import (
    EffectKind,
    RoomContext,
    RoomEvent,
    RoomEventType,
    RoomRules,
    TransitionResult,
    allowed_events,
    transition,
)
from roomwarden.engine.timeutil import utcnow
from roomwarden.services.activity_service import (
    RoomNotFound,
    count_active_members,
    count_unique_posters,
)
from roomwarden.services.notification_service import notify_room_members

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from roomwarden.config import Thresholds

logger = logging.getLogger(__name__)

__all__ = [
    "RoomNotFound",
    "RoomLocks",
    "create_room",
    "apply_room_event",
    "join_room",
    "leave_room",
    "lock_room",
    "unlock_room",
    "check_room_activity",
    "get_room_state",
    "record_post",
    "record_view",
    "get_room_members",
    "get_user_rooms",
    "run_room_checks",
]


# ---------------------------------------------------------------------------
# Per-room serialization
# ---------------------------------------------------------------------------
class RoomLocks:
    """Lazily created :class:`threading.Lock` per room id.  Thread-safe."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def for_room(self, room_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = self._locks[room_id] = threading.Lock()
            return lock

    def discard(self, room_id: int) -> None:
        with self._guard:
            self._locks.pop(room_id, None)


# Module-level singleton — one per process
_room_locks = RoomLocks()


def rules_from(thresholds: Thresholds | None) -> RoomRules:
    if thresholds is None:
        return RoomRules()
    return RoomRules(min_members=thresholds.min_members, min_posters=thresholds.min_posters)


# ---------------------------------------------------------------------------
# Mapping between ORM row and machine context
# ---------------------------------------------------------------------------
def _context_of(room: Room) -> RoomContext:
    return RoomContext(
        room_id=room.id,
        member_count=room.member_count or 0,
        unique_posters_72h=room.unique_posters_72h or 0,
        activated_at=room.activated_at,
        locked_at=room.locked_at,
        deleted_at=room.deleted_at,
        last_moderator_id=room.last_moderator_id,
    )


def _state_reason(result: TransitionResult, event: RoomEvent, rules: RoomRules) -> str | None:
    if result.state is RoomStatus.DELETED:
        return f"Insufficient members: fewer than {rules.min_members}"
    if event.type == RoomEventType.MANUAL_LOCK:
        return f"Locked by moderator {event.moderator_id}"
    if event.type == RoomEventType.MANUAL_UNLOCK:
        return f"Unlocked by moderator {event.moderator_id}"
    if result.state is RoomStatus.LOCKED:
        return (
            f"Insufficient activity: fewer than {rules.min_posters} unique posters "
            "in the activity window"
        )
    if result.state is RoomStatus.ACTIVE and result.previous is RoomStatus.LOCKED:
        return "Activity requirements met"
    if result.state is RoomStatus.ACTIVE:
        return f"Reached {rules.min_members} members"
    return None


def _persist(room: Room, result: TransitionResult, event: RoomEvent, rules: RoomRules) -> None:
    ctx = result.context
    room.member_count = ctx.member_count
    room.unique_posters_72h = ctx.unique_posters_72h
    room.activated_at = ctx.activated_at
    room.locked_at = ctx.locked_at
    room.deleted_at = ctx.deleted_at
    room.last_moderator_id = ctx.last_moderator_id
    if result.changed_state:
        room.status = result.state.value
        room.state_changed_at = event.timestamp
        room.state_reason = _state_reason(result, event, rules)


def _cascade_delete(session: Session, room_id: int, now: datetime) -> dict[str, int]:
    """Soft-delete a room's posts and replies and deactivate its members.

    Runs inside the caller's transaction: either every row changes or none.
    """
    post_ids = select(Post.id).where(Post.room_id == room_id).scalar_subquery()
    replies = session.execute(
        update(Reply)
        .where(Reply.post_id.in_(post_ids), Reply.deleted_at.is_(None))
        .values(deleted_at=now)
        .execution_options(synchronize_session=False)
    )
    posts = session.execute(
        update(Post)
        .where(Post.room_id == room_id, Post.deleted_at.is_(None))
        .values(deleted_at=now)
        .execution_options(synchronize_session=False)
    )
    members = session.execute(
        update(RoomMembership)
        .where(RoomMembership.room_id == room_id, RoomMembership.is_active.is_(True))
        .values(is_active=False, left_at=now)
        .execution_options(synchronize_session=False)
    )
    return {
        "posts": posts.rowcount,
        "replies": replies.rowcount,
        "memberships": members.rowcount,
    }


def _notification_payload(room: Room, result: TransitionResult, event: RoomEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "room_id": room.id,
        "room_name": room.name,
        "state": result.state.value,
        "trigger": str(event.type),
    }
    if event.moderator_id:
        payload["moderator_id"] = event.moderator_id
    if room.state_reason:
        payload["reason"] = room.state_reason
    return payload


def _apply(
    session: Session,
    room: Room,
    event: RoomEvent,
    rules: RoomRules,
) -> TransitionResult:
    """Evaluate *event* for *room* and carry out the effects in *session*."""
    result = transition(room.status, _context_of(room), event, rules)
    if not result.accepted:
        logger.warning(
            "Rejected %s for room %d (%s): %s",
            event.type, room.id, room.status, result.reason,
            extra={"room_id": room.id},
        )
        return result

    for effect in result.effects:
        if effect.kind is EffectKind.PERSIST:
            _persist(room, result, event, rules)
        elif effect.kind is EffectKind.NOTIFY:
            notify_room_members(
                session, room.id, effect.notification,
                _notification_payload(room, result, event), now=event.timestamp,
            )
        elif effect.kind is EffectKind.CASCADE_DELETE:
            counts = _cascade_delete(session, room.id, event.timestamp)
            logger.info(
                "Room %d cascade: %d posts, %d replies, %d memberships",
                room.id, counts["posts"], counts["replies"], counts["memberships"],
            )
        elif effect.kind is EffectKind.LOG:
            session.add(RoomStateLog(
                room_id=room.id,
                event=str(event.type),
                from_state=result.previous.value,
                to_state=result.state.value,
                member_count=result.context.member_count,
                unique_posters_72h=result.context.unique_posters_72h,
                user_pseudo=event.user_pseudo,
                moderator_id=event.moderator_id,
                timestamp=event.timestamp,
            ))
            logger.info(
                "Room %d (%s): %s → %s on %s",
                room.id, room.name, result.previous, result.state, event.type,
                extra={"room_id": room.id},
            )
    return result


def _load_room(session: Session, room_id: int) -> Room:
    room = session.get(Room, room_id)
    if room is None:
        raise RoomNotFound(f"Room {room_id} not found")
    return room


def _released(room_id: int, result: TransitionResult) -> TransitionResult:
    """Call after the room lock is released; deleted rooms drop their lock."""
    if result.changed_state and result.state is RoomStatus.DELETED:
        _room_locks.discard(room_id)
    return result


def _rejected(room: Room, reason: str) -> TransitionResult:
    state = RoomStatus(room.status)
    return TransitionResult(
        accepted=False, previous=state, state=state,
        context=_context_of(room), reason=reason,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def create_room(
    engine: Engine,
    name: str,
    founders: Sequence[str],
    *,
    description: str | None = None,
    now: datetime | None = None,
) -> int:
    """Create a ``pending`` room whose founders are its first members.

    Returns the new room id.
    """
    now = now or utcnow()
    with get_session(engine) as session:
        room = Room(
            name=name,
            description=description,
            status=RoomStatus.PENDING.value,
            member_count=len(founders),
            state_changed_at=now,
            created_at=now,
        )
        session.add(room)
        session.flush()
        for pseudo in founders:
            session.add(RoomMembership(
                room_id=room.id, user_pseudo=pseudo, joined_at=now, is_founder=True,
            ))
        room_id = room.id
    logger.info("Created room %d (%s) with %d founders", room_id, name, len(founders))
    return room_id


def apply_room_event(
    engine: Engine,
    room_id: int,
    event: RoomEvent,
    rules: RoomRules | None = None,
) -> TransitionResult:
    """Apply a raw event to a stored room under its lock."""
    rules = rules or RoomRules()
    with _room_locks.for_room(room_id), get_session(engine) as session:
        room = _load_room(session, room_id)
        result = _apply(session, room, event, rules)
    return _released(room_id, result)


def join_room(
    engine: Engine,
    room_id: int,
    user_pseudo: str,
    *,
    thresholds: Thresholds | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Add *user_pseudo* to the room and fire USER_JOINED."""
    now = now or utcnow()
    rules = rules_from(thresholds)
    event = RoomEvent(RoomEventType.USER_JOINED, user_pseudo=user_pseudo, timestamp=now)

    with _room_locks.for_room(room_id), get_session(engine) as session:
        room = _load_room(session, room_id)
        membership = session.get(RoomMembership, (room_id, user_pseudo))
        if membership is not None and membership.is_active:
            return _rejected(room, f"{user_pseudo} is already a member")
        if room.status == RoomStatus.DELETED:
            return _apply(session, room, event, rules)

        # Membership first so the newcomer is among the notified members
        if membership is None:
            session.add(RoomMembership(room_id=room_id, user_pseudo=user_pseudo, joined_at=now))
        else:
            membership.is_active = True
            membership.joined_at = now
            membership.left_at = None
        session.flush()
        result = _apply(session, room, event, rules)
    return _released(room_id, result)


def leave_room(
    engine: Engine,
    room_id: int,
    user_pseudo: str,
    *,
    thresholds: Thresholds | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Mark *user_pseudo*'s membership inactive and fire USER_LEFT."""
    now = now or utcnow()
    rules = rules_from(thresholds)
    event = RoomEvent(RoomEventType.USER_LEFT, user_pseudo=user_pseudo, timestamp=now)

    with _room_locks.for_room(room_id), get_session(engine) as session:
        room = _load_room(session, room_id)
        membership = session.get(RoomMembership, (room_id, user_pseudo))
        if membership is None or not membership.is_active:
            return _rejected(room, f"{user_pseudo} is not a member")
        if room.status == RoomStatus.DELETED:
            return _apply(session, room, event, rules)

        # Deactivate first so the leaver is not notified of their own departure
        membership.is_active = False
        membership.left_at = now
        session.flush()
        result = _apply(session, room, event, rules)
    return _released(room_id, result)


def lock_room(
    engine: Engine, room_id: int, moderator_id: str, *, now: datetime | None = None,
) -> TransitionResult:
    event = RoomEvent(RoomEventType.MANUAL_LOCK, moderator_id=moderator_id,
                      timestamp=now or utcnow())
    return apply_room_event(engine, room_id, event)


def unlock_room(
    engine: Engine, room_id: int, moderator_id: str, *, now: datetime | None = None,
) -> TransitionResult:
    event = RoomEvent(RoomEventType.MANUAL_UNLOCK, moderator_id=moderator_id,
                      timestamp=now or utcnow())
    return apply_room_event(engine, room_id, event)


def check_room_activity(
    engine: Engine,
    room_id: int,
    thresholds: Thresholds,
    *,
    now: datetime | None = None,
) -> TransitionResult:
    """Recount members and unique posters, then fire ACTIVITY_CHECK.

    Counting happens inside the room lock and transaction so the guard
    sees the same numbers that get persisted.
    """
    now = now or utcnow()
    rules = rules_from(thresholds)

    with _room_locks.for_room(room_id), get_session(engine) as session:
        room = _load_room(session, room_id)
        event = RoomEvent(
            RoomEventType.ACTIVITY_CHECK,
            member_count=count_active_members(session, room_id),
            unique_posters=count_unique_posters(
                session, room_id, now, thresholds.poster_window_hours,
            ),
            timestamp=now,
        )
        result = _apply(session, room, event, rules)
        if result.accepted:
            room.last_activity_check = now
    return _released(room_id, result)


def get_room_state(engine: Engine, room_id: int) -> dict[str, Any]:
    """Current state, context and the manual actions available right now."""
    with get_session(engine) as session:
        room = _load_room(session, room_id)
        ctx = _context_of(room)
        state = RoomStatus(room.status)
    events = allowed_events(state)
    return {
        "state": state.value,
        "context": ctx,
        "can": {
            "lock": RoomEventType.MANUAL_LOCK in events,
            "unlock": RoomEventType.MANUAL_UNLOCK in events,
            "delete": state is not RoomStatus.DELETED,
        },
    }


# ---------------------------------------------------------------------------
# Member activity and read helpers
# ---------------------------------------------------------------------------
def _active_membership(session: Session, room_id: int, user_pseudo: str) -> RoomMembership | None:
    membership = session.get(RoomMembership, (room_id, user_pseudo))
    if membership is None or not membership.is_active:
        return None
    return membership


def record_post(
    engine: Engine, room_id: int, user_pseudo: str, *, now: datetime | None = None,
) -> bool:
    """Stamp ``last_post_at`` on the membership and bump the user's post count.

    Returns False if *user_pseudo* is not an active member of the room.
    """
    now = now or utcnow()
    with get_session(engine) as session:
        membership = _active_membership(session, room_id, user_pseudo)
        if membership is None:
            return False
        membership.last_post_at = now
        session.execute(
            update(User)
            .where(User.pseudo == user_pseudo)
            .values(post_count=func.coalesce(User.post_count, 0) + 1)
            .execution_options(synchronize_session=False)
        )
    return True


def record_view(
    engine: Engine, room_id: int, user_pseudo: str, *, now: datetime | None = None,
) -> bool:
    """Stamp ``last_view_at`` on the membership.  False if not a member."""
    now = now or utcnow()
    with get_session(engine) as session:
        membership = _active_membership(session, room_id, user_pseudo)
        if membership is None:
            return False
        membership.last_view_at = now
    return True


def get_room_members(engine: Engine, room_id: int) -> list[dict[str, Any]]:
    """Active members of *room_id*, oldest first, with their ban status."""
    with get_session(engine) as session:
        rows = session.execute(
            select(
                RoomMembership.user_pseudo,
                RoomMembership.joined_at,
                RoomMembership.is_founder,
                RoomMembership.last_post_at,
                RoomMembership.last_view_at,
                User.is_banned,
                User.ban_until,
            )
            .outerjoin(User, User.pseudo == RoomMembership.user_pseudo)
            .where(RoomMembership.room_id == room_id, RoomMembership.is_active.is_(True))
            .order_by(RoomMembership.joined_at, RoomMembership.user_pseudo)
        ).all()
    return [
        {**row._asdict(), "is_banned": bool(row.is_banned)}
        for row in rows
    ]


def get_user_rooms(engine: Engine, user_pseudo: str) -> list[dict[str, Any]]:
    """Rooms *user_pseudo* currently belongs to, most recently joined first."""
    with get_session(engine) as session:
        rows = session.execute(
            select(
                Room.id,
                Room.name,
                Room.member_count,
                Room.status,
                RoomMembership.joined_at,
                RoomMembership.is_founder,
                RoomMembership.last_post_at,
                RoomMembership.last_view_at,
            )
            .join(RoomMembership, RoomMembership.room_id == Room.id)
            .where(
                RoomMembership.user_pseudo == user_pseudo,
                RoomMembership.is_active.is_(True),
                Room.deleted_at.is_(None),
            )
            .order_by(RoomMembership.joined_at.desc(), Room.id.desc())
        ).all()
    return [row._asdict() for row in rows]


def run_room_checks(
    engine: Engine,
    thresholds: Thresholds,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Fire ACTIVITY_CHECK for every non-deleted room.

    Each room is its own transaction; a failing room is logged and counted
    and the run moves on.  Returns ``{"processed", "changed", "errors",
    "activated", "locked", "unlocked", "deleted"}``.
    """
    started = time.monotonic()
    now = now or utcnow()

    with get_session(engine) as session:
        room_ids = session.scalars(
            select(Room.id)
            .where(Room.deleted_at.is_(None), Room.status != RoomStatus.DELETED.value)
            .order_by(Room.id)
        ).all()

    results = {
        "processed": len(room_ids),
        "changed": 0,
        "errors": 0,
        "activated": 0,
        "locked": 0,
        "unlocked": 0,
        "deleted": 0,
    }

    for room_id in room_ids:
        try:
            result = check_room_activity(engine, room_id, thresholds, now=now)
        except Exception:
            results["errors"] += 1
            logger.exception("Error checking room %d", room_id, extra={"room_id": room_id})
            continue

        if not result.changed_state:
            continue
        results["changed"] += 1
        if result.state is RoomStatus.DELETED:
            results["deleted"] += 1
        elif result.state is RoomStatus.LOCKED:
            results["locked"] += 1
        elif result.previous is RoomStatus.LOCKED:
            results["unlocked"] += 1
        else:
            results["activated"] += 1

    logger.info(
        "Room checks complete: %d checked, %d locked, %d unlocked, %d deleted, "
        "%d errors (%.0f ms)",
        results["processed"], results["locked"], results["unlocked"],
        results["deleted"], results["errors"], (time.monotonic() - started) * 1000,
    )
    return results
