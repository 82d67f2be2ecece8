"""
roomwarden.engine.room_machine — Room Lifecycle State Machine
==============================================================

A room moves ``pending → active ⇄ locked → deleted`` driven by five
events.  This module is the whole state machine as one pure function::

    result = transition(state, context, event)

No database I/O, no clock reads beyond ``event.timestamp``.  The caller
(:mod:`roomwarden.services.room_service`) loads the room, calls
:func:`transition`, then carries out ``result.effects`` in the same
transaction.

Transition table (guards evaluated top to bottom, first match wins):

=========  ==============  ==========================  =========
State      Event           Guard                       Next
=========  ==============  ==========================  =========
pending    USER_JOINED     has_enough_members          active
pending    USER_JOINED     —                           pending
active     USER_JOINED     —                           active
locked     USER_JOINED     —                           locked
any live   USER_LEFT       below_min_members           deleted
any live   USER_LEFT       —                           same
pending    ACTIVITY_CHECK  —                           pending
active     ACTIVITY_CHECK  below_min_members           deleted
active     ACTIVITY_CHECK  should_be_locked            locked
active     ACTIVITY_CHECK  —                           active
locked     ACTIVITY_CHECK  meets_active_requirements   active
locked     ACTIVITY_CHECK  below_min_members           deleted
locked     ACTIVITY_CHECK  —                           locked
active     MANUAL_LOCK     —                           locked
locked     MANUAL_UNLOCK   —                           active
=========  ==============  ==========================  =========

Member counts are evaluated *after* the event's own update (a leave is
decremented before ``below_min_members`` is checked).  ``deleted``
absorbs every event.  Anything not in the table is rejected with
``accepted=False`` and leaves state and context untouched.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime

from roomwarden.constants import (
    NOTIFY_ROOM_ACTIVATED,
    NOTIFY_ROOM_DELETED,
    NOTIFY_ROOM_LOCKED,
    NOTIFY_ROOM_UNLOCKED,
)
from roomwarden.database.models import RoomStatus
from roomwarden.engine.timeutil import utcnow

__all__ = [
    "RoomEventType",
    "RoomEvent",
    "RoomContext",
    "RoomRules",
    "EffectKind",
    "Effect",
    "TransitionResult",
    "transition",
    "allowed_events",
]


class RoomEventType(enum.StrEnum):
    USER_JOINED = "USER_JOINED"
    USER_LEFT = "USER_LEFT"
    ACTIVITY_CHECK = "ACTIVITY_CHECK"
    MANUAL_LOCK = "MANUAL_LOCK"
    MANUAL_UNLOCK = "MANUAL_UNLOCK"


class EffectKind(enum.StrEnum):
    PERSIST = "persist"
    NOTIFY = "notify"
    LOG = "log"
    CASCADE_DELETE = "cascade_delete"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RoomEvent:
    """One input to the machine.

    ``member_count`` / ``unique_posters`` are only read for
    ACTIVITY_CHECK (fresh counts observed by the caller).  ``user_pseudo``
    is the joining/leaving member, ``moderator_id`` the moderator behind a
    manual lock or unlock.
    """

    type: RoomEventType
    user_pseudo: str | None = None
    moderator_id: str | None = None
    member_count: int | None = None
    unique_posters: int | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class RoomContext:
    """Everything the guards look at, plus the lifecycle timestamps."""

    room_id: int
    member_count: int = 0
    unique_posters_72h: int = 0
    activated_at: datetime | None = None
    locked_at: datetime | None = None
    deleted_at: datetime | None = None
    last_moderator_id: str | None = None


@dataclass(frozen=True, slots=True)
class RoomRules:
    min_members: int = 10
    min_posters: int = 4


@dataclass(frozen=True, slots=True)
class Effect:
    """A side effect the caller must carry out.

    For NOTIFY, ``notification`` is the notification type sent to every
    active member of the room.
    """

    kind: EffectKind
    notification: str | None = None


@dataclass(frozen=True, slots=True)
class TransitionResult:
    accepted: bool
    previous: RoomStatus
    state: RoomStatus
    context: RoomContext
    effects: tuple[Effect, ...] = ()
    reason: str | None = None

    @property
    def changed_state(self) -> bool:
        return self.accepted and self.previous != self.state


# ---------------------------------------------------------------------------
# Guards — pure functions of (context, rules)
# ---------------------------------------------------------------------------
def has_enough_members(ctx: RoomContext, rules: RoomRules) -> bool:
    return ctx.member_count >= rules.min_members


def has_enough_posters(ctx: RoomContext, rules: RoomRules) -> bool:
    return ctx.unique_posters_72h >= rules.min_posters


def below_min_members(ctx: RoomContext, rules: RoomRules) -> bool:
    return ctx.member_count < rules.min_members


def meets_active_requirements(ctx: RoomContext, rules: RoomRules) -> bool:
    return has_enough_members(ctx, rules) and has_enough_posters(ctx, rules)


def should_be_locked(ctx: RoomContext, rules: RoomRules) -> bool:
    return has_enough_members(ctx, rules) and not has_enough_posters(ctx, rules)


def _always(ctx: RoomContext, rules: RoomRules) -> bool:
    return True


# ---------------------------------------------------------------------------
# Effect bundles
# ---------------------------------------------------------------------------
_COUNTS_ONLY: tuple[Effect, ...] = (Effect(EffectKind.PERSIST),)


def _announce(notification: str, *, cascade: bool = False) -> tuple[Effect, ...]:
    effects = [Effect(EffectKind.PERSIST), Effect(EffectKind.NOTIFY, notification)]
    if cascade:
        effects.append(Effect(EffectKind.CASCADE_DELETE))
    effects.append(Effect(EffectKind.LOG))
    return tuple(effects)


# ---------------------------------------------------------------------------
# Context updates
# ---------------------------------------------------------------------------
def _update_counts(ctx: RoomContext, event: RoomEvent) -> RoomContext:
    if event.type == RoomEventType.USER_JOINED:
        return replace(ctx, member_count=ctx.member_count + 1)
    if event.type == RoomEventType.USER_LEFT:
        return replace(ctx, member_count=max(0, ctx.member_count - 1))
    if event.type == RoomEventType.ACTIVITY_CHECK:
        return replace(
            ctx,
            member_count=(
                event.member_count if event.member_count is not None else ctx.member_count
            ),
            unique_posters_72h=(
                event.unique_posters
                if event.unique_posters is not None
                else ctx.unique_posters_72h
            ),
        )
    return ctx


def _activate(ctx: RoomContext, event: RoomEvent) -> RoomContext:
    return replace(ctx, activated_at=event.timestamp, locked_at=None)


def _lock(ctx: RoomContext, event: RoomEvent) -> RoomContext:
    return replace(ctx, locked_at=event.timestamp)


def _unlock(ctx: RoomContext, event: RoomEvent) -> RoomContext:
    return replace(ctx, locked_at=None)


def _delete(ctx: RoomContext, event: RoomEvent) -> RoomContext:
    return replace(ctx, deleted_at=event.timestamp)


def _record_moderator(ctx: RoomContext, event: RoomEvent) -> RoomContext:
    return replace(ctx, last_moderator_id=event.moderator_id)


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------
Guard = Callable[[RoomContext, RoomRules], bool]
Action = Callable[[RoomContext, RoomEvent], RoomContext]


@dataclass(frozen=True, slots=True)
class _Edge:
    guard: Guard
    target: RoomStatus
    actions: tuple[Action, ...]
    effects: tuple[Effect, ...]
    update_counts: bool = True


_S = RoomStatus
_E = RoomEventType

_LEAVE_EDGES: tuple[_Edge, ...] = (
    _Edge(below_min_members, _S.DELETED, (_delete,),
          _announce(NOTIFY_ROOM_DELETED, cascade=True)),
)

TRANSITIONS: dict[tuple[RoomStatus, RoomEventType], tuple[_Edge, ...]] = {
    # pending
    (_S.PENDING, _E.USER_JOINED): (
        _Edge(has_enough_members, _S.ACTIVE, (_activate,), _announce(NOTIFY_ROOM_ACTIVATED)),
        _Edge(_always, _S.PENDING, (), _COUNTS_ONLY),
    ),
    (_S.PENDING, _E.USER_LEFT): _LEAVE_EDGES + (
        _Edge(_always, _S.PENDING, (), _COUNTS_ONLY),
    ),
    (_S.PENDING, _E.ACTIVITY_CHECK): (
        _Edge(_always, _S.PENDING, (), _COUNTS_ONLY),
    ),
    # active
    (_S.ACTIVE, _E.USER_JOINED): (
        _Edge(_always, _S.ACTIVE, (), _COUNTS_ONLY),
    ),
    (_S.ACTIVE, _E.USER_LEFT): _LEAVE_EDGES + (
        _Edge(_always, _S.ACTIVE, (), _COUNTS_ONLY),
    ),
    (_S.ACTIVE, _E.ACTIVITY_CHECK): (
        _Edge(below_min_members, _S.DELETED, (_delete,),
              _announce(NOTIFY_ROOM_DELETED, cascade=True)),
        _Edge(should_be_locked, _S.LOCKED, (_lock,), _announce(NOTIFY_ROOM_LOCKED)),
        _Edge(_always, _S.ACTIVE, (), _COUNTS_ONLY),
    ),
    (_S.ACTIVE, _E.MANUAL_LOCK): (
        _Edge(_always, _S.LOCKED, (_record_moderator, _lock),
              _announce(NOTIFY_ROOM_LOCKED), update_counts=False),
    ),
    # locked
    (_S.LOCKED, _E.USER_JOINED): (
        _Edge(_always, _S.LOCKED, (), _COUNTS_ONLY),
    ),
    (_S.LOCKED, _E.USER_LEFT): _LEAVE_EDGES + (
        _Edge(_always, _S.LOCKED, (), _COUNTS_ONLY),
    ),
    (_S.LOCKED, _E.ACTIVITY_CHECK): (
        _Edge(meets_active_requirements, _S.ACTIVE, (_unlock,), _announce(NOTIFY_ROOM_UNLOCKED)),
        _Edge(below_min_members, _S.DELETED, (_delete,),
              _announce(NOTIFY_ROOM_DELETED, cascade=True)),
        _Edge(_always, _S.LOCKED, (), _COUNTS_ONLY),
    ),
    (_S.LOCKED, _E.MANUAL_UNLOCK): (
        _Edge(_always, _S.ACTIVE, (_record_moderator, _unlock),
              _announce(NOTIFY_ROOM_UNLOCKED), update_counts=False),
    ),
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def transition(
    state: RoomStatus | str,
    ctx: RoomContext,
    event: RoomEvent,
    rules: RoomRules | None = None,
) -> TransitionResult:
    """Apply *event* to a room in *state* with context *ctx*.

    Returns a :class:`TransitionResult`; ``accepted=False`` means the event
    is not valid in this state and nothing changed.
    """
    rules = rules or RoomRules()
    state = RoomStatus(state)

    if state is RoomStatus.DELETED:
        return TransitionResult(
            accepted=False, previous=state, state=state, context=ctx,
            reason="room is deleted",
        )

    edges = TRANSITIONS.get((state, event.type))
    if edges is None:
        return TransitionResult(
            accepted=False, previous=state, state=state, context=ctx,
            reason=f"{event.type} is not valid for a {state} room",
        )

    for edge in edges:
        candidate = _update_counts(ctx, event) if edge.update_counts else ctx
        if not edge.guard(candidate, rules):
            continue
        for action in edge.actions:
            candidate = action(candidate, event)
        return TransitionResult(
            accepted=True,
            previous=state,
            state=edge.target,
            context=candidate,
            effects=edge.effects,
        )

    # Every edge list ends with an unguarded fallback.
    raise AssertionError(f"no edge matched for {state}/{event.type}")


def allowed_events(state: RoomStatus | str) -> set[RoomEventType]:
    """Event types the machine accepts in *state*."""
    state = RoomStatus(state)
    return {event for (s, event) in TRANSITIONS if s is state}
