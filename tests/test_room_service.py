"""
tests/test_room_service.py — Room Lifecycle Service Integration Tests
======================================================================

Runs the state machine against stored rooms: persistence, member
notifications, cascade soft-deletes, the audit log, and per-room
isolation in the hourly room-check job.

Uses an in-memory SQLite database via the shared conftest fixtures; the
concurrency tests use the file-backed ``file_engine`` so each thread and
session gets its own connection.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from roomwarden.config import Thresholds
from roomwarden.constants import NOTIFY_ROOM_DELETED, NOTIFY_ROOM_LOCKED
from roomwarden.database.models import (
    Notification,
    Post,
    Reply,
    Room,
    RoomMembership,
    RoomStateLog,
    RoomStatus,
    User,
)
from roomwarden.engine.room_machine import RoomEvent, RoomEventType
from roomwarden.engine.timeutil import as_utc
from roomwarden.services import room_service
from roomwarden.services.room_service import (
    RoomNotFound,
    apply_room_event,
    check_room_activity,
    create_room,
    get_room_members,
    get_room_state,
    get_user_rooms,
    join_room,
    leave_room,
    lock_room,
    record_post,
    record_view,
    run_room_checks,
    unlock_room,
)

THRESHOLDS = Thresholds()


def _room(engine, room_id: int) -> Room:
    with Session(engine, expire_on_commit=False) as session:
        return session.get(Room, room_id)


def _notifications(engine, notification_type: str) -> list[Notification]:
    with Session(engine) as session:
        return list(session.scalars(
            select(Notification).where(Notification.type == notification_type)
        ).all())


def _add_posts(make_post, room_id: int, name: str, posters: int, at) -> None:
    for i in range(posters):
        make_post(room_id, f"{name}-m{i}", created_at=at)


# ---------------------------------------------------------------------------
# Membership events
# ---------------------------------------------------------------------------
class TestJoinAndLeave:
    def test_create_room_counts_founders(self, db_engine, now):
        room_id = create_room(db_engine, "founders", ["a", "b", "c"], now=now)
        room = _room(db_engine, room_id)
        assert room.status == RoomStatus.PENDING
        assert room.member_count == 3
        with Session(db_engine) as session:
            founders = session.scalars(
                select(RoomMembership).where(RoomMembership.room_id == room_id)
            ).all()
        assert all(m.is_founder for m in founders)

    def test_joins_activate_room(self, db_engine, make_room, now):
        room_id = make_room("growing", members=6)
        for i in range(4):
            result = join_room(db_engine, room_id, f"new-{i}", now=now)
            assert result.accepted

        room = _room(db_engine, room_id)
        assert room.status == RoomStatus.ACTIVE
        assert room.member_count == 10
        assert room.activated_at is not None
        assert room.state_changed_at is not None
        assert room.state_reason == "Reached 10 members"

        with Session(db_engine) as session:
            log = session.scalars(select(RoomStateLog)).all()
            members = session.scalar(
                select(func.count()).select_from(RoomMembership)
                .where(RoomMembership.room_id == room_id, RoomMembership.is_active.is_(True))
            )
        assert [(e.from_state, e.to_state, e.event) for e in log] == [
            ("pending", "active", "USER_JOINED"),
        ]
        assert log[0].user_pseudo == "new-3"
        assert members == 10

    def test_activation_notifies_every_member(self, db_engine, make_room, now):
        room_id = make_room("almost", members=9)
        join_room(db_engine, room_id, "tenth", now=now)
        recipients = {n.recipient for n in _notifications(db_engine, "room_activated")}
        assert recipients == {f"almost-m{i}" for i in range(9)} | {"tenth"}

    def test_join_twice_is_rejected(self, db_engine, make_room, now):
        room_id = make_room("dupes", members=3)
        result = join_room(db_engine, room_id, "dupes-m1", now=now)
        assert not result.accepted
        assert "already a member" in result.reason
        assert _room(db_engine, room_id).member_count == 3

    def test_rejoin_reactivates_membership(self, db_engine, make_room, now):
        room_id = make_room("revolving", members=12, status=RoomStatus.ACTIVE)
        leave_room(db_engine, room_id, "revolving-m5", now=now)
        result = join_room(db_engine, room_id, "revolving-m5", now=now + timedelta(hours=1))
        assert result.accepted
        with Session(db_engine) as session:
            membership = session.get(RoomMembership, (room_id, "revolving-m5"))
        assert membership.is_active
        assert membership.left_at is None
        assert _room(db_engine, room_id).member_count == 12

    def test_leave_by_non_member_is_rejected(self, db_engine, make_room, now):
        room_id = make_room("strangers", members=12, status=RoomStatus.ACTIVE)
        result = leave_room(db_engine, room_id, "nobody", now=now)
        assert not result.accepted
        assert _room(db_engine, room_id).member_count == 12

    def test_leave_below_minimum_deletes_and_cascades(
        self, db_engine, make_room, make_post, make_reply, now,
    ):
        room_id = make_room("shrinking", members=10, status=RoomStatus.ACTIVE)
        post_id = make_post(room_id, "shrinking-m1")
        make_reply(post_id, "shrinking-m2")
        make_reply(post_id, "shrinking-m3")

        result = leave_room(db_engine, room_id, "shrinking-m0", now=now)
        assert result.accepted
        assert result.state is RoomStatus.DELETED

        room = _room(db_engine, room_id)
        assert room.status == RoomStatus.DELETED
        assert room.deleted_at is not None
        assert room.member_count == 9

        with Session(db_engine) as session:
            post = session.get(Post, post_id)
            replies = session.scalars(select(Reply).where(Reply.post_id == post_id)).all()
            active = session.scalar(
                select(func.count()).select_from(RoomMembership)
                .where(RoomMembership.room_id == room_id, RoomMembership.is_active.is_(True))
            )
        assert post.deleted_at is not None
        assert all(r.deleted_at is not None for r in replies)
        assert active == 0

        # The 9 remaining members hear about it; the leaver does not.
        recipients = {n.recipient for n in _notifications(db_engine, NOTIFY_ROOM_DELETED)}
        assert recipients == {f"shrinking-m{i}" for i in range(1, 10)}

    def test_second_leave_after_deletion_is_rejected(self, db_engine, make_room, now):
        room_id = make_room("gone", members=10, status=RoomStatus.ACTIVE)
        leave_room(db_engine, room_id, "gone-m0", now=now)
        result = leave_room(db_engine, room_id, "gone-m1", now=now)
        assert not result.accepted
        assert _room(db_engine, room_id).status == RoomStatus.DELETED

    def test_unknown_room_raises(self, db_engine, now):
        with pytest.raises(RoomNotFound):
            join_room(db_engine, 999, "x", now=now)


# ---------------------------------------------------------------------------
# Activity checks and moderator actions
# ---------------------------------------------------------------------------
class TestActivityAndModeration:
    def test_quiet_active_room_gets_locked(self, db_engine, make_room, make_post, now):
        room_id = make_room("quiet", members=12, status=RoomStatus.ACTIVE)
        _add_posts(make_post, room_id, "quiet", 2, now - timedelta(hours=5))

        result = check_room_activity(db_engine, room_id, THRESHOLDS, now=now)

        assert result.state is RoomStatus.LOCKED
        room = _room(db_engine, room_id)
        assert room.status == RoomStatus.LOCKED
        assert room.locked_at is not None
        assert room.unique_posters_72h == 2
        assert room.last_activity_check is not None
        assert len(_notifications(db_engine, NOTIFY_ROOM_LOCKED)) == 12

    def test_lively_locked_room_unlocks(self, db_engine, make_room, make_post, now):
        room_id = make_room(
            "lively", members=11, status=RoomStatus.LOCKED, locked_at=now - timedelta(days=1),
        )
        _add_posts(make_post, room_id, "lively", 5, now - timedelta(hours=1))

        result = check_room_activity(db_engine, room_id, THRESHOLDS, now=now)

        assert result.state is RoomStatus.ACTIVE
        room = _room(db_engine, room_id)
        assert room.locked_at is None
        assert room.unique_posters_72h == 5

    def test_old_and_deleted_posts_do_not_count(self, db_engine, make_room, make_post, now):
        room_id = make_room("stale", members=12, status=RoomStatus.ACTIVE)
        _add_posts(make_post, room_id, "stale", 4, now - timedelta(hours=80))
        make_post(room_id, "stale-m5", created_at=now - timedelta(hours=1), deleted_at=now)

        result = check_room_activity(db_engine, room_id, THRESHOLDS, now=now)
        assert result.context.unique_posters_72h == 0
        assert result.state is RoomStatus.LOCKED

    def test_lock_and_unlock_by_moderator(self, db_engine, make_room, now):
        room_id = make_room("moderated", members=12, status=RoomStatus.ACTIVE)

        locked = lock_room(db_engine, room_id, "mod-7", now=now)
        assert locked.state is RoomStatus.LOCKED
        room = _room(db_engine, room_id)
        assert room.last_moderator_id == "mod-7"
        assert room.state_reason == "Locked by moderator mod-7"

        unlocked = unlock_room(db_engine, room_id, "mod-8", now=now)
        assert unlocked.state is RoomStatus.ACTIVE
        assert _room(db_engine, room_id).locked_at is None

        with Session(db_engine) as session:
            log = session.scalars(select(RoomStateLog).order_by(RoomStateLog.id)).all()
        assert [(e.event, e.moderator_id) for e in log] == [
            ("MANUAL_LOCK", "mod-7"), ("MANUAL_UNLOCK", "mod-8"),
        ]

    def test_invalid_event_changes_nothing(self, db_engine, make_room, now):
        room_id = make_room("steady", members=12, status=RoomStatus.ACTIVE)
        before = _room(db_engine, room_id)

        result = unlock_room(db_engine, room_id, "mod-1", now=now)

        assert not result.accepted
        after = _room(db_engine, room_id)
        assert after.status == before.status
        assert after.version == before.version
        with Session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(RoomStateLog)) == 0
            assert session.scalar(select(func.count()).select_from(Notification)) == 0

    def test_raw_event_on_deleted_room_is_rejected(self, db_engine, make_room, now):
        room_id = make_room("dead", members=3, status=RoomStatus.DELETED, deleted_at=now)
        result = apply_room_event(
            db_engine, room_id,
            RoomEvent(RoomEventType.ACTIVITY_CHECK, member_count=40, unique_posters=40,
                      timestamp=now),
        )
        assert not result.accepted
        room = _room(db_engine, room_id)
        assert room.status == RoomStatus.DELETED
        assert room.member_count == 3

    def test_get_room_state_reports_available_actions(self, db_engine, make_room):
        room_id = make_room("inspect", members=12, status=RoomStatus.ACTIVE)
        state = get_room_state(db_engine, room_id)
        assert state["state"] == "active"
        assert state["context"].member_count == 12
        assert state["can"] == {"lock": True, "unlock": False, "delete": True}

    def test_successful_writes_bump_version(self, db_engine, make_room, now):
        room_id = make_room("versioned", members=12, status=RoomStatus.ACTIVE)
        before = _room(db_engine, room_id).version
        lock_room(db_engine, room_id, "mod", now=now)
        assert _room(db_engine, room_id).version == before + 1


# ---------------------------------------------------------------------------
# Hourly job
# ---------------------------------------------------------------------------
class TestRunRoomChecks:
    def test_summary_counts_outcomes(self, db_engine, make_room, make_post, now):
        quiet = make_room("quiet", members=12, status=RoomStatus.ACTIVE)
        busy = make_room("busy", members=12, status=RoomStatus.ACTIVE)
        _add_posts(make_post, busy, "busy", 4, now - timedelta(hours=2))
        make_room("pending", members=3)
        make_room("deleted", members=0, status=RoomStatus.DELETED, deleted_at=now)

        summary = run_room_checks(db_engine, THRESHOLDS, now=now)

        assert summary["processed"] == 3         # deleted rooms are not checked
        assert summary["locked"] == 1
        assert summary["changed"] == 1
        assert summary["errors"] == 0
        assert _room(db_engine, quiet).status == RoomStatus.LOCKED
        assert _room(db_engine, busy).status == RoomStatus.ACTIVE

    def test_active_room_below_minimum_is_deleted(self, db_engine, make_room, now):
        room_id = make_room("deserted", members=12, status=RoomStatus.ACTIVE)
        with Session(db_engine) as session:
            for i in range(4):
                session.get(RoomMembership, (room_id, f"deserted-m{i}")).is_active = False
            session.commit()

        summary = run_room_checks(db_engine, THRESHOLDS, now=now)

        assert summary["deleted"] == 1
        assert _room(db_engine, room_id).status == RoomStatus.DELETED

    def test_one_failing_room_does_not_stop_the_batch(self, db_engine, make_room, now):
        room_ids = [make_room(f"r{i}", members=12, status=RoomStatus.ACTIVE) for i in range(10)]
        failing = room_ids[4]
        real_check = room_service.check_room_activity

        def _flaky(engine, room_id, thresholds, *, now=None):
            if room_id == failing:
                raise RuntimeError("boom")
            return real_check(engine, room_id, thresholds, now=now)

        with patch.object(room_service, "check_room_activity", side_effect=_flaky):
            summary = run_room_checks(db_engine, THRESHOLDS, now=now)

        assert summary["processed"] == 10
        assert summary["errors"] == 1
        assert summary["locked"] == 9
        for room_id in room_ids:
            expected = RoomStatus.ACTIVE if room_id == failing else RoomStatus.LOCKED
            assert _room(db_engine, room_id).status == expected


# ---------------------------------------------------------------------------
# Member activity and read helpers
# ---------------------------------------------------------------------------
def _membership(engine, room_id: int, pseudo: str) -> RoomMembership:
    with Session(engine, expire_on_commit=False) as session:
        return session.get(RoomMembership, (room_id, pseudo))


class TestMemberActivity:
    def test_record_post_stamps_membership_and_counts(self, db_engine, make_room, make_user, now):
        room_id = make_room("club", members=3, status=RoomStatus.ACTIVE)
        make_user("club-m1", post_count=4)

        assert record_post(db_engine, room_id, "club-m1", now=now)

        assert as_utc(_membership(db_engine, room_id, "club-m1").last_post_at) == now
        with Session(db_engine) as session:
            assert session.get(User, "club-m1").post_count == 5

    def test_record_view_stamps_membership(self, db_engine, make_room, now):
        room_id = make_room("club", members=3, status=RoomStatus.ACTIVE)
        assert record_view(db_engine, room_id, "club-m2", now=now)
        membership = _membership(db_engine, room_id, "club-m2")
        assert as_utc(membership.last_view_at) == now
        assert membership.last_post_at is None

    def test_non_members_are_not_recorded(self, db_engine, make_room, make_user, now):
        room_id = make_room("club", members=3, status=RoomStatus.ACTIVE)
        make_user("outsider", post_count=1)
        leave_room(db_engine, room_id, "club-m0", now=now)

        assert not record_post(db_engine, room_id, "outsider", now=now)
        assert not record_post(db_engine, room_id, "club-m0", now=now)
        assert not record_view(db_engine, room_id, "club-m0", now=now)
        with Session(db_engine) as session:
            assert session.get(User, "outsider").post_count == 1

    def test_get_room_members(self, db_engine, make_room, make_user, now):
        room_id = make_room("club", members=3, status=RoomStatus.ACTIVE)
        make_user("club-m2", is_banned=True, ban_until=now + timedelta(days=2))
        with Session(db_engine) as session:
            session.get(RoomMembership, (room_id, "club-m1")).is_active = False
            session.commit()

        members = get_room_members(db_engine, room_id)

        assert [m["user_pseudo"] for m in members] == ["club-m0", "club-m2"]
        assert members[0]["is_founder"]
        assert not members[0]["is_banned"]
        assert members[1]["is_banned"]

    def test_get_user_rooms_newest_first(self, db_engine, make_room, now):
        first = make_room("first", members=2)
        second = make_room("second", members=2)
        gone = make_room("gone", members=0, status=RoomStatus.DELETED, deleted_at=now)
        join_room(db_engine, first, "wanderer", now=now - timedelta(days=3))
        join_room(db_engine, second, "wanderer", now=now - timedelta(days=1))
        with Session(db_engine) as session:
            session.add(RoomMembership(room_id=gone, user_pseudo="wanderer", joined_at=now))
            session.commit()

        rooms = get_user_rooms(db_engine, "wanderer")

        assert [r["name"] for r in rooms] == ["second", "first"]
        assert rooms[0]["member_count"] == 3
        assert rooms[0]["status"] == RoomStatus.PENDING


# ---------------------------------------------------------------------------
# Per-room serialisation and optimistic versioning
# ---------------------------------------------------------------------------
def _active_room(engine, name: str, members: int, now) -> int:
    room_id = create_room(engine, name, [f"{name}-m{i}" for i in range(members)], now=now)
    with Session(engine) as session:
        room = session.get(Room, room_id)
        room.status = RoomStatus.ACTIVE.value
        room.activated_at = now
        session.commit()
    return room_id


class TestConcurrency:
    def test_concurrent_joins_and_checks_lose_no_update(self, file_engine, now):
        room_id = create_room(file_engine, "crowded", ["f0", "f1", "f2"], now=now)
        joiners = [f"joiner-{i}" for i in range(12)]
        barrier = threading.Barrier(len(joiners) + 2)
        failures: list[BaseException] = []

        def _run(call):
            barrier.wait()
            try:
                call()
            except Exception as exc:
                failures.append(exc)

        threads = [
            threading.Thread(target=_run, args=(
                lambda p=pseudo: join_room(file_engine, room_id, p, now=now),
            ))
            for pseudo in joiners
        ] + [
            threading.Thread(target=_run, args=(
                lambda: check_room_activity(file_engine, room_id, THRESHOLDS, now=now),
            ))
            for _ in range(2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert failures == []
        room = _room(file_engine, room_id)
        with Session(file_engine) as session:
            active = session.scalar(
                select(func.count()).select_from(RoomMembership)
                .where(RoomMembership.room_id == room_id, RoomMembership.is_active.is_(True))
            )
            activations = session.scalar(
                select(func.count()).select_from(RoomStateLog)
                .where(RoomStateLog.room_id == room_id, RoomStateLog.to_state == "active")
            )
        assert active == 15
        assert room.member_count == 15
        assert room.status in (RoomStatus.ACTIVE, RoomStatus.LOCKED)
        assert activations == 1

    def test_stale_room_write_is_rejected(self, file_engine, now):
        room_id = _active_room(file_engine, "contested", 12, now)

        with Session(file_engine) as first, Session(file_engine) as second:
            mine = first.get(Room, room_id)
            theirs = second.get(Room, room_id)
            theirs.description = "edited elsewhere"
            second.commit()

            mine.description = "edited here"
            with pytest.raises(StaleDataError):
                first.commit()

        assert _room(file_engine, room_id).description == "edited elsewhere"

    def test_stale_room_counts_as_item_error_in_batch(self, file_engine, now):
        contested = _active_room(file_engine, "contested", 12, now)
        calm = _active_room(file_engine, "calm", 12, now)
        real_count = room_service.count_unique_posters

        def _edited_meanwhile(session, room_id, when, window_hours=72):
            if room_id == contested:
                with Session(file_engine) as other:
                    other.get(Room, room_id).description = "edited elsewhere"
                    other.commit()
            return real_count(session, room_id, when, window_hours)

        with patch.object(room_service, "count_unique_posters", side_effect=_edited_meanwhile):
            summary = run_room_checks(file_engine, THRESHOLDS, now=now)

        assert summary["processed"] == 2
        assert summary["errors"] == 1
        assert summary["locked"] == 1
        assert _room(file_engine, contested).status == RoomStatus.ACTIVE
        assert _room(file_engine, contested).description == "edited elsewhere"
        assert _room(file_engine, calm).status == RoomStatus.LOCKED


class TestRoomLockRegistry:
    def test_deleted_room_drops_its_lock(self, db_engine, make_room, now):
        room_id = make_room("shrinking", members=10, status=RoomStatus.ACTIVE)
        lock_room(db_engine, room_id, "mod", now=now)
        assert room_id in room_service._room_locks._locks

        leave_room(db_engine, room_id, "shrinking-m3", now=now)

        assert _room(db_engine, room_id).status == RoomStatus.DELETED
        assert room_id not in room_service._room_locks._locks

    def test_raw_delete_event_drops_its_lock(self, db_engine, make_room, now):
        room_id = make_room("raw", members=10, status=RoomStatus.ACTIVE)
        event = RoomEvent(RoomEventType.ACTIVITY_CHECK, member_count=4, unique_posters=0,
                          timestamp=now)
        result = apply_room_event(db_engine, room_id, event)
        assert result.state is RoomStatus.DELETED
        assert room_id not in room_service._room_locks._locks

    def test_lock_registry_hands_out_one_lock_per_room(self):
        locks = room_service.RoomLocks()
        seen: list = []
        barrier = threading.Barrier(8)

        def _grab():
            barrier.wait()
            seen.append(locks.for_room(7))

        threads = [threading.Thread(target=_grab) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({id(lock) for lock in seen}) == 1
        assert locks.for_room(8) is not seen[0]
