"""
tests/test_notification_service.py — Notification Batcher Tests
================================================================

Covers enqueueing, per-recipient grouping, digests, batch limits and
per-recipient failure isolation.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

from sqlalchemy import select
from sqlalchemy.orm import Session

from roomwarden.database.models import Notification, RoomStatus
from roomwarden.services.notification_service import (
    LoggingDispatcher,
    enqueue_notification,
    notify_room_members,
    run_notification_batch,
)


def _queue(engine, recipient, count, *, at, notification_type="test", **kw):
    with Session(engine) as session:
        for i in range(count):
            enqueue_notification(session, recipient, notification_type, {"n": i},
                                 now=at + timedelta(seconds=i), **kw)
        session.commit()


def _unsent(engine) -> list[Notification]:
    with Session(engine) as session:
        return list(session.scalars(
            select(Notification).where(Notification.sent_at.is_(None))
        ).all())


class TestEnqueue:
    def test_notify_room_members_only_reaches_active_members(self, db_engine, make_room, now):
        from roomwarden.database.models import RoomMembership

        room_id = make_room("r", members=4, status=RoomStatus.ACTIVE)
        with Session(db_engine) as session:
            session.get(RoomMembership, (room_id, "r-m3")).is_active = False
            queued = notify_room_members(session, room_id, "room_locked", {"room_id": room_id},
                                         now=now)
            session.commit()

        assert queued == 3
        assert sorted(n.recipient for n in _unsent(db_engine)) == ["r-m0", "r-m1", "r-m2"]

    def test_enqueue_is_not_committed_by_itself(self, db_engine, now):
        with Session(db_engine) as session:
            enqueue_notification(session, "ada", "hello", now=now)
            session.rollback()
        assert _unsent(db_engine) == []


class TestRunNotificationBatch:
    def test_marks_sent_and_delivers_each(self, db_engine, now):
        _queue(db_engine, "ada", 2, at=now - timedelta(hours=1))
        _queue(db_engine, "bob", 1, at=now - timedelta(hours=2))
        dispatcher = MagicMock()

        summary = run_notification_batch(db_engine, dispatcher=dispatcher, now=now)

        assert summary["processed"] == 2
        assert summary["notifications_sent"] == 3
        assert summary["digests_sent"] == 0
        assert dispatcher.deliver.call_count == 3
        dispatcher.deliver_digest.assert_not_called()
        assert _unsent(db_engine) == []

    def test_digest_above_threshold(self, db_engine, now):
        _queue(db_engine, "busy", 6, at=now - timedelta(hours=1))
        _queue(db_engine, "calm", 5, at=now - timedelta(hours=1))
        dispatcher = MagicMock()

        summary = run_notification_batch(db_engine, dispatcher=dispatcher, now=now)

        assert summary["digests_sent"] == 1
        recipient, batch = dispatcher.deliver_digest.call_args.args
        assert recipient == "busy"
        assert len(batch) == 6

    def test_future_notifications_wait(self, db_engine, now):
        _queue(db_engine, "ada", 1, at=now, scheduled_for=now + timedelta(hours=3))
        summary = run_notification_batch(db_engine, dispatcher=MagicMock(), now=now)
        assert summary["processed"] == 0
        assert len(_unsent(db_engine)) == 1

    def test_batch_size_limits_recipients_oldest_first(self, db_engine, now):
        for i in range(5):
            _queue(db_engine, f"user-{i}", 1, at=now - timedelta(hours=10 - i))

        summary = run_notification_batch(db_engine, batch_size=2, dispatcher=MagicMock(), now=now)

        assert summary["processed"] == 2
        assert sorted(n.recipient for n in _unsent(db_engine)) == ["user-2", "user-3", "user-4"]

    def test_failing_recipient_is_isolated_and_retried(self, db_engine, now):
        _queue(db_engine, "ada", 2, at=now - timedelta(hours=3))
        _queue(db_engine, "bob", 2, at=now - timedelta(hours=2))
        _queue(db_engine, "cy", 2, at=now - timedelta(hours=1))

        dispatcher = MagicMock()

        def _deliver(notification):
            if notification.recipient == "bob":
                raise ConnectionError("push gateway down")

        dispatcher.deliver.side_effect = _deliver

        summary = run_notification_batch(db_engine, dispatcher=dispatcher, now=now)

        assert summary["processed"] == 3
        assert summary["errors"] == 1
        assert summary["changed"] == 2
        assert summary["notifications_sent"] == 4
        # bob's whole group rolled back and stays queued
        assert sorted(n.recipient for n in _unsent(db_engine)) == ["bob", "bob"]

    def test_default_dispatcher_only_logs(self, db_engine, now, caplog):
        _queue(db_engine, "ada", 1, at=now - timedelta(minutes=1))
        with caplog.at_level("INFO"):
            summary = run_notification_batch(db_engine, now=now)
        assert summary["notifications_sent"] == 1
        assert any("Delivering test to ada" in r.getMessage() for r in caplog.records)

    def test_logging_dispatcher_digest(self, caplog):
        with caplog.at_level("INFO"):
            LoggingDispatcher().deliver_digest("ada", [MagicMock(), MagicMock()])
        assert "digest of 2" in caplog.text
