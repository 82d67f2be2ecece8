"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from roomwarden.database.models import Base, Post, Reply, Room, RoomMembership, RoomStatus, User
from roomwarden.database.seed import seed_badge_catalogue

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def now() -> datetime:
    """Fixed "current time" shared by the builders and the services under test."""
    return NOW


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all roomwarden tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used by the scheduler).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine with a real connection pool.

    Each session gets its own connection, so two sessions (or two
    threads) see each other's commits the way separate processes would.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'roomwarden.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seeded_engine(db_engine: Engine) -> Engine:
    """``db_engine`` with the badge catalogue loaded."""
    seed_badge_catalogue(db_engine)
    return db_engine


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------
@pytest.fixture
def make_user(db_engine: Engine):
    def _make(pseudo: str, *, created_at: datetime = NOW, **fields) -> str:
        with Session(db_engine) as session:
            session.add(User(pseudo=pseudo, created_at=created_at, **fields))
            session.commit()
        return pseudo
    return _make


@pytest.fixture
def make_room(db_engine: Engine):
    """Insert a room with *members* active memberships (``<name>-m<i>``)."""
    def _make(
        name: str = "room",
        *,
        members: int = 0,
        status: RoomStatus = RoomStatus.PENDING,
        joined_at: datetime = NOW,
        **fields,
    ) -> int:
        with Session(db_engine) as session:
            room = Room(
                name=name,
                status=status.value,
                member_count=members,
                created_at=joined_at,
                **fields,
            )
            if status is RoomStatus.ACTIVE and "activated_at" not in fields:
                room.activated_at = joined_at
            session.add(room)
            session.flush()
            for i in range(members):
                session.add(RoomMembership(
                    room_id=room.id,
                    user_pseudo=f"{name}-m{i}",
                    joined_at=joined_at,
                    is_founder=i == 0,
                ))
            session.commit()
            return room.id
    return _make


@pytest.fixture
def make_post(db_engine: Engine):
    def _make(room_id: int, author: str, *, created_at: datetime = NOW, **fields) -> int:
        with Session(db_engine) as session:
            post = Post(room_id=room_id, author_pseudo=author, created_at=created_at,
                        title=fields.pop("title", f"post by {author}"), **fields)
            session.add(post)
            session.commit()
            return post.id
    return _make


@pytest.fixture
def make_reply(db_engine: Engine):
    def _make(post_id: int, author: str, *, created_at: datetime = NOW) -> int:
        with Session(db_engine) as session:
            reply = Reply(post_id=post_id, author_pseudo=author, created_at=created_at)
            session.add(reply)
            session.commit()
            return reply.id
    return _make
