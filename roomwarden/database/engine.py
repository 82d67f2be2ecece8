"""
roomwarden.database.engine — Database Connection & Async Helper
================================================================

The scheduler runs on an ``asyncio`` event loop, while SQLAlchemy +
psycopg2 is **synchronous**.  Calling the DB directly from a coroutine
would stall every other scheduled job until the query returns.

Every job body is therefore a plain synchronous function that opens its
own sessions, and the scheduler ships it to a worker thread::

    summary = await run_db(run_room_checks, engine, cfg)

Usage::

    from roomwarden.database.engine import create_db_engine, init_db, get_session

    engine = create_db_engine()          # reads DATABASE_URL
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS + badge seed

    with get_session(engine) as session:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from roomwarden.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine`.

    *url* defaults to the ``DATABASE_URL`` environment variable.  The pool
    is sized for a single background worker running five jobs:

    * ``pool_size=5`` — one persistent connection per job.
    * ``max_overflow=5`` — headroom for manual ``run_now`` triggers.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,   # Reconnect stale connections automatically
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables and seed the badge catalogue.

    Safe to call on every startup.  In production the schema is managed
    by Alembic (``alembic upgrade head``); ``create_all`` covers dev/test
    databases where migrations have not run.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from roomwarden.database.seed import seed_badge_catalogue

    seed_badge_catalogue(engine)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that commits on success and rolls back
    on exception.

    One ``get_session`` block is one transaction; batch jobs open one per
    item so a failing item never takes its neighbours down with it.
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Thin wrapper around :func:`asyncio.to_thread` so the scheduler's event
    loop keeps firing other jobs while this one queries.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
