"""
roomwarden.worker.__main__ — Entry point for ``python -m roomwarden.worker``
============================================================================

Wiring:
1. Load .env (DATABASE_URL).
2. Load config.yaml (jobs, thresholds, moderators).
3. Create the SQLAlchemy engine, ensure tables exist, seed badges.
4. Start the ModerationScheduler on an asyncio loop.
5. On SIGINT / SIGTERM: stop accepting triggers, let running jobs
   finish, exit.

Run with::

    python -m roomwarden.worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from roomwarden.config import load_config
from roomwarden.database.engine import create_db_engine, init_db
from roomwarden.worker.scheduler import ModerationScheduler

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("roomwarden")


async def serve(scheduler: ModerationScheduler) -> None:
    """Run *scheduler* until the process receives SIGINT or SIGTERM."""
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still
            # raises KeyboardInterrupt out of asyncio.run().
            pass

    await scheduler.start()
    try:
        await shutdown.wait()
    finally:
        logger.info("Shutting down gracefully…")
        await scheduler.stop()


def main() -> None:
    """Bootstrap and run the moderation worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    config_path = os.getenv("ROOMWARDEN_CONFIG", "config.yaml")
    try:
        cfg = load_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    logger.info(
        "Config loaded — %d/%d jobs enabled, %d moderator(s)",
        sum(job.enabled for job in cfg.jobs.values()), len(cfg.jobs), len(cfg.moderators),
    )

    # 3. Database.
    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    init_db(engine)

    # 4. Scheduler (blocks until a termination signal).
    scheduler = ModerationScheduler(engine, cfg)
    logger.info("Starting moderation worker…")
    try:
        asyncio.run(serve(scheduler))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
