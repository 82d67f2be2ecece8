"""
roomwarden.worker.scheduler — Moderation Job Orchestrator
==========================================================

Owns the five recurring moderation jobs and their bookkeeping:

=====================  ==========================================
Job                    Body
=====================  ==========================================
room_checks            :func:`run_room_checks`
post_expiration        :func:`run_post_expiration`
member_activity        :func:`run_compliance_checks`
badge_awards           :func:`run_badge_awards`
notification_batching  :func:`run_notification_batch`
=====================  ==========================================

Each enabled job gets an APScheduler ``CronTrigger`` on an
``AsyncIOScheduler``.  Bodies are synchronous and run on a worker thread
via :func:`run_db`, so a slow job never delays the others.

Run policy:

* **Overlap** — if a job is still running when it fires again (or
  ``run_now`` is called), the new run is skipped with a warning.
* **Soft timeout** — a run longer than ``job_timeout_seconds`` is
  recorded as failed; the thread is left to finish and the job counts as
  running until it does.
* **Failures** — an exception out of a job body is recorded on the
  job's :class:`JobStats` and logged; the scheduler keeps going and the
  next trigger retries.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from roomwarden.constants import (
    JOB_BADGE_AWARDS,
    JOB_MEMBER_ACTIVITY,
    JOB_NAMES,
    JOB_NOTIFICATION_BATCHING,
    JOB_POST_EXPIRATION,
    JOB_ROOM_CHECKS,
)
from roomwarden.database.engine import run_db
from roomwarden.engine.timeutil import utcnow
from roomwarden.services.badge_service import run_badge_awards
from roomwarden.services.compliance_service import run_compliance_checks
from roomwarden.services.notification_service import NotificationDispatcher, run_notification_batch
from roomwarden.services.post_service import run_post_expiration
from roomwarden.services.room_service import run_room_checks

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from roomwarden.config import WardenConfig

logger = logging.getLogger(__name__)

JobBody = Callable[[], dict[str, Any]]


class UnknownJob(LookupError):
    """Raised by :meth:`ModerationScheduler.run_now` for an unregistered name."""


@dataclass(slots=True)
class JobStats:
    """Per-job run bookkeeping, exposed through ``health_status()``."""

    last_run: datetime | None = None
    last_success: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    run_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    running: bool = False
    last_summary: dict[str, Any] | None = None
    last_duration_ms: float | None = None

    @property
    def is_healthy(self) -> bool:
        """No failures yet, or the latest success is newer than the latest failure."""
        if self.last_error_at is None:
            return True
        return self.last_success is not None and self.last_success > self.last_error_at

    def as_dict(self) -> dict[str, Any]:
        return {
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "running": self.running,
            "is_healthy": self.is_healthy,
            "last_summary": self.last_summary,
            "last_duration_ms": self.last_duration_ms,
        }


def default_job_bodies(
    engine: Engine,
    cfg: WardenConfig,
    dispatcher: NotificationDispatcher | None = None,
) -> dict[str, JobBody]:
    """Bind each job name to its service call."""
    return {
        JOB_ROOM_CHECKS: functools.partial(run_room_checks, engine, cfg.thresholds),
        JOB_POST_EXPIRATION: functools.partial(run_post_expiration, engine, cfg.thresholds),
        JOB_MEMBER_ACTIVITY: functools.partial(
            run_compliance_checks, engine, cfg.thresholds, cfg.moderators,
        ),
        JOB_BADGE_AWARDS: functools.partial(run_badge_awards, engine),
        JOB_NOTIFICATION_BATCHING: functools.partial(
            run_notification_batch,
            engine,
            batch_size=cfg.notification_batch_size,
            digest_threshold=cfg.digest_threshold,
            dispatcher=dispatcher,
        ),
    }


class ModerationScheduler:
    """Start/stop the moderation jobs and report on their health.

    Parameters
    ----------
    engine : SQLAlchemy engine passed to every job body.
    cfg : Immutable worker configuration.
    dispatcher : Delivery backend for the notification batcher.
    job_bodies : Replace the default service calls (tests, ops scripts).
    """

    def __init__(
        self,
        engine: Engine,
        cfg: WardenConfig,
        *,
        dispatcher: NotificationDispatcher | None = None,
        job_bodies: Mapping[str, JobBody] | None = None,
    ) -> None:
        self.engine = engine
        self.cfg = cfg
        self._bodies: dict[str, JobBody] = (
            dict(job_bodies) if job_bodies is not None
            else default_job_bodies(engine, cfg, dispatcher)
        )
        self.stats: dict[str, JobStats] = {name: JobStats() for name in self._bodies}
        self._scheduler: AsyncIOScheduler | None = None
        self._inflight: dict[str, asyncio.Future] = {}
        self._timeout = cfg.job_timeout_seconds if cfg.job_timeout_seconds > 0 else None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def start(self) -> None:
        """Register every enabled job and start firing.  No-op if running."""
        if self._scheduler is not None:
            logger.warning("Moderation scheduler is already running")
            return

        scheduler = AsyncIOScheduler(timezone=self.cfg.timezone)
        for name in JOB_NAMES:
            if name not in self._bodies:
                continue
            job_cfg = self.cfg.job(name)
            if not job_cfg.enabled:
                logger.info("Job %s is disabled", name)
                continue
            scheduler.add_job(
                self._execute,
                CronTrigger.from_crontab(job_cfg.schedule, timezone=self.cfg.timezone),
                id=name,
                name=name,
                args=[name],
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=300,
            )
            logger.info("Scheduled %s: %s", name, job_cfg.schedule)

        scheduler.start()
        self._scheduler = scheduler
        logger.info("Moderation scheduler started (%d jobs)", len(scheduler.get_jobs()))

    async def stop(self) -> None:
        """Stop accepting triggers and wait for in-flight runs.  No-op if stopped."""
        if self._scheduler is None and not self._inflight:
            return

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        if self._inflight:
            logger.info("Waiting for %d running job(s): %s",
                        len(self._inflight), ", ".join(self._inflight))
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        logger.info("Moderation scheduler stopped")

    # -------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------
    async def run_now(self, name: str) -> dict[str, Any] | None:
        """Run *name* immediately, outside its schedule.

        Returns the job summary, or None if the run was skipped or failed.
        """
        if name not in self._bodies:
            raise UnknownJob(f"Unknown job '{name}'. Known: {', '.join(self._bodies)}")
        return await self._execute(name)

    def _finished(self, name: str, task: asyncio.Future) -> None:
        self.stats[name].running = False
        self._inflight.pop(name, None)
        if not task.cancelled():
            task.exception()  # mark retrieved; already recorded if it mattered

    def _record_failure(self, name: str, message: str) -> None:
        stats = self.stats[name]
        stats.last_error = message
        stats.last_error_at = utcnow()
        stats.error_count += 1

    async def _execute(self, name: str) -> dict[str, Any] | None:
        stats = self.stats[name]
        if stats.running:
            stats.skipped_count += 1
            logger.warning("Skipping %s: previous run still in progress", name)
            return None

        stats.running = True
        stats.last_run = utcnow()
        stats.run_count += 1
        started = time.monotonic()
        logger.info("Starting job %s", name)

        task = asyncio.ensure_future(run_db(self._bodies[name]))
        self._inflight[name] = task
        task.add_done_callback(functools.partial(self._finished, name))

        try:
            summary = await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout)
        except TimeoutError:
            self._record_failure(name, f"Timed out after {self._timeout:.0f}s")
            logger.error(
                "Job %s exceeded %.0fs; recorded as failed, still running in background",
                name, self._timeout, extra={"job": name},
            )
            return None
        except Exception as exc:
            self._record_failure(name, str(exc) or type(exc).__name__)
            logger.exception("Job %s failed", name, extra={"job": name})
            return None
        finally:
            stats.last_duration_ms = round((time.monotonic() - started) * 1000, 1)

        stats.last_success = utcnow()
        stats.last_summary = summary
        logger.info("Job %s complete in %.0f ms: %s", name, stats.last_duration_ms, summary)
        return summary

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------
    def health_status(self) -> dict[str, Any]:
        """Aggregated per-job stats plus the overall running flag."""
        jobs = {}
        for name, stats in self.stats.items():
            entry = stats.as_dict()
            job_cfg = self.cfg.jobs.get(name)
            entry["enabled"] = job_cfg is not None and job_cfg.enabled
            jobs[name] = entry
        return {
            "running": self.running,
            "healthy": all(stats.is_healthy for stats in self.stats.values()),
            "checked_at": utcnow().isoformat(),
            "jobs": jobs,
        }
