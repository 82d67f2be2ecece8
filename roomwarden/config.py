"""
roomwarden.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` into an immutable :class:`WardenConfig`.  The
config is built once by the host process and handed to the scheduler;
nothing downstream reads environment variables for tuning.

Every key is optional.  An empty file (or ``WardenConfig()``) gives the
stock moderation rules: hourly room checks, 10 members / 4 posters per
72 h, posting every 14 days, viewing every 7 days.

Usage::

    from roomwarden.config import load_config

    cfg = load_config()                       # reads ./config.yaml
    cfg.thresholds.min_members                # 10
    cfg.jobs["room_checks"].schedule          # "0 * * * *"
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

import yaml
from apscheduler.triggers.cron import CronTrigger

from roomwarden.constants import DEFAULT_SCHEDULES, JOB_NAMES


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class JobConfig:
    """Enable flag and cron expression for one scheduled job."""

    enabled: bool = True
    schedule: str = "0 * * * *"


@dataclass(frozen=True, slots=True)
class Thresholds:
    """Moderation rules shared by the lifecycle engines."""

    min_members: int = 10
    min_posters: int = 4
    poster_window_hours: int = 72
    posting_frequency_days: int = 14
    viewing_frequency_days: int = 7
    inactivity_warning_days: int = 12
    expiring_soon_days: int = 3
    active_discussion_replies: int = 10


def _default_jobs() -> Mapping[str, JobConfig]:
    return MappingProxyType({
        name: JobConfig(enabled=True, schedule=schedule)
        for name, schedule in DEFAULT_SCHEDULES.items()
    })


@dataclass(frozen=True, slots=True)
class WardenConfig:
    """Immutable configuration for the moderation worker."""

    jobs: Mapping[str, JobConfig] = field(default_factory=_default_jobs)
    thresholds: Thresholds = field(default_factory=Thresholds)
    notification_batch_size: int = 50
    digest_threshold: int = 5
    moderators: tuple[str, ...] = ()
    timezone: str = "UTC"
    job_timeout_seconds: float = 1800.0

    def job(self, name: str) -> JobConfig:
        """Return the :class:`JobConfig` for *name* (KeyError if unknown)."""
        return self.jobs[name]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------
def _parse_jobs(raw: dict | None, timezone: str) -> Mapping[str, JobConfig]:
    raw = raw or {}
    unknown = set(raw) - set(JOB_NAMES)
    if unknown:
        raise ValueError(f"Unknown job(s) in config: {', '.join(sorted(unknown))}")

    jobs: dict[str, JobConfig] = {}
    for name, default_schedule in DEFAULT_SCHEDULES.items():
        entry = raw.get(name)
        if entry is None:
            entry = {}
        elif not isinstance(entry, dict):
            raise ValueError(
                f"Job {name!r} must be a mapping with 'enabled' and/or 'schedule', "
                f"got {entry!r}"
            )
        schedule = str(entry.get("schedule", default_schedule))
        try:
            CronTrigger.from_crontab(schedule, timezone=timezone)
        except ValueError as exc:
            raise ValueError(f"Invalid cron expression for {name!r}: {schedule!r}") from exc
        jobs[name] = JobConfig(enabled=bool(entry.get("enabled", True)), schedule=schedule)
    return MappingProxyType(jobs)


def _parse_thresholds(raw: dict | None) -> Thresholds:
    raw = raw or {}
    defaults = Thresholds()
    return Thresholds(**{
        name: int(raw.get(name, getattr(defaults, name)))
        for name in Thresholds.__dataclass_fields__
    })


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> WardenConfig:
    """Read *path* and return a :class:`WardenConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a job name is unknown or a cron expression doesn't parse.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    timezone = str(raw.get("timezone", "UTC"))
    notifications = raw.get("notifications") or {}

    return WardenConfig(
        jobs=_parse_jobs(raw.get("jobs"), timezone),
        thresholds=_parse_thresholds(raw.get("thresholds")),
        notification_batch_size=int(notifications.get("batch_size", 50)),
        digest_threshold=int(notifications.get("digest_threshold", 5)),
        moderators=tuple(str(m) for m in raw.get("moderators") or ()),
        timezone=timezone,
        job_timeout_seconds=float(raw.get("job_timeout_seconds", 1800)),
    )
