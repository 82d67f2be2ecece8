"""
roomwarden.constants — Shared Constants
========================================

Single source of truth for job names, notification types and the badge
catalogue.  Import from here instead of repeating string literals in the
services and the scheduler.
"""

from __future__ import annotations

from roomwarden.database.models import BadgeType, CriteriaType

# ---------------------------------------------------------------------------
# Scheduled jobs (name → default cron expression)
# ---------------------------------------------------------------------------
JOB_ROOM_CHECKS = "room_checks"
JOB_POST_EXPIRATION = "post_expiration"
JOB_MEMBER_ACTIVITY = "member_activity"
JOB_BADGE_AWARDS = "badge_awards"
JOB_NOTIFICATION_BATCHING = "notification_batching"

DEFAULT_SCHEDULES: dict[str, str] = {
    JOB_ROOM_CHECKS: "0 * * * *",             # hourly
    JOB_POST_EXPIRATION: "0 0 * * *",         # midnight
    JOB_MEMBER_ACTIVITY: "0 6 * * *",         # 06:00
    JOB_BADGE_AWARDS: "0 3 * * *",            # 03:00
    JOB_NOTIFICATION_BATCHING: "0 */6 * * *", # every 6 hours
}

JOB_NAMES: tuple[str, ...] = tuple(DEFAULT_SCHEDULES)


# ---------------------------------------------------------------------------
# Notification types
# ---------------------------------------------------------------------------
NOTIFY_ROOM_ACTIVATED = "room_activated"
NOTIFY_ROOM_LOCKED = "room_locked"
NOTIFY_ROOM_UNLOCKED = "room_unlocked"
NOTIFY_ROOM_DELETED = "room_deleted"
NOTIFY_POST_EXPIRING_SOON = "post_expiring_soon"
NOTIFY_POSTING_WARNING = "posting_inactivity_warning"
NOTIFY_VIEWING_WARNING = "viewing_inactivity_warning"
NOTIFY_MEMBER_VIOLATION = "member_activity_violation"
NOTIFY_BADGE_AWARDED = "badge_awarded"

ACTIVE_DISCUSSION_REASON = "Active discussion"


# ---------------------------------------------------------------------------
# Badge catalogue: name → (display name, type, criteria, value, description)
# ---------------------------------------------------------------------------
BADGE_CATALOGUE: dict[str, tuple[str, BadgeType, CriteriaType, int, str]] = {
    "clean_30_days": (
        "30 Days", BadgeType.MILESTONE, CriteriaType.CLEAN_TIME, 30,
        "Member for 30 days",
    ),
    "clean_60_days": (
        "60 Days", BadgeType.MILESTONE, CriteriaType.CLEAN_TIME, 60,
        "Member for 60 days",
    ),
    "clean_90_days": (
        "90 Days", BadgeType.MILESTONE, CriteriaType.CLEAN_TIME, 90,
        "Member for 90 days",
    ),
    "clean_6_months": (
        "6 Months", BadgeType.MILESTONE, CriteriaType.CLEAN_TIME, 180,
        "Member for six months",
    ),
    "clean_1_year": (
        "1 Year", BadgeType.MILESTONE, CriteriaType.CLEAN_TIME, 365,
        "Member for a full year",
    ),
    "active_contributor": (
        "Active Contributor", BadgeType.ACHIEVEMENT, CriteriaType.POST_COUNT, 10,
        "10 posts and replies",
    ),
    "prolific_contributor": (
        "Prolific Contributor", BadgeType.ACHIEVEMENT, CriteriaType.POST_COUNT, 50,
        "50 posts and replies",
    ),
    "super_contributor": (
        "Super Contributor", BadgeType.ACHIEVEMENT, CriteriaType.POST_COUNT, 100,
        "100 posts and replies",
    ),
}
