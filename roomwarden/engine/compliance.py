"""
roomwarden.engine.compliance — Member Participation Rules
==========================================================

Members of a live room must post every ``posting_frequency_days`` and
view the room every ``viewing_frequency_days``.  A member who never
posted (or never viewed) is measured from the day they joined.

Pure calculation — the member-activity job feeds it membership rows and
turns the verdict into notifications.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from roomwarden.config import Thresholds
from roomwarden.engine.timeutil import as_utc, whole_days_between

POSTING = "posting_frequency"
VIEWING = "viewing_frequency"


@dataclass(frozen=True, slots=True)
class Violation:
    type: str
    days: int
    required: int

    def to_dict(self) -> dict[str, int | str]:
        return {"type": self.type, "days": self.days, "required": self.required}


@dataclass(frozen=True, slots=True)
class ComplianceVerdict:
    days_since_post: int
    days_since_view: int
    posting_warning: bool = False
    viewing_warning: bool = False
    violations: tuple[Violation, ...] = field(default_factory=tuple)

    @property
    def meets_post_requirement(self) -> bool:
        return not any(v.type == POSTING for v in self.violations)

    @property
    def meets_view_requirement(self) -> bool:
        return not any(v.type == VIEWING for v in self.violations)


def is_ban_active(is_banned: bool, ban_until: datetime | None, now: datetime) -> bool:
    """A ban counts until ``ban_until`` passes; no end date means permanent."""
    if not is_banned:
        return False
    return ban_until is None or as_utc(ban_until) >= as_utc(now)


def evaluate_member(
    *,
    joined_at: datetime,
    last_post_at: datetime | None,
    last_view_at: datetime | None,
    now: datetime,
    thresholds: Thresholds,
) -> ComplianceVerdict:
    """Compute warnings and violations for one membership."""
    days_since_post = whole_days_between(last_post_at or joined_at, now)
    days_since_view = whole_days_between(last_view_at or joined_at, now)

    post_limit = thresholds.posting_frequency_days
    view_limit = thresholds.viewing_frequency_days

    violations: list[Violation] = []
    if days_since_post >= post_limit:
        violations.append(Violation(POSTING, days_since_post, post_limit))
    if days_since_view >= view_limit:
        violations.append(Violation(VIEWING, days_since_view, view_limit))

    return ComplianceVerdict(
        days_since_post=days_since_post,
        days_since_view=days_since_view,
        posting_warning=thresholds.inactivity_warning_days <= days_since_post < post_limit,
        viewing_warning=(view_limit - 2) <= days_since_view < view_limit,
        violations=tuple(violations),
    )
