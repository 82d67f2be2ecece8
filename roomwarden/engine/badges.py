"""
roomwarden.engine.badges — Badge Eligibility Pipeline
======================================================

Handler-registry evaluation of the badge catalogue.  Each
:class:`CriteriaType` maps to a pure handler that receives a
:class:`BadgeContext` and the badge's ``criteria_value``.

This module is pure calculation — no database I/O.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

from roomwarden.database.models import CriteriaType


class BadgeLike(Protocol):
    name: str
    criteria_type: str
    criteria_value: int | None


@dataclass(frozen=True, slots=True)
class BadgeContext:
    """Snapshot of a user passed to every criteria handler.

    Parameters
    ----------
    account_age_days : Whole days since the account was created.
    contributions : Cumulative posts + replies.
    """

    account_age_days: int = 0
    contributions: int = 0


# ---------------------------------------------------------------------------
# Criteria handlers — pure functions (value, ctx) → bool
# ---------------------------------------------------------------------------
def _check_clean_time(value: int, ctx: BadgeContext) -> bool:
    """Fires once the account is at least *value* days old."""
    return ctx.account_age_days >= value


def _check_post_count(value: int, ctx: BadgeContext) -> bool:
    """Fires once posts + replies reach *value*."""
    return ctx.contributions >= value


CRITERIA_HANDLERS: dict[str, Callable[[int, BadgeContext], bool]] = {
    CriteriaType.CLEAN_TIME: _check_clean_time,
    CriteriaType.POST_COUNT: _check_post_count,
    # CriteriaType.MANUAL intentionally omitted — moderator-awarded only
}


def eligible_badges(
    catalogue: Iterable[BadgeLike],
    ctx: BadgeContext,
    already_awarded: set[str],
) -> list[str]:
    """Return names of catalogue badges the user newly qualifies for.

    Badges in *already_awarded* are skipped, as are manual badges and
    badges without a ``criteria_value``.
    """
    newly_eligible: list[str] = []

    for badge in catalogue:
        if badge.name in already_awarded:
            continue

        handler = CRITERIA_HANDLERS.get(badge.criteria_type)
        if handler is None or badge.criteria_value is None:
            continue

        if handler(badge.criteria_value, ctx):
            newly_eligible.append(badge.name)

    return newly_eligible
