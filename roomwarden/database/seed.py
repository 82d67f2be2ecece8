"""
roomwarden.database.seed — Badge Catalogue Seeder
==================================================

Inserts the static badge catalogue on startup so the badge job has
something to award.

Idempotent — only inserts badges whose name doesn't already exist.
Display names or descriptions edited by moderators are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from roomwarden.constants import BADGE_CATALOGUE
from roomwarden.database.models import Badge

logger = logging.getLogger(__name__)


def seed_badge_catalogue(engine: Engine) -> int:
    """Insert missing catalogue badges.  Returns the number inserted."""
    inserted = 0
    with Session(engine) as session:
        existing = set(session.scalars(select(Badge.name)).all())
        for name, (display, badge_type, criteria, value, description) in BADGE_CATALOGUE.items():
            if name in existing:
                continue
            session.add(Badge(
                name=name,
                display_name=display,
                description=description,
                badge_type=badge_type.value,
                criteria_type=criteria.value,
                criteria_value=value,
            ))
            inserted += 1
        session.commit()

    if inserted:
        logger.info("Seeded %d badge(s) into the catalogue", inserted)
    return inserted
