"""
Roomwarden — Background Moderation Core for Community Rooms
============================================================
Drives the lifecycle of discussion rooms (pending → active ⇄ locked →
deleted), expires old posts, watches member participation, awards
badges and batches the resulting notifications.  Embedded in a host
process and driven by scheduled jobs.

Package layout::

    roomwarden/
    ├── config.py          # YAML → typed, immutable config
    ├── constants.py       # Job names, notification types, badge catalogue
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session helper, async bridge
    │   ├── models.py      # ORM models
    │   └── seed.py        # Badge catalogue seeder
    ├── engine/            # Pure logic — no I/O
    │   ├── room_machine.py  # Room state machine (state, context, event) → result
    │   ├── compliance.py    # Posting / viewing frequency rules
    │   ├── badges.py        # Badge criteria handlers
    │   └── timeutil.py      # UTC helpers
    ├── services/          # Database-backed operations and batch jobs
    │   ├── room_service.py
    │   ├── activity_service.py
    │   ├── post_service.py
    │   ├── compliance_service.py
    │   ├── badge_service.py
    │   └── notification_service.py
    └── worker/
        ├── scheduler.py   # APScheduler orchestration + job health
        └── __main__.py    # ``python -m roomwarden.worker``
"""

__version__ = "0.1.0"
