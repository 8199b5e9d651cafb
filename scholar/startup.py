"""
startup.py — Database Startup Migrations (Idempotent)

Tables and indexes are defined in the ORM models and created via
Base.metadata.create_all(checkfirst=True). Alembic owns real migrations;
this only makes a fresh database usable on first boot.

Called by: main.py
Depends on: database.py (engine), models (Base)
"""

import os

from loguru import logger

from .database import engine


def run_startup_migrations() -> None:
    """Create missing tables. Safe to call on every worker boot."""
    if os.environ.get("TESTING"):
        logger.info("TESTING mode: skipping startup migrations")
        return

    from .models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("ORM schema sync complete (create_all checkfirst=True)")
