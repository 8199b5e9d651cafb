"""initial schema: tenants, professor catalog, CVs, matches, outreach

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates every table from the SQLAlchemy models. Idempotent: tables that
already exist are left alone.
"""
from typing import Sequence, Union

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from SQLAlchemy models (checkfirst=True)."""
    from scholar.database import engine
    from scholar.models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE: dev/test environments only."""
    from scholar.database import engine
    from scholar.models import Base

    Base.metadata.drop_all(bind=engine)
