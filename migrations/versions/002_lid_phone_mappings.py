"""LID -> phone mapping table.

Revision ID: 002_lid_phone_mappings
Revises: 001_initial_schema
Create Date: 2026-09-22
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_lid_phone_mappings"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "002_lid_phone_mappings.sql"


def upgrade() -> None:
    sql = _SQL_FILE.read_text()
    op.execute(sql)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS lid_phone_mappings")
