"""Partial index for the media repair scan.

Revision ID: 003_media_repair_index
Revises: 002_lid_phone_mappings
Create Date: 2026-10-02
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "003_media_repair_index"
down_revision = "002_lid_phone_mappings"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "003_media_repair_index.sql"


def upgrade() -> None:
    op.execute(_SQL_FILE.read_text())


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_messages_media_pending")
