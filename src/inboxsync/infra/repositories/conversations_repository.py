"""Conversations repository - recency and metadata maintenance.

updated_at is the inbox sort key and must track the newest message:
- bump_recency() only moves it forward (GREATEST), safe under overlap.
- refresh_recency() recomputes it from the messages table.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor
from psycopg2.extras import Json

from inboxsync.domain.models import CHANNEL_WHATSAPP, Conversation

_COLUMNS = "id, company_id, contact_id, channel, status, metadata, updated_at, created_at"


def _row_to_conversation(row: tuple[Any, ...]) -> Conversation:
    return Conversation(
        id=str(row[0]),
        company_id=str(row[1]),
        contact_id=str(row[2]),
        channel=row[3],
        status=row[4],
        metadata=row[5] or {},
        updated_at=row[6],
        created_at=row[7],
    )


def get_conversation(cur: PgCursor, company_id: str, conversation_id: str) -> Conversation | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM conversations WHERE company_id = %s AND id = %s",
        (company_id, conversation_id),
    )
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def find_by_contact(cur: PgCursor, company_id: str, contact_id: str) -> Conversation | None:
    """Most recent WhatsApp conversation for a contact."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM conversations
        WHERE company_id = %s AND contact_id = %s AND channel = %s
        ORDER BY updated_at DESC
        LIMIT 1
        """,
        (company_id, contact_id, CHANNEL_WHATSAPP),
    )
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def find_by_remote_jid(cur: PgCursor, company_id: str, remote_jid: str) -> Conversation | None:
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM conversations
        WHERE company_id = %s AND channel = %s AND metadata->>'remoteJid' = %s
        ORDER BY updated_at DESC
        LIMIT 1
        """,
        (company_id, CHANNEL_WHATSAPP, remote_jid),
    )
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def insert_conversation(
    cur: PgCursor,
    company_id: str,
    contact_id: str,
    *,
    metadata: dict[str, Any],
    updated_at: datetime | None = None,
) -> Conversation:
    cur.execute(
        f"""
        INSERT INTO conversations (company_id, contact_id, channel, status, metadata, updated_at)
        VALUES (%s, %s, %s, 'open', %s, COALESCE(%s::TIMESTAMPTZ, now()))
        RETURNING {_COLUMNS}
        """,
        (company_id, contact_id, CHANNEL_WHATSAPP, Json(metadata), updated_at),
    )
    return _row_to_conversation(cur.fetchone())


def list_conversations(cur: PgCursor, company_id: str, *, limit: int, offset: int) -> list[Conversation]:
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM conversations
        WHERE company_id = %s AND channel = %s
        ORDER BY updated_at DESC, id ASC
        LIMIT %s OFFSET %s
        """,
        (company_id, CHANNEL_WHATSAPP, limit, offset),
    )
    return [_row_to_conversation(row) for row in cur.fetchall()]


def bump_recency(cur: PgCursor, conversation_id: str, at: datetime) -> None:
    cur.execute(
        """
        UPDATE conversations
        SET updated_at = GREATEST(updated_at, %s)
        WHERE id = %s
        """,
        (at, conversation_id),
    )


def merge_metadata(cur: PgCursor, conversation_id: str, patch: dict[str, Any]) -> None:
    cur.execute(
        """
        UPDATE conversations
        SET metadata = COALESCE(metadata, '{}'::jsonb) || %s
        WHERE id = %s
        """,
        (Json(patch), conversation_id),
    )


def refresh_recency(cur: PgCursor, conversation_id: str) -> datetime | None:
    """Set updated_at to the newest message's created_at (no-op without messages)."""
    cur.execute(
        """
        UPDATE conversations c
        SET updated_at = newest.created_at
        FROM (
            SELECT max(created_at) AS created_at
            FROM messages
            WHERE conversation_id = %s
        ) newest
        WHERE c.id = %s AND newest.created_at IS NOT NULL
        RETURNING c.updated_at
        """,
        (conversation_id, conversation_id),
    )
    row = cur.fetchone()
    return row[0] if row else None
