"""Messages repository - insert-if-absent and metadata patches.

(conversation_id, metadata->>'external_id') is backed by a unique partial
index; insert_if_absent() relies on it so two overlapping runs can never
import the same gateway message twice.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from psycopg2.extensions import cursor as PgCursor
from psycopg2.extras import Json

from inboxsync.domain.models import MessageKey, NewMessage, StoredMessage
from inboxsync.whatsapp.models import BINARY_MEDIA_TYPES
from inboxsync.whatsapp.normalizer import PLACEHOLDERS

# ^\[(Image|Audio|...)\] - placeholders whose bytes can be recovered
MEDIA_PLACEHOLDER_PATTERN = "^\\[({})\\]".format(
    "|".join(sorted(PLACEHOLDERS[kind].strip("[]") for kind in BINARY_MEDIA_TYPES))
)


def list_message_keys(
    cur: PgCursor,
    conversation_id: str,
    *,
    since: datetime | None = None,
) -> list[MessageKey]:
    query = """
        SELECT COALESCE(metadata->>'external_id', metadata->>'messageId'), content, created_at,
               metadata->>'idSource'
        FROM messages
        WHERE conversation_id = %s
    """
    params: tuple[Any, ...] = (conversation_id,)
    if since is not None:
        query += " AND created_at >= %s"
        params = (conversation_id, since)
    cur.execute(query, params)
    return [
        MessageKey(external_id=row[0], content=row[1], created_at=row[2], id_source=row[3])
        for row in cur.fetchall()
    ]


def find_known_ids(cur: PgCursor, conversation_id: str, external_ids: Sequence[str]) -> set[str]:
    """Which of external_ids are already stored for the conversation, at any age.

    Matches both the current key and the legacy messageId key.
    """
    cur.execute(
        """
        SELECT metadata->>'external_id', metadata->>'messageId'
        FROM messages
        WHERE conversation_id = %s
          AND (metadata->>'external_id' = ANY(%s) OR metadata->>'messageId' = ANY(%s))
        """,
        (conversation_id, list(external_ids), list(external_ids)),
    )
    wanted = set(external_ids)
    return {value for row in cur.fetchall() for value in row if value in wanted}


def insert_if_absent(cur: PgCursor, row: NewMessage) -> str | None:
    """Insert one message. Returns the new id, or None if it already existed."""
    cur.execute(
        """
        INSERT INTO messages (conversation_id, sender_type, content, metadata, created_at)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (conversation_id, (metadata->>'external_id'))
            WHERE metadata ? 'external_id'
        DO NOTHING
        RETURNING id
        """,
        (row.conversation_id, row.sender_type, row.content, Json(row.metadata), row.created_at),
    )
    result = cur.fetchone()
    return str(result[0]) if result else None


def list_media_pending(cur: PgCursor, company_id: str, *, limit: int) -> list[StoredMessage]:
    """Newest media placeholders with no stored URL and no unavailable marker."""
    cur.execute(
        """
        SELECT m.id, m.conversation_id, m.content, m.created_at, m.metadata,
               c.metadata->>'remoteJid'
        FROM messages m
        JOIN conversations c ON c.id = m.conversation_id
        WHERE c.company_id = %s
          AND m.content LIKE '[%%'
          AND m.content ~ %s
          AND (m.metadata->'attachment'->>'url') IS NULL
          AND NOT COALESCE((m.metadata->>'mediaUnavailable')::boolean, false)
        ORDER BY m.created_at DESC
        LIMIT %s
        """,
        (company_id, MEDIA_PLACEHOLDER_PATTERN, limit),
    )
    return [
        StoredMessage(
            id=str(row[0]),
            conversation_id=str(row[1]),
            content=row[2],
            created_at=row[3],
            metadata=row[4] or {},
            remote_jid=row[5],
        )
        for row in cur.fetchall()
    ]


def merge_metadata(cur: PgCursor, message_id: str, patch: dict[str, Any]) -> None:
    """Shallow-merge `patch` into the message metadata (top-level keys replaced)."""
    cur.execute(
        """
        UPDATE messages
        SET metadata = COALESCE(metadata, '{}'::jsonb) || %s
        WHERE id = %s
        """,
        (Json(patch), message_id),
    )
