"""Contacts repository - raw SQL with psycopg2 (no ORM).

Phone is stored normalized; (company_id, phone) is unique when phone is set.
Phone-less contacts (groups, unresolved LIDs) are found by remote_jid.
The caller runs these inside a transaction (with txn() as cur:).
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor
from psycopg2.extras import Json

from inboxsync.domain.models import Contact
from inboxsync.domain.store import CONTACT_UPDATABLE_FIELDS

_COLUMNS = "id, company_id, name, phone, remote_jid, is_group, avatar_url, metadata, created_at"


def _row_to_contact(row: tuple[Any, ...]) -> Contact:
    return Contact(
        id=str(row[0]),
        company_id=str(row[1]),
        name=row[2],
        phone=row[3],
        remote_jid=row[4],
        is_group=bool(row[5]),
        avatar_url=row[6],
        metadata=row[7] or {},
        created_at=row[8],
    )


def get_contact(cur: PgCursor, company_id: str, contact_id: str) -> Contact | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM contacts WHERE company_id = %s AND id = %s",
        (company_id, contact_id),
    )
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def find_by_phone(cur: PgCursor, company_id: str, phone: str) -> Contact | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM contacts WHERE company_id = %s AND phone = %s",
        (company_id, phone),
    )
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def find_by_remote_jid(cur: PgCursor, company_id: str, remote_jid: str) -> Contact | None:
    """Oldest contact carrying this remote_jid."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM contacts
        WHERE company_id = %s AND remote_jid = %s
        ORDER BY created_at ASC
        LIMIT 1
        """,
        (company_id, remote_jid),
    )
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def insert_contact(
    cur: PgCursor,
    company_id: str,
    *,
    name: str | None,
    phone: str | None,
    remote_jid: str | None,
    is_group: bool = False,
    avatar_url: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Contact:
    cur.execute(
        f"""
        INSERT INTO contacts (company_id, name, phone, remote_jid, is_group, avatar_url, metadata)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        (company_id, name, phone, remote_jid, is_group, avatar_url, Json(metadata or {})),
    )
    return _row_to_contact(cur.fetchone())


def update_contact(cur: PgCursor, contact_id: str, fields: dict[str, Any]) -> None:
    """Update whitelisted columns.

    Raises:
        ValueError: If a field outside CONTACT_UPDATABLE_FIELDS is passed.
    """
    unknown = set(fields) - CONTACT_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"cannot update contact fields: {sorted(unknown)}")
    if not fields:
        return

    # Sorted for a stable statement text
    columns = sorted(fields)
    assignments = ", ".join(f"{column} = %s" for column in columns)
    params = [Json(fields[c]) if c == "metadata" else fields[c] for c in columns]
    cur.execute(
        f"UPDATE contacts SET {assignments}, updated_at = now() WHERE id = %s",
        (*params, contact_id),
    )


def list_contacts(cur: PgCursor, company_id: str, *, limit: int | None = None) -> list[Contact]:
    query = f"SELECT {_COLUMNS} FROM contacts WHERE company_id = %s ORDER BY created_at ASC, id ASC"
    params: tuple[Any, ...] = (company_id,)
    if limit is not None:
        query += " LIMIT %s"
        params = (company_id, limit)
    cur.execute(query, params)
    return [_row_to_contact(row) for row in cur.fetchall()]


def reassign_conversations(cur: PgCursor, from_contact_id: str, to_contact_id: str) -> int:
    cur.execute(
        """
        UPDATE conversations
        SET contact_id = %s
        WHERE contact_id = %s
        """,
        (to_contact_id, from_contact_id),
    )
    return cur.rowcount


def delete_contact(cur: PgCursor, contact_id: str) -> None:
    cur.execute("DELETE FROM contacts WHERE id = %s", (contact_id,))
