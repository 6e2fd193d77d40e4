"""LID -> phone mappings repository."""

from psycopg2.extensions import cursor as PgCursor

from inboxsync.domain.models import LidMapping


def get_mapping(cur: PgCursor, company_id: str, lid_jid: str) -> LidMapping | None:
    cur.execute(
        """
        SELECT lid_jid, phone, match_type, contact_name
        FROM lid_phone_mappings
        WHERE company_id = %s AND lid_jid = %s
        """,
        (company_id, lid_jid),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return LidMapping(lid_jid=row[0], phone=row[1], match_type=row[2], contact_name=row[3])


def upsert_mapping(cur: PgCursor, company_id: str, mapping: LidMapping) -> None:
    """Insert or replace the mapping for (company_id, lid_jid)."""
    cur.execute(
        """
        INSERT INTO lid_phone_mappings (company_id, lid_jid, phone, match_type, contact_name)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (company_id, lid_jid) DO UPDATE
        SET phone = EXCLUDED.phone,
            match_type = EXCLUDED.match_type,
            contact_name = EXCLUDED.contact_name,
            updated_at = now()
        """,
        (company_id, mapping.lid_jid, mapping.phone, mapping.match_type, mapping.contact_name),
    )
