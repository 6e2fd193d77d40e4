"""WhatsApp instances repository - gateway session -> tenant lookup."""

from psycopg2.extensions import cursor as PgCursor

from inboxsync.domain.models import InstanceRecord


def get_instance_by_name(cur: PgCursor, instance_name: str) -> InstanceRecord | None:
    cur.execute(
        """
        SELECT id, company_id, instance_name
        FROM whatsapp_instances
        WHERE instance_name = %s
        """,
        (instance_name,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return InstanceRecord(id=str(row[0]), company_id=str(row[1]), instance_name=row[2])
