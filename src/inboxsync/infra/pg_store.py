"""PostgreSQL-backed SyncStore.

Every method is one short transaction (txn()). Message inserts run one
transaction per chunk with a SAVEPOINT per row: a duplicate-key race or a bad
row is counted and the rest of the chunk still commits.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extensions import connection as PgConnection

from inboxsync.domain.models import (
    Contact,
    Conversation,
    InsertOutcome,
    InstanceRecord,
    LidMapping,
    MessageKey,
    NewMessage,
    StoredMessage,
)
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context

from .db import savepoint, txn
from .repositories import (
    contacts_repository,
    conversations_repository,
    instances_repository,
    lid_mappings_repository,
    messages_repository,
)

logger = get_logger(__name__)


class PgSyncStore:
    """SyncStore over psycopg2.

    Args:
        conn: Optional long-lived connection for the run. When None each call
            opens and closes its own connection.
    """

    def __init__(self, conn: PgConnection | None = None) -> None:
        self._conn = conn

    # --- instances --------------------------------------------------------

    def get_instance(self, instance_name: str) -> InstanceRecord | None:
        with txn(self._conn) as cur:
            return instances_repository.get_instance_by_name(cur, instance_name)

    # --- contacts ---------------------------------------------------------

    def get_contact(self, company_id: str, contact_id: str) -> Contact | None:
        with txn(self._conn) as cur:
            return contacts_repository.get_contact(cur, company_id, contact_id)

    def find_contact_by_phone(self, company_id: str, phone: str) -> Contact | None:
        with txn(self._conn) as cur:
            return contacts_repository.find_by_phone(cur, company_id, phone)

    def find_contact_by_remote_jid(self, company_id: str, remote_jid: str) -> Contact | None:
        with txn(self._conn) as cur:
            return contacts_repository.find_by_remote_jid(cur, company_id, remote_jid)

    def insert_contact(
        self,
        company_id: str,
        *,
        name: str | None,
        phone: str | None,
        remote_jid: str | None,
        is_group: bool = False,
        avatar_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Contact:
        with txn(self._conn) as cur:
            return contacts_repository.insert_contact(
                cur,
                company_id,
                name=name,
                phone=phone,
                remote_jid=remote_jid,
                is_group=is_group,
                avatar_url=avatar_url,
                metadata=metadata,
            )

    def update_contact(self, contact_id: str, **fields: Any) -> None:
        with txn(self._conn) as cur:
            contacts_repository.update_contact(cur, contact_id, fields)

    def list_contacts(self, company_id: str, *, limit: int | None = None) -> list[Contact]:
        with txn(self._conn) as cur:
            return contacts_repository.list_contacts(cur, company_id, limit=limit)

    def reassign_conversations(self, from_contact_id: str, to_contact_id: str) -> int:
        with txn(self._conn) as cur:
            return contacts_repository.reassign_conversations(cur, from_contact_id, to_contact_id)

    def delete_contact(self, contact_id: str) -> None:
        with txn(self._conn) as cur:
            contacts_repository.delete_contact(cur, contact_id)

    # --- LID mappings -----------------------------------------------------

    def get_lid_mapping(self, company_id: str, lid_jid: str) -> LidMapping | None:
        with txn(self._conn) as cur:
            return lid_mappings_repository.get_mapping(cur, company_id, lid_jid)

    def save_lid_mapping(self, company_id: str, mapping: LidMapping) -> None:
        with txn(self._conn) as cur:
            lid_mappings_repository.upsert_mapping(cur, company_id, mapping)

    # --- conversations ----------------------------------------------------

    def get_conversation(self, company_id: str, conversation_id: str) -> Conversation | None:
        with txn(self._conn) as cur:
            return conversations_repository.get_conversation(cur, company_id, conversation_id)

    def find_conversation_by_contact(self, company_id: str, contact_id: str) -> Conversation | None:
        with txn(self._conn) as cur:
            return conversations_repository.find_by_contact(cur, company_id, contact_id)

    def find_conversation_by_remote_jid(self, company_id: str, remote_jid: str) -> Conversation | None:
        with txn(self._conn) as cur:
            return conversations_repository.find_by_remote_jid(cur, company_id, remote_jid)

    def insert_conversation(
        self,
        company_id: str,
        contact_id: str,
        *,
        metadata: dict[str, Any],
        updated_at: datetime | None = None,
    ) -> Conversation:
        with txn(self._conn) as cur:
            return conversations_repository.insert_conversation(
                cur, company_id, contact_id, metadata=metadata, updated_at=updated_at
            )

    def list_conversations(self, company_id: str, *, limit: int, offset: int) -> list[Conversation]:
        with txn(self._conn) as cur:
            return conversations_repository.list_conversations(cur, company_id, limit=limit, offset=offset)

    def bump_conversation_recency(self, conversation_id: str, at: datetime) -> None:
        with txn(self._conn) as cur:
            conversations_repository.bump_recency(cur, conversation_id, at)

    def merge_conversation_metadata(self, conversation_id: str, patch: dict[str, Any]) -> None:
        with txn(self._conn) as cur:
            conversations_repository.merge_metadata(cur, conversation_id, patch)

    def refresh_recency_from_messages(self, conversation_id: str) -> datetime | None:
        with txn(self._conn) as cur:
            return conversations_repository.refresh_recency(cur, conversation_id)

    # --- messages ---------------------------------------------------------

    def list_message_keys(self, conversation_id: str, *, since: datetime | None = None) -> list[MessageKey]:
        with txn(self._conn) as cur:
            return messages_repository.list_message_keys(cur, conversation_id, since=since)

    def find_known_ids(self, conversation_id: str, external_ids: Sequence[str]) -> set[str]:
        with txn(self._conn) as cur:
            return messages_repository.find_known_ids(cur, conversation_id, external_ids)

    def insert_messages_if_absent(self, rows: Sequence[NewMessage]) -> InsertOutcome:
        outcome = InsertOutcome()
        with txn(self._conn) as cur:
            for row in rows:
                try:
                    with savepoint(cur):
                        new_id = messages_repository.insert_if_absent(cur, row)
                except pg_errors.UniqueViolation:
                    # 23505 from a concurrent insert outside the ON CONFLICT target
                    outcome.duplicates += 1
                    continue
                except psycopg2.Error as e:
                    logger.warning(
                        "message insert failed",
                        extra={
                            "extra_fields": safe_log_context(
                                conversation_id=row.conversation_id,
                                pgcode=e.pgcode,
                                error_type=type(e).__name__,
                            )
                        },
                    )
                    outcome.failed += 1
                    continue
                if new_id is None:
                    outcome.duplicates += 1
                else:
                    outcome.inserted.append(row)
        return outcome

    def list_media_pending(self, company_id: str, *, limit: int) -> list[StoredMessage]:
        with txn(self._conn) as cur:
            return messages_repository.list_media_pending(cur, company_id, limit=limit)

    def merge_message_metadata(self, message_id: str, patch: dict[str, Any]) -> None:
        with txn(self._conn) as cur:
            messages_repository.merge_metadata(cur, message_id, patch)
