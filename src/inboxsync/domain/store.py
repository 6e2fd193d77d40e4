"""Persistence contract used by the reconciliation components.

Production uses PgSyncStore (inboxsync.infra.pg_store); every method there
runs in its own short transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence

from .models import (
    Contact,
    Conversation,
    InsertOutcome,
    InstanceRecord,
    LidMapping,
    MessageKey,
    NewMessage,
    StoredMessage,
)

# Columns update_contact() may change
CONTACT_UPDATABLE_FIELDS = frozenset({"name", "phone", "remote_jid", "avatar_url", "metadata"})


class SyncStore(Protocol):
    # --- instances --------------------------------------------------------
    def get_instance(self, instance_name: str) -> InstanceRecord | None: ...

    # --- contacts ---------------------------------------------------------
    def get_contact(self, company_id: str, contact_id: str) -> Contact | None: ...

    def find_contact_by_phone(self, company_id: str, phone: str) -> Contact | None: ...

    def find_contact_by_remote_jid(self, company_id: str, remote_jid: str) -> Contact | None: ...

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
    ) -> Contact: ...

    def update_contact(self, contact_id: str, **fields: Any) -> None:
        """Update the given columns (subset of CONTACT_UPDATABLE_FIELDS)."""
        ...

    def list_contacts(self, company_id: str, *, limit: int | None = None) -> list[Contact]:
        """Contacts ordered by created_at ascending."""
        ...

    def reassign_conversations(self, from_contact_id: str, to_contact_id: str) -> int: ...

    def delete_contact(self, contact_id: str) -> None: ...

    # --- LID mappings -----------------------------------------------------
    def get_lid_mapping(self, company_id: str, lid_jid: str) -> LidMapping | None: ...

    def save_lid_mapping(self, company_id: str, mapping: LidMapping) -> None: ...

    # --- conversations ----------------------------------------------------
    def get_conversation(self, company_id: str, conversation_id: str) -> Conversation | None: ...

    def find_conversation_by_contact(self, company_id: str, contact_id: str) -> Conversation | None: ...

    def find_conversation_by_remote_jid(self, company_id: str, remote_jid: str) -> Conversation | None: ...

    def insert_conversation(
        self,
        company_id: str,
        contact_id: str,
        *,
        metadata: dict[str, Any],
        updated_at: datetime | None = None,
    ) -> Conversation: ...

    def list_conversations(self, company_id: str, *, limit: int, offset: int) -> list[Conversation]:
        """WhatsApp conversations ordered by updated_at descending."""
        ...

    def bump_conversation_recency(self, conversation_id: str, at: datetime) -> None:
        """Set updated_at = max(updated_at, at)."""
        ...

    def merge_conversation_metadata(self, conversation_id: str, patch: dict[str, Any]) -> None: ...

    def refresh_recency_from_messages(self, conversation_id: str) -> datetime | None:
        """Set updated_at to the newest message's created_at; returns it."""
        ...

    # --- messages ---------------------------------------------------------
    def list_message_keys(
        self,
        conversation_id: str,
        *,
        since: datetime | None = None,
    ) -> list[MessageKey]: ...

    def find_known_ids(self, conversation_id: str, external_ids: Sequence[str]) -> set[str]:
        """The subset of external_ids stored for the conversation (external_id or messageId), any age."""
        ...

    def insert_messages_if_absent(self, rows: Sequence[NewMessage]) -> InsertOutcome:
        """Insert rows, skipping any whose (conversation, external_id) exists.

        A row that fails for another reason is counted in `failed` and does
        not prevent the rest of the chunk from persisting.
        """
        ...

    def list_media_pending(self, company_id: str, *, limit: int) -> list[StoredMessage]:
        """Media placeholders with no stored attachment and no unavailable marker."""
        ...

    def merge_message_metadata(self, message_id: str, patch: dict[str, Any]) -> None: ...
