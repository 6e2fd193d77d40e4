"""Persisted records as seen by the reconciliation engine.

Message metadata is the only place gateway identifiers and media descriptors
live. Every component reads and writes it through the key names below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Message metadata keys
META_EXTERNAL_ID = "external_id"
META_MESSAGE_ID = "messageId"
META_REMOTE_JID = "remoteJid"
META_FROM_ME = "fromMe"
META_ATTACHMENT = "attachment"
META_MEDIA_UNAVAILABLE = "mediaUnavailable"
META_MEDIA_UNAVAILABLE_REASON = "mediaUnavailableReason"
META_MARKED_UNAVAILABLE_AT = "markedUnavailableAt"
META_MEDIA_RECOVERED = "mediaRecovered"
META_MEDIA_RECOVERED_AT = "mediaRecoveredAt"
META_IMPORTED_AT = "importedAt"
META_IMPORT_SOURCE = "importSource"
META_ID_SOURCE = "idSource"

# Conversation metadata keys
META_INSTANCE_NAME = "instanceName"

CHANNEL_WHATSAPP = "whatsapp"


@dataclass(frozen=True)
class InstanceRecord:
    """A gateway session registered for a tenant."""

    id: str
    company_id: str
    instance_name: str


@dataclass(frozen=True)
class Contact:
    id: str
    company_id: str
    name: str | None
    phone: str | None
    remote_jid: str | None
    is_group: bool = False
    avatar_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class Conversation:
    id: str
    company_id: str
    contact_id: str
    channel: str = CHANNEL_WHATSAPP
    status: str = "open"
    metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def remote_jid(self) -> str | None:
        value = self.metadata.get(META_REMOTE_JID)
        return value if isinstance(value, str) and value else None

    @property
    def instance_name(self) -> str | None:
        value = self.metadata.get(META_INSTANCE_NAME)
        return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class MessageKey:
    """The parts of a persisted message the dedup gate compares against."""

    external_id: str | None
    content: str
    created_at: datetime
    id_source: str | None = None


@dataclass(frozen=True)
class NewMessage:
    """A message row ready for insert-if-absent."""

    conversation_id: str
    sender_type: str
    content: str
    created_at: datetime
    metadata: dict[str, Any]

    @property
    def external_id(self) -> str | None:
        return self.metadata.get(META_EXTERNAL_ID)


@dataclass(frozen=True)
class StoredMessage:
    """A persisted message selected for media repair."""

    id: str
    conversation_id: str
    content: str
    created_at: datetime
    metadata: dict[str, Any]
    remote_jid: str | None = None

    @property
    def external_id(self) -> str | None:
        value = self.metadata.get(META_EXTERNAL_ID) or self.metadata.get(META_MESSAGE_ID)
        return str(value) if value else None


@dataclass
class InsertOutcome:
    """Result of one insert-if-absent chunk."""

    inserted: list[NewMessage] = field(default_factory=list)
    duplicates: int = 0
    failed: int = 0


@dataclass(frozen=True)
class LidMapping:
    lid_jid: str
    phone: str
    match_type: str
    contact_name: str | None = None
