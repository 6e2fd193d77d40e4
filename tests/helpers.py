"""Shared test helpers for InboxSync tests.

This module contains helper classes and builders that can be imported by both
conftest.py and individual test files. These are NOT fixtures.

- InMemoryStore: SyncStore over plain dicts (no database).
- FakeSession: requests.Session stand-in routing gateway calls to handlers,
  so the real EvolutionClient parsing/retry code runs in tests.
"""

from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence
from urllib.parse import parse_qs, urlsplit

import requests

from inboxsync.domain.models import (
    META_ATTACHMENT,
    META_EXTERNAL_ID,
    META_MEDIA_UNAVAILABLE,
    META_REMOTE_JID,
    Contact,
    Conversation,
    InsertOutcome,
    InstanceRecord,
    LidMapping,
    MessageKey,
    NewMessage,
    StoredMessage,
)
from inboxsync.domain.store import CONTACT_UPDATABLE_FIELDS
from inboxsync.whatsapp.evolution_client import EvolutionClient, EvolutionConfig
from inboxsync.whatsapp.models import BINARY_MEDIA_TYPES
from inboxsync.whatsapp.normalizer import media_type_from_content

BASE_URL = "http://evolution.test"
INSTANCE = "inst-1"
COMPANY_ID = "company-1"

EPOCH = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def ts(seconds: int) -> datetime:
    """EPOCH + seconds."""
    return EPOCH + timedelta(seconds=seconds)


def epoch_seconds(seconds: int) -> int:
    return int(ts(seconds).timestamp())


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Dict-backed SyncStore with the same contract as PgSyncStore."""

    def __init__(self) -> None:
        self.instances: dict[str, InstanceRecord] = {}
        self.contacts: dict[str, Contact] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, dict[str, Any]] = {}
        self.lid_mappings: dict[tuple[str, str], LidMapping] = {}
        self.insert_calls: list[int] = []
        # Raise from insert_messages_if_absent on these call numbers (1-based)
        self.fail_insert_calls: set[int] = set()
        self._ids = itertools.count(1)
        self._contact_seq = itertools.count()

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # --- seeding ------------------------------------------------------------

    def add_instance(self, instance_name: str = INSTANCE, company_id: str = COMPANY_ID) -> InstanceRecord:
        record = InstanceRecord(id=self._next_id("inst"), company_id=company_id, instance_name=instance_name)
        self.instances[instance_name] = record
        return record

    def add_contact(self, company_id: str = COMPANY_ID, **fields: Any) -> Contact:
        fields.setdefault("name", None)
        fields.setdefault("phone", None)
        fields.setdefault("remote_jid", None)
        fields.setdefault("created_at", ts(next(self._contact_seq)))
        contact = Contact(id=fields.pop("id", None) or self._next_id("contact"), company_id=company_id, **fields)
        self.contacts[contact.id] = contact
        return contact

    def add_conversation(
        self,
        contact: Contact,
        *,
        remote_jid: str | None = None,
        updated_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        meta = dict(metadata or {})
        if remote_jid:
            meta[META_REMOTE_JID] = remote_jid
        conversation = Conversation(
            id=self._next_id("conv"),
            company_id=contact.company_id,
            contact_id=contact.id,
            metadata=meta,
            updated_at=updated_at or EPOCH,
            created_at=EPOCH,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    def add_message(
        self,
        conversation: Conversation,
        *,
        content: str,
        created_at: datetime,
        metadata: dict[str, Any] | None = None,
        sender_type: str = "user",
    ) -> str:
        message_id = self._next_id("msg")
        self.messages[message_id] = {
            "id": message_id,
            "conversation_id": conversation.id,
            "sender_type": sender_type,
            "content": content,
            "created_at": created_at,
            "metadata": dict(metadata or {}),
        }
        return message_id

    def messages_for(self, conversation_id: str) -> list[dict[str, Any]]:
        rows = [m for m in self.messages.values() if m["conversation_id"] == conversation_id]
        return sorted(rows, key=lambda m: m["created_at"])

    # --- instances ----------------------------------------------------------

    def get_instance(self, instance_name: str) -> InstanceRecord | None:
        return self.instances.get(instance_name)

    # --- contacts -----------------------------------------------------------

    def get_contact(self, company_id: str, contact_id: str) -> Contact | None:
        contact = self.contacts.get(contact_id)
        return contact if contact and contact.company_id == company_id else None

    def find_contact_by_phone(self, company_id: str, phone: str) -> Contact | None:
        for contact in self.contacts.values():
            if contact.company_id == company_id and contact.phone == phone:
                return contact
        return None

    def find_contact_by_remote_jid(self, company_id: str, remote_jid: str) -> Contact | None:
        matches = [c for c in self.contacts.values() if c.company_id == company_id and c.remote_jid == remote_jid]
        matches.sort(key=lambda c: c.created_at or EPOCH)
        return matches[0] if matches else None

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
        if phone and self.find_contact_by_phone(company_id, phone):
            raise RuntimeError("duplicate phone")
        return self.add_contact(
            company_id,
            name=name,
            phone=phone,
            remote_jid=remote_jid,
            is_group=is_group,
            avatar_url=avatar_url,
            metadata=dict(metadata or {}),
        )

    def update_contact(self, contact_id: str, **fields: Any) -> None:
        unknown = set(fields) - CONTACT_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update contact fields: {sorted(unknown)}")
        self.contacts[contact_id] = replace(self.contacts[contact_id], **fields)

    def list_contacts(self, company_id: str, *, limit: int | None = None) -> list[Contact]:
        contacts = sorted(
            (c for c in self.contacts.values() if c.company_id == company_id),
            key=lambda c: (c.created_at or EPOCH, c.id),
        )
        return contacts[:limit] if limit is not None else contacts

    def reassign_conversations(self, from_contact_id: str, to_contact_id: str) -> int:
        moved = 0
        for conversation in list(self.conversations.values()):
            if conversation.contact_id == from_contact_id:
                self.conversations[conversation.id] = replace(conversation, contact_id=to_contact_id)
                moved += 1
        return moved

    def delete_contact(self, contact_id: str) -> None:
        self.contacts.pop(contact_id, None)

    # --- LID mappings -------------------------------------------------------

    def get_lid_mapping(self, company_id: str, lid_jid: str) -> LidMapping | None:
        return self.lid_mappings.get((company_id, lid_jid))

    def save_lid_mapping(self, company_id: str, mapping: LidMapping) -> None:
        self.lid_mappings[(company_id, mapping.lid_jid)] = mapping

    # --- conversations ------------------------------------------------------

    def get_conversation(self, company_id: str, conversation_id: str) -> Conversation | None:
        conversation = self.conversations.get(conversation_id)
        return conversation if conversation and conversation.company_id == company_id else None

    def find_conversation_by_contact(self, company_id: str, contact_id: str) -> Conversation | None:
        for conversation in self.conversations.values():
            if conversation.company_id == company_id and conversation.contact_id == contact_id:
                return conversation
        return None

    def find_conversation_by_remote_jid(self, company_id: str, remote_jid: str) -> Conversation | None:
        for conversation in self.conversations.values():
            if conversation.company_id == company_id and conversation.remote_jid == remote_jid:
                return conversation
        return None

    def insert_conversation(
        self,
        company_id: str,
        contact_id: str,
        *,
        metadata: dict[str, Any],
        updated_at: datetime | None = None,
    ) -> Conversation:
        conversation = Conversation(
            id=self._next_id("conv"),
            company_id=company_id,
            contact_id=contact_id,
            metadata=dict(metadata),
            updated_at=updated_at or EPOCH,
            created_at=EPOCH,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    def list_conversations(self, company_id: str, *, limit: int, offset: int) -> list[Conversation]:
        conversations = [c for c in self.conversations.values() if c.company_id == company_id]
        conversations.sort(key=lambda c: c.id)
        conversations.sort(key=lambda c: c.updated_at or EPOCH, reverse=True)
        return conversations[offset : offset + limit]

    def bump_conversation_recency(self, conversation_id: str, at: datetime) -> None:
        conversation = self.conversations[conversation_id]
        if conversation.updated_at is None or at > conversation.updated_at:
            self.conversations[conversation_id] = replace(conversation, updated_at=at)

    def merge_conversation_metadata(self, conversation_id: str, patch: dict[str, Any]) -> None:
        conversation = self.conversations[conversation_id]
        self.conversations[conversation_id] = replace(conversation, metadata={**conversation.metadata, **patch})

    def refresh_recency_from_messages(self, conversation_id: str) -> datetime | None:
        rows = self.messages_for(conversation_id)
        if not rows:
            return None
        newest = rows[-1]["created_at"]
        self.conversations[conversation_id] = replace(self.conversations[conversation_id], updated_at=newest)
        return newest

    # --- messages -----------------------------------------------------------

    def list_message_keys(self, conversation_id: str, *, since: datetime | None = None) -> list[MessageKey]:
        keys = []
        for row in self.messages_for(conversation_id):
            if since is not None and row["created_at"] < since:
                continue
            metadata = row["metadata"]
            keys.append(
                MessageKey(
                    external_id=metadata.get(META_EXTERNAL_ID) or metadata.get("messageId"),
                    content=row["content"],
                    created_at=row["created_at"],
                    id_source=metadata.get("idSource"),
                )
            )
        return keys

    def find_known_ids(self, conversation_id: str, external_ids: Sequence[str]) -> set[str]:
        wanted = set(external_ids)
        found = set()
        for row in self.messages_for(conversation_id):
            for key in (META_EXTERNAL_ID, "messageId"):
                if row["metadata"].get(key) in wanted:
                    found.add(row["metadata"][key])
        return found

    def insert_messages_if_absent(self, rows: Sequence[NewMessage]) -> InsertOutcome:
        self.insert_calls.append(len(rows))
        if len(self.insert_calls) in self.fail_insert_calls:
            raise RuntimeError("connection reset")

        outcome = InsertOutcome()
        for row in rows:
            existing_ids = {
                m["metadata"].get(META_EXTERNAL_ID) for m in self.messages_for(row.conversation_id)
            }
            if row.external_id and row.external_id in existing_ids:
                outcome.duplicates += 1
                continue
            message_id = self._next_id("msg")
            self.messages[message_id] = {
                "id": message_id,
                "conversation_id": row.conversation_id,
                "sender_type": row.sender_type,
                "content": row.content,
                "created_at": row.created_at,
                "metadata": dict(row.metadata),
            }
            outcome.inserted.append(row)
        return outcome

    def list_media_pending(self, company_id: str, *, limit: int) -> list[StoredMessage]:
        pending = []
        for row in sorted(self.messages.values(), key=lambda m: m["created_at"], reverse=True):
            conversation = self.conversations[row["conversation_id"]]
            if conversation.company_id != company_id:
                continue
            if media_type_from_content(row["content"]) not in BINARY_MEDIA_TYPES:
                continue
            attachment = row["metadata"].get(META_ATTACHMENT) or {}
            if attachment.get("url") or row["metadata"].get(META_MEDIA_UNAVAILABLE):
                continue
            pending.append(
                StoredMessage(
                    id=row["id"],
                    conversation_id=row["conversation_id"],
                    content=row["content"],
                    created_at=row["created_at"],
                    metadata=dict(row["metadata"]),
                    remote_jid=conversation.remote_jid,
                )
            )
        return pending[:limit]

    def merge_message_metadata(self, message_id: str, patch: dict[str, Any]) -> None:
        self.messages[message_id]["metadata"] = {**self.messages[message_id]["metadata"], **patch}


# ---------------------------------------------------------------------------
# Fake gateway transport
# ---------------------------------------------------------------------------

_INVALID_JSON = object()


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if self._payload is _INVALID_JSON:
            raise ValueError("not json")
        return self._payload


def invalid_json_response() -> FakeResponse:
    return FakeResponse(200, _INVALID_JSON)


Handler = Callable[[dict[str, Any], dict[str, list[str]]], Any]


class FakeSession:
    """requests.Session stand-in.

    Routes are keyed by (METHOD, path) without base URL or query string. A
    route value is either a JSON payload or a handler(body, query) that
    returns a payload / FakeResponse or raises (e.g. requests.Timeout).
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple[str, str, Any]] = []

    def route(self, method: str, path: str, response: Any) -> None:
        self.routes[(method.upper(), path)] = response

    def calls_to(self, path: str) -> list[tuple[str, str, Any]]:
        return [call for call in self.calls if call[1] == path]

    def request(self, method, url, json=None, headers=None, timeout=None):
        parts = urlsplit(url)
        path = parts.path
        self.calls.append((method, path, json))
        route = self.routes.get((method.upper(), path))
        if route is None:
            return FakeResponse(404, {"error": "not found"})
        result = route(json or {}, parse_qs(parts.query)) if callable(route) else route
        if isinstance(result, FakeResponse):
            return result
        return FakeResponse(200, result)


def make_gateway(session: FakeSession, **config: Any) -> EvolutionClient:
    return EvolutionClient(EvolutionConfig(base_url=BASE_URL, api_key="test-key", **config), session=session)


def connected(session: FakeSession, instance: str = INSTANCE, state: str = "open") -> None:
    session.route("GET", f"/instance/connectionState/{instance}", {"instance": {"instanceName": instance, "state": state}})


def timeout_handler(body: dict[str, Any], query: dict[str, list[str]]) -> Any:
    raise requests.Timeout("read timed out")


# ---------------------------------------------------------------------------
# Raw gateway payload builders
# ---------------------------------------------------------------------------


def text_record(
    message_id: str | None,
    text: str,
    at: int,
    *,
    remote_jid: str = "5511988887777@s.whatsapp.net",
    from_me: bool = False,
) -> dict[str, Any]:
    """findMessages-style record; `at` is seconds after EPOCH."""
    key: dict[str, Any] = {"remoteJid": remote_jid, "fromMe": from_me}
    if message_id is not None:
        key["id"] = message_id
    return {
        "key": key,
        "pushName": "Maria",
        "messageType": "conversation",
        "message": {"conversation": text},
        "messageTimestamp": epoch_seconds(at),
    }


def image_record(
    message_id: str,
    at: int,
    *,
    caption: str = "",
    mimetype: str = "image/jpeg",
    remote_jid: str = "5511988887777@s.whatsapp.net",
) -> dict[str, Any]:
    image: dict[str, Any] = {"mimetype": mimetype}
    if caption:
        image["caption"] = caption
    return {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": False},
        "messageType": "imageMessage",
        "message": {"imageMessage": image},
        "messageTimestamp": epoch_seconds(at),
    }


def paged(records: list[dict[str, Any]], *, page: int = 1, pages: int = 1) -> dict[str, Any]:
    return {"messages": {"total": len(records), "pages": pages, "currentPage": page, "records": records}}
