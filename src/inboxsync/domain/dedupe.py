"""Deduplication gate - the single path by which messages are persisted.

A candidate is new only if:
1. Its external ID is not already stored for the conversation, and
2. No stored message is its fuzzy twin: identical stripped content sent in
   the same coarse time bucket, where the two IDs are not comparable.

IDs are comparable when both messages carry one from the same ID family (see
NormalizedMessage.id_source); distinct comparable IDs are distinct messages,
however alike their content. The fuzzy test exists for the same message
returned under different ID formats by different gateway endpoints, or stored
by older imports without an ID family. Both tests also apply within the batch.

The ID test is not time-bounded; only fuzzy candidates are loaded per window.

Concurrency: the check above is advisory. The store's insert-if-absent on
(conversation_id, external_id) is what makes overlapping runs safe.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, NamedTuple, Sequence

from inboxsync.infra.time import utc_now_iso
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context
from inboxsync.whatsapp.models import NormalizedMessage

from .models import (
    META_ATTACHMENT,
    META_EXTERNAL_ID,
    META_FROM_ME,
    META_ID_SOURCE,
    META_IMPORT_SOURCE,
    META_IMPORTED_AT,
    META_MESSAGE_ID,
    META_REMOTE_JID,
    MessageKey,
    NewMessage,
)
from .settings import SyncSettings
from .store import SyncStore

logger = get_logger(__name__)

FuzzyKey = tuple[str, int]


def fuzzy_key(content: str, timestamp: datetime, *, prefix_len: int, bucket_seconds: int) -> FuzzyKey:
    """Content prefix plus the epoch-second bucket of the send time.

    This is the lookup key only; a hit still needs equal full content.
    """
    return (content.strip()[:prefix_len], int(timestamp.timestamp()) // bucket_seconds)


class _Seen(NamedTuple):
    content: str
    external_id: str | None
    id_source: str | None


def ids_comparable(a_id: str | None, a_source: str | None, b_id: str | None, b_source: str | None) -> bool:
    """True when both IDs exist and come from the same ID family."""
    return bool(a_id and b_id and a_source and a_source == b_source)


@dataclass
class Selection:
    """Candidates split by the gate's pure selection step."""

    new: list[NormalizedMessage] = field(default_factory=list)
    by_id: int = 0
    by_fuzzy: int = 0

    @property
    def skipped(self) -> int:
        return self.by_id + self.by_fuzzy


def select_new(
    candidates: Iterable[NormalizedMessage],
    existing: Iterable[MessageKey],
    *,
    prefix_len: int,
    bucket_seconds: int,
    known_ids: Iterable[str] = (),
    fuzzy: bool = True,
) -> Selection:
    """Return the candidates that are not already present.

    Pure function: no store access. Candidates are evaluated in order, so the
    first occurrence of a message inside the batch wins.

    Args:
        existing: Stored rows near the candidates' send times.
        known_ids: Stored external IDs regardless of send time.
        fuzzy: False when the candidates' IDs are authoritative (a send that
            holds the gateway key); only the ID test applies then.
    """
    seen_ids: set[str] = set(known_ids)
    seen_fuzzy: dict[FuzzyKey, list[_Seen]] = {}

    def remember(content: str, at: datetime, external_id: str | None, id_source: str | None) -> None:
        fkey = fuzzy_key(content, at, prefix_len=prefix_len, bucket_seconds=bucket_seconds)
        seen_fuzzy.setdefault(fkey, []).append(_Seen(content.strip(), external_id, id_source))

    for key in existing:
        if key.external_id:
            seen_ids.add(key.external_id)
        remember(key.content, key.created_at, key.external_id, key.id_source)

    selection = Selection()
    for message in candidates:
        if message.external_id and message.external_id in seen_ids:
            selection.by_id += 1
            continue
        if fuzzy and _has_fuzzy_twin(message, seen_fuzzy, prefix_len=prefix_len, bucket_seconds=bucket_seconds):
            selection.by_fuzzy += 1
            continue

        selection.new.append(message)
        if message.external_id:
            seen_ids.add(message.external_id)
        remember(message.content, message.timestamp, message.external_id, message.id_source)
    return selection


def _has_fuzzy_twin(
    message: NormalizedMessage,
    seen_fuzzy: dict[FuzzyKey, list[_Seen]],
    *,
    prefix_len: int,
    bucket_seconds: int,
) -> bool:
    fkey = fuzzy_key(message.content, message.timestamp, prefix_len=prefix_len, bucket_seconds=bucket_seconds)
    content = message.content.strip()
    for seen in seen_fuzzy.get(fkey, ()):
        if seen.content != content:
            continue
        if ids_comparable(message.external_id, message.id_source, seen.external_id, seen.id_source):
            continue
        return True
    return False


def build_row(conversation_id: str, message: NormalizedMessage, *, source: str) -> NewMessage:
    """Map a normalized message to its persisted row and metadata."""
    metadata: dict[str, Any] = {
        META_REMOTE_JID: message.remote_jid,
        META_FROM_ME: message.from_me,
        "messageType": message.message_type,
        META_IMPORTED_AT: utc_now_iso(),
        META_IMPORT_SOURCE: source,
    }
    if message.external_id:
        metadata[META_EXTERNAL_ID] = message.external_id
        metadata[META_MESSAGE_ID] = message.external_id
        if message.id_source:
            metadata[META_ID_SOURCE] = message.id_source
    if message.media:
        metadata[META_ATTACHMENT] = message.media.to_metadata()
    if message.participant:
        metadata["participant"] = message.participant
    if message.push_name:
        metadata["pushName"] = message.push_name

    return NewMessage(
        conversation_id=conversation_id,
        sender_type=message.sender_type,
        content=message.content,
        created_at=message.timestamp,
        metadata=metadata,
    )


@dataclass
class GateResult:
    inserted: list[NewMessage] = field(default_factory=list)
    duplicates: int = 0
    fuzzy_duplicates: int = 0
    failed: int = 0
    chunk_errors: list[str] = field(default_factory=list)

    @property
    def newest(self) -> datetime | None:
        if not self.inserted:
            return None
        return max(row.created_at for row in self.inserted)


class DedupGate:
    """Filters candidates against persisted state, then inserts in chunks."""

    def __init__(self, store: SyncStore, settings: SyncSettings) -> None:
        self._store = store
        self._settings = settings

    def _select(
        self,
        conversation_id: str,
        candidates: Sequence[NormalizedMessage],
        *,
        fuzzy: bool = True,
    ) -> Selection:
        ids = sorted({m.external_id for m in candidates if m.external_id})
        known_ids = self._store.find_known_ids(conversation_id, ids) if ids else set()

        existing: list[MessageKey] = []
        if fuzzy:
            oldest = min(m.timestamp for m in candidates)
            # Look back one bucket so a boundary-straddling key is still loaded
            since = oldest - timedelta(seconds=self._settings.fuzzy_bucket_seconds)
            existing = self._store.list_message_keys(conversation_id, since=since)
        return select_new(
            candidates,
            existing,
            prefix_len=self._settings.fuzzy_prefix_len,
            bucket_seconds=self._settings.fuzzy_bucket_seconds,
            known_ids=known_ids,
            fuzzy=fuzzy,
        )

    def preview(self, conversation_id: str, candidates: Sequence[NormalizedMessage]) -> Selection:
        """Selection only, no writes (dry-run)."""
        if not candidates:
            return Selection()
        return self._select(conversation_id, candidates)

    def admit(
        self,
        conversation_id: str,
        candidates: Sequence[NormalizedMessage],
        *,
        source: str,
        fuzzy: bool = True,
    ) -> GateResult:
        """Persist the candidates that are new for this conversation.

        Inserts run in chunks of `insert_chunk_size`; a failing chunk is
        counted and the next chunk still runs. Pass fuzzy=False when the
        candidates carry authoritative gateway keys.
        """
        result = GateResult()
        if not candidates:
            return result

        selection = self._select(conversation_id, candidates, fuzzy=fuzzy)
        result.duplicates = selection.by_id
        result.fuzzy_duplicates = selection.by_fuzzy

        rows = [build_row(conversation_id, m, source=source) for m in selection.new]
        size = self._settings.insert_chunk_size
        for start in range(0, len(rows), size):
            chunk = rows[start : start + size]
            try:
                outcome = self._store.insert_messages_if_absent(chunk)
            except Exception as e:
                logger.exception(
                    "message chunk insert failed",
                    extra={
                        "extra_fields": safe_log_context(
                            conversation_id=conversation_id,
                            chunk_start=start,
                            chunk_size=len(chunk),
                            error_type=type(e).__name__,
                        )
                    },
                )
                result.failed += len(chunk)
                result.chunk_errors.append(f"chunk {start // size}: {type(e).__name__}")
                continue
            result.inserted.extend(outcome.inserted)
            # Lost an insert race with a concurrent run
            result.duplicates += outcome.duplicates
            result.failed += outcome.failed

        logger.info(
            "dedup gate admitted messages",
            extra={
                "extra_fields": safe_log_context(
                    conversation_id=conversation_id,
                    candidates=len(candidates),
                    inserted=len(result.inserted),
                    duplicates=result.duplicates,
                    fuzzy_duplicates=result.fuzzy_duplicates,
                    failed=result.failed,
                )
            },
        )
        return result
