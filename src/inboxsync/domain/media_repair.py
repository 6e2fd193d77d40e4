"""Media repair worker - recover media behind persisted placeholders.

Candidates: messages whose content is a media placeholder ("[Image] ...")
with no stored attachment URL and no mediaUnavailable marker.

For each candidate:
1. Re-query the gateway for the original message by external ID.
2. Download the binary (short timeout, no inline retry).
3. Upload to blob storage and attach {type, url, mimeType} to metadata.

Expired, oversized, mismatched or gateway-rejected media is marked
mediaUnavailable with a reason and timestamp. That state is terminal: the
candidate query never selects it again. Timeouts and storage failures are
deferred to the next pass instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from inboxsync.infra.storage import BaseMediaStorage, MediaStorageError
from inboxsync.infra.time import utc_now_iso
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context
from inboxsync.whatsapp.evolution_client import EvolutionClient, GatewayError
from inboxsync.whatsapp.models import MediaPayload
from inboxsync.whatsapp.normalizer import InvalidPayloadError, media_type_from_content, normalize_message

from .models import (
    META_ATTACHMENT,
    META_MARKED_UNAVAILABLE_AT,
    META_MEDIA_RECOVERED,
    META_MEDIA_RECOVERED_AT,
    META_MEDIA_UNAVAILABLE,
    META_MEDIA_UNAVAILABLE_REASON,
    StoredMessage,
)
from .run import RunContext
from .settings import SyncSettings
from .store import SyncStore

logger = get_logger(__name__)

RepairAction = Literal[
    "recovered",
    "marked_unavailable",
    "deferred",
    "would_recover",
    "would_mark_unavailable",
]

# Expected mime major type per placeholder kind (documents accept anything)
_MIME_PREFIX: dict[str, str] = {
    "image": "image/",
    "sticker": "image/",
    "audio": "audio/",
    "video": "video/",
}


class _Unavailable(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class _Deferred(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass
class RepairItem:
    message_id: str
    action: RepairAction
    media_type: str | None = None
    reason: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"messageId": self.message_id, "action": self.action, "mediaType": self.media_type}
        if self.reason:
            data["reason"] = self.reason
        if self.url:
            data["url"] = self.url
        return data


@dataclass
class MediaRepairReport:
    scanned: int = 0
    recovered: int = 0
    marked_unavailable: int = 0
    deferred: int = 0
    items: list[RepairItem] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    stopped_by_deadline: bool = False

    def add(self, item: RepairItem) -> None:
        self.items.append(item)
        if item.action in ("recovered", "would_recover"):
            self.recovered += 1
        elif item.action in ("marked_unavailable", "would_mark_unavailable"):
            self.marked_unavailable += 1
        else:
            self.deferred += 1

    def stats(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "recovered": self.recovered,
            "markedUnavailable": self.marked_unavailable,
            "deferred": self.deferred,
        }


def mime_matches(media_type: str, mimetype: str | None) -> bool:
    prefix = _MIME_PREFIX.get(media_type)
    if prefix is None or not mimetype:
        return True
    return mimetype.lower().startswith(prefix)


class MediaRepairWorker:
    def __init__(
        self,
        store: SyncStore,
        gateway: EvolutionClient,
        storage: BaseMediaStorage,
        settings: SyncSettings,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._storage = storage
        self._settings = settings

    def run(self, ctx: RunContext, *, limit: int) -> MediaRepairReport:
        """Process up to `limit` pending messages for the run's tenant."""
        report = MediaRepairReport()
        pending = self._store.list_media_pending(ctx.company_id, limit=limit)
        for message in pending:
            if ctx.deadline.expired():
                report.stopped_by_deadline = True
                break
            report.scanned += 1
            try:
                item = self.repair_one(ctx, message)
            except Exception as e:
                logger.exception(
                    "media repair failed",
                    extra={"extra_fields": safe_log_context(message_id=message.id, error_type=type(e).__name__)},
                )
                item = RepairItem(message.id, "deferred", reason=f"error: {type(e).__name__}")
                report.errors.append(f"{message.id}: {type(e).__name__}")
            report.add(item)

        logger.info(
            "media repair finished",
            extra={"extra_fields": safe_log_context(dry_run=ctx.dry_run, **report.stats())},
        )
        return report

    def repair_one(self, ctx: RunContext, message: StoredMessage) -> RepairItem:
        media_type = media_type_from_content(message.content)
        try:
            payload = self._recover(ctx, message, media_type)
        except _Unavailable as e:
            return self._mark_unavailable(ctx, message, media_type, e.reason)
        except _Deferred as e:
            return RepairItem(message.id, "deferred", media_type=media_type, reason=e.reason)

        if payload is None:
            return RepairItem(message.id, "would_recover", media_type=media_type)

        try:
            stored = self._storage.persist(
                content=payload.data,
                mimetype=payload.mimetype,
                original_name=payload.file_name,
            )
        except MediaStorageError as e:
            logger.warning(
                "media upload failed, deferring",
                extra={"extra_fields": safe_log_context(message_id=message.id, error=str(e))},
            )
            return RepairItem(message.id, "deferred", media_type=media_type, reason="storage upload failed")

        existing = message.metadata.get(META_ATTACHMENT)
        attachment = dict(existing) if isinstance(existing, dict) else {}
        attachment.update({"type": media_type, "url": stored.url, "size": stored.size})
        if payload.mimetype:
            attachment["mimeType"] = payload.mimetype
        if payload.file_name:
            attachment["fileName"] = payload.file_name

        self._store.merge_message_metadata(
            message.id,
            {
                META_ATTACHMENT: attachment,
                META_MEDIA_RECOVERED: True,
                META_MEDIA_RECOVERED_AT: utc_now_iso(),
            },
        )
        return RepairItem(message.id, "recovered", media_type=media_type, url=stored.url)

    def _recover(
        self,
        ctx: RunContext,
        message: StoredMessage,
        media_type: str | None,
    ) -> MediaPayload | None:
        """Look up and download. Returns payload None in dry-run."""
        if media_type is None:
            raise _Unavailable("content is not a media placeholder")
        external_id = message.external_id
        if not external_id:
            raise _Unavailable("missing external message id")

        try:
            record = self._gateway.find_message_by_id(ctx.instance_name, external_id)
        except GatewayError as e:
            if e.kind == "timeout":
                raise _Deferred("gateway timeout") from e
            raise _Unavailable(f"gateway error: {e.kind}{f' {e.status}' if e.status else ''}") from e
        if record is None:
            raise _Unavailable("expired: message no longer held by gateway")

        try:
            normalized = normalize_message(record, remote_jid=message.remote_jid)
        except InvalidPayloadError as e:
            raise _Unavailable("invalid gateway payload") from e
        actual = normalized.media_type if normalized else None
        if actual != media_type:
            raise _Unavailable(f"type mismatch: expected {media_type}, got {actual or 'none'}")

        if ctx.dry_run:
            return None

        try:
            payload = self._gateway.get_media_base64(ctx.instance_name, record)
        except GatewayError as e:
            if e.kind == "timeout":
                raise _Deferred("media download timeout") from e
            raise _Unavailable(f"expired: download failed ({e.kind}{f' {e.status}' if e.status else ''})") from e

        if len(payload.data) > self._settings.media_max_bytes:
            raise _Unavailable(f"too large: {len(payload.data)} bytes")
        if not mime_matches(media_type, payload.mimetype):
            raise _Unavailable(f"type mismatch: expected {media_type}, got {payload.mimetype}")
        return payload

    def _mark_unavailable(
        self,
        ctx: RunContext,
        message: StoredMessage,
        media_type: str | None,
        reason: str,
    ) -> RepairItem:
        if ctx.dry_run:
            return RepairItem(message.id, "would_mark_unavailable", media_type=media_type, reason=reason)
        self._store.merge_message_metadata(
            message.id,
            {
                META_MEDIA_UNAVAILABLE: True,
                META_MEDIA_UNAVAILABLE_REASON: reason,
                META_MARKED_UNAVAILABLE_AT: utc_now_iso(),
            },
        )
        logger.info(
            "media marked unavailable",
            extra={"extra_fields": safe_log_context(message_id=message.id, media_type=media_type, reason=reason)},
        )
        return RepairItem(message.id, "marked_unavailable", media_type=media_type, reason=reason)
