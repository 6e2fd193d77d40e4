"""Evolution API client - the gateway consumed as an HTTP collaborator.

Security: NEVER log JIDs, phone numbers or message text. Only log hashes,
counts and endpoint names.
"""

from __future__ import annotations

import base64
import binascii
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import hash_identifier, safe_log_context

from .envelopes import MalformedEnvelopeError, PagedRecords, parse_list_envelope, parse_message_envelope
from .jid import parse_jid
from .models import MediaPayload, RemoteChat, RemoteContact, RemoteGroup
from .normalizer import parse_timestamp

logger = get_logger(__name__)

# Default timeouts (seconds)
HTTP_TIMEOUT = 15
MEDIA_TIMEOUT = 5

# Retry config (network errors and 5xx only)
MAX_RETRIES = 1
RETRY_DELAY = 0.2

# Upper bound on pages followed for one chat
MAX_PAGES = 20

CONNECTED_STATES = frozenset({"open", "connected"})


class GatewayConfigError(RuntimeError):
    """Raised when gateway credentials are missing (fatal for a run)."""

    pass


class GatewayError(Exception):
    """Transient gateway failure: non-2xx, timeout, network error or malformed JSON."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        kind: str,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        if self.kind in ("timeout", "network"):
            return True
        return self.kind == "http" and self.status is not None and self.status >= 500


@dataclass(frozen=True)
class EvolutionConfig:
    base_url: str
    api_key: str
    timeout: float = HTTP_TIMEOUT
    media_timeout: float = MEDIA_TIMEOUT


def get_evolution_config() -> EvolutionConfig:
    """Get Evolution API config from environment.

    Required env vars:
    - EVOLUTION_BASE_URL: Base URL (e.g., http://localhost:8080)
    - EVOLUTION_API_KEY: API token sent as the `apikey` header

    Optional:
    - EVOLUTION_HTTP_TIMEOUT: Request timeout in seconds (default: 15)
    - EVOLUTION_MEDIA_TIMEOUT: Media download timeout in seconds (default: 5)

    Raises:
        GatewayConfigError: If a required variable is missing.
    """
    base_url = os.environ.get("EVOLUTION_BASE_URL", "")
    api_key = os.environ.get("EVOLUTION_API_KEY", "")

    if not base_url or not api_key:
        raise GatewayConfigError("Missing Evolution config: EVOLUTION_BASE_URL, EVOLUTION_API_KEY")

    return EvolutionConfig(
        base_url=base_url.rstrip("/"),
        api_key=api_key,
        timeout=float(os.environ.get("EVOLUTION_HTTP_TIMEOUT", HTTP_TIMEOUT)),
        media_timeout=float(os.environ.get("EVOLUTION_MEDIA_TIMEOUT", MEDIA_TIMEOUT)),
    )


# ID families: findMessages and sendText both return the WhatsApp message key id;
# the legacy endpoint mints its own.
ID_SOURCE_MESSAGE_KEY = "messageKey"
ID_SOURCE_LEGACY = "legacyFetch"


@dataclass(frozen=True)
class FetchStrategy:
    """One way of asking the gateway for a chat's messages."""

    name: str
    path: str
    build_body: Callable[[str, int, int], dict[str, Any]]
    # Family of the key ids this endpoint returns
    id_source: str


def _find_messages_where(remote_jid: str, limit: int, page: int) -> dict[str, Any]:
    return {"where": {"key": {"remoteJid": remote_jid}}, "limit": limit, "page": page}


def _find_messages_flat(remote_jid: str, limit: int, page: int) -> dict[str, Any]:
    return {"remoteJid": remote_jid, "limit": limit, "page": page}


def _fetch_messages_legacy(remote_jid: str, limit: int, page: int) -> dict[str, Any]:
    return {"number": remote_jid, "count": limit}


# Tried in order; the first strategy returning records wins unless exhaustive
MESSAGE_FETCH_STRATEGIES: tuple[FetchStrategy, ...] = (
    FetchStrategy("findMessages", "/chat/findMessages/{instance}", _find_messages_where, ID_SOURCE_MESSAGE_KEY),
    FetchStrategy("findMessages.flat", "/chat/findMessages/{instance}", _find_messages_flat, ID_SOURCE_MESSAGE_KEY),
    FetchStrategy("fetchMessages", "/chat/fetchMessages/{instance}", _fetch_messages_legacy, ID_SOURCE_LEGACY),
)


@dataclass
class FetchResult:
    """Records collected for one chat plus per-strategy outcome."""

    records: list[dict[str, Any]] = field(default_factory=list)
    # id_source of each record, parallel to records
    record_sources: list[str] = field(default_factory=list)
    strategies_used: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.strategies_used)


def _first_jid(entry: dict[str, Any]) -> str | None:
    # findChats (v2) puts an internal id in `id` and the JID in `remoteJid`
    for key in ("remoteJid", "jid", "id"):
        value = entry.get(key)
        if isinstance(value, str) and "@" in value:
            return value
    return None


def _str_or_none(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


class EvolutionClient:
    """Thin client over the Evolution REST API.

    Every call returns parsed JSON or raises GatewayError. Response-shape
    differences are resolved here so callers see one list type per call.
    """

    def __init__(
        self,
        config: EvolutionConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._config = config or get_evolution_config()
        self._session = session or requests.Session()

    @property
    def config(self) -> EvolutionConfig:
        return self._config

    def _do_request(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None,
        timeout: float,
    ) -> Any:
        """Execute one HTTP request. Raises GatewayError on any failure."""
        headers = {"Content-Type": "application/json", "apikey": self._config.api_key}
        try:
            resp = self._session.request(method, url, json=body, headers=headers, timeout=timeout)
        except requests.Timeout as e:
            raise GatewayError(str(e), endpoint=url, kind="timeout") from e
        except requests.RequestException as e:
            raise GatewayError(str(e), endpoint=url, kind="network") from e

        if not 200 <= resp.status_code < 300:
            raise GatewayError(
                f"gateway returned {resp.status_code}",
                endpoint=url,
                kind="http",
                status=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayError("malformed json", endpoint=url, kind="malformed") from e

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        retries: int = MAX_RETRIES,
    ) -> Any:
        """Request with one retry on network errors and 5xx."""
        url = f"{self._config.base_url}{path}"
        endpoint = path.split("?", 1)[0].rsplit("/", 1)[0]

        for attempt in range(retries + 1):
            try:
                return self._do_request(method, url, body, timeout or self._config.timeout)
            except GatewayError as e:
                if attempt < retries and e.retryable:
                    logger.warning(
                        "gateway request failed, retrying",
                        extra={
                            "extra_fields": safe_log_context(
                                endpoint=endpoint, attempt=attempt, error_kind=e.kind, status=e.status
                            )
                        },
                    )
                    time.sleep(RETRY_DELAY)
                    continue
                logger.error(
                    "gateway request failed",
                    extra={
                        "extra_fields": safe_log_context(
                            endpoint=endpoint, attempt=attempt, error_kind=e.kind, status=e.status
                        )
                    },
                )
                raise
        raise AssertionError("unreachable")

    # --- instance -----------------------------------------------------------

    def connection_state(self, instance: str) -> str:
        """Return the instance connection state string (e.g. 'open', 'close')."""
        data = self._request("GET", f"/instance/connectionState/{instance}")
        if isinstance(data, dict):
            inner = data.get("instance")
            if isinstance(inner, dict) and inner.get("state"):
                return str(inner["state"])
            if data.get("state"):
                return str(data["state"])
        raise GatewayError("missing connection state", endpoint="/instance/connectionState", kind="malformed")

    # --- chats / contacts / groups -------------------------------------------

    def find_chats(self, instance: str) -> list[RemoteChat]:
        data = self._request("POST", f"/chat/findChats/{instance}", {})
        try:
            entries = parse_list_envelope(data, "chats", "data")
        except MalformedEnvelopeError as e:
            raise GatewayError(str(e), endpoint="/chat/findChats", kind="malformed") from e

        chats: list[RemoteChat] = []
        for entry in entries:
            jid = _first_jid(entry)
            if not jid:
                continue
            last_message = entry.get("lastMessage") if isinstance(entry.get("lastMessage"), dict) else {}
            last_at = (
                parse_timestamp(entry.get("lastMsgTimestamp"))
                or parse_timestamp(last_message.get("messageTimestamp"))
            )
            chats.append(
                RemoteChat(
                    remote_jid=jid,
                    name=_str_or_none(entry.get("name"))
                    or _str_or_none(entry.get("pushName"))
                    or _str_or_none(entry.get("subject")),
                    last_message_at=last_at,
                    profile_picture_url=_str_or_none(entry.get("profilePicUrl"))
                    or _str_or_none(entry.get("profilePictureUrl")),
                    raw=entry,
                )
            )
        return chats

    def find_contacts(self, instance: str) -> list[RemoteContact]:
        data = self._request("POST", f"/chat/findContacts/{instance}", {})
        try:
            entries = parse_list_envelope(data, "contacts", "data")
        except MalformedEnvelopeError as e:
            raise GatewayError(str(e), endpoint="/chat/findContacts", kind="malformed") from e

        contacts: list[RemoteContact] = []
        for entry in entries:
            jid = _first_jid(entry)
            if not jid:
                continue
            contacts.append(
                RemoteContact(
                    remote_jid=jid,
                    push_name=_str_or_none(entry.get("pushName")),
                    verified_name=_str_or_none(entry.get("verifiedName")),
                    name=_str_or_none(entry.get("name")),
                    notify=_str_or_none(entry.get("notify")),
                    profile_picture_url=_str_or_none(entry.get("profilePicUrl")),
                )
            )
        return contacts

    def fetch_all_groups(self, instance: str) -> list[RemoteGroup]:
        data = self._request("GET", f"/group/fetchAllGroups/{instance}?getParticipants=false")
        try:
            entries = parse_list_envelope(data, "groups", "data")
        except MalformedEnvelopeError as e:
            raise GatewayError(str(e), endpoint="/group/fetchAllGroups", kind="malformed") from e

        groups: list[RemoteGroup] = []
        for entry in entries:
            jid = _first_jid(entry)
            if not jid:
                continue
            size = entry.get("size")
            groups.append(
                RemoteGroup(
                    remote_jid=jid,
                    subject=_str_or_none(entry.get("subject")),
                    picture_url=_str_or_none(entry.get("pictureUrl")),
                    size=size if isinstance(size, int) else None,
                )
            )
        return groups

    # --- messages -----------------------------------------------------------

    def _fetch_with_strategy(
        self,
        strategy: FetchStrategy,
        instance: str,
        remote_jid: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Run one strategy, following pages while the envelope advertises more."""
        records: list[dict[str, Any]] = []
        page = 1
        while page <= MAX_PAGES:
            data = self._request(
                "POST",
                strategy.path.format(instance=instance),
                strategy.build_body(remote_jid, limit, page),
            )
            try:
                envelope = parse_message_envelope(data)
            except MalformedEnvelopeError as e:
                raise GatewayError(str(e), endpoint=strategy.name, kind="malformed") from e

            records.extend(envelope.records)
            if len(records) >= limit:
                return records[:limit]
            if not (isinstance(envelope, PagedRecords) and envelope.has_next_page and envelope.records):
                return records
            page += 1
        return records

    def fetch_message_records(
        self,
        instance: str,
        remote_jid: str,
        limit: int,
        *,
        exhaustive: bool = False,
        strategies: tuple[FetchStrategy, ...] = MESSAGE_FETCH_STRATEGIES,
    ) -> FetchResult:
        """Fetch raw message records for a chat through the ordered strategy list.

        A strategy that fails or returns nothing falls through to the next.
        With exhaustive=True every strategy is tried and records are merged
        (overlap is removed later by the dedup gate).
        """
        result = FetchResult()
        for strategy in strategies:
            try:
                records = self._fetch_with_strategy(strategy, instance, remote_jid, limit)
            except GatewayError as e:
                result.errors.append(f"{strategy.name}: {e.kind}")
                continue

            if not records:
                continue
            result.records.extend(records)
            result.record_sources.extend([strategy.id_source] * len(records))
            result.strategies_used.append(strategy.name)
            if not exhaustive:
                break

        logger.info(
            "message fetch finished",
            extra={
                "extra_fields": safe_log_context(
                    jid_hash=hash_identifier(remote_jid),
                    records=len(result.records),
                    strategies_used=",".join(result.strategies_used) or "none",
                    errors=len(result.errors),
                )
            },
        )
        return result

    def find_message_by_id(self, instance: str, external_id: str) -> dict[str, Any] | None:
        """Look up one message by gateway key id (None when the gateway no longer has it)."""
        data = self._request(
            "POST",
            f"/chat/findMessages/{instance}",
            {"where": {"key": {"id": external_id}}, "limit": 1},
        )
        try:
            envelope = parse_message_envelope(data)
        except MalformedEnvelopeError as e:
            raise GatewayError(str(e), endpoint="/chat/findMessages", kind="malformed") from e

        for record in envelope.records:
            key = record.get("key") if isinstance(record.get("key"), dict) else {}
            if key.get("id") == external_id:
                return record
        return None

    def get_media_base64(self, instance: str, raw_message: dict[str, Any]) -> MediaPayload:
        """Download media bytes for a message still held by the gateway.

        Uses the short media timeout; a timeout is not retried inline.
        """
        data = self._request(
            "POST",
            f"/chat/getBase64FromMediaMessage/{instance}",
            {
                "message": {"key": raw_message.get("key"), "message": raw_message.get("message")},
                "convertToMp4": False,
            },
            timeout=self._config.media_timeout,
            retries=0,
        )
        encoded = data.get("base64") if isinstance(data, dict) else None
        if not isinstance(encoded, str) or not encoded:
            raise GatewayError("no media in response", endpoint="/chat/getBase64FromMediaMessage", kind="malformed")

        if encoded.startswith("data:") and "," in encoded:
            encoded = encoded.split(",", 1)[1]
        try:
            payload = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as e:
            raise GatewayError("invalid base64", endpoint="/chat/getBase64FromMediaMessage", kind="malformed") from e

        return MediaPayload(
            data=payload,
            mimetype=_str_or_none(data.get("mimetype")),
            file_name=_str_or_none(data.get("fileName")),
        )

    # --- outbound -----------------------------------------------------------

    def send_text(self, instance: str, number: str, text: str) -> dict[str, Any]:
        """Send a text message. Returns the gateway response (with `key`).

        Args:
            number: Recipient phone or JID. NEVER logged.
            text: Message text. NEVER logged.
        """
        log_ctx = safe_log_context(
            to_hash=hash_identifier(number),
            text_len=len(text),
            is_group=parse_jid(number).is_group,
        )
        logger.info("sending outbound message", extra={"extra_fields": log_ctx})

        data = self._request("POST", f"/message/sendText/{instance}", {"number": number, "text": text})
        if not isinstance(data, dict):
            raise GatewayError("unexpected send response", endpoint="/message/sendText", kind="malformed")

        logger.info("outbound message sent", extra={"extra_fields": log_ctx})
        return data
