"""Evolution API message normalizer - map raw gateway messages to NormalizedMessage."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Sequence

from inboxsync.infra.time import ensure_aware, from_epoch

from .jid import parse_jid
from .models import AttachmentDescriptor, MediaType, NormalizedMessage, SenderType


class InvalidPayloadError(Exception):
    """Raised when a gateway message has invalid shape."""

    pass


# Bracketed placeholder per media kind; a caption is appended after a space
PLACEHOLDERS: dict[str, str] = {
    "image": "[Image]",
    "video": "[Video]",
    "audio": "[Audio]",
    "document": "[Document]",
    "sticker": "[Sticker]",
    "contact": "[Contact]",
    "location": "[Location]",
}

# Wrappers whose inner `message` carries the real content
_WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

# Message kinds that never become a conversation entry
DROPPED_KINDS = frozenset(
    {
        "reactionMessage",
        "protocolMessage",
        "senderKeyDistributionMessage",
        "pollUpdateMessage",
        "keepInChatMessage",
        "messageContextInfo",
    }
)


def _unwrap(message: dict[str, Any]) -> dict[str, Any]:
    # Wrappers can nest (ephemeral → viewOnce → image)
    for _ in range(4):
        for key in _WRAPPER_KEYS:
            inner = message.get(key)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                message = inner["message"]
                break
        else:
            return message
    return message


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _tag(kind: str, detail: str = "") -> str:
    tag = PLACEHOLDERS[kind]
    return f"{tag} {detail}" if detail else tag


def extract_content(message: dict[str, Any]) -> tuple[str, AttachmentDescriptor | None]:
    """Return (content, media descriptor) for an unwrapped message node.

    First match wins: plain text, extended text, interactive replies, then the
    per-type caption-or-placeholder. Reactions, protocol and system messages
    yield an empty string.
    """
    conversation = _text(message.get("conversation"))
    if conversation:
        return conversation, None

    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and _text(extended.get("text")):
        return _text(extended.get("text")), None

    for key, field in (
        ("buttonsResponseMessage", "selectedDisplayText"),
        ("templateButtonReplyMessage", "selectedDisplayText"),
        ("listResponseMessage", "title"),
    ):
        node = message.get(key)
        if isinstance(node, dict) and _text(node.get(field)):
            return _text(node.get(field)), None

    for key, kind in (
        ("imageMessage", "image"),
        ("videoMessage", "video"),
        ("audioMessage", "audio"),
        ("stickerMessage", "sticker"),
    ):
        node = message.get(key)
        if isinstance(node, dict):
            caption = _text(node.get("caption"))
            media = AttachmentDescriptor(
                type=kind,  # type: ignore[arg-type]
                mimetype=node.get("mimetype"),
                caption=caption or None,
                ptt=bool(node.get("ptt")),
            )
            return _tag(kind, caption), media

    document = message.get("documentMessage")
    if isinstance(document, dict):
        caption = _text(document.get("caption"))
        file_name = _text(document.get("fileName")) or _text(document.get("title"))
        media = AttachmentDescriptor(
            type="document",
            mimetype=document.get("mimetype"),
            file_name=file_name or None,
            caption=caption or None,
        )
        return _tag("document", caption or file_name), media

    contact = message.get("contactMessage")
    if isinstance(contact, dict):
        return _tag("contact", _text(contact.get("displayName"))), AttachmentDescriptor(type="contact")

    contacts = message.get("contactsArrayMessage")
    if isinstance(contacts, dict):
        return _tag("contact", _text(contacts.get("displayName"))), AttachmentDescriptor(type="contact")

    for key in ("locationMessage", "liveLocationMessage"):
        location = message.get(key)
        if isinstance(location, dict):
            detail = _text(location.get("name")) or _text(location.get("address"))
            return _tag("location", detail), AttachmentDescriptor(type="location")

    poll = message.get("pollCreationMessage") or message.get("pollCreationMessageV3")
    if isinstance(poll, dict) and _text(poll.get("name")):
        return f"[Poll] {_text(poll.get('name'))}", None

    return "", None


def message_kind(message: dict[str, Any]) -> str:
    """Return the first content key of a message node (e.g. 'imageMessage')."""
    for key in message:
        if key == "conversation" or (key.endswith("Message") and key != "messageContextInfo"):
            return key
    return "unknown"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a gateway messageTimestamp (int, numeric string, or protobuf Long)."""
    if isinstance(value, dict):
        # protobuf Long serialized as {"low": ..., "high": ..., "unsigned": ...}
        low = value.get("low")
        high = value.get("high", 0)
        if not isinstance(low, int):
            return None
        value = (int(high or 0) << 32) + (low & 0xFFFFFFFF)
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= 0:
        return None
    return from_epoch(value)


def normalize_message(
    raw: dict[str, Any],
    *,
    remote_jid: str | None = None,
    id_source: str | None = None,
) -> NormalizedMessage | None:
    """Normalize one raw gateway message.

    Args:
        raw: Message object as returned by findMessages/fetchMessages.
        remote_jid: Chat JID to fall back to when key.remoteJid is missing.
        id_source: Endpoint family the record came from; kept only when the
            message has an external ID.

    Returns:
        NormalizedMessage, or None when the message must be dropped: no
        extractable content (reactions, protocol/system messages), or neither
        an external ID nor a timestamp to anchor it.

    Raises:
        InvalidPayloadError: If the payload is not an object or has no chat JID.
    """
    if not isinstance(raw, dict):
        raise InvalidPayloadError("message is not an object")

    key = raw.get("key") if isinstance(raw.get("key"), dict) else {}
    chat_jid = key.get("remoteJid") or raw.get("remoteJid") or remote_jid
    if not chat_jid or not isinstance(chat_jid, str):
        raise InvalidPayloadError("missing remoteJid")

    node = raw.get("message")
    if not isinstance(node, dict):
        node = raw
    node = _unwrap(node)

    content, media = extract_content(node)
    if not content:
        return None

    external_id = key.get("id") or raw.get("keyId") or raw.get("messageId") or raw.get("id")
    if external_id is not None and not isinstance(external_id, str):
        external_id = str(external_id)

    # Send time is required: import time would break ordering and fuzzy dedup
    timestamp = parse_timestamp(raw.get("messageTimestamp")) or _parse_iso(raw.get("createdAt"))
    if timestamp is None:
        return None

    from_me = key.get("fromMe") is True or raw.get("fromMe") is True
    is_group = parse_jid(chat_jid).is_group
    sender_type: SenderType
    if from_me:
        sender_type = "agent"
    elif is_group:
        sender_type = "contact"
    else:
        sender_type = "user"

    push_name = raw.get("pushName")
    participant = key.get("participant") or raw.get("participant")

    return NormalizedMessage(
        external_id=external_id or None,
        content=content,
        timestamp=timestamp,
        from_me=from_me,
        sender_type=sender_type,
        remote_jid=chat_jid,
        message_type=raw.get("messageType") or message_kind(node),
        media=media,
        participant=participant if isinstance(participant, str) else None,
        push_name=push_name if isinstance(push_name, str) else None,
        id_source=id_source if external_id else None,
    )


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return ensure_aware(parsed)


def normalize_batch(
    records: Iterable[dict[str, Any]],
    *,
    remote_jid: str,
    id_sources: Sequence[str | None] | None = None,
) -> tuple[list[NormalizedMessage], int, int]:
    """Normalize a fetched message list.

    id_sources, when given, is parallel to records (see FetchResult.record_sources).

    Returns:
        Tuple of (messages, dropped, invalid): messages sorted oldest first,
        count of dropped (no content) and invalid (bad shape) records.
    """
    messages: list[NormalizedMessage] = []
    dropped = 0
    invalid = 0
    for index, raw in enumerate(records):
        id_source = id_sources[index] if id_sources is not None else None
        try:
            normalized = normalize_message(raw, remote_jid=remote_jid, id_source=id_source)
        except InvalidPayloadError:
            invalid += 1
            continue
        if normalized is None:
            dropped += 1
            continue
        messages.append(normalized)
    messages.sort(key=lambda m: m.timestamp)
    return messages, dropped, invalid


def media_type_from_content(content: str) -> MediaType | None:
    """Recover the media kind from a persisted placeholder content string."""
    for kind, tag in PLACEHOLDERS.items():
        if content.startswith(tag):
            return kind  # type: ignore[return-value]
    return None
