"""WhatsApp gateway models (normalized view of loosely-typed gateway JSON)."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

MediaType = Literal[
    "image",
    "audio",
    "video",
    "document",
    "sticker",
    "contact",
    "location",
]

SenderType = Literal["user", "agent", "bot", "contact"]

# Media kinds whose bytes live upstream and can be downloaded
BINARY_MEDIA_TYPES: frozenset[str] = frozenset(
    {"image", "audio", "video", "document", "sticker"}
)


@dataclass(frozen=True)
class AttachmentDescriptor:
    """Media facts extracted from a raw gateway message (no bytes)."""

    type: MediaType
    mimetype: str | None = None
    file_name: str | None = None
    caption: str | None = None
    ptt: bool = False

    def to_metadata(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "hasMedia": self.type in BINARY_MEDIA_TYPES}
        if self.mimetype:
            data["mimeType"] = self.mimetype
        if self.file_name:
            data["fileName"] = self.file_name
        if self.ptt:
            data["ptt"] = True
        return data


@dataclass(frozen=True)
class NormalizedMessage:
    """One gateway message mapped to the canonical shape.

    PII: `content`, `remote_jid`, `participant` and `push_name` must never
    be logged.
    """

    external_id: str | None
    content: str
    timestamp: datetime
    from_me: bool
    sender_type: SenderType
    remote_jid: str
    message_type: str
    media: AttachmentDescriptor | None = None
    participant: str | None = None
    push_name: str | None = None
    # Gateway surface that issued external_id; IDs are comparable only within one
    id_source: str | None = None

    @property
    def media_type(self) -> MediaType | None:
        return self.media.type if self.media else None


@dataclass(frozen=True)
class RemoteChat:
    """A chat entry from the gateway's chat list."""

    remote_jid: str
    name: str | None = None
    last_message_at: datetime | None = None
    profile_picture_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class RemoteContact:
    """A contact entry from findContacts/findChats used for name resolution."""

    remote_jid: str
    push_name: str | None = None
    verified_name: str | None = None
    name: str | None = None
    notify: str | None = None
    profile_picture_url: str | None = None

    def best_name(self) -> str | None:
        """Push name, then verified name, then saved name, then notify."""
        for candidate in (self.push_name, self.verified_name, self.name, self.notify):
            if candidate and candidate.strip():
                return candidate.strip()
        return None


@dataclass(frozen=True)
class RemoteGroup:
    remote_jid: str
    subject: str | None = None
    picture_url: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class MediaPayload:
    """Decoded media downloaded from the gateway."""

    data: bytes
    mimetype: str | None
    file_name: str | None = None
