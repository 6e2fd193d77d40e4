"""Response envelope parsing for gateway list endpoints.

The gateway returns the same message list in several envelopes depending on
endpoint and version:

    [ {...}, ... ]                                   bare array
    {"messages": [ ... ]}                            messages array
    {"messages": {"total": n, "pages": p,
                  "currentPage": c, "records": [...]}}  paged records
    {"records": [ ... ]}                             records array

parse_message_envelope() maps each observed shape to one variant of a
tagged union; nothing downstream inspects raw envelopes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union


class MalformedEnvelopeError(Exception):
    """Raised when a gateway payload matches no known envelope shape."""

    pass


def _records(items: list[Any]) -> list[dict[str, Any]]:
    return [item for item in items if isinstance(item, dict)]


@dataclass(frozen=True)
class BareList:
    records: list[dict[str, Any]]
    shape: Literal["array"] = "array"


@dataclass(frozen=True)
class MessagesList:
    records: list[dict[str, Any]]
    shape: Literal["messages"] = "messages"


@dataclass(frozen=True)
class PagedRecords:
    records: list[dict[str, Any]]
    total: int | None = None
    pages: int | None = None
    current_page: int | None = None
    shape: Literal["paged"] = "paged"

    @property
    def has_next_page(self) -> bool:
        if self.pages is None or self.current_page is None:
            return False
        return self.current_page < self.pages


@dataclass(frozen=True)
class RecordsList:
    records: list[dict[str, Any]] = field(default_factory=list)
    shape: Literal["records"] = "records"


MessageEnvelope = Union[BareList, MessagesList, PagedRecords, RecordsList]


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_message_envelope(data: Any) -> MessageEnvelope:
    """Classify a message-list payload.

    Raises:
        MalformedEnvelopeError: If the payload matches no known shape.
    """
    if isinstance(data, list):
        return BareList(records=_records(data))

    if not isinstance(data, dict):
        raise MalformedEnvelopeError(f"unexpected payload type {type(data).__name__}")

    messages = data.get("messages")
    if isinstance(messages, list):
        return MessagesList(records=_records(messages))
    if isinstance(messages, dict) and isinstance(messages.get("records"), list):
        return PagedRecords(
            records=_records(messages["records"]),
            total=_int_or_none(messages.get("total")),
            pages=_int_or_none(messages.get("pages")),
            current_page=_int_or_none(messages.get("currentPage")),
        )
    if isinstance(data.get("records"), list):
        return RecordsList(records=_records(data["records"]))

    raise MalformedEnvelopeError(f"unknown message envelope keys={sorted(data.keys())}")


def parse_list_envelope(data: Any, *keys: str) -> list[dict[str, Any]]:
    """Unwrap a bare array or the first list found under one of `keys`.

    Used for chats (`chats`/`data`), contacts (`contacts`/`data`) and groups.

    Raises:
        MalformedEnvelopeError: If no list is found.
    """
    if isinstance(data, list):
        return _records(data)
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return _records(value)
    raise MalformedEnvelopeError(f"no list under keys={list(keys)}")
