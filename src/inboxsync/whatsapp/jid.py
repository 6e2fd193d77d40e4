"""JID parsing and phone normalization.

The gateway addresses chats as `<id>@<domain>`:
- `<digits>@s.whatsapp.net` (or legacy `@c.us`): phone contact
- `<digits>-<digits>@g.us` / `<digits>@g.us`: group
- `<opaque>@lid`: LID, no recoverable phone
- `status@broadcast`, `<id>@broadcast`: broadcast lists, never synced
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Literal

JidKind = Literal["phone", "group", "lid", "broadcast", "unknown"]

PHONE_DOMAINS = frozenset({"s.whatsapp.net", "c.us"})
GROUP_DOMAIN = "g.us"
LID_DOMAIN = "lid"
BROADCAST_DOMAIN = "broadcast"

PHONE_JID_SUFFIX = "@s.whatsapp.net"

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

DEFAULT_COUNTRY_CODE = "55"

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class Jid:
    """A parsed gateway address."""

    raw: str
    user: str
    domain: str
    kind: JidKind

    @property
    def is_group(self) -> bool:
        return self.kind == "group"

    @property
    def is_lid(self) -> bool:
        return self.kind == "lid"


def parse_jid(raw: str) -> Jid:
    """Split a JID into user/domain and classify it.

    Device suffixes (`5511...:12@s.whatsapp.net`) are dropped from the user part.
    A value without `@` is classified as unknown.
    """
    value = (raw or "").strip()
    if "@" not in value:
        return Jid(raw=value, user=value, domain="", kind="unknown")

    user, _, domain = value.partition("@")
    user = user.split(":", 1)[0]
    domain = domain.lower()

    kind: JidKind
    if domain in PHONE_DOMAINS:
        kind = "phone"
    elif domain == GROUP_DOMAIN:
        kind = "group"
    elif domain == LID_DOMAIN:
        kind = "lid"
    elif domain == BROADCAST_DOMAIN:
        kind = "broadcast"
    else:
        kind = "unknown"
    return Jid(raw=value, user=user, domain=domain, kind=kind)


def _country_code() -> str:
    return os.environ.get("SYNC_DEFAULT_COUNTRY_CODE", DEFAULT_COUNTRY_CODE)


def normalize_phone(raw: str, country_code: str | None = None) -> str:
    """Strip non-digits and prefix the country code on local-format numbers.

    Local numbers have 10 (landline) or 11 (mobile) digits; anything else is
    assumed to already carry a country code and is returned unchanged.

    >>> normalize_phone("11991480719")
    '5511991480719'
    >>> normalize_phone("5511991480719")
    '5511991480719'
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) in (10, 11):
        return (country_code or _country_code()) + digits
    return digits


def extract_phone(raw_jid: str, country_code: str | None = None) -> str | None:
    """Return the normalized phone behind a phone JID, or None.

    Group, LID and broadcast JIDs never yield a phone. The digit string must
    have 10-15 digits before normalization.
    """
    jid = parse_jid(raw_jid)
    if jid.kind in ("group", "lid", "broadcast"):
        return None

    digits = _NON_DIGITS.sub("", jid.user)
    if digits != jid.user.lstrip("+"):
        return None
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        return None
    return normalize_phone(digits, country_code)


def phone_to_jid(phone: str) -> str:
    return f"{phone}{PHONE_JID_SUFFIX}"


def is_syncable(raw_jid: str) -> bool:
    """True for chats the reconciliation engine imports (not broadcast/status)."""
    jid = parse_jid(raw_jid)
    return jid.kind in ("phone", "group", "lid")
