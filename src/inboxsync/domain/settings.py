"""Reconciliation tunables, read once per run from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

from inboxsync.whatsapp.jid import DEFAULT_COUNTRY_CODE

DEFAULT_FUZZY_PREFIX_LEN = 30
DEFAULT_FUZZY_BUCKET_SECONDS = 10
DEFAULT_INSERT_CHUNK_SIZE = 50
DEFAULT_MESSAGE_LIMIT = 200
DEFAULT_MEDIA_MAX_BYTES = 16 * 1024 * 1024

_TRUTHY = {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer") from e
    if value <= 0:
        raise RuntimeError(f"{name} must be positive")
    return value


@dataclass(frozen=True)
class SyncSettings:
    """Thresholds shared by the gate, synchronizer, resolver and repair worker."""

    country_code: str = DEFAULT_COUNTRY_CODE
    fuzzy_prefix_len: int = DEFAULT_FUZZY_PREFIX_LEN
    fuzzy_bucket_seconds: int = DEFAULT_FUZZY_BUCKET_SECONDS
    insert_chunk_size: int = DEFAULT_INSERT_CHUNK_SIZE
    message_limit: int = DEFAULT_MESSAGE_LIMIT
    lid_auto_apply_partial: bool = False
    media_max_bytes: int = DEFAULT_MEDIA_MAX_BYTES

    @classmethod
    def from_env(cls) -> SyncSettings:
        """Build settings from SYNC_* / MEDIA_MAX_BYTES env vars.

        Raises:
            RuntimeError: If a numeric variable is not a positive integer.
        """
        return cls(
            country_code=os.environ.get("SYNC_DEFAULT_COUNTRY_CODE", DEFAULT_COUNTRY_CODE),
            fuzzy_prefix_len=_int_env("SYNC_FUZZY_PREFIX_LEN", DEFAULT_FUZZY_PREFIX_LEN),
            fuzzy_bucket_seconds=_int_env("SYNC_FUZZY_BUCKET_SECONDS", DEFAULT_FUZZY_BUCKET_SECONDS),
            insert_chunk_size=_int_env("SYNC_INSERT_CHUNK_SIZE", DEFAULT_INSERT_CHUNK_SIZE),
            message_limit=_int_env("SYNC_MESSAGE_LIMIT", DEFAULT_MESSAGE_LIMIT),
            lid_auto_apply_partial=os.environ.get("SYNC_LID_AUTO_APPLY_PARTIAL", "").lower() in _TRUTHY,
            media_max_bytes=_int_env("MEDIA_MAX_BYTES", DEFAULT_MEDIA_MAX_BYTES),
        )
