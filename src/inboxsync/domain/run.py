"""Per-run state: deadline, statistics, result list and run-scoped caches.

One RunContext is created per reconciliation invocation and passed
explicitly; nothing here is shared between runs.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Literal

from inboxsync.observability.correlation import generate_run_id

if TYPE_CHECKING:
    from .identity import GatewayDirectory

ItemStatus = Literal[
    "synced",
    "already_synced",
    "created",
    "no_remote_jid",
    "unsynced",
    "error",
    "missing_in_db",
    "skipped",
    "skipped_deadline",
]

IdentityStatus = Literal[
    "resolved",
    "created",
    "phone_exists",
    "not_found",
    "needs_review",
]


class Deadline:
    """Monotonic run deadline. None means unbounded."""

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds if seconds else None

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at


@dataclass
class RunStats:
    processed: int = 0
    synced: int = 0
    already_synced: int = 0
    unsynced: int = 0
    errors: int = 0
    missing_in_db: int = 0
    skipped: int = 0
    contacts_created: int = 0
    conversations_created: int = 0
    fetched: int = 0
    imported: int = 0
    duplicates: int = 0
    fuzzy_duplicates: int = 0
    dropped: int = 0
    invalid: int = 0
    failed_inserts: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ItemResult:
    """Outcome for one chat or conversation in a run."""

    status: ItemStatus
    conversation_id: str | None = None
    contact_id: str | None = None
    jid_hash: str | None = None
    identity: IdentityStatus | None = None
    fetched: int = 0
    imported: int = 0
    duplicates: int = 0
    fuzzy_duplicates: int = 0
    dropped: int = 0
    failed: int = 0
    strategies: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "status": self.status,
            "conversationId": self.conversation_id,
            "contactId": self.contact_id,
            "jidHash": self.jid_hash,
            "identity": self.identity,
            "fetched": self.fetched,
            "imported": self.imported,
            "duplicates": self.duplicates,
            "fuzzyDuplicates": self.fuzzy_duplicates,
            "dropped": self.dropped,
            "failed": self.failed,
            "strategies": self.strategies,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class RunContext:
    company_id: str
    instance_name: str
    dry_run: bool = False
    deadline: Deadline = field(default_factory=lambda: Deadline(None))
    run_id: str = field(default_factory=generate_run_id)
    stats: RunStats = field(default_factory=RunStats)
    results: list[ItemResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    # Gateway names and phones, loaded lazily by the identity resolver
    directory: GatewayDirectory | None = None
    # Conversations that received messages in this run
    touched_conversations: set[str] = field(default_factory=set)

    def record(self, result: ItemResult) -> None:
        """Append a result and fold it into the run statistics."""
        self.results.append(result)
        stats = self.stats
        stats.processed += 1
        stats.fetched += result.fetched
        stats.imported += result.imported
        stats.duplicates += result.duplicates
        stats.fuzzy_duplicates += result.fuzzy_duplicates
        stats.dropped += result.dropped
        stats.failed_inserts += result.failed

        if result.status in ("synced", "created"):
            stats.synced += 1
        elif result.status == "already_synced":
            stats.already_synced += 1
        elif result.status in ("unsynced", "no_remote_jid"):
            stats.unsynced += 1
        elif result.status == "error":
            stats.errors += 1
        elif result.status == "missing_in_db":
            stats.missing_in_db += 1
        else:
            stats.skipped += 1

        if result.error:
            label = result.conversation_id or result.jid_hash or "unknown"
            self.errors.append(f"{label}: {result.error}")
