"""Identity resolution - map a gateway chat address to a local contact.

Three address shapes reach the resolver:
- phone JID: keyed by normalized phone (at most one contact per phone)
- group JID: keyed by remoteJid, never has a phone
- LID: opaque, no phone. Resolved via a persisted LID -> phone mapping, or
  best-effort by matching the chat's display name against names seen on
  phone-JID chats/contacts. Unresolved LIDs stay phone-less contacts keyed by
  remoteJid (degraded, not an error).

Name quality: numeric names, raw JIDs and placeholder names are replaced
when a better name appears. A good name is never overwritten.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Literal

from inboxsync.infra.time import utc_now_iso
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import hash_identifier, safe_log_context
from inboxsync.whatsapp.evolution_client import EvolutionClient
from inboxsync.whatsapp.jid import extract_phone, normalize_phone, parse_jid
from inboxsync.whatsapp.models import RemoteChat, RemoteContact

from .models import Contact, LidMapping
from .run import IdentityStatus, RunContext
from .settings import SyncSettings
from .store import SyncStore

logger = get_logger(__name__)

# Placeholder names written by older importers
SENTINEL_NAMES = frozenset({"sem nome", "unknown", "desconhecido", "contato", "contact"})

MIN_PARTIAL_MATCH_LEN = 3

MatchType = Literal["mapping", "exact", "partial", "none"]

_PHONEISH = re.compile(r"^[\d\s+\-().]+$")
_SPACES = re.compile(r"\s+")


def is_low_quality_name(name: str | None) -> bool:
    """True for empty, numeric, raw-JID or placeholder names."""
    if not name or not name.strip():
        return True
    value = name.strip()
    if value.lower() in SENTINEL_NAMES:
        return True
    if _PHONEISH.match(value):
        return True
    if "@" in value and parse_jid(value).kind != "unknown":
        return True
    return False


def pick_better_name(current: str | None, candidate: str | None) -> str | None:
    """Return candidate when it improves on current, else None (never downgrade)."""
    if not candidate or is_low_quality_name(candidate):
        return None
    if not is_low_quality_name(current):
        return None
    candidate = candidate.strip()
    if current and current.strip() == candidate:
        return None
    return candidate


def name_key(name: str) -> str:
    return _SPACES.sub(" ", name.strip().lower())


@dataclass
class GatewayDirectory:
    """Names and phones observed on the gateway, built once per run."""

    names_by_jid: dict[str, str] = field(default_factory=dict)
    phone_by_name: dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        chats: Iterable[RemoteChat],
        contacts: Iterable[RemoteContact],
        *,
        country_code: str,
    ) -> GatewayDirectory:
        directory = cls()
        ambiguous: set[str] = set()

        def observe(jid: str, name: str | None) -> None:
            if not name or is_low_quality_name(name):
                return
            directory.names_by_jid.setdefault(jid, name.strip())
            phone = extract_phone(jid, country_code)
            if not phone:
                return
            key = name_key(name)
            known = directory.phone_by_name.get(key)
            if known and known != phone:
                ambiguous.add(key)
            directory.phone_by_name.setdefault(key, phone)

        # Contact names first: push name outranks the chat list's label
        for contact in contacts:
            observe(contact.remote_jid, contact.best_name())
        for chat in chats:
            observe(chat.remote_jid, chat.name)

        # A name shared by two phones identifies neither
        for key in ambiguous:
            directory.phone_by_name.pop(key, None)
        return directory

    def name_for(self, remote_jid: str | None) -> str | None:
        if not remote_jid:
            return None
        return self.names_by_jid.get(remote_jid)

    def match_name(self, name: str | None) -> tuple[str | None, MatchType]:
        """Find a phone whose display name matches exactly, else partially.

        A partial match counts only when it points at a single phone.
        """
        if not name or is_low_quality_name(name):
            return None, "none"
        key = name_key(name)
        phone = self.phone_by_name.get(key)
        if phone:
            return phone, "exact"

        if len(key) < MIN_PARTIAL_MATCH_LEN:
            return None, "none"
        partial = {
            candidate_phone
            for candidate, candidate_phone in self.phone_by_name.items()
            if len(candidate) >= MIN_PARTIAL_MATCH_LEN and (candidate in key or key in candidate)
        }
        if len(partial) == 1:
            return partial.pop(), "partial"
        return None, "none"


@dataclass(frozen=True)
class LidMatch:
    phone: str | None
    match_type: MatchType
    applied: bool


@dataclass(frozen=True)
class Resolution:
    """The contact to use for a chat, and how it was found.

    `contact` is None only when nothing exists and creation was not allowed
    (create=False or dry-run).
    """

    contact: Contact | None
    status: IdentityStatus
    created: bool = False


class IdentityResolver:
    def __init__(self, store: SyncStore, gateway: EvolutionClient, settings: SyncSettings) -> None:
        self._store = store
        self._gateway = gateway
        self._settings = settings

    # --- gateway directory --------------------------------------------------

    def directory(self, ctx: RunContext) -> GatewayDirectory:
        """Lazily load the run's name directory (one findChats + findContacts)."""
        if ctx.directory is None:
            chats = self._gateway.find_chats(ctx.instance_name)
            contacts = self._gateway.find_contacts(ctx.instance_name)
            ctx.directory = GatewayDirectory.build(chats, contacts, country_code=self._settings.country_code)
            logger.info(
                "gateway directory loaded",
                extra={
                    "extra_fields": safe_log_context(
                        chats=len(chats),
                        contacts=len(contacts),
                        named_phones=len(ctx.directory.phone_by_name),
                    )
                },
            )
        return ctx.directory

    # --- LID ------------------------------------------------------------------

    def match_lid(self, ctx: RunContext, lid_jid: str, display_name: str | None) -> LidMatch:
        """Resolve a LID to a phone: persisted mapping first, then name heuristic.

        Exact name matches are applied and persisted. Partial matches are only
        applied when lid_auto_apply_partial is set; otherwise the caller
        reports them for review.
        """
        mapping = self._store.get_lid_mapping(ctx.company_id, lid_jid)
        if mapping:
            return LidMatch(mapping.phone, "mapping", True)

        if not display_name:
            return LidMatch(None, "none", False)

        phone, match_type = self.directory(ctx).match_name(display_name)
        if phone is None:
            return LidMatch(None, "none", False)

        applied = match_type == "exact" or self._settings.lid_auto_apply_partial
        if applied and not ctx.dry_run:
            self._store.save_lid_mapping(
                ctx.company_id,
                LidMapping(lid_jid=lid_jid, phone=phone, match_type=match_type, contact_name=display_name),
            )
        logger.info(
            "lid name match",
            extra={
                "extra_fields": safe_log_context(
                    lid_hash=hash_identifier(lid_jid), match_type=match_type, applied=applied
                )
            },
        )
        return LidMatch(phone, match_type, applied)

    # --- contact maintenance ----------------------------------------------------

    def improve_contact(
        self,
        ctx: RunContext,
        contact: Contact,
        *,
        name: str | None = None,
        avatar_url: str | None = None,
        remote_jid: str | None = None,
    ) -> Contact:
        """Opportunistically repair name, avatar and remoteJid on a known contact."""
        fields: dict[str, Any] = {}
        better = pick_better_name(contact.name, name)
        if better:
            metadata = dict(contact.metadata)
            if contact.name:
                metadata["previousName"] = contact.name
            metadata["nameFixedAt"] = utc_now_iso()
            fields["name"] = better
            fields["metadata"] = metadata
        if avatar_url and not contact.avatar_url:
            fields["avatar_url"] = avatar_url
        if remote_jid and not contact.remote_jid:
            fields["remote_jid"] = remote_jid

        if not fields or ctx.dry_run:
            return contact
        self._store.update_contact(contact.id, **fields)
        return replace(contact, **fields)

    def _create(
        self,
        ctx: RunContext,
        *,
        name: str | None,
        phone: str | None,
        remote_jid: str,
        is_group: bool = False,
        avatar_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Resolution:
        if ctx.dry_run:
            return Resolution(None, "created", created=True)
        contact = self._store.insert_contact(
            ctx.company_id,
            name=name.strip() if name and not is_low_quality_name(name) else (phone or name),
            phone=phone,
            remote_jid=remote_jid,
            is_group=is_group,
            avatar_url=avatar_url,
            metadata=metadata or {},
        )
        ctx.stats.contacts_created += 1
        return Resolution(contact, "created", created=True)

    # --- entry point ----------------------------------------------------------

    def resolve(
        self,
        ctx: RunContext,
        remote_jid: str,
        *,
        name: str | None = None,
        avatar_url: str | None = None,
        create: bool = True,
    ) -> Resolution:
        """Return the local contact for a chat address, creating it if allowed."""
        jid = parse_jid(remote_jid)
        if jid.is_group:
            return self._resolve_group(ctx, remote_jid, name=name, avatar_url=avatar_url, create=create)
        if jid.is_lid:
            return self._resolve_lid(ctx, remote_jid, name=name, avatar_url=avatar_url, create=create)

        phone = extract_phone(remote_jid, self._settings.country_code)
        contact = None
        if phone:
            contact = self._store.find_contact_by_phone(ctx.company_id, phone)
        if contact is None:
            contact = self._store.find_contact_by_remote_jid(ctx.company_id, remote_jid)
        if contact is not None:
            contact = self.improve_contact(ctx, contact, name=name, avatar_url=avatar_url, remote_jid=remote_jid)
            return Resolution(contact, "resolved")
        if not create:
            return Resolution(None, "not_found")
        return self._create(
            ctx,
            name=name,
            phone=phone,
            remote_jid=remote_jid,
            avatar_url=avatar_url,
            metadata={"source": "sync"},
        )

    def _resolve_group(
        self,
        ctx: RunContext,
        remote_jid: str,
        *,
        name: str | None,
        avatar_url: str | None,
        create: bool,
    ) -> Resolution:
        contact = self._store.find_contact_by_remote_jid(ctx.company_id, remote_jid)
        if contact is not None:
            contact = self.improve_contact(ctx, contact, name=name, avatar_url=avatar_url)
            return Resolution(contact, "resolved")
        if not create:
            return Resolution(None, "not_found")
        return self._create(
            ctx,
            name=name,
            phone=None,
            remote_jid=remote_jid,
            is_group=True,
            avatar_url=avatar_url,
            metadata={"source": "sync"},
        )

    def _resolve_lid(
        self,
        ctx: RunContext,
        remote_jid: str,
        *,
        name: str | None,
        avatar_url: str | None,
        create: bool,
    ) -> Resolution:
        contact = self._store.find_contact_by_remote_jid(ctx.company_id, remote_jid)
        if contact is not None and contact.phone:
            contact = self.improve_contact(ctx, contact, name=name, avatar_url=avatar_url)
            return Resolution(contact, "resolved")

        match = self.match_lid(ctx, remote_jid, name or (contact.name if contact else None))

        if match.phone and match.applied:
            phone = normalize_phone(match.phone, self._settings.country_code)
            owner = self._store.find_contact_by_phone(ctx.company_id, phone)
            if owner is not None:
                if contact is not None and contact.id != owner.id:
                    # Two records for one person; left for the merge/review pass
                    return Resolution(contact, "phone_exists")
                owner = self.improve_contact(ctx, owner, name=name, avatar_url=avatar_url)
                return Resolution(owner, "resolved")
            if contact is not None:
                if not ctx.dry_run:
                    self._store.update_contact(contact.id, phone=phone)
                    contact = replace(contact, phone=phone)
                return Resolution(contact, "resolved")
            if not create:
                return Resolution(None, "not_found")
            return self._create(
                ctx,
                name=name,
                phone=phone,
                remote_jid=remote_jid,
                avatar_url=avatar_url,
                metadata={"source": "sync", "lidResolvedBy": match.match_type},
            )

        status: IdentityStatus = "needs_review" if match.match_type == "partial" else "not_found"
        candidate_meta = {"lidCandidate": match.phone} if status == "needs_review" else {}

        if contact is not None:
            if candidate_meta and contact.metadata.get("lidCandidate") != match.phone and not ctx.dry_run:
                metadata = {**contact.metadata, **candidate_meta}
                self._store.update_contact(contact.id, metadata=metadata)
                contact = replace(contact, metadata=metadata)
            contact = self.improve_contact(ctx, contact, name=name, avatar_url=avatar_url)
            return Resolution(contact, status)
        if not create:
            return Resolution(None, status)

        created = self._create(
            ctx,
            name=name,
            phone=None,
            remote_jid=remote_jid,
            avatar_url=avatar_url,
            metadata={"source": "sync", **candidate_meta},
        )
        return Resolution(created.contact, status, created=True)


@dataclass(frozen=True)
class MergePlan:
    """Duplicates of `primary` (same normalized phone), earliest-created first."""

    phone: str
    primary: Contact
    duplicates: list[Contact]


def plan_merges(contacts: Iterable[Contact], *, country_code: str) -> list[MergePlan]:
    """Group contacts by normalized phone; the earliest-created is primary.

    Idempotent: after the plan is applied, planning again returns nothing.
    """
    groups: dict[str, list[Contact]] = {}
    for contact in contacts:
        if not contact.phone or contact.is_group:
            continue
        phone = normalize_phone(contact.phone, country_code)
        if phone:
            groups.setdefault(phone, []).append(contact)

    plans: list[MergePlan] = []
    for phone, members in groups.items():
        if len(members) < 2:
            continue
        members.sort(key=lambda c: (c.created_at.timestamp() if c.created_at else float("inf"), c.id))
        plans.append(MergePlan(phone=phone, primary=members[0], duplicates=members[1:]))
    return plans
