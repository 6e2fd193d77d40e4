"""Contacts repair pass - name repair, LID resolution and duplicate merge.

Each step is individually switchable and honours dry-run. Steps run in
order (names, LIDs, merge) and each one re-reads contacts, so a LID resolved
in step two can be merged in step three.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context
from inboxsync.whatsapp.jid import parse_jid, phone_to_jid

from .identity import IdentityResolver, is_low_quality_name, pick_better_name, plan_merges
from .models import Contact
from .run import RunContext
from .settings import SyncSettings
from .store import SyncStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ContactRepairOptions:
    fix_names: bool = True
    resolve_lids: bool = True
    merge_duplicates: bool = True
    limit: int | None = None


@dataclass
class ContactRepairReport:
    names_fixed: int = 0
    lids_updated: int = 0
    lids_unresolved: int = 0
    merged: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def stats(self) -> dict[str, int]:
        return {
            "namesFixed": self.names_fixed,
            "lidsUpdated": self.lids_updated,
            "lidsUnresolved": self.lids_unresolved,
            "merged": self.merged,
        }


class ContactsRepair:
    def __init__(self, store: SyncStore, resolver: IdentityResolver, settings: SyncSettings) -> None:
        self._store = store
        self._resolver = resolver
        self._settings = settings

    def run(self, ctx: RunContext, options: ContactRepairOptions) -> ContactRepairReport:
        report = ContactRepairReport()
        if options.fix_names:
            self.fix_names(ctx, self._contacts(ctx, options), report)
        if options.resolve_lids:
            self.resolve_lids(ctx, self._contacts(ctx, options), report)
        if options.merge_duplicates:
            # Merge must see every contact sharing a phone, not a page
            self.merge_duplicates(ctx, self._store.list_contacts(ctx.company_id), report)

        logger.info(
            "contacts repair finished",
            extra={
                "extra_fields": safe_log_context(
                    dry_run=ctx.dry_run, error_count=len(report.errors), **report.stats()
                )
            },
        )
        return report

    def _contacts(self, ctx: RunContext, options: ContactRepairOptions) -> list[Contact]:
        return self._store.list_contacts(ctx.company_id, limit=options.limit)

    def fix_names(self, ctx: RunContext, contacts: list[Contact], report: ContactRepairReport) -> None:
        """Replace low-quality names with the best gateway name for the same chat."""
        candidates = [c for c in contacts if is_low_quality_name(c.name)]
        if not candidates:
            return
        directory = self._resolver.directory(ctx)

        for contact in candidates:
            name = directory.name_for(contact.remote_jid)
            if name is None and contact.phone:
                name = directory.name_for(phone_to_jid(contact.phone))
            if pick_better_name(contact.name, name) is None:
                continue
            try:
                self._resolver.improve_contact(ctx, contact, name=name)
            except Exception as e:
                logger.exception(
                    "name repair failed",
                    extra={"extra_fields": safe_log_context(contact_id=contact.id, error_type=type(e).__name__)},
                )
                report.errors.append(f"{contact.id}: name repair failed ({type(e).__name__})")
                continue
            report.names_fixed += 1
            report.results.append(
                {"contactId": contact.id, "step": "names", "status": "would_rename" if ctx.dry_run else "renamed"}
            )

    def resolve_lids(self, ctx: RunContext, contacts: list[Contact], report: ContactRepairReport) -> None:
        """Attach phones to phone-less LID contacts where a match is found.

        A phone that already belongs to another contact is reported as
        `phone_exists` and left alone.
        """
        directory = None
        for contact in contacts:
            if contact.phone or not contact.remote_jid or not parse_jid(contact.remote_jid).is_lid:
                continue
            try:
                if directory is None:
                    directory = self._resolver.directory(ctx)
                name = contact.name if not is_low_quality_name(contact.name) else directory.name_for(contact.remote_jid)
                status = self._resolve_one(ctx, contact, name)
            except Exception as e:
                logger.exception(
                    "lid resolution failed",
                    extra={"extra_fields": safe_log_context(contact_id=contact.id, error_type=type(e).__name__)},
                )
                report.errors.append(f"{contact.id}: lid resolution failed ({type(e).__name__})")
                continue

            if status in ("updated", "would_update"):
                report.lids_updated += 1
            else:
                report.lids_unresolved += 1
            report.results.append({"contactId": contact.id, "step": "lids", "status": status})

    def _resolve_one(self, ctx: RunContext, contact: Contact, name: str | None) -> str:
        match = self._resolver.match_lid(ctx, contact.remote_jid or "", name)
        if match.phone and match.applied:
            owner = self._store.find_contact_by_phone(ctx.company_id, match.phone)
            if owner is not None and owner.id != contact.id:
                return "phone_exists"
            if ctx.dry_run:
                return "would_update"
            self._store.update_contact(contact.id, phone=match.phone)
            return "updated"
        if match.match_type == "partial":
            if not ctx.dry_run and contact.metadata.get("lidCandidate") != match.phone:
                self._store.update_contact(contact.id, metadata={**contact.metadata, "lidCandidate": match.phone})
            return "needs_review"
        return "not_found"

    def merge_duplicates(self, ctx: RunContext, contacts: list[Contact], report: ContactRepairReport) -> None:
        """Fold contacts sharing a normalized phone into the earliest-created one."""
        for plan in plan_merges(contacts, country_code=self._settings.country_code):
            entry: dict[str, Any] = {
                "contactId": plan.primary.id,
                "step": "merge",
                "duplicates": [d.id for d in plan.duplicates],
            }
            if ctx.dry_run:
                entry["status"] = "would_merge"
                report.merged += len(plan.duplicates)
                report.results.append(entry)
                continue
            try:
                moved = 0
                primary = plan.primary
                for duplicate in plan.duplicates:
                    moved += self._store.reassign_conversations(duplicate.id, primary.id)
                    self._store.delete_contact(duplicate.id)
                    primary = self._resolver.improve_contact(
                        ctx,
                        primary,
                        name=duplicate.name,
                        avatar_url=duplicate.avatar_url,
                        remote_jid=duplicate.remote_jid,
                    )
                if primary.phone != plan.phone:
                    self._store.update_contact(primary.id, phone=plan.phone)
            except Exception as e:
                logger.exception(
                    "contact merge failed",
                    extra={"extra_fields": safe_log_context(contact_id=plan.primary.id, error_type=type(e).__name__)},
                )
                report.errors.append(f"{plan.primary.id}: merge failed ({type(e).__name__})")
                continue
            report.merged += len(plan.duplicates)
            entry.update(status="merged", conversationsMoved=moved)
            report.results.append(entry)
