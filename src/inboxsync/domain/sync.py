"""Conversation synchronizer - fetch, normalize, dedupe and persist one chat.

Per (conversation, remoteJid):
1. Fetch raw records through the ordered fetch strategies.
2. Normalize (content + media descriptor + send time).
3. Admit through the dedup gate (the only insert path).
4. updated_at = max(updated_at, newest inserted message).
5. Backfill remoteJid/instanceName in conversation metadata.

Missing contacts and conversations are created first when allowed.
"""

from __future__ import annotations

from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import hash_identifier, safe_log_context
from inboxsync.whatsapp.evolution_client import EvolutionClient
from inboxsync.whatsapp.jid import is_syncable, phone_to_jid
from inboxsync.whatsapp.models import RemoteChat
from inboxsync.whatsapp.normalizer import normalize_batch

from .dedupe import DedupGate
from .identity import IdentityResolver
from .models import META_INSTANCE_NAME, META_REMOTE_JID, Conversation
from .run import ItemResult, RunContext
from .settings import SyncSettings
from .store import SyncStore

logger = get_logger(__name__)


class ConversationSynchronizer:
    def __init__(
        self,
        store: SyncStore,
        gateway: EvolutionClient,
        resolver: IdentityResolver,
        gate: DedupGate,
        settings: SyncSettings,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._resolver = resolver
        self._gate = gate
        self._settings = settings

    def remote_jid_for(self, ctx: RunContext, conversation: Conversation) -> str | None:
        """Chat address from conversation metadata, else from its contact."""
        if conversation.remote_jid:
            return conversation.remote_jid
        contact = self._store.get_contact(ctx.company_id, conversation.contact_id)
        if contact is None:
            return None
        if contact.remote_jid:
            return contact.remote_jid
        if contact.phone:
            return phone_to_jid(contact.phone)
        return None

    def sync_conversation(
        self,
        ctx: RunContext,
        conversation: Conversation,
        *,
        message_limit: int | None = None,
        exhaustive: bool = False,
    ) -> ItemResult:
        """Reconcile an existing local conversation against the gateway."""
        remote_jid = self.remote_jid_for(ctx, conversation)
        if not remote_jid:
            return ItemResult(
                status="no_remote_jid",
                conversation_id=conversation.id,
                contact_id=conversation.contact_id,
            )
        return self._sync_pair(
            ctx,
            conversation,
            remote_jid,
            message_limit=message_limit or self._settings.message_limit,
            exhaustive=exhaustive,
        )

    def sync_chat(
        self,
        ctx: RunContext,
        chat: RemoteChat,
        *,
        create_missing: bool = True,
        message_limit: int | None = None,
        exhaustive: bool = False,
    ) -> ItemResult:
        """Reconcile a gateway chat, creating its contact/conversation if missing."""
        jid_hash = hash_identifier(chat.remote_jid)
        if not is_syncable(chat.remote_jid):
            return ItemResult(status="skipped", jid_hash=jid_hash)

        resolution = self._resolver.resolve(
            ctx,
            chat.remote_jid,
            name=chat.name,
            avatar_url=chat.profile_picture_url,
            create=create_missing,
        )

        conversation = self._store.find_conversation_by_remote_jid(ctx.company_id, chat.remote_jid)
        if conversation is None and resolution.contact is not None:
            conversation = self._store.find_conversation_by_contact(ctx.company_id, resolution.contact.id)

        created = False
        if conversation is None:
            if not create_missing or ctx.dry_run or resolution.contact is None:
                return ItemResult(
                    status="missing_in_db",
                    contact_id=resolution.contact.id if resolution.contact else None,
                    jid_hash=jid_hash,
                    identity=resolution.status,
                )
            conversation = self._store.insert_conversation(
                ctx.company_id,
                resolution.contact.id,
                metadata={
                    META_REMOTE_JID: chat.remote_jid,
                    META_INSTANCE_NAME: ctx.instance_name,
                    "source": "sync",
                },
                updated_at=chat.last_message_at,
            )
            ctx.stats.conversations_created += 1
            created = True

        result = self._sync_pair(
            ctx,
            conversation,
            chat.remote_jid,
            message_limit=message_limit or self._settings.message_limit,
            exhaustive=exhaustive,
        )
        result.identity = resolution.status
        if created and result.status in ("synced", "already_synced"):
            result.status = "created"
        return result

    def _sync_pair(
        self,
        ctx: RunContext,
        conversation: Conversation,
        remote_jid: str,
        *,
        message_limit: int,
        exhaustive: bool,
    ) -> ItemResult:
        result = ItemResult(
            status="already_synced",
            conversation_id=conversation.id,
            contact_id=conversation.contact_id,
            jid_hash=hash_identifier(remote_jid),
        )

        fetch = self._gateway.fetch_message_records(
            ctx.instance_name,
            remote_jid,
            message_limit,
            exhaustive=exhaustive,
        )
        result.strategies = list(fetch.strategies_used)
        if not fetch.ok:
            result.status = "unsynced"
            if fetch.errors:
                result.error = "all fetch strategies failed: " + ", ".join(fetch.errors)
            return result

        messages, dropped, invalid = normalize_batch(
            fetch.records, remote_jid=remote_jid, id_sources=fetch.record_sources
        )
        result.fetched = len(fetch.records)
        result.dropped = dropped
        ctx.stats.invalid += invalid

        if ctx.dry_run:
            selection = self._gate.preview(conversation.id, messages)
            result.imported = len(selection.new)
            result.duplicates = selection.by_id
            result.fuzzy_duplicates = selection.by_fuzzy
            result.status = "synced" if selection.new else "already_synced"
            return result

        admitted = self._gate.admit(conversation.id, messages, source=f"sync:{ctx.run_id}")
        result.imported = len(admitted.inserted)
        result.duplicates = admitted.duplicates
        result.fuzzy_duplicates = admitted.fuzzy_duplicates
        result.failed = admitted.failed
        if admitted.chunk_errors:
            result.error = "insert failed: " + ", ".join(admitted.chunk_errors)

        newest = admitted.newest
        if newest is not None:
            self._store.bump_conversation_recency(conversation.id, newest)
            ctx.touched_conversations.add(conversation.id)
            result.status = "synced"

        self._backfill_metadata(ctx, conversation, remote_jid)

        logger.info(
            "conversation synced",
            extra={
                "extra_fields": safe_log_context(
                    jid_hash=result.jid_hash,
                    fetched=result.fetched,
                    imported=result.imported,
                    duplicates=result.duplicates,
                    fuzzy_duplicates=result.fuzzy_duplicates,
                    dropped=dropped,
                    invalid=invalid,
                    failed=result.failed,
                )
            },
        )
        return result

    def _backfill_metadata(self, ctx: RunContext, conversation: Conversation, remote_jid: str) -> None:
        patch: dict[str, str] = {}
        if not conversation.remote_jid:
            patch[META_REMOTE_JID] = remote_jid
        if not conversation.instance_name:
            patch[META_INSTANCE_NAME] = ctx.instance_name
        if patch:
            self._store.merge_conversation_metadata(conversation.id, patch)


def build_synchronizer(store: SyncStore, gateway: EvolutionClient, settings: SyncSettings) -> ConversationSynchronizer:
    """Wire a synchronizer with its resolver and gate over one store."""
    resolver = IdentityResolver(store, gateway, settings)
    return ConversationSynchronizer(store, gateway, resolver, DedupGate(store, settings), settings)
