"""Reconciliation driver - the batch loop over chats or conversations.

Modes:
- recent: one page of local conversations by recency (offset/limit)
- all: every local conversation, page by page, until done or out of time
- chats: the gateway's chat list (discovers chats missing locally)
- conversation: one explicit conversation ID

Any single item's failure is recorded and the loop continues. Setup
problems (unknown instance, disconnected gateway) abort before the loop.
When the deadline expires the run stops and reports `next_offset` so the
caller can resume.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterator, Literal

from inboxsync.observability.correlation import reset_run_id, set_run_id
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import hash_identifier, safe_log_context
from inboxsync.whatsapp.evolution_client import CONNECTED_STATES, EvolutionClient, GatewayError
from inboxsync.whatsapp.jid import is_syncable, parse_jid
from inboxsync.whatsapp.models import RemoteChat

from .errors import ConversationNotFoundError, InstanceNotFoundError, SetupError
from .models import Conversation
from .run import Deadline, ItemResult, RunContext
from .settings import SyncSettings
from .store import SyncStore
from .sync import ConversationSynchronizer, build_synchronizer

logger = get_logger(__name__)

Mode = Literal["recent", "all", "chats", "conversation"]

DEFAULT_PAGE_SIZE = 20


@dataclass(frozen=True)
class ReconcileRequest:
    instance_name: str
    mode: Mode = "recent"
    conversation_id: str | None = None
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0
    message_limit: int | None = None
    dry_run: bool = False
    create_missing: bool = True
    exhaustive: bool = False
    deadline_seconds: float | None = None


@dataclass
class RunReport:
    ctx: RunContext
    next_offset: int | None = None
    stopped_by_deadline: bool = False

    @property
    def success(self) -> bool:
        return not self.ctx.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "runId": self.ctx.run_id,
            "dryRun": self.ctx.dry_run,
            "stats": self.ctx.stats.to_dict(),
            "results": [r.to_dict() for r in self.ctx.results],
            "errors": list(self.ctx.errors),
            "nextOffset": self.next_offset,
            "stoppedByDeadline": self.stopped_by_deadline,
        }


def open_run(
    store: SyncStore,
    gateway: EvolutionClient,
    instance_name: str,
    *,
    dry_run: bool = False,
    deadline_seconds: float | None = None,
) -> RunContext:
    """Resolve the tenant for an instance and check the gateway session.

    Raises:
        InstanceNotFoundError: Instance is not registered.
        SetupError: Gateway session is not connected or unreachable.
    """
    instance = store.get_instance(instance_name)
    if instance is None:
        raise InstanceNotFoundError(f"instance not found: {instance_name}")

    try:
        state = gateway.connection_state(instance_name)
    except GatewayError as e:
        raise SetupError(f"could not read connection state ({e.kind})") from e
    if state not in CONNECTED_STATES:
        raise SetupError(f"instance not connected (state={state})")

    return RunContext(
        company_id=instance.company_id,
        instance_name=instance_name,
        dry_run=dry_run,
        deadline=Deadline(deadline_seconds),
    )


@contextmanager
def run_scope(ctx: RunContext) -> Iterator[RunContext]:
    """Tag log records with the run ID while the run executes."""
    token = set_run_id(ctx.run_id)
    try:
        yield ctx
    finally:
        reset_run_id(token)


class ReconciliationDriver:
    def __init__(
        self,
        store: SyncStore,
        gateway: EvolutionClient,
        settings: SyncSettings,
        *,
        synchronizer: ConversationSynchronizer | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._settings = settings
        self._synchronizer = synchronizer or build_synchronizer(store, gateway, settings)

    def run(self, request: ReconcileRequest) -> RunReport:
        """Execute one reconciliation run.

        Raises:
            SetupError / InstanceNotFoundError: before any item is processed.
            ConversationNotFoundError: mode=conversation with an unknown ID.
        """
        ctx = open_run(
            self._store,
            self._gateway,
            request.instance_name,
            dry_run=request.dry_run,
            deadline_seconds=request.deadline_seconds,
        )
        with run_scope(ctx):
            logger.info(
                "reconciliation run started",
                extra={
                    "extra_fields": safe_log_context(
                        mode=request.mode,
                        limit=request.limit,
                        offset=request.offset,
                        dry_run=request.dry_run,
                        exhaustive=request.exhaustive,
                    )
                },
            )
            if request.mode == "conversation":
                report = self._run_single(ctx, request)
            elif request.mode == "chats":
                report = self._run_chats(ctx, request)
            elif request.mode == "all":
                report = self._run_all(ctx, request)
            else:
                report = self._run_recent(ctx, request)

            self._refresh_recency(ctx)
            logger.info(
                "reconciliation run finished",
                extra={
                    "extra_fields": safe_log_context(
                        mode=request.mode,
                        next_offset=report.next_offset,
                        stopped_by_deadline=report.stopped_by_deadline,
                        error_count=len(ctx.errors),
                        **ctx.stats.to_dict(),
                    )
                },
            )
        return report

    # --- modes ------------------------------------------------------------

    def _run_single(self, ctx: RunContext, request: ReconcileRequest) -> RunReport:
        if not request.conversation_id:
            raise SetupError("conversationId is required for mode=conversation")
        conversation = self._store.get_conversation(ctx.company_id, request.conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"conversation {request.conversation_id} not found")
        self._process_conversations(ctx, [conversation], request)
        return RunReport(ctx)

    def _run_recent(self, ctx: RunContext, request: ReconcileRequest) -> RunReport:
        conversations = self._store.list_conversations(ctx.company_id, limit=request.limit, offset=request.offset)
        done = self._process_conversations(ctx, conversations, request)
        if done < len(conversations):
            return RunReport(ctx, next_offset=request.offset + done, stopped_by_deadline=True)
        # A full page means there may be more
        next_offset = request.offset + done if len(conversations) == request.limit else None
        return RunReport(ctx, next_offset=next_offset)

    def _run_all(self, ctx: RunContext, request: ReconcileRequest) -> RunReport:
        offset = request.offset
        while True:
            page = self._store.list_conversations(ctx.company_id, limit=request.limit, offset=offset)
            if not page:
                return RunReport(ctx)
            done = self._process_conversations(ctx, page, request)
            offset += done
            if done < len(page):
                return RunReport(ctx, next_offset=offset, stopped_by_deadline=True)
            if len(page) < request.limit:
                return RunReport(ctx)

    def _run_chats(self, ctx: RunContext, request: ReconcileRequest) -> RunReport:
        chats = [c for c in self._gateway.find_chats(ctx.instance_name) if is_syncable(c.remote_jid)]
        # Most recent first; chats without a timestamp last
        chats.sort(key=lambda c: c.last_message_at.timestamp() if c.last_message_at else 0.0, reverse=True)
        page = chats[request.offset : request.offset + request.limit]
        page = self._with_group_names(ctx, page)

        done = 0
        for chat in page:
            if ctx.deadline.expired():
                return RunReport(ctx, next_offset=request.offset + done, stopped_by_deadline=True)
            ctx.record(self._guarded(ctx, lambda chat=chat: self._sync_chat(ctx, chat, request), chat=chat))
            done += 1

        has_more = request.offset + done < len(chats)
        return RunReport(ctx, next_offset=request.offset + done if has_more else None)

    # --- helpers ------------------------------------------------------------

    def _sync_chat(self, ctx: RunContext, chat: RemoteChat, request: ReconcileRequest) -> ItemResult:
        return self._synchronizer.sync_chat(
            ctx,
            chat,
            create_missing=request.create_missing,
            message_limit=request.message_limit,
            exhaustive=request.exhaustive,
        )

    def _process_conversations(
        self,
        ctx: RunContext,
        conversations: list[Conversation],
        request: ReconcileRequest,
    ) -> int:
        """Sync conversations in order; returns how many were processed before the deadline."""
        done = 0
        for conversation in conversations:
            if ctx.deadline.expired():
                break
            ctx.record(
                self._guarded(
                    ctx,
                    lambda conversation=conversation: self._synchronizer.sync_conversation(
                        ctx,
                        conversation,
                        message_limit=request.message_limit,
                        exhaustive=request.exhaustive,
                    ),
                    conversation=conversation,
                )
            )
            done += 1
        return done

    def _guarded(
        self,
        ctx: RunContext,
        work: Callable[[], ItemResult],
        *,
        conversation: Conversation | None = None,
        chat: RemoteChat | None = None,
    ) -> ItemResult:
        """Run one item; any exception becomes an `error` result."""
        try:
            return work()
        except Exception as e:
            jid_hash = hash_identifier(chat.remote_jid) if chat else None
            logger.exception(
                "reconciliation item failed",
                extra={
                    "extra_fields": safe_log_context(
                        conversation_id=conversation.id if conversation else None,
                        jid_hash=jid_hash,
                        error_type=type(e).__name__,
                    )
                },
            )
            return ItemResult(
                status="error",
                conversation_id=conversation.id if conversation else None,
                contact_id=conversation.contact_id if conversation else None,
                jid_hash=jid_hash,
                error=f"{type(e).__name__}: {e}",
            )

    def _with_group_names(self, ctx: RunContext, chats: list[RemoteChat]) -> list[RemoteChat]:
        """Fill missing group names/pictures from fetchAllGroups (one call)."""
        if not any(parse_jid(c.remote_jid).is_group and not c.name for c in chats):
            return chats
        try:
            groups = {g.remote_jid: g for g in self._gateway.fetch_all_groups(ctx.instance_name)}
        except GatewayError as e:
            logger.warning(
                "group metadata unavailable",
                extra={"extra_fields": safe_log_context(error_kind=e.kind, status=e.status)},
            )
            return chats

        enriched: list[RemoteChat] = []
        for chat in chats:
            group = groups.get(chat.remote_jid)
            if group is not None and not chat.name:
                chat = replace(
                    chat,
                    name=group.subject,
                    profile_picture_url=chat.profile_picture_url or group.picture_url,
                )
            enriched.append(chat)
        return enriched

    def _refresh_recency(self, ctx: RunContext) -> None:
        """Final pass: updated_at = newest persisted message for touched conversations."""
        if ctx.dry_run:
            return
        for conversation_id in sorted(ctx.touched_conversations):
            try:
                self._store.refresh_recency_from_messages(conversation_id)
            except Exception as e:
                logger.exception(
                    "recency refresh failed",
                    extra={"extra_fields": safe_log_context(conversation_id=conversation_id)},
                )
                ctx.errors.append(f"{conversation_id}: recency refresh failed ({type(e).__name__})")
