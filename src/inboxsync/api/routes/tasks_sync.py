"""Worker routes for WhatsApp reconciliation tasks.

POST /tasks/sync/reconcile        - driver run (recent | all | chats | conversation)
POST /tasks/sync/media-repair     - media recovery pass
POST /tasks/sync/contacts/repair  - name repair, LID resolution, duplicate merge
POST /tasks/sync/send-text        - send + record through the dedup gate
GET  /tasks/sync/connection-state/{instance_name}

Partial failures return 200 with success=false and an errors list. Only
setup/fatal errors return 4xx/5xx, always as {"success": false, "error"}.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from inboxsync.api.task_auth import require_task_auth
from inboxsync.domain.contacts_repair import ContactRepairOptions, ContactsRepair
from inboxsync.domain.dedupe import DedupGate
from inboxsync.domain.driver import ReconcileRequest, ReconciliationDriver, open_run, run_scope
from inboxsync.domain.errors import ConversationNotFoundError, SetupError
from inboxsync.domain.identity import IdentityResolver
from inboxsync.domain.media_repair import MediaRepairWorker
from inboxsync.domain.outbound import send_text_and_record
from inboxsync.domain.settings import SyncSettings
from inboxsync.domain.store import SyncStore
from inboxsync.domain.sync import build_synchronizer
from inboxsync.infra.pg_store import PgSyncStore
from inboxsync.infra.storage import BaseMediaStorage, MediaStorageError, get_media_storage
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context
from inboxsync.whatsapp.evolution_client import (
    CONNECTED_STATES,
    EvolutionClient,
    GatewayConfigError,
    GatewayError,
)

router = APIRouter(prefix="/tasks/sync", tags=["tasks"], dependencies=[Depends(require_task_auth)])

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Collaborators (overridden in tests)
# ---------------------------------------------------------------------------


def _get_store() -> SyncStore:
    return PgSyncStore()


def _get_gateway() -> EvolutionClient:
    return EvolutionClient()


def _get_settings() -> SyncSettings:
    return SyncSettings.from_env()


def _get_media_storage() -> BaseMediaStorage:
    return get_media_storage()


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ReconcileBody(_CamelModel):
    instance_name: str = Field(alias="instanceName", min_length=1)
    mode: Literal["recent", "all", "chats", "conversation"] = "recent"
    conversation_id: str | None = Field(default=None, alias="conversationId")
    limit: int = Field(default=20, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
    message_limit: int | None = Field(default=None, alias="messageLimit", ge=1, le=5000)
    dry_run: bool = Field(default=False, alias="dryRun")
    create_missing: bool = Field(default=True, alias="createMissing")
    exhaustive: bool = False
    deadline_seconds: float | None = Field(default=None, alias="deadlineSeconds", gt=0)


class MediaRepairBody(_CamelModel):
    instance_name: str = Field(alias="instanceName", min_length=1)
    limit: int = Field(default=50, ge=1, le=1000)
    dry_run: bool = Field(default=False, alias="dryRun")
    deadline_seconds: float | None = Field(default=None, alias="deadlineSeconds", gt=0)


class ContactsRepairBody(_CamelModel):
    instance_name: str = Field(alias="instanceName", min_length=1)
    dry_run: bool = Field(default=False, alias="dryRun")
    fix_names: bool = Field(default=True, alias="fixNames")
    resolve_lids: bool = Field(default=True, alias="resolveLids")
    merge_duplicates: bool = Field(default=True, alias="mergeDuplicates")
    limit: int | None = Field(default=None, ge=1)


class SendTextBody(_CamelModel):
    instance_name: str = Field(alias="instanceName", min_length=1)
    conversation_id: str = Field(alias="conversationId", min_length=1)
    text: str = Field(min_length=1, max_length=4096)


# ---------------------------------------------------------------------------
# Error payloads
# ---------------------------------------------------------------------------


def _fatal(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _fatal_from_exception(exc: Exception, *, task: str) -> JSONResponse:
    """Map setup/fatal exceptions to a structured error response."""
    if isinstance(exc, (SetupError, ConversationNotFoundError)):
        status_code = exc.status_code
        error = str(exc)
    elif isinstance(exc, GatewayConfigError):
        status_code, error = 500, "gateway not configured"
    elif isinstance(exc, MediaStorageError):
        status_code, error = 500, "media storage not configured"
    elif isinstance(exc, GatewayError):
        status_code, error = 502, f"gateway error ({exc.kind})"
    else:
        status_code, error = 500, "internal error"

    log = logger.warning if status_code < 500 else logger.error
    log(
        "sync task aborted",
        extra={
            "extra_fields": safe_log_context(
                task=task, status_code=status_code, error_type=type(exc).__name__
            )
        },
    )
    return _fatal(status_code, error)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/reconcile")
def reconcile(body: ReconcileBody) -> Any:
    """Run the reconciliation driver for one instance."""
    try:
        store = _get_store()
        gateway = _get_gateway()
        settings = _get_settings()
        driver = ReconciliationDriver(
            store,
            gateway,
            settings,
            synchronizer=build_synchronizer(store, gateway, settings),
        )
        report = driver.run(
            ReconcileRequest(
                instance_name=body.instance_name,
                mode=body.mode,
                conversation_id=body.conversation_id,
                limit=body.limit,
                offset=body.offset,
                message_limit=body.message_limit,
                dry_run=body.dry_run,
                create_missing=body.create_missing,
                exhaustive=body.exhaustive,
                deadline_seconds=body.deadline_seconds,
            )
        )
    except Exception as exc:
        return _fatal_from_exception(exc, task="reconcile")
    return report.to_dict()


@router.post("/media-repair")
def media_repair(body: MediaRepairBody) -> Any:
    """Recover or mark unavailable media placeholders."""
    try:
        store = _get_store()
        gateway = _get_gateway()
        worker = MediaRepairWorker(store, gateway, _get_media_storage(), _get_settings())
        ctx = open_run(
            store,
            gateway,
            body.instance_name,
            dry_run=body.dry_run,
            deadline_seconds=body.deadline_seconds,
        )
        with run_scope(ctx):
            report = worker.run(ctx, limit=body.limit)
    except Exception as exc:
        return _fatal_from_exception(exc, task="media_repair")
    return {
        "success": not report.errors,
        "runId": ctx.run_id,
        "dryRun": ctx.dry_run,
        "stats": report.stats(),
        "results": [item.to_dict() for item in report.items],
        "errors": report.errors,
        "stoppedByDeadline": report.stopped_by_deadline,
    }


@router.post("/contacts/repair")
def contacts_repair(body: ContactsRepairBody) -> Any:
    """Run name repair, LID resolution and duplicate merge."""
    try:
        store = _get_store()
        gateway = _get_gateway()
        settings = _get_settings()
        repair = ContactsRepair(store, IdentityResolver(store, gateway, settings), settings)
        ctx = open_run(store, gateway, body.instance_name, dry_run=body.dry_run)
        with run_scope(ctx):
            report = repair.run(
                ctx,
                ContactRepairOptions(
                    fix_names=body.fix_names,
                    resolve_lids=body.resolve_lids,
                    merge_duplicates=body.merge_duplicates,
                    limit=body.limit,
                ),
            )
    except Exception as exc:
        return _fatal_from_exception(exc, task="contacts_repair")
    return {
        "success": not report.errors,
        "runId": ctx.run_id,
        "dryRun": ctx.dry_run,
        "stats": report.stats(),
        "results": report.results,
        "errors": report.errors,
    }


@router.post("/send-text")
def send_text(body: SendTextBody) -> Any:
    """Send a text to a conversation and record it."""
    try:
        store = _get_store()
        gateway = _get_gateway()
        settings = _get_settings()
        synchronizer = build_synchronizer(store, gateway, settings)
        ctx = open_run(store, gateway, body.instance_name)
        with run_scope(ctx):
            result = send_text_and_record(
                ctx,
                store=store,
                gateway=gateway,
                gate=DedupGate(store, settings),
                synchronizer=synchronizer,
                conversation_id=body.conversation_id,
                text=body.text,
            )
    except Exception as exc:
        return _fatal_from_exception(exc, task="send_text")
    return {
        "success": True,
        "conversationId": result.conversation_id,
        "externalId": result.external_id,
        "recorded": result.recorded,
    }


@router.get("/connection-state/{instance_name}")
def connection_state(instance_name: str) -> Any:
    """Report the gateway session state for an instance."""
    try:
        state = _get_gateway().connection_state(instance_name)
    except Exception as exc:
        return _fatal_from_exception(exc, task="connection_state")
    return {"success": True, "instanceName": instance_name, "state": state, "connected": state in CONNECTED_STATES}
