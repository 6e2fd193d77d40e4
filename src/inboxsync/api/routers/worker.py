"""Worker routes (APP_ROLE=worker): reconciliation tasks."""

from fastapi import APIRouter

from inboxsync.api.routes import tasks_sync

router = APIRouter()
router.include_router(tasks_sync.router)


@router.get("/tasks/health")
def tasks_health() -> dict:
    return {"status": "ok", "subsystem": "tasks"}
