"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "inboxsync"}
