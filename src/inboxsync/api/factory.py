"""FastAPI application factory with role-based route mounting."""

import os
from typing import Literal

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from inboxsync.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context

from .routers import public, worker

AppRole = Literal["public", "worker"]
APP_ROLES = ("public", "worker")

logger = get_logger(__name__)


def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Field locations only; input values may carry phone numbers or message text.
    fields = sorted({".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()})
    logger.warning(
        "request rejected",
        extra={"extra_fields": safe_log_context(path=request.url.path, fields=fields)},
    )
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "invalid request", "fields": fields},
    )


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create the app. Role defaults to APP_ROLE, then "public".

    Reconciliation endpoints are only mounted for the worker role.

    Raises:
        RuntimeError: If the role is not one of APP_ROLES.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]
    if role not in APP_ROLES:
        raise RuntimeError(f"APP_ROLE must be one of {APP_ROLES}, got {role!r}")

    app = FastAPI(title="InboxSync", docs_url=None, redoc_url=None)
    app.add_exception_handler(RequestValidationError, _validation_error)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(public.router)
    if role == "worker":
        app.include_router(worker.router)

    logger.info("app created", extra={"extra_fields": {"role": role}})
    return app
