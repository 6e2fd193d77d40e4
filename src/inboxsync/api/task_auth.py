"""Authentication for worker task endpoints.

Accepted credentials:
- A Google-signed OIDC bearer token (Cloud Scheduler / Cloud Tasks) whose
  audience is TASKS_OIDC_AUDIENCE and, when TASKS_OIDC_SERVICE_ACCOUNT is
  set, whose email matches it.
- X-Internal-Task-Secret == INTERNAL_TASK_SECRET, only while the audience is
  the local-dev sentinel.

Fails closed when TASKS_OIDC_AUDIENCE is unset.
"""

from __future__ import annotations

import hmac
import os

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context

logger = get_logger(__name__)

LOCAL_DEV_AUDIENCE = "inboxsync-tasks-local"
INTERNAL_SECRET_HEADER = "X-Internal-Task-Secret"


def extract_bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme != "Bearer" or not token:
        return None
    return token


def verify_task_oidc(token: str) -> bool:
    """Verify a Google OIDC token against the configured audience/account."""
    audience = os.environ.get("TASKS_OIDC_AUDIENCE")
    if not audience:
        logger.error(
            "TASKS_OIDC_AUDIENCE not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_audience_env")},
        )
        return False
    if not token:
        return False

    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), audience=audience)
    except ValueError as e:
        logger.warning(
            "OIDC token verification failed",
            extra={"extra_fields": safe_log_context(error=str(e), expected_audience=audience)},
        )
        return False

    expected_email = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    if expected_email and claims.get("email") != expected_email:
        logger.warning(
            "OIDC service account mismatch",
            extra={"extra_fields": safe_log_context(reason="service_account_mismatch")},
        )
        return False
    return True


def _internal_secret_ok(request: Request) -> bool:
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") != LOCAL_DEV_AUDIENCE:
        return False
    expected = os.environ.get("INTERNAL_TASK_SECRET", "")
    provided = request.headers.get(INTERNAL_SECRET_HEADER, "")
    return bool(expected) and hmac.compare_digest(expected, provided)


def verify_task_auth(request: Request) -> bool:
    if _internal_secret_ok(request):
        logger.info(
            "task auth via internal secret (local dev)",
            extra={"extra_fields": safe_log_context(auth_method="internal_secret")},
        )
        return True

    token = extract_bearer_token(request)
    if not token:
        logger.warning(
            "task auth failed: missing Bearer token",
            extra={"extra_fields": safe_log_context(reason="missing_bearer_token")},
        )
        return False
    return verify_task_oidc(token)


def require_task_auth(request: Request) -> None:
    """FastAPI dependency: 401 unless the caller is an authenticated task runner."""
    if not verify_task_auth(request):
        raise HTTPException(status_code=401, detail="Unauthorized")
