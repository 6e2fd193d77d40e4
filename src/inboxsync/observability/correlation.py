"""Correlation and run ID management for request and reconciliation tracing."""

import uuid
from contextvars import ContextVar, Token

# Context variables - accessible across calls made while handling one request/run
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
run_id_var: ContextVar[str] = ContextVar("run_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


def generate_run_id() -> str:
    """Generate a short reconciliation run ID."""
    return uuid.uuid4().hex[:16]


def get_run_id() -> str:
    """Get the reconciliation run ID active in this context (empty outside a run)."""
    return run_id_var.get()


def set_run_id(run_id: str) -> Token[str]:
    return run_id_var.set(run_id)


def reset_run_id(token: Token[str]) -> None:
    run_id_var.reset(token)
