"""
Structured logging helpers for workers and the failure taxonomy.

Logging contract:
- correlation_id: unique identifier for one worker iteration / webhook delivery
- component: worker | service | webhook
- operation: subscription_sweep_iteration, payment_apply, ...
- outcome: success | degraded | failed | skipped
"""

import asyncio
import logging
import json
import uuid
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from contextvars import ContextVar

import asyncpg
import httpx

from app.core.result import ErrorKind

_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

logger = logging.getLogger(__name__)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


_OUTCOME_LEVELS = {
    "failed": logging.ERROR,
    "degraded": logging.WARNING,
}


def _emit_iteration(event: str, worker_name: str, level: int, fields: Dict[str, Any]) -> None:
    """One JSON line per iteration event; None-valued fields are dropped."""
    payload: Dict[str, Any] = {
        "event": event,
        "worker": worker_name,
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "correlation_id": get_correlation_id(),
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "level": logging.getLevelName(level),
    }
    payload.update((k, v) for k, v in fields.items() if v is not None)
    logger.log(level, json.dumps(payload, default=str))


def log_worker_iteration_start(worker_name: str, iteration_number: Optional[int] = None, **fields) -> str:
    """
    Bind a fresh correlation id for the iteration and log ITERATION_START.

    Returns:
        Correlation ID for this iteration
    """
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)
    _emit_iteration("ITERATION_START", worker_name, logging.INFO, {"iteration_number": iteration_number, **fields})
    return correlation_id


def log_worker_iteration_end(
    worker_name: str,
    outcome: str,
    items_processed: Optional[int] = None,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **fields
) -> None:
    """
    Log ITERATION_END; "failed" logs at ERROR, "degraded" at WARNING, the rest at INFO.

    Args:
        outcome: "success" | "degraded" | "failed" | "skipped"
        error_type: ErrorKind value (or "timeout") for failed iterations
    """
    _emit_iteration(
        "ITERATION_END",
        worker_name,
        _OUTCOME_LEVELS.get(outcome, logging.INFO),
        {
            "outcome": outcome,
            "items_processed": items_processed,
            "error_type": error_type or None,
            "duration_ms": duration_ms,
            **fields,
        },
    )


def classify_error(exception: BaseException) -> ErrorKind:
    """
    Map an exception onto the failure taxonomy.

    - TRANSIENT: Panel/provider/DB infrastructure failures (retry on next trigger)
    - DESYNC: Panel account referenced locally no longer exists
    - CONFLICT: lost a concurrency race (duplicate row)
    - PRECONDITION: domain rule violated / misconfiguration
    - UNEXPECTED: everything else (bugs)
    """
    import database
    from panel_client import (
        PanelError,
        PanelNotFoundError,
        PanelAuthError,
        PanelInvalidResponseError,
    )
    from app.services.subscriptions.exceptions import SubscriptionServiceError
    from app.services.payments.exceptions import PaymentServiceError
    from app.services.promo.exceptions import PromoServiceError
    from app.services.admin.exceptions import AdminServiceError

    if isinstance(exception, PanelNotFoundError):
        return ErrorKind.DESYNC
    if isinstance(exception, (PanelAuthError, PanelInvalidResponseError)):
        return ErrorKind.PRECONDITION
    if isinstance(exception, PanelError):
        return ErrorKind.TRANSIENT

    if isinstance(exception, database.DuplicateRowError):
        return ErrorKind.CONFLICT

    if isinstance(exception, (
        SubscriptionServiceError,
        PaymentServiceError,
        PromoServiceError,
        AdminServiceError,
    )):
        return ErrorKind.PRECONDITION

    if isinstance(exception, (
        asyncpg.PostgresError,
        asyncio.TimeoutError,
        httpx.HTTPError,
        ConnectionError,
        OSError,
    )):
        return ErrorKind.TRANSIENT

    return ErrorKind.UNEXPECTED
