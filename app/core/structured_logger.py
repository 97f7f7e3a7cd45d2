"""
Structured logging normalization.

Single contract for critical lifecycle logs:
- component
- operation
- correlation_id (optional)
- outcome
- duration_ms (optional, omitted if None)
- reason (optional)

Do not log secrets or full payloads.
"""
from logging import Logger
from typing import Optional

from app.core.metrics import get_metrics
from app.core.result import Result


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    outcome: str,
    correlation_id: Optional[str] = None,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
) -> None:
    """
    Emit one lifecycle line. component/operation/outcome always travel in
    extra=; correlation_id, duration_ms and reason only when set.
    The message defaults to "<component> <operation> outcome=<outcome>".
    """
    optional = {"correlation_id": correlation_id, "duration_ms": duration_ms, "reason": reason}
    extra = {"component": component, "operation": operation, "outcome": outcome}
    extra.update({key: value for key, value in optional.items() if value is not None})
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    emit = getattr(logger, level.lower(), logger.info)
    emit(message or f"{component} {operation} outcome={outcome}", extra=extra)


def log_result(logger: Logger, *, component: str, operation: str, result: Result) -> Result:
    """
    Log the outcome of a best-effort operation and count its failures.
    Returns the result unchanged so call sites can `return log_result(...)`.
    """
    if result.ok:
        log_event(logger, component=component, operation=operation, outcome="success")
    else:
        get_metrics().increment_counter("best_effort_failures_total")
        log_event(
            logger,
            component=component,
            operation=operation,
            outcome="failed",
            reason=f"{result.error_kind.value}: {result.detail}" if result.error_kind else result.detail,
            level="warning",
        )
    return result
