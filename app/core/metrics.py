"""
In-memory metrics for the reconciliation engine and grant ledger.

Observation only: nothing here changes business behaviour.
Counters and timer summaries are reported by GET /health.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterator, Optional

# Samples kept per timer
TIMER_WINDOW = 1000

DEFAULT_COUNTERS = {
    "payments_succeeded_total": "Payments moved PENDING -> SUCCEEDED by a webhook",
    "payments_applied_total": "Payment effects applied (exactly once per payment)",
    "payments_apply_failed_total": "Payment applications that left the payment retryable",
    "promo_redemptions_total": "Promo codes applied",
    "sweep_ticks_total": "Background sweeper ticks",
    "sweep_subscriptions_total": "Subscriptions reconciled by the sweeper",
    "sweep_failures_total": "Per-subscription sweeper failures",
    "bans_enforced_total": "Panel accounts disabled by ban enforcement",
    "best_effort_failures_total": "Best-effort operations that returned an error result",
}


def _percentile(ordered, fraction: float) -> float:
    return ordered[min(len(ordered) - 1, int(len(ordered) * fraction))]


class Metrics:
    """Counters, gauges and rolling timers behind one lock."""

    def __init__(self, counters: Optional[Dict[str, str]] = None):
        self._lock = threading.RLock()
        self.descriptions: Dict[str, str] = dict(counters or {})
        self._counters: Dict[str, float] = {name: 0.0 for name in self.descriptions}
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, Deque[float]] = {}

    def increment_counter(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + value

    def get_counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def get_gauge(self, name: str) -> Optional[float]:
        with self._lock:
            return self._gauges.get(name)

    def record_timer(self, name: str, duration_ms: float) -> None:
        with self._lock:
            samples = self._timers.get(name)
            if samples is None:
                samples = self._timers[name] = deque(maxlen=TIMER_WINDOW)
            samples.append(duration_ms)

    def get_timer_stats(self, name: str) -> Dict[str, float]:
        """min/max/avg/p50/p95/count over the retained window; {} when nothing was recorded."""
        with self._lock:
            ordered = sorted(self._timers.get(name, ()))
        if not ordered:
            return {}
        return {
            "min": ordered[0],
            "max": ordered[-1],
            "avg": round(sum(ordered) / len(ordered), 3),
            "p50": _percentile(ordered, 0.50),
            "p95": _percentile(ordered, 0.95),
            "count": len(ordered),
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            timer_names = sorted(self._timers)
        return {
            "counters": counters,
            "gauges": gauges,
            "timers": {name: self.get_timer_stats(name) for name in timer_names},
        }


_metrics: Optional[Metrics] = None
_metrics_lock = threading.Lock()


def get_metrics() -> Metrics:
    global _metrics
    with _metrics_lock:
        if _metrics is None:
            _metrics = Metrics(DEFAULT_COUNTERS)
        return _metrics


def reset_metrics() -> None:
    """Drop the process-wide instance (for testing)"""
    global _metrics
    with _metrics_lock:
        _metrics = None


@contextmanager
def timer(metric_name: str) -> Iterator[None]:
    """
    Usage:
        with timer("panel_latency_ms"):
            await client.list_inbounds()

    The duration is recorded even when the block raises.
    """
    started = time.monotonic()
    try:
        yield
    finally:
        get_metrics().record_timer(metric_name, (time.monotonic() - started) * 1000.0)
