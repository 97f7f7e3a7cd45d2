"""
In-memory circuit breaker for the Panel dependency.

The sweeper asks should_skip() before a tick and reports every namespace
listing with record_success()/record_failure(). After `failure_threshold`
consecutive failures the breaker opens and ticks are skipped for
`cooldown_seconds`; then one probe tick is let through (half-open). A probe
success closes the breaker, a probe failure opens it for another cooldown.

Never raises; state is per process.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    name: str
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreakerLite:
    """
    Usage:
        breaker = get_circuit_breaker("panel")
        if breaker.should_skip():
            return
        try:
            accounts = await panel.list_accounts(namespace)
            breaker.record_success()
        except PanelError:
            breaker.record_failure()
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], datetime] = _utcnow):
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[datetime] = None

    def _open(self, now: datetime) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        logger.warning(
            f"CIRCUIT_OPEN name={self.config.name} failures={self._failures} "
            f"cooldown={self.config.cooldown_seconds}s"
        )

    def _refresh(self, now: datetime) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if (now - self._opened_at).total_seconds() >= self.config.cooldown_seconds:
                self._state = CircuitState.HALF_OPEN
                logger.info(f"CIRCUIT_HALF_OPEN name={self.config.name}")

    def should_skip(self) -> bool:
        """True while OPEN; HALF_OPEN lets the caller probe."""
        with self._lock:
            self._refresh(self._clock())
            return self._state == CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"CIRCUIT_CLOSED name={self.config.name}")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._open(now)
            elif self._state == CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
                self._open(now)

    def get_state(self) -> CircuitState:
        with self._lock:
            self._refresh(self._clock())
            return self._state

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            self._refresh(self._clock())
            return {
                "name": self.config.name,
                "state": self._state.value,
                "failure_count": self._failures,
                "opened_at": self._opened_at.isoformat() if self._opened_at else None,
            }


_circuit_breakers: Dict[str, CircuitBreakerLite] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(component: str) -> CircuitBreakerLite:
    """Get or create the breaker for a component (default config)."""
    with _registry_lock:
        breaker = _circuit_breakers.get(component)
        if breaker is None:
            breaker = _circuit_breakers[component] = CircuitBreakerLite(CircuitBreakerConfig(name=component))
        return breaker


def reset_circuit_breakers() -> None:
    """Drop all breakers (for testing)"""
    with _registry_lock:
        _circuit_breakers.clear()
