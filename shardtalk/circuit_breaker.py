from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RECOVERY_TIMEOUT = 60.0  # seconds


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # One probe allowed through


@dataclass
class CircuitBreaker:
    """
    Per-destination breaker. State lives in memory for the process lifetime.

    CLOSED -> OPEN after failure_threshold consecutive failures.
    OPEN -> HALF_OPEN once recovery_timeout has passed since the last failure;
    a single probe is let through. Probe success closes the circuit and resets
    the failure count, probe failure reopens it with a fresh failure time.
    """

    name: str
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: Optional[datetime] = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    @property
    def state(self) -> CircuitState:
        """Return current state. Use allow_request() for state transitions."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._state != CircuitState.CLOSED

    def _check_recovery_transition(self) -> None:
        """Move OPEN -> HALF_OPEN once the cool-down has elapsed. Caller holds the lock."""
        if self._state == CircuitState.OPEN and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = False
                logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN, allowing probe")

    def allow_request(self) -> bool:
        with self._lock:
            self._check_recovery_transition()

            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                return False
            # HALF_OPEN: only one probe at a time
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit {self.name}: {self._state.value.upper()} -> CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)
            self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (probe failed)")
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit breaker opened for {self.name} after {self._failure_count} failures")


class CircuitBreakerRegistry:
    """Breakers keyed by destination, created on first use."""

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(
                    name=name,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                )
            return self._breakers[name]

    def get_all_states(self) -> Dict[str, str]:
        with self._lock:
            return {name: cb.state.value for name, cb in self._breakers.items()}

    def reset(self) -> None:
        """Forget every breaker."""
        with self._lock:
            self._breakers.clear()
