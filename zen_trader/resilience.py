"""
Timeouts and circuit breaking for external collaborators.

Every oracle, signer, repository and venue call is bounded by an explicit
timeout. Repeated transient failures open a per-service circuit so later
ticks skip the collaborator quickly instead of hammering it.
States: CLOSED (normal) -> OPEN (failing) -> HALF_OPEN (testing recovery)
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

from .errors import CircuitBreakerOpen, TransientExternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_SERVICE = "store"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Circuit breaker for a specific collaborator.

    Tracks transient failures and opens the circuit when the threshold is
    reached. After cooldown, lets test requests through (half-open state).
    """

    service: str
    fail_threshold: int = 5
    cooldown_sec: float = 60.0
    half_open_successes: int = 2

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    last_failure_time: float = field(default=0.0, init=False)
    success_count_in_half_open: int = field(default=0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN and not self._cooldown_elapsed()

    @property
    def time_until_retry(self) -> float:
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.cooldown_sec - (time.monotonic() - self.last_failure_time))

    def _cooldown_elapsed(self) -> bool:
        return (time.monotonic() - self.last_failure_time) >= self.cooldown_sec

    async def acquire(self) -> None:
        """Raise CircuitBreakerOpen unless a request may go through."""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    raise CircuitBreakerOpen(self.service, self.time_until_retry)
                logger.info(f"Circuit '{self.service}' transitioning to HALF_OPEN")
                self.state = CircuitState.HALF_OPEN
                self.success_count_in_half_open = 0

    async def record_success(self) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count_in_half_open += 1
                if self.success_count_in_half_open >= self.half_open_successes:
                    logger.info(f"Circuit '{self.service}' recovered, transitioning to CLOSED")
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
            elif self.failure_count > 0:
                self.failure_count -= 1

    async def record_failure(self, error: Optional[Exception] = None) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.monotonic()

            if self.state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit '{self.service}' failed in HALF_OPEN, reopening. Error: {error}")
                self.state = CircuitState.OPEN
                self.success_count_in_half_open = 0
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.fail_threshold:
                logger.warning(
                    f"Circuit '{self.service}' opening after {self.failure_count} failures. "
                    f"Cooldown: {self.cooldown_sec}s"
                )
                self.state = CircuitState.OPEN

    def get_state_info(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "time_until_retry": self.time_until_retry,
        }


class BreakerRegistry:
    """Owns one circuit breaker per collaborator name."""

    def __init__(self, fail_threshold: int = 5, cooldown_sec: float = 60.0):
        self.fail_threshold = fail_threshold
        self.cooldown_sec = cooldown_sec
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, service: str) -> CircuitBreaker:
        if service not in self._breakers:
            self._breakers[service] = CircuitBreaker(
                service=service,
                fail_threshold=self.fail_threshold,
                cooldown_sec=self.cooldown_sec,
            )
        return self._breakers[service]

    def states(self) -> Dict[str, Dict[str, Any]]:
        return {name: cb.get_state_info() for name, cb in self._breakers.items()}


async def call_external(
    service: str,
    func: Callable[[], Awaitable[T]],
    timeout: float,
    breaker: Optional[CircuitBreaker] = None,
) -> T:
    """
    Run one external call with a timeout and optional circuit breaker.

    Timeouts surface as TransientExternalError. Only transient failures count
    against the breaker; other errors propagate untouched.
    """
    if breaker:
        await breaker.acquire()

    try:
        result = await asyncio.wait_for(func(), timeout=timeout)
    except asyncio.TimeoutError as e:
        if breaker:
            await breaker.record_failure(e)
        raise TransientExternalError(service, f"{service} timed out after {timeout:.1f}s") from e
    except TransientExternalError as e:
        if breaker:
            await breaker.record_failure(e)
        raise

    if breaker:
        await breaker.record_success()
    return result


class RetryableHTTPCodes:
    """HTTP status codes that indicate a transient collaborator failure."""

    RETRYABLE: Set[int] = {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }

    @classmethod
    def is_retryable(cls, status_code: int) -> bool:
        return status_code in cls.RETRYABLE
