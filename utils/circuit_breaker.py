"""
Circuit breaker guarding calls to the upstream PokeAPI.

When PokeAPI keeps failing, every enrichment pass would otherwise queue up
dozens of doomed requests (each with its own retries). The breaker counts
consecutive upstream failures and, once tripped, rejects calls immediately
so lookups degrade to "not found" until the upstream recovers.

States:
- CLOSED: calls go through.
- OPEN: calls are rejected with CircuitBreakerError.
- HALF_OPEN: after the recovery timeout, trial calls go through; enough
  consecutive successes close the circuit, one failure reopens it.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger("pokemmo_link.circuit_breaker")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised instead of calling upstream while the circuit is open."""

    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = retry_in
        super().__init__(f"Upstream '{name}' unavailable, retry in {retry_in:.0f}s")


class CircuitBreaker:
    """
    Async circuit breaker.

    Args:
        name: Upstream name used in logs and health output.
        failure_threshold: Consecutive failures that open the circuit.
        recovery_timeout: Seconds the circuit stays open before probing.
        success_threshold: Consecutive half-open successes needed to close.
        expected_exceptions: Exception types counted as upstream failures.
            Anything else propagates without touching the counters.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        name: str = "upstream",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
        expected_exceptions: tuple = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.expected_exceptions = expected_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._rejected = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _remaining_open_time(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    async def _before_call(self) -> None:
        async with self._lock:
            if self._state != CircuitState.OPEN:
                return

            remaining = self._remaining_open_time()
            if remaining <= 0:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                logger.info(
                    f"Probing upstream '{self.name}' after {self.recovery_timeout:.0f}s open",
                    extra={"breaker_name": self.name},
                )
                return

            self._rejected += 1
            raise CircuitBreakerError(self.name, remaining)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run `func(*args, **kwargs)` under breaker protection.

        Raises:
            CircuitBreakerError: If the circuit is open.
            Exception: Whatever `func` raised.
        """
        await self._before_call()

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions:
            await self._record_failure()
            raise

        await self._record_success()
        return result

    async def _record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            if self._state != CircuitState.HALF_OPEN:
                return

            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._success_count = 0
                self._opened_at = None
                logger.info(
                    f"Upstream '{self.name}' recovered, circuit closed",
                    extra={"breaker_name": self.name},
                )

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1

            if self._state == CircuitState.HALF_OPEN:
                self._trip("half-open call failed")
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._trip(f"{self._failure_count} consecutive failures")
            else:
                logger.debug(
                    f"Upstream '{self.name}' failure {self._failure_count}/{self.failure_threshold}",
                    extra={"breaker_name": self.name},
                )

    def _trip(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._success_count = 0
        self._opened_at = self._clock()
        logger.error(
            f"Upstream '{self.name}' circuit opened: {reason}",
            extra={
                "breaker_name": self.name,
                "failure_count": self._failure_count,
                "recovery_timeout": self.recovery_timeout,
            },
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "breaker_name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "rejected_calls": self._rejected,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "retry_in": round(self._remaining_open_time(), 1) if self.is_open else 0.0,
        }

    async def reset(self) -> None:
        """Force the circuit closed (admin cache reset, tests)."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
            logger.info(
                f"Upstream '{self.name}' circuit manually reset",
                extra={"breaker_name": self.name},
            )
