"""
Circuit breaker guarding the upstream API.

A run of transient upstream failures opens the circuit; while it is open,
calls fail fast with `CircuitBreakerError` instead of queueing more work
against an unhealthy service. After `recovery_timeout` a single trial call
at a time is let through (HALF_OPEN); enough consecutive trial successes
close it again.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional

from utils.errors import CircuitBreakerError, TransientNetworkError

logger = logging.getLogger("pokedex.circuit_breaker")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Async circuit breaker.

    Only exceptions listed in `expected_exceptions` count as failures, so a
    404 or a validation problem never trips the breaker.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        success_threshold: int = 1,
        expected_exceptions: tuple = (TransientNetworkError,),
        name: Optional[str] = None,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.expected_exceptions = expected_exceptions
        self.name = name or "upstream"

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute `func` under breaker protection.

        Raises:
            CircuitBreakerError: If the circuit is OPEN and the recovery
                timeout has not elapsed, or if it is HALF_OPEN and another
                trial call is still in flight.
        """
        is_trial = False
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if self._recovery_due():
                    logger.info(
                        f"Circuit breaker '{self.name}' half-open, allowing a trial call",
                        extra={"breaker_name": self.name},
                    )
                    self._state = CircuitState.HALF_OPEN
                    self._success_count = 0
                else:
                    raise CircuitBreakerError(
                        f"circuit '{self.name}' is open, upstream unavailable"
                    )

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitBreakerError(
                        f"circuit '{self.name}' is half-open, trial call in flight"
                    )
                self._trial_in_flight = True
                is_trial = True

        try:
            result = await func(*args, **kwargs)
            await self._record_success()
            return result
        except self.expected_exceptions:
            await self._record_failure()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False

    async def _record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            if self._state != CircuitState.HALF_OPEN:
                return

            self._success_count += 1
            if self._success_count >= self.success_threshold:
                logger.info(
                    f"Circuit breaker '{self.name}' closed after recovery",
                    extra={"breaker_name": self.name},
                )
                self._state = CircuitState.CLOSED
                self._success_count = 0

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1

            if self._state == CircuitState.HALF_OPEN:
                logger.error(
                    f"Circuit breaker '{self.name}' trial call failed, reopening",
                    extra={"breaker_name": self.name},
                )
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                logger.error(
                    f"Circuit breaker '{self.name}' opening after "
                    f"{self._failure_count} consecutive failures",
                    extra={
                        "breaker_name": self.name,
                        "failure_count": self._failure_count,
                    },
                )
                self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._success_count = 0
        self._opened_at = time.monotonic()

    def _recovery_due(self) -> bool:
        if self._opened_at is None:
            return True
        return (time.monotonic() - self._opened_at) >= self.recovery_timeout

    def get_stats(self) -> dict:
        return {
            "breaker_name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }

