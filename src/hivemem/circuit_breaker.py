"""Circuit breaker for external enrichment services.

closed -> open after ``failure_threshold`` consecutive failures.
open -> half_open once ``reset_timeout`` has elapsed since the last failure.
half_open -> closed on a trial-call success, back to open on a trial-call failure.

The state lock is a ``threading.Lock`` so one breaker can be shared by
asyncio tasks and by jobs running on worker threads. The wrapped call
itself runs outside the lock.
"""

from __future__ import annotations

import time
import inspect
import logging
import threading
from dataclasses import replace
from typing import Any, Callable

from src.hivemem.config import BreakerConfig
from src.hivemem.errors import BreakerOpenError
from src.hivemem.models import BreakerStatus, CircuitBreakerState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Protective wrapper around one logical external dependency."""

    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitBreakerState()

    async def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Invoke ``fn`` through the breaker.

        ``fn`` may be a plain or an async callable. Raises BreakerOpenError
        without invoking ``fn`` when the breaker is rejecting calls;
        otherwise returns fn's result or re-raises fn's error.
        """
        is_trial = self._before_call()

        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._on_failure(is_trial, e)
            raise
        except BaseException:
            # Cancellation: free the trial slot without counting a failure
            if is_trial:
                with self._lock:
                    self._release_trial()
            raise

        self._on_success(is_trial)
        return result

    # ==================== State transitions ====================

    def _before_call(self) -> bool:
        """Admit or reject a call. Returns True when the call is a half-open trial call."""
        with self._lock:
            state = self._state

            if state.status == BreakerStatus.OPEN:
                elapsed = self._clock() - (state.last_failure_at or 0.0)
                if elapsed < self.config.reset_timeout:
                    raise BreakerOpenError(self.name)
                state.status = BreakerStatus.HALF_OPEN
                state.half_open_trials_in_flight = 0
                logger.info("CircuitBreaker[%s]: open -> half_open", self.name)

            if state.status == BreakerStatus.HALF_OPEN:
                if state.half_open_trials_in_flight >= self.config.half_open_max_calls:
                    raise BreakerOpenError(self.name)
                state.half_open_trials_in_flight += 1
                return True

            return False

    def _release_trial(self) -> None:
        # Caller holds the lock. A reset() may have zeroed the counter already.
        self._state.half_open_trials_in_flight = max(
            0, self._state.half_open_trials_in_flight - 1
        )

    def _on_success(self, is_trial: bool) -> None:
        with self._lock:
            state = self._state
            if is_trial:
                self._release_trial()
                if state.status == BreakerStatus.HALF_OPEN:
                    state.status = BreakerStatus.CLOSED
                    state.consecutive_failures = 0
                    logger.info("CircuitBreaker[%s]: half_open -> closed", self.name)
            elif state.status == BreakerStatus.CLOSED:
                state.consecutive_failures = 0

    def _on_failure(self, is_trial: bool, error: Exception) -> None:
        with self._lock:
            state = self._state
            if is_trial:
                self._release_trial()
                state.consecutive_failures += 1
                state.last_failure_at = self._clock()
                if state.status != BreakerStatus.OPEN:
                    state.status = BreakerStatus.OPEN
                    logger.warning(
                        "CircuitBreaker[%s]: trial call failed (%s), half_open -> open",
                        self.name, error,
                    )
            elif state.status == BreakerStatus.CLOSED:
                state.consecutive_failures += 1
                logger.debug(
                    "CircuitBreaker[%s]: failure %d/%d: %s",
                    self.name, state.consecutive_failures,
                    self.config.failure_threshold, error,
                )
                if state.consecutive_failures >= self.config.failure_threshold:
                    state.status = BreakerStatus.OPEN
                    state.last_failure_at = self._clock()
                    logger.warning(
                        "CircuitBreaker[%s]: closed -> open after %d failures",
                        self.name, state.consecutive_failures,
                    )

    # ==================== Introspection ====================

    @property
    def state(self) -> CircuitBreakerState:
        """Snapshot copy of the current state."""
        with self._lock:
            return replace(self._state)

    @property
    def status(self) -> BreakerStatus:
        with self._lock:
            return self._state.status

    @property
    def is_open(self) -> bool:
        return self.status == BreakerStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == BreakerStatus.CLOSED

    @property
    def is_half_open(self) -> bool:
        return self.status == BreakerStatus.HALF_OPEN

    def stats(self) -> dict[str, Any]:
        with self._lock:
            state = self._state
            return {
                "name": self.name,
                "status": state.status.value,
                "consecutive_failures": state.consecutive_failures,
                "failure_threshold": self.config.failure_threshold,
                "reset_timeout": self.config.reset_timeout,
                "last_failure_at": state.last_failure_at,
                "half_open_trials_in_flight": state.half_open_trials_in_flight,
            }

    def reset(self) -> None:
        """Force the breaker back to closed."""
        with self._lock:
            self._state = CircuitBreakerState()
        logger.info("CircuitBreaker[%s]: manually reset", self.name)
