"""Circuit breaker for collaborator calls.

Wraps an unreliable async operation (model execution, the quality
pipeline as a whole) and stops calling it after repeated failures.

States:
- CLOSED: Calls pass through; consecutive failures are counted
- OPEN: Calls are rejected without invoking the operation
- HALF_OPEN: Cooldown elapsed; exactly one trial call is admitted

A successful trial closes the circuit and resets the counter. A failed
trial reopens it and restarts the cooldown.
"""

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is rejected by an open circuit.

    Attributes:
        name: Name of the breaker that rejected the call.
        retry_after: Seconds until the circuit admits a trial call.
    """

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit '{name}' is open; retry in {retry_after:.1f}s"
        )


class CircuitBreaker:
    """Consecutive-failure circuit breaker for async callables.

    Attributes:
        name: Diagnostic name used in logs and errors.
        failure_threshold: Consecutive failures before opening.
        cooldown_seconds: Time the circuit stays open before a trial.
        excluded_exceptions: Exception types that pass through without
            counting as failures (e.g. cooperative cancellation).

    Example:
        >>> breaker = CircuitBreaker("quality", failure_threshold=3, cooldown_seconds=30)
        >>> result = await breaker.execute(lambda: pipeline.run(...))
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds cannot be negative")

        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._times_opened = 0

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the cooldown elapsed."""
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Invoke fn through the breaker.

        Args:
            fn: Zero-argument callable returning an awaitable.

        Returns:
            Whatever fn's awaitable returns.

        Raises:
            CircuitOpenError: If the circuit rejects the call. fn is not called.
            Exception: Anything fn raises is re-raised after being recorded.
        """
        is_trial = self._admit()

        try:
            result = await fn()
        except self.excluded_exceptions:
            if is_trial:
                self._trial_in_flight = False
            raise
        except Exception:
            self._record_failure(is_trial)
            raise
        except BaseException:
            # Task cancellation: release the trial slot without a verdict
            if is_trial:
                self._trial_in_flight = False
            raise

        self._record_success()
        return result

    def _admit(self) -> bool:
        """Admit or reject a call. Returns True when the call is the trial."""
        state = self.state

        if state == CircuitState.CLOSED:
            return False

        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True

        if state == CircuitState.HALF_OPEN:
            retry_after = 0.0
        else:
            retry_after = max(
                0.0, self.cooldown_seconds - (self._clock() - self._opened_at)
            )
        raise CircuitOpenError(self.name, retry_after)

    def _record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(
                "Circuit closed after successful trial",
                extra={"breaker": self.name},
            )
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._trial_in_flight = False

    def _record_failure(self, is_trial: bool) -> None:
        self._consecutive_failures += 1

        if is_trial or self._consecutive_failures >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._times_opened += 1
        logger.warning(
            "Circuit opened",
            extra={
                "breaker": self.name,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_seconds": self.cooldown_seconds,
            },
        )

    def reset(self) -> None:
        """Return to CLOSED with a cleared failure count."""
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    def to_dict(self) -> Dict[str, Any]:
        """Export state for events and logging."""
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "times_opened": self._times_opened,
        }

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failures={self._consecutive_failures}/{self.failure_threshold})"
        )
