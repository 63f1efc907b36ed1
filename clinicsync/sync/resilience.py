"""
Retry with exponential backoff and a circuit breaker for remote calls.

The engine composes them with the breaker outermost, so an operation that
exhausts its retries counts as a single breaker failure:

    breaker.call(lambda: retry.execute(operation))
"""

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from clinicsync.config.settings import Settings, settings
from clinicsync.sync.clock import utc_now
from clinicsync.sync.errors import (
    AuthError, CircuitOpenError, IntegrityError, NetworkError, NetworkErrorKind,
    error_delay, is_retryable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]

MIN_RETRY_DELAY = 0.1  # seconds


@dataclass
class RetryAttempt:
    attempt_number: int
    started_at: datetime
    success: bool
    duration_ms: float = 0.0
    error: Optional[str] = None
    retry_delay: Optional[float] = None


@dataclass
class RetryResult:
    """Outcome of a retried operation, with the per-attempt log."""

    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    attempts: list[RetryAttempt] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def total_duration_ms(self) -> float:
        return sum(a.duration_ms for a in self.attempts)


@dataclass
class RetryPolicy:
    """
    Exponential backoff with +/- jitter.

    Attributes:
        max_retries: Retries after the first attempt (N retries = N+1 attempts)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
        backoff_multiplier: Growth factor per attempt
        jitter_factor: Fraction of the delay added or removed at random
        is_retryable: Predicate deciding whether an error is worth retrying
        use_error_delays: Prefer the per-error-kind delay table when it applies
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    is_retryable: Callable[[BaseException], bool] = is_retryable
    use_error_delays: bool = True
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    # ── Presets ─────────────────────────────────────────────────

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "RetryPolicy":
        return cls(
            max_retries=cfg.retry_max_retries,
            base_delay=cfg.retry_base_delay_seconds,
            max_delay=cfg.retry_max_delay_seconds,
            backoff_multiplier=cfg.retry_backoff_multiplier,
            jitter_factor=cfg.retry_jitter_factor,
        )

    @classmethod
    def network(cls) -> "RetryPolicy":
        return cls(max_retries=3, base_delay=2.0, max_delay=120.0, backoff_multiplier=2.0, jitter_factor=0.1)

    @classmethod
    def aggressive(cls) -> "RetryPolicy":
        return cls(max_retries=5, base_delay=1.0, max_delay=600.0, backoff_multiplier=1.5, jitter_factor=0.2)

    @classmethod
    def conservative(cls) -> "RetryPolicy":
        return cls(max_retries=2, base_delay=5.0, max_delay=60.0, backoff_multiplier=3.0, jitter_factor=0.05)

    @classmethod
    def for_error(cls, error: BaseException) -> "RetryPolicy":
        if isinstance(error, NetworkError):
            return cls(max_retries=4, base_delay=2.0, max_delay=300.0, backoff_multiplier=2.0, jitter_factor=0.15)
        if isinstance(error, (AuthError, IntegrityError)):
            return cls(max_retries=0)
        return cls()

    # ── Execution ───────────────────────────────────────────────

    def calculate_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay in seconds before retrying after ``attempt`` (1-based) failed."""
        delay = error_delay(error, attempt) if (self.use_error_delays and error is not None) else None
        if delay is None:
            delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        delay = min(self.max_delay, delay)
        if self.jitter_factor:
            delay += delay * self.jitter_factor * (self.rng.random() * 2 - 1)
        return max(MIN_RETRY_DELAY, delay)

    async def execute(self, operation: Operation[T], operation_name: str = "operation") -> T:
        """Run ``operation`` with retries; raise the final error when it never succeeds."""
        outcome = await self.execute_with_result(operation, operation_name)
        if outcome.success:
            return outcome.result
        raise outcome.error

    async def execute_with_result(
        self, operation: Operation[T], operation_name: str = "operation"
    ) -> RetryResult:
        attempts: list[RetryAttempt] = []
        total = self.max_retries + 1

        for attempt in range(1, total + 1):
            started_at = utc_now()
            t0 = time.monotonic()
            try:
                value = await operation()
            except Exception as e:
                duration_ms = (time.monotonic() - t0) * 1000
                will_retry = attempt < total and self.is_retryable(e)
                delay = self.calculate_delay(attempt, e) if will_retry else None
                attempts.append(RetryAttempt(
                    attempt_number=attempt,
                    started_at=started_at,
                    success=False,
                    duration_ms=duration_ms,
                    error=str(e),
                    retry_delay=delay,
                ))
                if not will_retry:
                    if attempt < total:
                        logger.error("%s failed with non-retryable error: %s", operation_name, e)
                    else:
                        logger.error("%s failed after %d attempts: %s", operation_name, attempt, e)
                    return RetryResult(success=False, error=e, attempts=attempts)

                logger.warning(
                    "%s failed on attempt %d/%d: %s (retrying in %.2fs)",
                    operation_name, attempt, total, e, delay,
                )
                await self.sleep(delay)
                continue

            attempts.append(RetryAttempt(
                attempt_number=attempt,
                started_at=started_at,
                success=True,
                duration_ms=(time.monotonic() - t0) * 1000,
            ))
            if attempt > 1:
                logger.info("%s succeeded after %d attempts", operation_name, attempt)
            return RetryResult(success=True, result=value, attempts=attempts)

        raise AssertionError("unreachable")  # loop always returns


class CircuitState(str, enum.Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class CircuitBreaker:
    """Fails fast after repeated failures; probes again after ``reset_timeout``."""

    def __init__(
        self,
        name: str = "remote",
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or settings.breaker_failure_threshold
        self.reset_timeout = (
            reset_timeout if reset_timeout is not None else settings.breaker_reset_timeout_seconds
        )
        self.timeout = timeout if timeout is not None else settings.breaker_timeout_seconds
        self._clock = clock
        self._state = CircuitState.closed
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.open and self._reset_elapsed():
            return CircuitState.half_open
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def call(self, operation: Operation[T], operation_name: str = "operation") -> T:
        self._before_call()
        try:
            if self.timeout:
                result = await asyncio.wait_for(operation(), timeout=self.timeout)
            else:
                result = await operation()
        except asyncio.TimeoutError:
            self._on_failure()
            raise NetworkError(
                NetworkErrorKind.timeout,
                f"{operation_name} timed out after {self.timeout:.1f}s",
                {"breaker": self.name},
            )
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState.closed
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failures,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "timeout": self.timeout,
        }

    # ── Internal ────────────────────────────────────────────────

    def _reset_elapsed(self) -> bool:
        return self._opened_at is not None and (self._clock() - self._opened_at) >= self.reset_timeout

    def _before_call(self) -> None:
        if self._state == CircuitState.open:
            if not self._reset_elapsed():
                remaining = self.reset_timeout - (self._clock() - self._opened_at)
                raise CircuitOpenError(self.name, remaining)
            self._state = CircuitState.half_open
            logger.info("Circuit %s half-open, allowing a trial call", self.name)
        if self._state == CircuitState.half_open:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def _on_success(self) -> None:
        if self._state == CircuitState.half_open:
            logger.info("Circuit %s closed after successful trial", self.name)
        self._state = CircuitState.closed
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def _on_failure(self) -> None:
        now = self._clock()
        self._failures += 1
        self._last_failure_at = now
        if self._state == CircuitState.half_open:
            self._state = CircuitState.open
            self._opened_at = now
            self._trial_in_flight = False
            logger.warning("Circuit %s reopened after failed trial", self.name)
        elif self._failures >= self.failure_threshold and self._state == CircuitState.closed:
            self._state = CircuitState.open
            self._opened_at = now
            logger.warning(
                "Circuit %s opened after %d consecutive failures", self.name, self._failures
            )


class ResilientExecutor:
    """Circuit breaker wrapped around a retry policy."""

    def __init__(self, retry: RetryPolicy, breaker: CircuitBreaker):
        self.retry = retry
        self.breaker = breaker

    async def run(self, operation: Operation[T], operation_name: str = "operation") -> T:
        return await self.breaker.call(
            lambda: self.retry.execute(operation, operation_name), operation_name
        )

    async def run_blocking(self, func: Callable[..., T], *args: Any, operation_name: Optional[str] = None) -> T:
        """Run a blocking transport call in a worker thread under retry and breaker."""
        name = operation_name or getattr(func, "__name__", "operation")
        return await self.run(lambda: asyncio.to_thread(func, *args), name)
