"""
walletwars/safety.py - Rate limiting and circuit breaking for external dependencies.

Every external call made by the coordinator passes through the breaker for its
dependency (settlement, persistence, orchestration). Settlement calls also pass
through a RateLimiter. Both checks are synchronous and never block: they either
let the call through or raise a TransientError immediately.

Nothing here is a module global. A SafetyRegistry is built once from config and
handed to the escrow client, the lifecycle controller and the deployment trigger.

Usage:
    safety = SafetyRegistry.from_config(config.safety)
    breaker = safety.breaker("settlement")
    result = await breaker.call(client.fetch_tournament, tournament_id)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .config import PERSISTENCE, SETTLEMENT, SafetyConfig
from .errors import (
    CircuitOpenError,
    DomainError,
    NotFound,
    RateLimitExceeded,
    TransientError,
    Unavailable,
    ValidationError,
    WalletWarsError,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Point-in-time snapshot of one breaker, for status endpoints and logs."""

    name: str
    state: CircuitState
    failures: int
    successes: int
    failure_threshold: int
    reset_timeout: float
    last_failure_at: float | None
    opened_at: float | None
    time_until_retry: float


# ============================================================================
# Circuit Breaker
# ============================================================================


class CircuitBreaker:
    """Consecutive-failure breaker for one dependency.

    closed     calls pass, consecutive failures are counted
    open       calls fail fast with CircuitOpenError until reset_timeout elapses
    half_open  exactly one trial call is let through; the rest fail fast
               until the trial finishes

    A DomainError or ValidationError from the wrapped call means the dependency
    answered, so it counts as a success for breaker purposes.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValidationError(f"failure_threshold must be >= 1, got {failure_threshold}")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure_at: float | None = None
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def successes(self) -> int:
        return self._successes

    def _time_until_retry(self) -> float:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self._opened_at))

    def before_call(self) -> None:
        """Admit or reject one call. Raises CircuitOpenError when rejected."""
        if self._state == CircuitState.OPEN:
            remaining = self._time_until_retry()
            if remaining > 0:
                raise CircuitOpenError(self.name, remaining)
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"Circuit {self.name} half-open, allowing one trial")

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        self._successes += 1
        self._failures = 0
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self._opened_at = None
            logger.info(f"Circuit {self.name} closed after successful trial")
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        self._last_failure_at = self._clock()
        if self._state == CircuitState.HALF_OPEN:
            self._trip("trial failed")
        elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._trip(f"{self._failures} consecutive failures")
        self._trial_in_flight = False

    def _trip(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            f"Circuit {self.name} opened ({reason}), cooling down {self.reset_timeout:.0f}s"
        )

    def reset(self) -> None:
        """Operator action: force the breaker closed and clear its counters."""
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False
        logger.info(f"Circuit {self.name} manually reset")

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run an async callable under this breaker."""
        self.before_call()
        try:
            result = await fn(*args, **kwargs)
        except (DomainError, ValidationError):
            self.record_success()
            raise
        except asyncio.CancelledError:
            # Cancelled calls say nothing about the dependency's health
            self._trial_in_flight = False
            raise
        except Exception as e:
            owner = getattr(e, "breaker", None)
            if owner is not None and owner != self.name:
                # Another dependency failed; its own breaker counts it
                self._trial_in_flight = False
                raise
            self.record_failure()
            if isinstance(e, TransientError):
                e.breaker = self.name
            raise
        self.record_success()
        return result

    def status(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            name=self.name,
            state=self._state,
            failures=self._failures,
            successes=self._successes,
            failure_threshold=self.failure_threshold,
            reset_timeout=self.reset_timeout,
            last_failure_at=self._last_failure_at,
            opened_at=self._opened_at,
            time_until_retry=self._time_until_retry(),
        )


# ============================================================================
# Rate Limiter
# ============================================================================


class RateLimiter:
    """Fixed-window call counter. The window resets wholesale once it is older
    than window_seconds; this is an advisory bound, not a sliding log."""

    def __init__(
        self,
        name: str,
        max_per_window: int = 20,
        window_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self.name = name
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._window_start = clock()
        self._count = 0

    def _roll(self, now: float) -> None:
        if now - self._window_start > self.window_seconds:
            self._window_start = now
            self._count = 0

    def allow(self) -> None:
        """Count one call, or raise RateLimitExceeded if the window is spent."""
        now = self._clock()
        self._roll(now)
        if self._count >= self.max_per_window:
            retry_after = max(0.0, self.window_seconds - (now - self._window_start))
            raise RateLimitExceeded(self.name, self.max_per_window, retry_after)
        self._count += 1

    @property
    def remaining(self) -> int:
        self._roll(self._clock())
        return max(0, self.max_per_window - self._count)


# ============================================================================
# Registry
# ============================================================================


class SafetyRegistry:
    """Breakers and limiters keyed by dependency name."""

    def __init__(
        self,
        breakers: dict[str, CircuitBreaker] | None = None,
        limiters: dict[str, RateLimiter] | None = None,
    ):
        self._breakers = dict(breakers or {})
        self._limiters = dict(limiters or {})

    @classmethod
    def from_config(cls, config: SafetyConfig, clock: Clock = time.monotonic) -> "SafetyRegistry":
        breakers = {
            name: CircuitBreaker(name, bc.failure_threshold, bc.reset_timeout, clock=clock)
            for name, bc in config.breakers.items()
        }
        limiters = {
            SETTLEMENT: RateLimiter(SETTLEMENT, config.max_calls_per_minute, clock=clock),
        }
        return cls(breakers, limiters)

    def breaker(self, name: str) -> CircuitBreaker:
        try:
            return self._breakers[name]
        except KeyError:
            raise NotFound(f"No circuit breaker named {name!r}") from None

    def limiter(self, name: str) -> RateLimiter | None:
        return self._limiters.get(name)

    def reset(self, name: str) -> CircuitBreakerState:
        breaker = self.breaker(name)
        breaker.reset()
        return breaker.status()

    def status(self) -> list[CircuitBreakerState]:
        return [b.status() for b in self._breakers.values()]

    async def persist(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a synchronous store call in a worker thread under the persistence breaker.

        Store exceptions surface as Unavailable so callers only deal with the
        coordinator's own error families.
        """
        try:
            return await self.breaker(PERSISTENCE).call(asyncio.to_thread, fn, *args, **kwargs)
        except WalletWarsError:
            raise
        except Exception as e:
            err = Unavailable(f"Store call {getattr(fn, '__name__', fn)} failed: {e}")
            err.breaker = PERSISTENCE
            raise err from e
