"""Named circuit breakers with state shared through an explicit registry.

A breaker moves between three states:
- CLOSED: calls pass through; outcomes fill a rolling time window
- OPEN: calls are rejected with CircuitOpenError without running
- HALF_OPEN: a bounded number of trial calls decide between CLOSED and OPEN

The breaker opens once the window holds at least ``volume_threshold``
outcomes and the failure percentage exceeds ``error_threshold_percentage``.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

from src.core.errors import CircuitOpenError, OperationCancelledError
from src.models.circuit_breaker import BreakerSnapshot, CircuitBreakerConfig, CircuitState
from src.utils.logger import get_logger
from src.utils.retry import RetryExecutor

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.utils.retry import RetryPolicy

    StateListener = Callable[[str, CircuitState, CircuitState], None]

T = TypeVar("T")

logger = get_logger(__name__)


class BreakerName(StrEnum):
    """Breaker names shared by every call site hitting the same dependency."""

    AUTH_CONNECT = "vikunja-auth-connect"
    TASK_CREATE = "vikunja-task-create"
    TASK_UPDATE = "vikunja-task-update"
    TASK_DELETE = "vikunja-task-delete"
    TASK_GET = "vikunja-task-get"
    TASK_LIST = "vikunja-task-list"
    TASK_ASSIGNEES = "vikunja-task-assignees"
    TASK_LABELS = "vikunja-task-labels"
    BULK_OPERATIONS = "vikunja-bulk-operations"
    API_OPERATIONS = "vikunja-api-operations"


class CircuitBreaker:
    """A single named breaker. Obtain instances through CircuitBreakerRegistry."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        listeners: list[StateListener] | None = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._listeners = listeners if listeners is not None else []
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._window: deque[tuple[float, bool]] = deque()
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._half_open_in_flight = 0
        self._generation = 0

    @property
    def state(self) -> CircuitState:
        """Last recorded state; does not apply the reset timeout."""
        return self._state

    @property
    def opened_at(self) -> float | None:
        """Clock reading when the breaker last opened."""
        return self._opened_at

    @property
    def consecutive_failures(self) -> int:
        """Failures since the last success."""
        return self._consecutive_failures

    def call(self, operation: Callable[[], T]) -> T:
        """Run operation under the breaker's current state logic.

        Cancellation is not an outcome: the call's slot is released without
        counting toward the window or settling a half-open trial.
        """
        generation = self._acquire()
        success: bool | None = None
        try:
            result = operation()
            success = True
            return result
        except OperationCancelledError:
            raise
        except Exception:
            success = False
            raise
        finally:
            self._settle(generation, success)

    def snapshot(self) -> BreakerSnapshot:
        """Return a point-in-time view of the breaker."""
        with self._lock:
            self._prune(self._clock())
            failures = sum(1 for _, failed in self._window if failed)
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                window_requests=len(self._window),
                window_failures=failures,
                opened_at=self._opened_at,
            )

    def reset(self) -> None:
        """Force the breaker back to CLOSED with empty counters."""
        with self._lock:
            previous = self._state
            self._close()
        if previous is not CircuitState.CLOSED:
            self._notify(previous, CircuitState.CLOSED)
        logger.info("circuit_breaker_reset", breaker=self.name)

    def force_open(self) -> None:
        """Force the breaker into OPEN, starting a new reset timeout."""
        with self._lock:
            previous = self._state
            self._open(self._clock())
        if previous is not CircuitState.OPEN:
            self._notify(previous, CircuitState.OPEN)

    # --- state transitions (callers hold self._lock unless noted) ---

    def _acquire(self) -> int:
        """Admit or reject a call; may move OPEN to HALF_OPEN.

        Returns the state generation the call was admitted under.
        """
        transition: tuple[CircuitState, CircuitState] | None = None
        with self._lock:
            now = self._clock()
            if self._state is CircuitState.OPEN:
                elapsed = 0.0 if self._opened_at is None else now - self._opened_at
                if elapsed < self.config.reset_timeout_seconds:
                    raise CircuitOpenError(
                        self.name, self.config.reset_timeout_seconds - elapsed
                    )
                self._state = CircuitState.HALF_OPEN
                self._half_open_in_flight = 0
                self._generation += 1
                transition = (CircuitState.OPEN, CircuitState.HALF_OPEN)

            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.half_open_max_calls:
                    raise CircuitOpenError(self.name, 0.0)
                self._half_open_in_flight += 1
            generation = self._generation

        if transition:
            self._notify(*transition)
        return generation

    def _settle(self, generation: int, success: bool | None) -> None:
        """Apply a call's outcome; None releases the call's slot only.

        Outcomes from calls admitted under an earlier state generation are
        discarded.
        """
        transition: tuple[CircuitState, CircuitState] | None = None
        with self._lock:
            if generation != self._generation:
                return
            now = self._clock()

            if self._state is CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                if success is True:
                    self._close()
                    transition = (CircuitState.HALF_OPEN, CircuitState.CLOSED)
                elif success is False:
                    self._open(now)
                    self._consecutive_failures += 1
                    transition = (CircuitState.HALF_OPEN, CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED and success is not None:
                self._consecutive_failures = 0 if success else self._consecutive_failures + 1
                self._window.append((now, not success))
                self._prune(now)
                if not success and self._should_trip():
                    self._open(now)
                    transition = (CircuitState.CLOSED, CircuitState.OPEN)

        if transition:
            self._notify(*transition)

    def _should_trip(self) -> bool:
        requests = len(self._window)
        if requests < self.config.volume_threshold:
            return False
        failures = sum(1 for _, failed in self._window if failed)
        return failures / requests * 100.0 > self.config.error_threshold_percentage

    def _prune(self, now: float) -> None:
        horizon = now - self.config.rolling_window_seconds
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._half_open_in_flight = 0
        self._generation += 1

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._window.clear()
        self._consecutive_failures = 0
        self._opened_at = None
        self._half_open_in_flight = 0
        self._generation += 1

    def _notify(self, old: CircuitState, new: CircuitState) -> None:
        """Log the transition and inform listeners. Called without the lock."""
        if new is CircuitState.OPEN:
            logger.warning("circuit_breaker_opened", breaker=self.name, previous=old.value)
        elif new is CircuitState.HALF_OPEN:
            logger.debug("circuit_breaker_half_open", breaker=self.name)
        else:
            logger.info("circuit_breaker_closed", breaker=self.name, previous=old.value)

        for listener in list(self._listeners):
            try:
                listener(self.name, old, new)
            except Exception as exc:
                logger.warning(
                    "circuit_breaker_listener_failed",
                    breaker=self.name,
                    error=str(exc),
                )


class CircuitBreakerRegistry:
    """Table of named breakers; call sites sharing a name share state.

    Create one instance at the application entry point and pass it to every
    component that talks to the remote API.
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: list[StateListener] = []
        self._lock = threading.Lock()

    def get(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """Return the named breaker, creating it CLOSED on first use.

        The config only applies on creation; later callers share the existing
        breaker as configured by the first.
        """
        breaker = self._breakers.get(name)
        if breaker is not None:
            return breaker
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config or self.default_config,
                    clock=self._clock,
                    listeners=self._listeners,
                )
                self._breakers[name] = breaker
                logger.debug("circuit_breaker_created", breaker=name)
            return breaker

    def execute(
        self,
        name: str,
        operation: Callable[[], T],
        config: CircuitBreakerConfig | None = None,
    ) -> T:
        """Route operation through the named breaker."""
        return self.get(name, config).call(operation)

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback for state transitions of every breaker."""
        self._listeners.append(listener)

    def names(self) -> list[str]:
        """Names of the breakers created so far."""
        return sorted(self._breakers)

    def get_all_stats(self) -> dict[str, BreakerSnapshot]:
        """Snapshot of every registered breaker keyed by name."""
        return {name: self._breakers[name].snapshot() for name in self.names()}

    def health_status(self) -> dict[str, list[str]]:
        """Group breaker names by health: CLOSED, HALF_OPEN, OPEN."""
        status: dict[str, list[str]] = {"healthy": [], "degraded": [], "failed": []}
        for name, snap in self.get_all_stats().items():
            if snap.state is CircuitState.CLOSED:
                status["healthy"].append(name)
            elif snap.state is CircuitState.HALF_OPEN:
                status["degraded"].append(name)
            else:
                status["failed"].append(name)
        return status

    def reset(self, name: str) -> None:
        """Close a single breaker if it exists."""
        breaker = self._breakers.get(name)
        if breaker is not None:
            breaker.reset()

    def reset_all(self) -> None:
        """Drop every breaker; the next get() recreates it CLOSED."""
        with self._lock:
            self._breakers.clear()
        logger.info("circuit_breakers_reset_all")


def with_circuit_breaker(
    operation: Callable[[], T],
    breaker_name: str,
    registry: CircuitBreakerRegistry,
    config: CircuitBreakerConfig | None = None,
    policy: RetryPolicy | None = None,
    retry_executor: RetryExecutor | None = None,
    cancel_event: threading.Event | None = None,
) -> T:
    """Run operation with retries inside the named breaker.

    The retry loop runs inside a single admitted call, so one logical call is
    one breaker outcome and an open breaker fails fast without any retry.
    """
    if policy is None:
        return registry.execute(breaker_name, operation, config)

    executor = retry_executor or RetryExecutor()
    return registry.execute(
        breaker_name,
        lambda: executor.execute(operation, policy, cancel_event),
        config,
    )
