"""Retry with exponential backoff and jitter using tenacity."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, TypeVar

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
)

from src.core.errors import CircuitOpenError, OperationCancelledError
from src.utils.auth_errors import is_authentication_error
from src.utils.logger import get_logger

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable

T = TypeVar("T")

logger = get_logger(__name__)

# The remote client does not expose typed network errors, so message content is
# matched in addition to the exception types below.
_TRANSIENT_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection aborted",
    "socket hang up",
    "socket closed",
    "network",
    "enotfound",
    "getaddrinfo",
    "name or service not known",
    "temporary failure in name resolution",
)

_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    requests.ConnectionError,
    requests.Timeout,
)


def is_transient_error(error: BaseException) -> bool:
    """Return True for network-level failures worth retrying."""
    if isinstance(error, (CircuitOpenError, OperationCancelledError)):
        return False
    if isinstance(error, _TRANSIENT_EXCEPTIONS):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


def default_should_retry(error: BaseException) -> bool:
    """Retry authentication-class and transient network errors."""
    if isinstance(error, (CircuitOpenError, OperationCancelledError)):
        return False
    return is_authentication_error(error) or is_transient_error(error)


def auth_only_should_retry(error: BaseException) -> bool:
    """Retry only authentication-class errors."""
    if isinstance(error, (CircuitOpenError, OperationCancelledError)):
        return False
    return is_authentication_error(error)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration, safe to share between callers.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        initial_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound on the backoff delay before jitter.
        backoff_factor: Multiplier applied per attempt.
        jitter_ratio: Maximum jitter as a fraction of the capped delay.
        should_retry: Predicate deciding whether an error is retryable.
    """

    max_retries: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10000
    backoff_factor: float = 2.0
    jitter_ratio: float = 0.1
    should_retry: Callable[[BaseException], bool] = field(default=default_should_retry)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            msg = "max_retries must be >= 0"
            raise ValueError(msg)
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            msg = "delays must be >= 0"
            raise ValueError(msg)
        if self.backoff_factor < 1:
            msg = "backoff_factor must be >= 1"
            raise ValueError(msg)
        if not 0 <= self.jitter_ratio <= 1:
            msg = "jitter_ratio must be between 0 and 1"
            raise ValueError(msg)

    def with_overrides(self, **changes: Any) -> RetryPolicy:
        """Return a copy with selected fields replaced."""
        return replace(self, **changes)

    def base_delay_ms(self, attempt: int) -> float:
        """Capped backoff delay after the given zero-based failed attempt."""
        return min(self.initial_delay_ms * self.backoff_factor**attempt, self.max_delay_ms)


DEFAULT_RETRY_POLICY = RetryPolicy()

AUTH_ERRORS_POLICY = RetryPolicy(
    max_retries=3,
    initial_delay_ms=1000,
    max_delay_ms=10000,
    backoff_factor=2,
    should_retry=auth_only_should_retry,
)

NETWORK_ERRORS_POLICY = RetryPolicy(
    max_retries=5,
    initial_delay_ms=500,
    max_delay_ms=30000,
    backoff_factor=1.5,
)

TASK_OPERATIONS_POLICY = RetryPolicy(
    max_retries=3,
    initial_delay_ms=1000,
    max_delay_ms=15000,
    backoff_factor=2,
)

BULK_OPERATIONS_POLICY = RetryPolicy(
    max_retries=2,
    initial_delay_ms=2000,
    max_delay_ms=30000,
    backoff_factor=2,
)


class _BackoffWait:
    """tenacity wait callable: capped exponential delay plus bounded jitter."""

    def __init__(self, policy: RetryPolicy, rng: Callable[[], float]) -> None:
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        base_ms = self.policy.base_delay_ms(retry_state.attempt_number - 1)
        jitter_ms = self.rng() * self.policy.jitter_ratio * base_ms
        return (base_ms + jitter_ms) / 1000.0


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempt with structured context."""
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.debug(
        "retrying_operation",
        attempt=retry_state.attempt_number,
        function=getattr(retry_state.fn, "__name__", "unknown"),
        delay_ms=round(delay * 1000),
        error=str(error) if error else "unknown",
    )


class RetryExecutor:
    """Runs a single fallible operation under a RetryPolicy."""

    def __init__(
        self,
        sleep: Callable[[float], None] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._sleep = sleep
        self._rng = rng

    def execute(
        self,
        operation: Callable[[], T],
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        cancel_event: threading.Event | None = None,
    ) -> T:
        """Run operation, retrying retryable errors with backoff.

        The error of the last attempt propagates once retries are exhausted or
        the error is not retryable.
        """
        if cancel_event is not None and cancel_event.is_set():
            msg = "Operation cancelled before first attempt"
            raise OperationCancelledError(msg)

        stop = stop_after_attempt(policy.max_retries + 1)
        if cancel_event is not None:
            stop = stop | stop_when_event_set(cancel_event)

        retrying = Retrying(
            stop=stop,
            wait=_BackoffWait(policy, self._rng),
            retry=retry_if_exception(policy.should_retry),
            before_sleep=_log_retry,
            sleep=self._make_sleep(cancel_event),
            reraise=True,
        )
        return retrying(operation)

    def _make_sleep(self, cancel_event: threading.Event | None) -> Callable[[float], None]:
        if cancel_event is None:
            return self._sleep or time.sleep

        injected = self._sleep

        def _cancellable_sleep(seconds: float) -> None:
            if injected is None:
                cancelled = cancel_event.wait(seconds)
            else:
                injected(seconds)
                cancelled = cancel_event.is_set()
            if cancelled:
                msg = "Operation cancelled during retry backoff"
                raise OperationCancelledError(msg)

        return _cancellable_sleep


_default_executor = RetryExecutor()


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    cancel_event: threading.Event | None = None,
) -> T:
    """Run operation with the shared default RetryExecutor."""
    return _default_executor.execute(operation, policy, cancel_event)
