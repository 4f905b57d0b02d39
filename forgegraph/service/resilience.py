"""Retry, timeout and circuit-breaker helpers for external calls made by steps.

Every helper takes an operation *factory* (a zero-argument callable returning
an awaitable) rather than an awaitable, so retries can start a fresh call on
each attempt.
"""
from __future__ import annotations

import asyncio
import copy
import inspect
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from forgegraph.logging import get_logger, sanitize_error_message
from forgegraph.service.errors import CircuitOpenError, StepTimeoutError

logger = get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# =========================================================================
# Retry with exponential backoff
# =========================================================================


@dataclass
class RetryPolicy:
    max_retries: int = 3
    delay_ms: int = 1000
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the failed attempt with zero-based index ``attempt``."""
        return (self.delay_ms * (self.backoff_factor**attempt)) / 1000.0

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            delay_ms=settings.retry_delay_ms,
            backoff_factor=settings.retry_backoff_factor,
        )


async def with_retry(
    operation: Operation[T],
    policy: Optional[RetryPolicy] = None,
    *,
    operation_name: str = "operation",
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call ``operation`` up to ``max_retries + 1`` times.

    After the failed attempt ``n`` (zero-based) the wait is
    ``delay_ms * backoff_factor ** n``. The last error is re-raised once
    retries are used up, or immediately when ``retry_if`` rejects it.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            retryable = retry_if is None or retry_if(exc)
            if not retryable or attempt >= policy.max_retries:
                logger.warning(
                    "retry_exhausted" if retryable else "retry_not_attempted",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(exc),
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_attempt_failed",
                operation=operation_name,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay_ms=int(delay * 1000),
                error_type=type(exc).__name__,
                error=sanitize_error_message(exc),
            )
            await sleep(delay)
            attempt += 1


# =========================================================================
# Timeout race
# =========================================================================


def _consume_abandoned_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(
            "abandoned_operation_failed",
            error_type=type(exc).__name__,
            error=sanitize_error_message(exc),
        )


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_ms: int,
    *,
    on_timeout: Optional[Callable[[], Any]] = None,
    operation_name: str = "operation",
) -> T:
    """Race ``awaitable`` against a ``timeout_ms`` timer.

    On expiry a StepTimeoutError is raised and ``on_timeout`` is invoked.
    Known limitation: the underlying operation is NOT cancelled. It keeps
    running in the background and is only abandoned by this caller, so any
    connection, lock or side effect it holds is released whenever it
    finishes on its own, not at the timeout.
    """
    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
    if task in done:
        return task.result()

    task.add_done_callback(_consume_abandoned_result)
    logger.warning(
        "operation_timed_out", operation=operation_name, timeout_ms=timeout_ms
    )
    if on_timeout is not None:
        try:
            await _resolve(on_timeout())
        except Exception as exc:
            logger.error(
                "on_timeout_callback_failed",
                operation=operation_name,
                error_type=type(exc).__name__,
                error=sanitize_error_message(exc),
            )
    raise StepTimeoutError(
        f"{operation_name} timed out after {timeout_ms}ms",
        detail={"operation": operation_name, "timeout_ms": timeout_ms},
    )


# =========================================================================
# Circuit breaker
# =========================================================================


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitState:
    """Per-circuit bookkeeping. Times are ``clock()`` readings in seconds."""

    status: CircuitStatus = CircuitStatus.CLOSED
    failure_count: int = 0
    last_failure: Optional[float] = None
    last_success: Optional[float] = None
    opened_at: Optional[float] = None
    trial_in_flight: bool = False


class CircuitStateStore:
    """Explicitly owned map of circuit id to CircuitState.

    Each circuit has its own lock; every read-modify-write of a state
    happens under it, so runs on different threads or event loops that
    share a circuit id cannot double-open or skip a transition.
    """

    def __init__(self) -> None:
        self._states: Dict[str, CircuitState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock(self, circuit_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(circuit_id)
            if lock is None:
                lock = self._locks[circuit_id] = threading.Lock()
                self._states[circuit_id] = CircuitState()
            return lock

    def state(self, circuit_id: str) -> CircuitState:
        """Live state; callers must hold ``lock(circuit_id)``."""
        self.lock(circuit_id)
        return self._states[circuit_id]

    def circuit_ids(self) -> list[str]:
        with self._guard:
            return list(self._states)


@dataclass
class CircuitBreakerConfig:
    circuit_id: str
    failure_threshold: int = 5
    reset_timeout_ms: int = 60000
    fallback: Optional[Callable[[], Any]] = field(default=None, repr=False)


class CircuitBreaker:
    """Closed / Open / Half-Open state machine keyed by circuit id.

    The Open to Half-Open move happens lazily, on the first call made at
    least ``reset_timeout_ms`` after the circuit opened. Half-Open admits a
    single trial call; concurrent callers are rejected until it settles.
    """

    def __init__(
        self,
        store: Optional[CircuitStateStore] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store or CircuitStateStore()
        self.clock = clock

    def _admit(self, config: CircuitBreakerConfig) -> tuple[bool, bool]:
        """Return ``(allowed, is_trial)`` for one call."""
        with self.store.lock(config.circuit_id):
            state = self.store.state(config.circuit_id)
            now = self.clock()
            if (
                state.status == CircuitStatus.OPEN
                and state.opened_at is not None
                and (now - state.opened_at) * 1000 >= config.reset_timeout_ms
            ):
                state.status = CircuitStatus.HALF_OPEN
                state.trial_in_flight = False
                logger.info("circuit_half_open", circuit_id=config.circuit_id)
            if state.status == CircuitStatus.CLOSED:
                return True, False
            if state.status == CircuitStatus.HALF_OPEN and not state.trial_in_flight:
                state.trial_in_flight = True
                return True, True
            return False, False

    def _record_success(self, config: CircuitBreakerConfig, is_trial: bool) -> None:
        with self.store.lock(config.circuit_id):
            state = self.store.state(config.circuit_id)
            state.last_success = self.clock()
            if is_trial:
                state.status = CircuitStatus.CLOSED
                state.failure_count = 0
                state.opened_at = None
                state.trial_in_flight = False
                logger.info("circuit_closed", circuit_id=config.circuit_id)
            elif state.status == CircuitStatus.CLOSED:
                state.failure_count = 0

    def _record_failure(
        self, config: CircuitBreakerConfig, is_trial: bool, exc: BaseException
    ) -> None:
        with self.store.lock(config.circuit_id):
            state = self.store.state(config.circuit_id)
            now = self.clock()
            state.last_failure = now
            state.failure_count += 1
            if is_trial:
                state.status = CircuitStatus.OPEN
                state.opened_at = now
                state.trial_in_flight = False
                logger.warning(
                    "circuit_reopened",
                    circuit_id=config.circuit_id,
                    error_type=type(exc).__name__,
                )
            elif (
                state.status == CircuitStatus.CLOSED
                and state.failure_count >= config.failure_threshold
            ):
                state.status = CircuitStatus.OPEN
                state.opened_at = now
                logger.warning(
                    "circuit_opened",
                    circuit_id=config.circuit_id,
                    failure_count=state.failure_count,
                    reset_timeout_ms=config.reset_timeout_ms,
                )

    def _release_trial(self, config: CircuitBreakerConfig) -> None:
        with self.store.lock(config.circuit_id):
            self.store.state(config.circuit_id).trial_in_flight = False

    async def call(self, operation: Operation[T], config: CircuitBreakerConfig) -> T:
        allowed, is_trial = self._admit(config)
        if not allowed:
            logger.warning("circuit_rejected", circuit_id=config.circuit_id)
            if config.fallback is not None:
                return await _resolve(config.fallback())
            raise CircuitOpenError(config.circuit_id)

        try:
            result = await operation()
        except asyncio.CancelledError:
            if is_trial:
                self._release_trial(config)
            raise
        except Exception as exc:
            self._record_failure(config, is_trial, exc)
            if config.fallback is not None:
                return await _resolve(config.fallback())
            raise
        self._record_success(config, is_trial)
        return result

    def get_state(self, circuit_id: str) -> CircuitState:
        """Snapshot of one circuit (created Closed if never used)."""
        with self.store.lock(circuit_id):
            return copy.copy(self.store.state(circuit_id))

    def get_all_states(self) -> Dict[str, CircuitState]:
        return {cid: self.get_state(cid) for cid in self.store.circuit_ids()}

    def reset(self, circuit_id: str) -> None:
        with self.store.lock(circuit_id):
            state = self.store.state(circuit_id)
            state.status = CircuitStatus.CLOSED
            state.failure_count = 0
            state.opened_at = None
            state.trial_in_flight = False
        logger.info("circuit_reset", circuit_id=circuit_id)


async def with_circuit_breaker(
    operation: Operation[T],
    config: CircuitBreakerConfig,
    breaker: CircuitBreaker,
) -> T:
    return await breaker.call(operation, config)


# =========================================================================
# Composition
# =========================================================================


@dataclass
class ResiliencePolicy:
    """Opt-in protection for a step's external call. ``None`` disables a layer."""

    retry: Optional[RetryPolicy] = None
    timeout_ms: Optional[int] = None
    on_timeout: Optional[Callable[[], Any]] = field(default=None, repr=False)
    circuit: Optional[CircuitBreakerConfig] = None
    retry_if: Optional[Callable[[BaseException], bool]] = field(default=None, repr=False)


class ResilienceWrapper:
    """Applies a ResiliencePolicy as circuit(retry(timeout(operation))).

    The circuit counts one failure per exhausted retry sequence, and each
    retry attempt gets its own timeout budget.
    """

    def __init__(
        self,
        breaker: Optional[CircuitBreaker] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep

    async def run(
        self,
        operation: Operation[T],
        policy: Optional[ResiliencePolicy],
        *,
        operation_name: str = "operation",
    ) -> T:
        if policy is None:
            return await operation()

        async def attempt() -> T:
            if policy.timeout_ms is None:
                return await operation()
            return await with_timeout(
                operation(),
                policy.timeout_ms,
                on_timeout=policy.on_timeout,
                operation_name=operation_name,
            )

        async def retried() -> T:
            if policy.retry is None:
                return await attempt()
            return await with_retry(
                attempt,
                policy.retry,
                operation_name=operation_name,
                retry_if=policy.retry_if,
                sleep=self._sleep,
            )

        if policy.circuit is None:
            return await retried()
        return await self.breaker.call(retried, policy.circuit)
