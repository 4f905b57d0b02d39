"""Retry, timeout and circuit-breaker behavior."""

import asyncio
import threading

import pytest

from forgegraph.service.errors import CircuitOpenError, StepTimeoutError
from forgegraph.service.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitStateStore,
    CircuitStatus,
    ResiliencePolicy,
    ResilienceWrapper,
    RetryPolicy,
    with_circuit_breaker,
    with_retry,
    with_timeout,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def failing(counter, error=RuntimeError("downstream failed")):
    async def operation():
        counter.append(1)
        raise error

    return operation


class TestRetry:
    @pytest.mark.asyncio
    async def test_always_failing_operation_called_max_retries_plus_one(self):
        calls = []
        sleep = RecordingSleep()

        with pytest.raises(RuntimeError, match="downstream failed"):
            await with_retry(failing(calls), RetryPolicy(max_retries=3), sleep=sleep)

        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_backoff_delays_grow_exponentially(self):
        sleep = RecordingSleep()

        with pytest.raises(RuntimeError):
            await with_retry(
                failing([]),
                RetryPolicy(max_retries=3, delay_ms=1000, backoff_factor=2.0),
                sleep=sleep,
            )

        assert sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise ConnectionError("reset")
            return "ok"

        result = await with_retry(flaky, RetryPolicy(max_retries=3), sleep=RecordingSleep())

        assert result == "ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_retry_if_stops_on_permanent_errors(self):
        calls = []

        with pytest.raises(ValueError):
            await with_retry(
                failing(calls, ValueError("bad input")),
                RetryPolicy(max_retries=3),
                retry_if=lambda exc: isinstance(exc, ConnectionError),
                sleep=RecordingSleep(),
            )

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_zero_retries_calls_once(self):
        calls = []

        with pytest.raises(RuntimeError):
            await with_retry(failing(calls), RetryPolicy(max_retries=0), sleep=RecordingSleep())

        assert len(calls) == 1

    def test_delay_for(self):
        policy = RetryPolicy(max_retries=3, delay_ms=500, backoff_factor=3.0)
        assert policy.delay_for(0) == 0.5
        assert policy.delay_for(2) == 4.5


class TestTimeout:
    @pytest.mark.asyncio
    async def test_fast_operation_returns_result(self):
        async def fast():
            return 42

        assert await with_timeout(fast(), 1000) == 42

    @pytest.mark.asyncio
    async def test_slow_operation_raises_and_runs_callback(self):
        fired = []

        async def slow():
            await asyncio.sleep(5)
            return "late"

        with pytest.raises(StepTimeoutError) as excinfo:
            await with_timeout(slow(), 50, on_timeout=lambda: fired.append(True))

        assert fired == [True]
        assert isinstance(excinfo.value, TimeoutError)
        assert excinfo.value.error_code == "timeout"
        assert excinfo.value.detail["timeout_ms"] == 50

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_mask_timeout(self):
        def broken_callback():
            raise RuntimeError("callback broke")

        with pytest.raises(StepTimeoutError):
            await with_timeout(asyncio.sleep(5), 20, on_timeout=broken_callback)

    @pytest.mark.asyncio
    async def test_operation_error_propagates(self):
        async def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await with_timeout(broken(), 1000)


class TestCircuitBreaker:
    def setup_method(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(CircuitStateStore(), clock=self.clock)
        self.config = CircuitBreakerConfig("llm", failure_threshold=5, reset_timeout_ms=60000)

    async def trip(self):
        for _ in range(self.config.failure_threshold):
            with pytest.raises(RuntimeError):
                await self.breaker.call(failing([]), self.config)

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self):
        await self.trip()

        state = self.breaker.get_state("llm")
        assert state.status == CircuitStatus.OPEN
        assert state.failure_count == 5
        assert state.opened_at == self.clock.now

    @pytest.mark.asyncio
    async def test_stays_closed_below_threshold(self):
        for _ in range(4):
            with pytest.raises(RuntimeError):
                await self.breaker.call(failing([]), self.config)

        assert self.breaker.get_state("llm").status == CircuitStatus.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        async def ok():
            return "ok"

        for _ in range(3):
            with pytest.raises(RuntimeError):
                await self.breaker.call(failing([]), self.config)
        await self.breaker.call(ok, self.config)

        state = self.breaker.get_state("llm")
        assert state.failure_count == 0
        assert state.last_success == self.clock.now

    @pytest.mark.asyncio
    async def test_open_circuit_uses_fallback_without_calling_operation(self):
        await self.trip()
        calls = []
        config = CircuitBreakerConfig("llm", fallback=lambda: "cached answer")

        result = await self.breaker.call(failing(calls), config)

        assert result == "cached answer"
        assert calls == []

    @pytest.mark.asyncio
    async def test_open_circuit_without_fallback_rejects(self):
        await self.trip()

        with pytest.raises(CircuitOpenError) as excinfo:
            await self.breaker.call(failing([]), self.config)

        assert excinfo.value.circuit_id == "llm"
        assert excinfo.value.error_code == "circuit_open"

    @pytest.mark.asyncio
    async def test_fallback_replaces_failure_while_closed(self):
        config = CircuitBreakerConfig("llm", fallback=lambda: "fallback")

        assert await self.breaker.call(failing([]), config) == "fallback"
        assert self.breaker.get_state("llm").failure_count == 1

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self):
        await self.trip()
        self.clock.advance(60)

        async def ok():
            return "recovered"

        assert await self.breaker.call(ok, self.config) == "recovered"
        state = self.breaker.get_state("llm")
        assert state.status == CircuitStatus.CLOSED
        assert state.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self):
        await self.trip()
        self.clock.advance(61)

        with pytest.raises(RuntimeError):
            await self.breaker.call(failing([]), self.config)

        state = self.breaker.get_state("llm")
        assert state.status == CircuitStatus.OPEN
        assert state.opened_at == self.clock.now

    @pytest.mark.asyncio
    async def test_still_open_before_reset_timeout(self):
        await self.trip()
        self.clock.advance(59)

        with pytest.raises(CircuitOpenError):
            await self.breaker.call(failing([]), self.config)

    @pytest.mark.asyncio
    async def test_half_open_admits_a_single_trial(self):
        await self.trip()
        self.clock.advance(60)
        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "trial done"

        trial = asyncio.ensure_future(self.breaker.call(slow_trial, self.config))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await self.breaker.call(slow_trial, self.config)

        release.set()
        assert await trial == "trial done"
        assert self.breaker.get_state("llm").status == CircuitStatus.CLOSED

    @pytest.mark.asyncio
    async def test_circuits_are_independent(self):
        await self.trip()

        async def ok():
            return "fine"

        other = CircuitBreakerConfig("search")
        assert await with_circuit_breaker(ok, other, self.breaker) == "fine"
        assert set(self.breaker.get_all_states()) == {"llm", "search"}

    @pytest.mark.asyncio
    async def test_reset_closes_circuit(self):
        await self.trip()

        self.breaker.reset("llm")

        assert self.breaker.get_state("llm").status == CircuitStatus.CLOSED

    def test_failures_from_many_threads_are_all_counted(self):
        breaker = CircuitBreaker(CircuitStateStore())
        config = CircuitBreakerConfig("shared", failure_threshold=1000)

        def worker():
            for _ in range(20):
                with pytest.raises(RuntimeError):
                    asyncio.run(breaker.call(failing([]), config))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert breaker.get_state("shared").failure_count == 160


class TestResilienceWrapper:
    @pytest.mark.asyncio
    async def test_no_policy_calls_operation_once(self):
        calls = []

        async def op():
            calls.append(1)
            return "done"

        assert await ResilienceWrapper().run(op, None) == "done"
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_each_retry_gets_its_own_timeout(self):
        attempts = []

        async def op():
            attempts.append(1)
            if len(attempts) < 3:
                await asyncio.sleep(5)
            return "third time"

        wrapper = ResilienceWrapper(CircuitBreaker(CircuitStateStore()), sleep=RecordingSleep())
        policy = ResiliencePolicy(retry=RetryPolicy(max_retries=3), timeout_ms=30)

        assert await wrapper.run(op, policy) == "third time"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_one_circuit_failure(self):
        breaker = CircuitBreaker(CircuitStateStore())
        wrapper = ResilienceWrapper(breaker, sleep=RecordingSleep())
        calls = []
        policy = ResiliencePolicy(
            retry=RetryPolicy(max_retries=2),
            circuit=CircuitBreakerConfig("tool", failure_threshold=2),
        )

        with pytest.raises(RuntimeError):
            await wrapper.run(failing(calls), policy)

        assert len(calls) == 3
        assert breaker.get_state("tool").failure_count == 1
        assert breaker.get_state("tool").status == CircuitStatus.CLOSED

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_retries(self):
        breaker = CircuitBreaker(CircuitStateStore())
        wrapper = ResilienceWrapper(breaker, sleep=RecordingSleep())
        policy = ResiliencePolicy(
            retry=RetryPolicy(max_retries=2),
            circuit=CircuitBreakerConfig("tool", failure_threshold=1),
        )
        with pytest.raises(RuntimeError):
            await wrapper.run(failing([]), policy)

        calls = []
        with pytest.raises(CircuitOpenError):
            await wrapper.run(failing(calls), policy)
        assert calls == []
