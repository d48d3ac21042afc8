"""
Tests for Circuit Breaker Pattern
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from hookgate.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
    MemoryCircuitBreakerStore,
    RedisCircuitBreakerStore,
)
from hookgate.core.exceptions import CircuitBreakerOpenError

ENDPOINT = "partner"


class Clock:
    def __init__(self, value: float = 10_000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value


class TestCircuitBreaker:
    """Tests for circuit breaker functionality"""

    @pytest.fixture
    def clock(self) -> Clock:
        return Clock()

    @pytest.fixture
    def config(self) -> CircuitBreakerConfig:
        """Threshold 3, one minute cooldown"""
        return CircuitBreakerConfig(failure_threshold=3, cooldown_seconds=60)

    @pytest.fixture
    def transitions(self) -> list:
        return []

    @pytest.fixture
    def breaker(self, config, clock, transitions) -> CircuitBreaker:
        """Create circuit breaker for testing"""
        return CircuitBreaker(
            MemoryCircuitBreakerStore(),
            config,
            listener=lambda endpoint, old, new: transitions.append((endpoint, old, new)),
            clock=clock,
        )

    async def _open(self, breaker: CircuitBreaker, failures: int = 3) -> None:
        for _ in range(failures):
            await breaker.record_failure(ENDPOINT, "HTTP 500")

    @pytest.mark.unit
    async def test_initial_state_is_closed(self, breaker):
        """Circuit should start in closed state"""
        state = await breaker.state(ENDPOINT)
        assert state.state == CircuitState.CLOSED
        assert await breaker.can_execute(ENDPOINT)

    @pytest.mark.unit
    async def test_failures_open_circuit(self, breaker, transitions):
        """Enough consecutive failures should open the circuit"""
        await self._open(breaker, 2)
        assert (await breaker.state(ENDPOINT)).state == CircuitState.CLOSED

        await breaker.record_failure(ENDPOINT, "HTTP 500")
        assert (await breaker.state(ENDPOINT)).state == CircuitState.OPEN
        assert transitions == [(ENDPOINT, CircuitState.CLOSED, CircuitState.OPEN)]

    @pytest.mark.unit
    async def test_success_resets_failure_count(self, breaker):
        await self._open(breaker, 2)
        await breaker.record_success(ENDPOINT)
        await self._open(breaker, 2)
        assert (await breaker.state(ENDPOINT)).state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_open_circuit_blocks_requests(self, breaker, clock):
        """Open circuit should block requests until the cooldown elapses"""
        await self._open(breaker)
        clock.value += 59
        assert not await breaker.can_execute(ENDPOINT)
        assert await breaker.retry_after(ENDPOINT) == pytest.approx(1.0)

    @pytest.mark.unit
    async def test_guard_raises_when_open(self, breaker):
        await self._open(breaker)
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.guard(ENDPOINT)
        assert exc_info.value.retry_after_seconds == pytest.approx(60.0)
        assert exc_info.value.status_code == 503

    @pytest.mark.unit
    async def test_exactly_one_trial_after_cooldown(self, breaker, clock):
        """After the cooldown only one caller gets through"""
        await self._open(breaker)
        clock.value += 60

        assert await breaker.can_execute(ENDPOINT)
        assert (await breaker.state(ENDPOINT)).state == CircuitState.HALF_OPEN
        assert not await breaker.can_execute(ENDPOINT)
        assert not await breaker.can_execute(ENDPOINT)

    @pytest.mark.unit
    async def test_trial_success_closes(self, breaker, clock, transitions):
        await self._open(breaker)
        clock.value += 60
        await breaker.can_execute(ENDPOINT)
        await breaker.record_success(ENDPOINT)

        state = await breaker.state(ENDPOINT)
        assert state.state == CircuitState.CLOSED
        assert state.consecutive_failure_count == 0
        assert [new for _, _, new in transitions] == [
            CircuitState.OPEN, CircuitState.HALF_OPEN, CircuitState.CLOSED
        ]

    @pytest.mark.unit
    async def test_trial_failure_reopens(self, breaker, clock):
        await self._open(breaker)
        clock.value += 60
        await breaker.can_execute(ENDPOINT)
        await breaker.record_failure(ENDPOINT, "timeout")

        state = await breaker.state(ENDPOINT)
        assert state.state == CircuitState.OPEN
        assert state.opened_at == clock.value
        assert not await breaker.can_execute(ENDPOINT)

    @pytest.mark.unit
    async def test_abandoned_trial_is_reclaimed(self, breaker, clock):
        """A trial that never reports back expires after one more cooldown"""
        await self._open(breaker)
        clock.value += 60
        assert await breaker.can_execute(ENDPOINT)

        clock.value += 30
        assert not await breaker.can_execute(ENDPOINT)
        clock.value += 30
        assert await breaker.can_execute(ENDPOINT)

    @pytest.mark.unit
    async def test_per_call_config_overrides_default(self, breaker):
        tight = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=5)
        await breaker.record_failure(ENDPOINT, "HTTP 503", tight)
        assert (await breaker.state(ENDPOINT)).state == CircuitState.OPEN

    @pytest.mark.unit
    async def test_endpoints_are_isolated(self, breaker):
        await self._open(breaker)
        assert not await breaker.can_execute(ENDPOINT)
        assert await breaker.can_execute("other")

    @pytest.mark.unit
    async def test_force_open_close_and_reset(self, breaker):
        await breaker.force_open(ENDPOINT)
        assert not await breaker.can_execute(ENDPOINT)

        await breaker.force_close(ENDPOINT)
        assert await breaker.can_execute(ENDPOINT)

        await self._open(breaker)
        await breaker.reset(ENDPOINT)
        assert ENDPOINT not in await breaker.states()
        assert await breaker.can_execute(ENDPOINT)

    @pytest.mark.unit
    async def test_listener_errors_do_not_break_transitions(self, config, clock):
        listener = MagicMock(side_effect=RuntimeError("boom"))
        breaker = CircuitBreaker(MemoryCircuitBreakerStore(), config, listener=listener, clock=clock)
        await breaker.force_open(ENDPOINT)

        listener.assert_called_once()
        assert (await breaker.state(ENDPOINT)).state == CircuitState.OPEN


class TestCircuitBreakerState:
    """Serialization for the Redis hash"""

    @pytest.mark.unit
    def test_mapping_round_trip(self):
        state = CircuitBreakerState(
            endpoint=ENDPOINT,
            state=CircuitState.HALF_OPEN,
            consecutive_failure_count=4,
            opened_at=1234.5,
            cooldown_seconds=60.0,
            trial_in_flight=True,
        )
        assert CircuitBreakerState.from_mapping(ENDPOINT, state.to_mapping()) == state

    @pytest.mark.unit
    def test_empty_mapping_is_closed(self):
        state = CircuitBreakerState.from_mapping(ENDPOINT, {})
        assert state.state == CircuitState.CLOSED
        assert state.opened_at is None


class TestRedisStore:
    """RedisCircuitBreakerStore with a mocked client"""

    @pytest.fixture
    def redis(self):
        lock = MagicMock()
        lock.__aenter__ = AsyncMock(return_value=lock)
        lock.__aexit__ = AsyncMock(return_value=False)

        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, 1])
        pipe.__aenter__ = AsyncMock(return_value=pipe)
        pipe.__aexit__ = AsyncMock(return_value=False)

        client = MagicMock()
        client.lock = MagicMock(return_value=lock)
        client.pipeline = MagicMock(return_value=pipe)
        client.hgetall = AsyncMock(return_value={})
        client._pipe = pipe
        return client

    @pytest.mark.unit
    async def test_transaction_locks_and_persists(self, redis):
        store = RedisCircuitBreakerStore(redis, lock_timeout=2.0)
        async with store.transaction(ENDPOINT) as state:
            state.consecutive_failure_count = 2

        redis.lock.assert_called_once_with("circuit:partner:lock", timeout=2.0, blocking_timeout=2.0)
        redis._pipe.hset.assert_called_once()
        _, kwargs = redis._pipe.hset.call_args
        assert kwargs["mapping"]["consecutive_failure_count"] == "2"
        redis._pipe.sadd.assert_called_once_with("circuit:endpoints", ENDPOINT)
