"""
Unit tests for the cache-aside gateway.
"""

import asyncio
from datetime import datetime, timezone
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_risk.app.caching.cache_store import MemoryCacheStore
from service_risk.app.gateway import CacheAsideGateway
from service_risk.app.history.window import HistoricalWindowConfig
from shared.circuit_breaker import CircuitBreaker
from shared.errors import CacheUnavailable, GatewayShutdown, UpstreamServerError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, drain


QUERY = "query GetOperator($operatorAddress: Bytes!) { operator(id: $operatorAddress) { id } }"
FIXED_NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


async def run_query(gateway, cache_key, query_fn, **kwargs):
    """Issue a query and drive the scheduler by hand until it settles."""
    task = asyncio.create_task(gateway.query(cache_key, query_fn, **kwargs))
    for _ in range(3):
        await drain()
        gateway.scheduler.tick()
    await drain()
    return await task


def fetching(gateway, variables, **kwargs):
    async def query_fn():
        return await gateway.fetch(QUERY, variables, **kwargs)
    return query_fn


class TestCacheAsideGateway:
    """Test cases for CacheAsideGateway."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return MemoryCacheStore(stale_ttl=86400, clock=clock)

    @pytest.fixture
    def executor(self):
        executor = MagicMock()
        executor.execute = AsyncMock(return_value={"operator": {"id": "0xabc"}})
        return executor

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=5, recovery_timeout=60.0, clock=clock)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("risk-test")

    @pytest.fixture
    def gateway(self, executor, store, breaker, metrics, clock):
        return CacheAsideGateway(
            executor,
            store,
            history=HistoricalWindowConfig(years_back=1, now=lambda: FIXED_NOW),
            breaker=breaker,
            max_concurrent_requests=2,
            request_timeout=5.0,
            default_ttl=300,
            metrics=metrics,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_cache_hit_skips_query_fn(self, gateway, store, metrics):
        """Test a fresh cached value is returned without running query_fn."""
        await store.set("operator:0xabc", {"cached": True}, 300)
        query_fn = AsyncMock()

        result = await gateway.query("operator:0xabc", query_fn)

        assert result == {"cached": True}
        query_fn.assert_not_awaited()
        assert metrics.sample("cache_hits_total", cache_type="fresh") == 1

    @pytest.mark.asyncio
    async def test_miss_fetches_and_writes_through(self, gateway, store, executor, metrics):
        """Test a miss runs the query through the scheduler and caches the result."""
        result = await run_query(gateway, "operator:0xabc", fetching(gateway, {"operatorAddress": "0xabc"}), ttl=120)

        assert result == {"operator": {"id": "0xabc"}}
        executor.execute.assert_awaited_once_with(QUERY, {"operatorAddress": "0xabc"}, response_model=None)
        assert await store.get("operator:0xabc") == result
        assert metrics.sample("cache_misses_total", cache_type="fresh") == 1

    @pytest.mark.asyncio
    async def test_repeated_query_is_idempotent(self, gateway, executor):
        """Test a second query within the TTL is served from cache."""
        query_fn = fetching(gateway, {"operatorAddress": "0xabc"})
        first = await run_query(gateway, "operator:0xabc", query_fn)

        second = await gateway.query("operator:0xabc", query_fn)

        assert first == second
        assert executor.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, gateway, executor, clock):
        """Test an expired entry is fetched again rather than replayed from the memo."""
        query_fn = fetching(gateway, {"operatorAddress": "0xabc"})
        await run_query(gateway, "operator:0xabc", query_fn, ttl=60)
        clock.advance(61)

        await run_query(gateway, "operator:0xabc", query_fn, ttl=60)

        assert executor.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_short_ttl_is_honoured_within_processed_ttl(self, gateway, executor, clock):
        """Test every expiry of a short TTL reaches the index, well inside the memo lifetime."""
        query_fn = fetching(gateway, {"operatorAddress": "0xabc"})

        await run_query(gateway, "operator:0xabc", query_fn, ttl=60)
        clock.advance(61)
        await run_query(gateway, "operator:0xabc", query_fn, ttl=60)
        clock.advance(31 * 60)
        await run_query(gateway, "operator:0xabc", query_fn, ttl=60)

        assert executor.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_memo_replays_within_caller_ttl(self, gateway, executor, store, clock):
        """Test a miss inside the caller's TTL is still served from the processed memo."""
        query_fn = fetching(gateway, {"operatorAddress": "0xabc"})
        await run_query(gateway, "operator:0xabc", query_fn, ttl=300)
        await store.clear()
        clock.advance(30)

        result = await run_query(gateway, "operator:0xabc", query_fn, ttl=300)

        assert result == {"operator": {"id": "0xabc"}}
        assert executor.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_queries_share_one_execution(self, gateway, executor):
        """Test concurrent misses for one query reach the index once."""
        release = asyncio.Event()

        async def slow_execute(*args, **kwargs):
            await release.wait()
            return {"operator": {"id": "0xabc"}}

        executor.execute = AsyncMock(side_effect=slow_execute)
        tasks = [
            asyncio.create_task(gateway.query("operator:0xabc", fetching(gateway, {"operatorAddress": "0xabc"})))
            for _ in range(5)
        ]
        await drain()
        gateway.scheduler.tick()
        await drain()
        release.set()
        await drain()

        results = await asyncio.gather(*tasks)

        assert results == [{"operator": {"id": "0xabc"}}] * 5
        assert executor.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_stale_value_served_when_breaker_open(self, gateway, store, breaker, clock, metrics):
        """Test an expired entry is served when query_fn fails under an open breaker."""
        await store.set("operator:0xabc", {"stale": True}, 60)
        clock.advance(120)
        for _ in range(5):
            breaker.record_failure()
        query_fn = AsyncMock(side_effect=UpstreamServerError("index down"))

        result = await gateway.query("operator:0xabc", query_fn)

        assert result == {"stale": True}
        assert metrics.sample("stale_reads_total", result="served") == 1

    @pytest.mark.asyncio
    async def test_failure_that_trips_breaker_falls_back_to_stale(self, gateway, store, breaker, executor, clock):
        """Test the failure that opens the breaker is answered from the stale copy."""
        await store.set("operator:0xabc", {"stale": True}, 60)
        clock.advance(120)
        for _ in range(4):
            breaker.record_failure()
        executor.execute = AsyncMock(side_effect=UpstreamServerError("index down"))

        result = await run_query(gateway, "operator:0xabc", fetching(gateway, {"operatorAddress": "0xabc"}))

        assert result == {"stale": True}
        assert breaker.is_open() is True

    @pytest.mark.asyncio
    async def test_failure_propagates_without_stale_value(self, gateway, breaker, metrics):
        """Test an open breaker with nothing cached re-raises the original error."""
        for _ in range(5):
            breaker.record_failure()
        error = UpstreamServerError("index down")

        with pytest.raises(UpstreamServerError) as exc_info:
            await gateway.query("operator:0xabc", AsyncMock(side_effect=error))

        assert exc_info.value is error
        assert metrics.sample("stale_reads_total", result="missing") == 1

    @pytest.mark.asyncio
    async def test_failure_propagates_while_breaker_closed(self, gateway, store, clock):
        """Test stale values are only used while the breaker is open."""
        await store.set("operator:0xabc", {"stale": True}, 60)
        clock.advance(120)

        with pytest.raises(UpstreamServerError):
            await gateway.query("operator:0xabc", AsyncMock(side_effect=UpstreamServerError()))

    @pytest.mark.asyncio
    async def test_cache_write_failure_still_returns_result(self, gateway, store):
        store.set = AsyncMock(side_effect=CacheUnavailable("redis down"))

        result = await gateway.query("operator:0xabc", AsyncMock(return_value={"value": 1}))

        assert result == {"value": 1}
        store.set.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cache_read_failure_is_a_miss(self, gateway, store):
        store.get = AsyncMock(side_effect=CacheUnavailable("redis down"))
        query_fn = AsyncMock(return_value={"value": 1})

        result = await gateway.query("operator:0xabc", query_fn)

        assert result == {"value": 1}
        query_fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fetch_inherits_query_priority(self, gateway, executor):
        """Test fetches inside query_fn are queued at the caller's priority."""
        gateway.scheduler.max_concurrent_requests = 1
        low = asyncio.create_task(
            gateway.query("low", fetching(gateway, {"operatorAddress": "low"}), priority=0)
        )
        high = asyncio.create_task(
            gateway.query("high", fetching(gateway, {"operatorAddress": "high"}), priority=5)
        )
        await drain()

        for _ in range(2):
            gateway.scheduler.tick()
            await drain()
        await asyncio.gather(low, high)

        called = [call.args[1]["operatorAddress"] for call in executor.execute.await_args_list]
        assert called == ["high", "low"]

    @pytest.mark.asyncio
    async def test_explicit_fetch_priority_wins(self, gateway):
        task = asyncio.create_task(
            gateway.query("key", fetching(gateway, {"operatorAddress": "0xabc"}, priority=9), priority=1)
        )
        await drain()

        entry = gateway.queue.take(1)[0]

        assert entry.priority == 9
        gateway.queue.settle(entry.dedup_key, result={"value": 1})
        assert await task == {"value": 1}

    @pytest.mark.asyncio
    async def test_queue_status(self, gateway):
        status = gateway.get_queue_status()

        assert status["queue_size"] == 0
        assert status["active_count"] == 0
        assert status["failure_count"] == 0
        assert status["circuit_open"] is False
        assert status["pending_dedup_count"] == 0

    def test_historical_config(self, gateway):
        """Test the window accessors and update."""
        config = gateway.get_historical_config()

        assert config["years_back"] == 1
        assert config["historical_timestamp"] == int(datetime(2023, 6, 15, 12, 0, tzinfo=timezone.utc).timestamp())
        assert gateway.historical_timestamp == config["historical_timestamp"]

        updated = gateway.update_historical_config(months_back=2, days_back=5)

        assert updated["years_back"] == 1
        assert updated["months_back"] == 2
        assert updated["days_back"] == 5
        assert gateway.historical_timestamp == int(datetime(2023, 4, 10, 12, 0, tzinfo=timezone.utc).timestamp())

    @pytest.mark.asyncio
    async def test_clear_cache(self, gateway, store):
        await store.set("operator:0xabc", {"value": 1}, 300)
        gateway.memo.record("key", result=1)

        await gateway.clear_cache()

        assert await store.get("operator:0xabc") is None
        assert await store.get_stale("operator:0xabc") is None
        assert len(gateway.memo) == 0

    @pytest.mark.asyncio
    async def test_context_manager_starts_and_stops(self, gateway, store):
        store.close = AsyncMock()

        async with gateway as running:
            assert running.scheduler.running is True
            result = await asyncio.wait_for(
                running.query("operator:0xabc", fetching(running, {"operatorAddress": "0xabc"})),
                timeout=1.0,
            )
            assert result == {"operator": {"id": "0xabc"}}

        assert gateway.scheduler.running is False
        store.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_rejects_waiting_queries(self, gateway):
        task = asyncio.create_task(gateway.query("operator:0xabc", fetching(gateway, {"operatorAddress": "0xabc"})))
        await drain()

        await gateway.stop()

        with pytest.raises(GatewayShutdown):
            await task
