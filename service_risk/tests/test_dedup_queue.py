"""
Unit tests for the dedup queue and processed memo.
"""

import asyncio
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_risk.app.scheduling.dedup_queue import (
    DedupQueue,
    ProcessedMemo,
    QueryDescriptor,
    make_dedup_key,
    normalize_query,
)
from shared.errors import UpstreamServerError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, immediate


QUERY = """
query GetOperator($operatorAddress: Bytes!) {
  operator(id: $operatorAddress) { id }
}
"""


class TestDedupKey:
    """Test cases for dedup key derivation."""

    def test_key_is_deterministic(self):
        assert make_dedup_key(QUERY, {"operatorAddress": "0xabc"}) == make_dedup_key(QUERY, {"operatorAddress": "0xabc"})

    def test_variable_order_does_not_matter(self):
        first = make_dedup_key(QUERY, {"a": 1, "b": 2})
        second = make_dedup_key(QUERY, {"b": 2, "a": 1})
        assert first == second

    def test_whitespace_is_normalized(self):
        compact = "query GetOperator($operatorAddress: Bytes!) { operator(id: $operatorAddress) { id } }"
        assert normalize_query(QUERY) == compact
        assert make_dedup_key(QUERY, None) == make_dedup_key(compact, {})

    def test_different_variables_split_groups(self):
        assert make_dedup_key(QUERY, {"operatorAddress": "0xabc"}) != make_dedup_key(QUERY, {"operatorAddress": "0xdef"})

    def test_for_query_uses_same_key(self):
        descriptor = QueryDescriptor.for_query(QUERY, {"operatorAddress": "0xabc"}, immediate(), priority=3)
        assert descriptor.dedup_key == make_dedup_key(QUERY, {"operatorAddress": "0xabc"})
        assert descriptor.priority == 3


class TestProcessedMemo:
    """Test cases for ProcessedMemo."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def memo(self, clock):
        return ProcessedMemo(ttl_seconds=3600, clock=clock)

    def test_lookup_within_ttl(self, memo, clock):
        memo.record("key", result={"value": 1})
        clock.advance(3599)

        outcome = memo.lookup("key")

        assert outcome is not None
        assert outcome.succeeded is True
        assert outcome.result == {"value": 1}

    def test_lookup_after_ttl(self, memo, clock):
        memo.record("key", result={"value": 1})
        clock.advance(3601)

        assert memo.lookup("key") is None
        assert "key" in memo

    def test_sweep_removes_expired_outcomes(self, memo, clock):
        memo.record("old", result=1)
        clock.advance(3000)
        memo.record("new", result=2)
        clock.advance(1000)

        removed = memo.sweep()

        assert removed == 1
        assert "old" not in memo
        assert "new" in memo
        assert len(memo) == 1

    def test_lookup_with_max_age(self, memo, clock):
        memo.record("key", result=1)
        clock.advance(90)

        assert memo.lookup("key", max_age=60) is None
        assert memo.lookup("key", max_age=120) is not None
        assert memo.lookup("key", max_age=86400) is not None
        clock.advance(3600)
        assert memo.lookup("key", max_age=86400) is None

    def test_failed_outcome(self, memo):
        outcome = memo.record("key", error=UpstreamServerError())
        assert outcome.succeeded is False

    def test_clear(self, memo):
        memo.record("key", result=1)
        memo.clear()
        assert len(memo) == 0


class TestDedupQueue:
    """Test cases for DedupQueue."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("risk-test")

    @pytest.fixture
    def queue(self, clock, metrics):
        return DedupQueue(memo=ProcessedMemo(clock=clock), clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_entry(self, queue, metrics):
        """Test identical keys coalesce onto one future and one queue entry."""
        descriptor = QueryDescriptor("key-a", immediate())

        futures = [queue.enqueue(descriptor) for _ in range(5)]

        assert all(future is futures[0] for future in futures)
        assert len(queue) == 1
        assert queue.pending_count == 1
        assert metrics.sample("coalesced_requests_total", source="in_flight") == 4

    @pytest.mark.asyncio
    async def test_settle_resolves_every_caller(self, queue):
        """Test settlement fans out to all callers and reports the count."""
        descriptor = QueryDescriptor("key-a", immediate())
        futures = [queue.enqueue(descriptor) for _ in range(3)]
        queue.take(1)

        callers = queue.settle("key-a", result={"ok": True})

        assert callers == 3
        results = await asyncio.gather(*futures)
        assert results == [{"ok": True}] * 3
        assert queue.is_pending("key-a") is False

    @pytest.mark.asyncio
    async def test_rejection_is_identical_for_every_caller(self, queue):
        """Test every coalesced caller sees the same exception object."""
        descriptor = QueryDescriptor("key-a", immediate())
        futures = [queue.enqueue(descriptor) for _ in range(3)]
        error = UpstreamServerError("index down")

        queue.settle("key-a", error=error)

        outcomes = await asyncio.gather(*futures, return_exceptions=True)
        assert all(outcome is error for outcome in outcomes)

    @pytest.mark.asyncio
    async def test_in_flight_key_coalesces_after_take(self, queue):
        """Test a key that left the queue but is still executing still coalesces."""
        descriptor = QueryDescriptor("key-a", immediate())
        first = queue.enqueue(descriptor)
        queue.take(1)

        second = queue.enqueue(descriptor)

        assert second is first
        assert len(queue) == 0
        assert queue.is_queued("key-a") is False
        assert queue.is_pending("key-a") is True

    @pytest.mark.asyncio
    async def test_take_orders_by_priority_then_fifo(self, queue, clock):
        """Test dispatch order is priority desc, enqueue time asc."""
        for key, priority in [("low", 0), ("high-1", 5), ("mid", 2), ("high-2", 5)]:
            queue.enqueue(QueryDescriptor(key, immediate(), priority=priority))
            clock.advance(0.01)

        taken = queue.take(10)

        assert [entry.dedup_key for entry in taken] == ["high-1", "high-2", "mid", "low"]

    @pytest.mark.asyncio
    async def test_take_respects_limit(self, queue):
        for key in ["a", "b", "c"]:
            queue.enqueue(QueryDescriptor(key, immediate()))

        taken = queue.take(2)

        assert [entry.dedup_key for entry in taken] == ["a", "b"]
        assert len(queue) == 1
        assert queue.is_queued("c") is True

    @pytest.mark.asyncio
    async def test_memoized_success_is_replayed(self, queue, metrics):
        """Test a recently successful key resolves immediately without queueing."""
        queue.memo.record("key-a", result={"cached": True})

        future = queue.enqueue(QueryDescriptor("key-a", immediate()))

        assert future.done()
        assert await future == {"cached": True}
        assert len(queue) == 0
        assert queue.pending_count == 0
        assert metrics.sample("coalesced_requests_total", source="memo") == 1

    @pytest.mark.asyncio
    async def test_memo_replay_bounded_by_max_age(self, queue, clock):
        """Test a memoized success older than the caller's max_age is executed again."""
        queue.memo.record("key-a", result={"cached": True})
        clock.advance(61)

        fresh_enough = queue.enqueue(QueryDescriptor("key-a", immediate(), max_age=120))
        queue.memo.record("key-c", result=1)
        clock.advance(61)
        rejected = queue.enqueue(QueryDescriptor("key-c", immediate(), max_age=60))

        assert fresh_enough.done()
        assert not rejected.done()
        assert queue.is_queued("key-c") is True

    @pytest.mark.asyncio
    async def test_memoized_failure_is_not_replayed(self, queue):
        """Test a recent failure is executed again."""
        queue.memo.record("key-a", error=UpstreamServerError())

        future = queue.enqueue(QueryDescriptor("key-a", immediate()))

        assert not future.done()
        assert queue.is_queued("key-a") is True

    @pytest.mark.asyncio
    async def test_expired_memo_is_not_replayed(self, queue, clock):
        queue.memo.record("key-a", result=1)
        clock.advance(3601)

        future = queue.enqueue(QueryDescriptor("key-a", immediate()))

        assert not future.done()

    @pytest.mark.asyncio
    async def test_reject_all(self, queue):
        """Test shutdown rejection reaches queued and in-flight callers."""
        running = queue.enqueue(QueryDescriptor("running", immediate()))
        queued = queue.enqueue(QueryDescriptor("queued", immediate()))
        queue.take(1)
        error = RuntimeError("stopped")

        rejected = queue.reject_all(error)

        assert rejected == 2
        assert len(queue) == 0
        assert queue.pending_count == 0
        for future in (queued, running):
            with pytest.raises(RuntimeError):
                await future

    @pytest.mark.asyncio
    async def test_settle_unknown_key(self, queue):
        assert queue.settle("missing", result=1) == 0
