"""
Request coalescing and priority queueing for index executions.
"""

import asyncio
import hashlib
import heapq
import itertools
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


Build = Callable[[], Awaitable[Any]]


def normalize_query(query_text: str) -> str:
    """Collapse whitespace so formatting differences do not split dedup groups."""
    return " ".join(query_text.split())


def make_dedup_key(query_text: str, variables: Optional[Dict[str, Any]] = None) -> str:
    """Deterministic key for a query+variables pair."""
    serialized = json.dumps(variables or {}, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256()
    digest.update(normalize_query(query_text).encode("utf-8"))
    digest.update(b"\n")
    digest.update(serialized.encode("utf-8"))
    return digest.hexdigest()


@dataclass(frozen=True)
class QueryDescriptor:
    """A unit of work identified by its dedup key."""

    dedup_key: str
    build: Build
    priority: int = 0
    # Oldest memoized outcome the caller will accept, in seconds
    max_age: Optional[float] = None

    @classmethod
    def for_query(
        cls,
        query_text: str,
        variables: Optional[Dict[str, Any]],
        build: Build,
        priority: int = 0,
        max_age: Optional[float] = None,
    ) -> "QueryDescriptor":
        return cls(
            dedup_key=make_dedup_key(query_text, variables),
            build=build,
            priority=priority,
            max_age=max_age,
        )


@dataclass
class PendingRequest:
    """In-flight bookkeeping for one dedup key."""

    dedup_key: str
    future: asyncio.Future
    callers: int = 1


@dataclass
class QueueEntry:
    """Work waiting for a concurrency slot."""

    dedup_key: str
    execute: Build
    priority: int
    enqueued_at: float
    sequence: int

    def rank(self) -> Tuple[int, float, int]:
        # Higher priority first, then FIFO
        return (-self.priority, self.enqueued_at, self.sequence)


@dataclass
class ProcessedOutcome:
    """Settled result of one execution."""

    completed_at: float
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class ProcessedMemo:
    """Short-lived record of settled executions, keyed by dedup key."""

    def __init__(self, ttl_seconds: float = 3600.0, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._outcomes: Dict[str, ProcessedOutcome] = {}

    def record(self, dedup_key: str, result: Any = None, error: Optional[BaseException] = None) -> ProcessedOutcome:
        outcome = ProcessedOutcome(completed_at=self._clock(), result=result, error=error)
        self._outcomes[dedup_key] = outcome
        return outcome

    def lookup(self, dedup_key: str, max_age: Optional[float] = None) -> Optional[ProcessedOutcome]:
        """Return the outcome for a key if it is younger than the TTL and ``max_age``."""
        outcome = self._outcomes.get(dedup_key)
        if outcome is None:
            return None
        limit = self.ttl_seconds if max_age is None else min(self.ttl_seconds, max_age)
        if self._clock() - outcome.completed_at > limit:
            return None
        return outcome

    def sweep(self) -> int:
        """Drop outcomes older than the TTL; returns how many were removed."""
        cutoff = self._clock() - self.ttl_seconds
        expired = [key for key, outcome in self._outcomes.items() if outcome.completed_at < cutoff]
        for key in expired:
            del self._outcomes[key]
        return len(expired)

    def clear(self) -> None:
        self._outcomes.clear()

    def __contains__(self, dedup_key: str) -> bool:
        return dedup_key in self._outcomes

    def __len__(self) -> int:
        return len(self._outcomes)


def _retrieve_outcome(future: asyncio.Future) -> None:
    # Mark rejections as retrieved so callers that went away do not leave
    # "exception was never retrieved" noise behind.
    if not future.cancelled():
        future.exception()


class DedupQueue:
    """Coalesces identical concurrent requests and orders novel ones by priority.

    ``enqueue`` hands back a future that settles with the outcome of exactly
    one execution per dedup key. Callers awaiting it should shield it so that
    one caller's cancellation does not cancel the shared future.
    """

    def __init__(
        self,
        memo: Optional[ProcessedMemo] = None,
        clock: Optional[Callable[[], float]] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.memo = memo if memo is not None else ProcessedMemo(clock=clock)
        self.metrics = metrics
        self.logger = get_logger("risk.dedup_queue")
        self._clock = clock or time.monotonic
        self._sequence = itertools.count()
        self._heap: List[Tuple[Tuple[int, float, int], QueueEntry]] = []
        self._queued: Dict[str, QueueEntry] = {}
        self._pending: Dict[str, PendingRequest] = {}

    def enqueue(self, descriptor: QueryDescriptor) -> asyncio.Future:
        key = descriptor.dedup_key

        pending = self._pending.get(key)
        if pending is not None:
            pending.callers += 1
            self._count_coalesced("in_flight")
            self.logger.debug("Coalesced with in-flight request", dedup_key=key, callers=pending.callers)
            return pending.future

        loop = asyncio.get_running_loop()

        memoized = self.memo.lookup(key, max_age=descriptor.max_age)
        if memoized is not None and memoized.succeeded:
            self._count_coalesced("memo")
            self.logger.debug("Served from processed memo", dedup_key=key)
            future = loop.create_future()
            future.set_result(memoized.result)
            return future

        future = loop.create_future()
        future.add_done_callback(_retrieve_outcome)
        entry = QueueEntry(
            dedup_key=key,
            execute=descriptor.build,
            priority=descriptor.priority,
            enqueued_at=self._clock(),
            sequence=next(self._sequence),
        )
        self._pending[key] = PendingRequest(dedup_key=key, future=future)
        self._queued[key] = entry
        heapq.heappush(self._heap, (entry.rank(), entry))
        self.logger.debug("Queued request", dedup_key=key, priority=entry.priority, queue_size=len(self._queued))
        return future

    def take(self, limit: int) -> List[QueueEntry]:
        """Remove and return up to ``limit`` entries in dispatch order."""
        taken: List[QueueEntry] = []
        while self._heap and len(taken) < limit:
            _, entry = heapq.heappop(self._heap)
            if self._queued.get(entry.dedup_key) is not entry:
                continue
            del self._queued[entry.dedup_key]
            taken.append(entry)
        return taken

    def settle(self, dedup_key: str, result: Any = None, error: Optional[BaseException] = None) -> int:
        """Resolve or reject every caller of ``dedup_key``; returns the caller count."""
        pending = self._pending.pop(dedup_key, None)
        if pending is None:
            return 0

        future = pending.future
        if not future.done():
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)
        return pending.callers

    def reject_all(self, error: BaseException) -> int:
        """Reject every queued and in-flight caller; used on shutdown."""
        keys = list(self._pending)
        for key in keys:
            self.settle(key, error=error)
        self._queued.clear()
        self._heap.clear()
        return len(keys)

    def is_queued(self, dedup_key: str) -> bool:
        return dedup_key in self._queued

    def is_pending(self, dedup_key: str) -> bool:
        return dedup_key in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def __len__(self) -> int:
        return len(self._queued)

    def _count_coalesced(self, source: str) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter("coalesced_requests_total", source=source)
        except Exception as exc:  # pragma: no cover - metrics failures never block callers
            self.logger.debug("Failed to record coalesce metric", error=str(exc))
