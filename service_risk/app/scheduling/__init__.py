"""
Scheduling package for index executions.

- dedup_queue: request coalescing, priority ordering and the processed memo
- scheduler: tick-driven dispatch under a concurrency ceiling
"""

from .dedup_queue import (
    DedupQueue,
    PendingRequest,
    ProcessedMemo,
    ProcessedOutcome,
    QueryDescriptor,
    QueueEntry,
    make_dedup_key,
    normalize_query,
)
from .scheduler import ConcurrencyScheduler

__all__ = [
    "ConcurrencyScheduler",
    "DedupQueue",
    "PendingRequest",
    "ProcessedMemo",
    "ProcessedOutcome",
    "QueryDescriptor",
    "QueueEntry",
    "make_dedup_key",
    "normalize_query",
]
