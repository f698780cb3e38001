"""
Tick-driven scheduler draining the dedup queue under a concurrency ceiling.
"""

import asyncio
import time
from typing import Any, Dict, Optional, Set, TYPE_CHECKING

from shared.circuit_breaker import CircuitBreaker
from shared.errors import GatewayShutdown, TransportTimeout, counts_toward_breaker
from shared.logging import dedup_key_var, get_logger
from .dedup_queue import DedupQueue, QueueEntry

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_MAX_CONCURRENT_REQUESTS = 10
DEFAULT_TICK_INTERVAL = 0.1
# Below the index transport timeout so local timeouts are seen first
DEFAULT_REQUEST_TIMEOUT = 25.0
DEFAULT_MEMO_SWEEP_INTERVAL = 300.0


class ConcurrencyScheduler:
    """Dispatches queued index work on a fixed tick.

    Each tick is skipped while the circuit breaker is open. Otherwise up to
    ``max_concurrent_requests - len(active)`` entries are taken from the
    queue in (priority desc, enqueued_at asc) order and dispatched as tasks.
    A dispatch that outlives ``request_timeout`` is cancelled and its callers
    receive ``TransportTimeout``.
    """

    def __init__(
        self,
        queue: DedupQueue,
        breaker: CircuitBreaker,
        *,
        max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        memo_sweep_interval: float = DEFAULT_MEMO_SWEEP_INTERVAL,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.queue = queue
        self.memo = queue.memo
        self.breaker = breaker
        self.max_concurrent_requests = max_concurrent_requests
        self.tick_interval = tick_interval
        self.request_timeout = request_timeout
        self.memo_sweep_interval = memo_sweep_interval
        self.metrics = metrics
        self.logger = get_logger("risk.scheduler")

        self.active: Set[str] = set()
        self._dispatches: Set[asyncio.Task] = set()
        self._tick_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self) -> None:
        """Start the tick and memo sweep tasks."""
        if self.running:
            return
        self.running = True
        self._tick_task = asyncio.create_task(self._tick_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info(
            "Scheduler started",
            max_concurrent_requests=self.max_concurrent_requests,
            tick_interval=self.tick_interval,
            request_timeout=self.request_timeout,
        )

    async def stop(self) -> None:
        """Stop background tasks, cancel in-flight work and reject waiting callers."""
        self.running = False
        for task in (self._tick_task, self._sweep_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tick_task = None
        self._sweep_task = None

        dispatches = list(self._dispatches)
        for task in dispatches:
            task.cancel()
        if dispatches:
            await asyncio.gather(*dispatches, return_exceptions=True)

        rejected = self.queue.reject_all(GatewayShutdown())
        self.active.clear()
        self._update_gauges()
        self.logger.info("Scheduler stopped", rejected=rejected, cancelled=len(dispatches))

    async def _tick_loop(self) -> None:
        while self.running:
            try:
                self.tick()
            except Exception as e:
                self.logger.error("Scheduler tick failed", error=str(e))
            await asyncio.sleep(self.tick_interval)

    async def _sweep_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.memo_sweep_interval)
            try:
                removed = self.memo.sweep()
                if removed:
                    self.logger.debug("Swept processed memo", removed=removed, remaining=len(self.memo))
            except Exception as e:
                self.logger.error("Processed memo sweep failed", error=str(e))

    def tick(self) -> int:
        """Run one scheduling pass; returns the number of dispatched entries."""
        if self.breaker.is_open():
            self.logger.debug("Circuit open, skipping tick", queue_size=len(self.queue))
            self._update_gauges()
            return 0

        available = self.max_concurrent_requests - len(self.active)
        if available <= 0:
            return 0

        entries = self.queue.take(available)
        for entry in entries:
            self.active.add(entry.dedup_key)
            task = asyncio.create_task(self._dispatch(entry))
            self._dispatches.add(task)
            task.add_done_callback(self._dispatches.discard)

        if entries:
            self.logger.debug(
                "Dispatched queued requests",
                dispatched=len(entries),
                active=len(self.active),
                queue_size=len(self.queue),
            )
        self._update_gauges()
        return len(entries)

    async def _dispatch(self, entry: QueueEntry) -> None:
        dedup_key_var.set(entry.dedup_key)
        start = time.perf_counter()
        result: Any = None
        error: Optional[BaseException] = None

        try:
            result = await asyncio.wait_for(self._execute(entry), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Index request exceeded local timeout", timeout=self.request_timeout)
            error = TransportTimeout(
                f"Index request exceeded {self.request_timeout}s",
                details={"timeout": self.request_timeout, "dedup_key": entry.dedup_key},
            )
        except asyncio.CancelledError:
            self._settle(entry, error=GatewayShutdown(), duration=time.perf_counter() - start, record=False)
            raise
        except Exception as e:
            error = e

        self._settle(entry, result=result, error=error, duration=time.perf_counter() - start)

    async def _execute(self, entry: QueueEntry) -> Any:
        # Timeouts raised by the build itself are not the local deadline
        try:
            return await entry.execute()
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise TransportTimeout(
                f"Index request timed out: {e}" if str(e) else "Index request timed out",
                details={"dedup_key": entry.dedup_key, "error": str(e)},
            ) from e

    def _settle(
        self,
        entry: QueueEntry,
        result: Any = None,
        error: Optional[BaseException] = None,
        duration: float = 0.0,
        record: bool = True,
    ) -> None:
        """Settle one dispatch. Every stage is isolated from the others."""
        key = entry.dedup_key

        if record:
            try:
                if error is None:
                    self.breaker.record_success()
                elif counts_toward_breaker(error):
                    self.breaker.record_failure()
            except Exception as e:
                self.logger.error("Failed to update circuit breaker", dedup_key=key, error=str(e))

            try:
                self.memo.record(key, result=result, error=error)
            except Exception as e:
                self.logger.error("Failed to record processed outcome", dedup_key=key, error=str(e))

        try:
            callers = self.queue.settle(key, result=result, error=error)
            if error is not None:
                self.logger.warning(
                    "Index request failed",
                    dedup_key=key,
                    callers=callers,
                    error_type=type(error).__name__,
                    error=str(error),
                )
        except Exception as e:
            self.logger.error("Failed to settle callers", dedup_key=key, error=str(e))

        self._release(key)
        self._record_metrics(error, duration)

    def _release(self, key: str) -> None:
        try:
            self.active.discard(key)
        except Exception as e:
            self.logger.error("Failed to release active slot, retrying", dedup_key=key, error=str(e))
            try:
                self.active.discard(key)
            except Exception as retry_error:
                self.logger.error("Active slot release retry failed", dedup_key=key, error=str(retry_error))

    def _record_metrics(self, error: Optional[BaseException], duration: float) -> None:
        if not self.metrics:
            return
        try:
            outcome = "success" if error is None else type(error).__name__
            self.metrics.increment_counter("index_requests_total", outcome=outcome)
            self.metrics.observe_histogram("index_request_duration_seconds", duration, outcome=outcome)
            if error is not None:
                self.metrics.record_error(type(error).__name__)
        except Exception as exc:  # pragma: no cover - metrics failures never block callers
            self.logger.debug("Failed to record dispatch metrics", error=str(exc))
        self._update_gauges()

    def _update_gauges(self) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.set_gauge("queue_depth", len(self.queue))
            self.metrics.set_gauge("active_requests", len(self.active))
            self.metrics.set_gauge("circuit_open", 1 if self.breaker.is_open() else 0)
        except Exception as exc:  # pragma: no cover
            self.logger.debug("Failed to update scheduler gauges", error=str(exc))

    def get_status(self) -> Dict[str, Any]:
        return {
            "queue_size": len(self.queue),
            "active_count": len(self.active),
            "failure_count": self.breaker.failure_count,
            "circuit_open": self.breaker.is_open(),
            "pending_dedup_count": self.queue.pending_count,
            "processed_count": len(self.memo),
        }
