"""
Cache-aside gateway in front of the index.
"""

import asyncio
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar, TYPE_CHECKING

from pydantic import BaseModel

from shared.circuit_breaker import CircuitBreaker
from shared.errors import CacheUnavailable
from shared.logging import get_logger
from .adapters.index_client import IndexQueryExecutor
from .caching.cache_store import CacheStore
from .history.window import HistoricalWindowConfig
from .scheduling.dedup_queue import DedupQueue, ProcessedMemo, QueryDescriptor, make_dedup_key
from .scheduling.scheduler import (
    ConcurrencyScheduler,
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    DEFAULT_MEMO_SWEEP_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_TICK_INTERVAL,
)

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_CACHE_TTL = 300
DEFAULT_PROCESSED_TTL = 3600.0

# Priority of the enclosing query() call, inherited by fetch()
_query_priority: ContextVar[int] = ContextVar("query_priority", default=0)
# Cache TTL of the enclosing query() call, bounding memo replay for fetch()
_query_ttl: ContextVar[Optional[float]] = ContextVar("query_ttl", default=None)


class CacheAsideGateway:
    """Public entry point for index reads.

    ``query`` serves from the cache store when it can. On a miss it runs the
    caller's ``query_fn``, which reaches the index through ``fetch`` and so
    through the dedup queue, the scheduler and the circuit breaker. Fresh
    results are written through before returning. When the breaker is open
    and the fetch fails, a stale cached value is served if one exists.
    """

    def __init__(
        self,
        executor: IndexQueryExecutor,
        cache_store: CacheStore,
        *,
        history: Optional[HistoricalWindowConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        processed_ttl: float = DEFAULT_PROCESSED_TTL,
        memo_sweep_interval: float = DEFAULT_MEMO_SWEEP_INTERVAL,
        default_ttl: int = DEFAULT_CACHE_TTL,
        metrics: Optional["MetricsCollector"] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.executor = executor
        self.cache_store = cache_store
        self.history = history or HistoricalWindowConfig()
        self.breaker = breaker or CircuitBreaker(clock=clock)
        self.default_ttl = default_ttl
        self.metrics = metrics
        self.logger = get_logger("risk.gateway")

        self.memo = ProcessedMemo(ttl_seconds=processed_ttl, clock=clock)
        self.queue = DedupQueue(memo=self.memo, clock=clock, metrics=metrics)
        self.scheduler = ConcurrencyScheduler(
            self.queue,
            self.breaker,
            max_concurrent_requests=max_concurrent_requests,
            tick_interval=tick_interval,
            request_timeout=request_timeout,
            memo_sweep_interval=memo_sweep_interval,
            metrics=metrics,
        )

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        try:
            await self.cache_store.close()
        except Exception as e:
            self.logger.error("Failed to close cache store", error=str(e))

    async def __aenter__(self) -> "CacheAsideGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def query(
        self,
        cache_key: str,
        query_fn: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
        priority: int = 0,
    ) -> T:
        """Cache-aside read of ``cache_key`` backed by ``query_fn``."""
        cached = await self._read_cache(cache_key)
        if cached is not None:
            self._count("cache_hits_total", cache_type="fresh")
            self.logger.debug("Cache hit", cache_key=cache_key)
            return cached
        self._count("cache_misses_total", cache_type="fresh")

        ttl = self.default_ttl if ttl is None else ttl
        token = _query_priority.set(priority)
        ttl_token = _query_ttl.set(ttl)
        try:
            result = await query_fn()
        except Exception as error:
            if self.breaker.is_open():
                stale = await self._read_stale(cache_key)
                if stale is not None:
                    self._count("stale_reads_total", result="served")
                    self.logger.warning(
                        "Serving stale cache entry while circuit is open",
                        cache_key=cache_key,
                        error=str(error),
                    )
                    return stale
                self._count("stale_reads_total", result="missing")
            raise
        finally:
            _query_priority.reset(token)
            _query_ttl.reset(ttl_token)

        await self._write_cache(cache_key, result, ttl)
        return result

    async def fetch(
        self,
        query_text: str,
        variables: Optional[Dict[str, Any]] = None,
        *,
        priority: Optional[int] = None,
        response_model: Optional[Type[ModelT]] = None,
        max_age: Optional[float] = None,
    ) -> Any:
        """Run one index query through the dedup queue.

        Without an explicit ``priority`` the priority of the enclosing
        ``query`` call is used. Likewise ``max_age`` defaults to the
        enclosing call's cache TTL, so a memoized outcome is never replayed
        once the cache entry it produced would have expired.
        """
        if priority is None:
            priority = _query_priority.get()
        if max_age is None:
            max_age = _query_ttl.get()

        async def build():
            return await self.executor.execute(query_text, variables, response_model=response_model)

        descriptor = QueryDescriptor(
            dedup_key=make_dedup_key(query_text, variables),
            build=build,
            priority=priority,
            max_age=max_age,
        )
        return await self.submit(descriptor)

    async def submit(self, descriptor: QueryDescriptor) -> Any:
        """Enqueue an arbitrary descriptor and wait for its shared outcome."""
        future = self.queue.enqueue(descriptor)
        return await asyncio.shield(future)

    async def _read_cache(self, cache_key: str) -> Optional[Any]:
        try:
            return await self.cache_store.get(cache_key)
        except CacheUnavailable as e:
            self.logger.error("Cache read failed, treating as miss", cache_key=cache_key, error=e.message)
            return None

    async def _read_stale(self, cache_key: str) -> Optional[Any]:
        try:
            return await self.cache_store.get_stale(cache_key)
        except CacheUnavailable as e:
            self.logger.error("Stale cache read failed", cache_key=cache_key, error=e.message)
            return None

    async def _write_cache(self, cache_key: str, value: Any, ttl: int) -> None:
        try:
            await self.cache_store.set(cache_key, value, ttl)
            self.logger.debug("Cached index result", cache_key=cache_key, ttl=ttl)
        except CacheUnavailable as e:
            self.logger.error("Cache write failed", cache_key=cache_key, error=e.message)

    def _count(self, metric_name: str, **labels) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter(metric_name, **labels)
        except Exception as exc:  # pragma: no cover - metrics failures never block callers
            self.logger.debug("Failed to record gateway metric", metric=metric_name, error=str(exc))

    def get_queue_status(self) -> Dict[str, Any]:
        return self.scheduler.get_status()

    @property
    def historical_timestamp(self) -> int:
        return self.history.timestamp

    def get_historical_config(self) -> Dict[str, Any]:
        return self.history.window.to_dict()

    def update_historical_config(
        self,
        years_back: Optional[int] = None,
        months_back: Optional[int] = None,
        days_back: Optional[int] = None,
    ) -> Dict[str, Any]:
        return self.history.update(years_back, months_back, days_back).to_dict()

    async def clear_cache(self) -> None:
        """Drop cached index results and the processed memo."""
        self.memo.clear()
        await self.cache_store.clear()
        self.logger.info("Gateway cache cleared")
