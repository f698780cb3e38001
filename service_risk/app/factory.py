"""
Builds a gateway and its collaborators from configuration.
"""

from typing import Optional

from shared.circuit_breaker import CircuitBreaker
from shared.config import IndexGatewayConfig, get_config
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .adapters.index_client import IndexQueryExecutor
from .adapters.index_data import IndexDataService
from .caching.cache_store import CacheStore, RedisCacheStore
from .gateway import CacheAsideGateway
from .history.window import HistoricalWindowConfig


def create_gateway(
    config: Optional[IndexGatewayConfig] = None,
    *,
    cache_store: Optional[CacheStore] = None,
    metrics: Optional[MetricsCollector] = None,
    configure_logs: bool = False,
) -> CacheAsideGateway:
    """Wire executor, cache store, breaker and history window into a gateway.

    The returned gateway is not started; use it as an async context manager
    or call ``start()``.
    """
    config = config or get_config()
    if configure_logs:
        configure_logging(config.service_name, config.log_level)
    logger = get_logger(f"{config.service_name}.factory")

    executor = IndexQueryExecutor(config.index_url, timeout=config.index_timeout_seconds)
    store = cache_store or RedisCacheStore(
        config.redis_url,
        namespace=config.cache_namespace,
        stale_ttl=config.stale_ttl_seconds,
    )
    breaker = CircuitBreaker(
        failure_threshold=config.failure_threshold,
        recovery_timeout=config.recovery_timeout_seconds,
        name="index",
    )
    history = HistoricalWindowConfig(
        years_back=config.history_years_back,
        months_back=config.history_months_back,
        days_back=config.history_days_back,
    )

    gateway = CacheAsideGateway(
        executor,
        store,
        history=history,
        breaker=breaker,
        max_concurrent_requests=config.max_concurrent_requests,
        tick_interval=config.tick_interval_seconds,
        request_timeout=config.request_timeout_seconds,
        processed_ttl=config.processed_ttl_seconds,
        memo_sweep_interval=config.memo_sweep_interval_seconds,
        default_ttl=config.default_cache_ttl_seconds,
        metrics=metrics or get_metrics_collector(config.service_name),
    )
    logger.info(
        "Index gateway created",
        index_url=config.index_url,
        max_concurrent_requests=config.max_concurrent_requests,
        failure_threshold=config.failure_threshold,
        historical_timestamp=history.timestamp,
    )
    return gateway


def create_index_data_service(gateway: CacheAsideGateway) -> IndexDataService:
    return IndexDataService(gateway)
