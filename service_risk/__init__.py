"""
Risk index service package.

Mediates every read of on-chain staking activity from the upstream index
on behalf of the risk scoring services:
- Cache-aside reads with stale fallback while the index is degraded
- Coalescing of identical concurrent queries
- Priority scheduling under a concurrency ceiling
- Circuit-breaking on repeated index failures

Structure:
- app.gateway: CacheAsideGateway, the public entry point.
- app.scheduling: Dedup queue, processed memo and scheduler.
- app.adapters: Index client, typed records and accessors.
- app.caching: Cache stores.
- app.history: Historical lookback window.
- app.stats: Statistics helpers for scoring collaborators.
- app.factory: Wiring from configuration.
"""
