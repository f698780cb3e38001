#!/usr/bin/env python3
"""
Warm the risk cache for a set of operators and AVSs.

Runs every index accessor the scoring services depend on for the given
addresses at low priority, so that later scoring requests are served from
Redis. Can be executed from a developer workstation or a scheduled job.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List
import sys

from shared.config import get_config
from shared.logging import clear_context, set_request_id
from service_risk.app.adapters.index_data import IndexDataService
from service_risk.app.factory import create_gateway


WARM_PRIORITY = -10


async def warm(*, operators: List[str], avs_addresses: List[str], overrides: Dict[str, Any]) -> dict:
    """Execute cache warming and return the summary."""
    config = get_config(**overrides)
    run_id = set_request_id()
    summary: Dict[str, Any] = {"run_id": run_id, "warmed": {"operator": 0, "avs": 0}, "errors": []}

    async with create_gateway(config, configure_logs=True) as gateway:
        data = IndexDataService(gateway)

        async def warm_operator(address: str) -> None:
            await asyncio.gather(
                data.get_operator_slashing_events(address, priority=WARM_PRIORITY),
                data.calculate_delegation_totals(address, priority=WARM_PRIORITY),
                data.get_operator_delegation_history(address, priority=WARM_PRIORITY),
                data.get_operator_commission_events(address, priority=WARM_PRIORITY),
                data.get_operator_set_memberships(address, priority=WARM_PRIORITY),
                data.get_operator_registration_info(address, priority=WARM_PRIORITY),
            )

        async def warm_avs(address: str) -> None:
            await asyncio.gather(
                data.get_avs_slashing_events(address, priority=WARM_PRIORITY),
                data.get_avs_operator_adoption(address, priority=WARM_PRIORITY),
                data.get_avs_info(address, priority=WARM_PRIORITY),
            )

        tasks = [("operator", address, warm_operator(address)) for address in operators]
        tasks += [("avs", address, warm_avs(address)) for address in avs_addresses]

        results = await asyncio.gather(*(task for _, _, task in tasks), return_exceptions=True)
        for (kind, address, _), outcome in zip(tasks, results):
            if isinstance(outcome, Exception):
                summary["errors"].append({"kind": kind, "address": address, "error": str(outcome)})
            else:
                summary["warmed"][kind] += 1

        summary["queue_status"] = gateway.get_queue_status()
        summary["historical_window"] = gateway.get_historical_config()

    clear_context()
    return summary


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm the risk cache for operators and AVSs.")
    parser.add_argument("--operator", action="append", default=[], help="Operator address (repeatable)")
    parser.add_argument("--avs", action="append", default=[], help="AVS address (repeatable)")
    parser.add_argument("--index-url", default=None, help="Index GraphQL endpoint (defaults to RISK_INDEX_URL)")
    parser.add_argument("--redis-url", default=None, help="Redis connection URL (defaults to RISK_REDIS_URL)")
    parser.add_argument("--concurrency", type=int, default=None, help="Maximum concurrent index requests")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    if not args.operator and not args.avs:
        print("[risk-warm] nothing to warm: pass --operator and/or --avs", file=sys.stderr)
        return 2

    overrides: Dict[str, Any] = {}
    if args.index_url:
        overrides["index_url"] = args.index_url
    if args.redis_url:
        overrides["redis_url"] = args.redis_url
    if args.concurrency:
        overrides["max_concurrent_requests"] = args.concurrency

    try:
        summary = asyncio.run(warm(operators=args.operator, avs_addresses=args.avs, overrides=overrides))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[risk-warm] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
