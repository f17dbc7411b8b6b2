#!/usr/bin/env python3
# scripts/run_scheduler.py
"""
Standalone rule scheduler (no API process needed).

This process has no websocket sinks, so its changes are not fanned out
directly. Each tick that changes a tenant stamps the tenant settings; the API
process relays the stamp as a ``tenant_resync`` event on its next tick (run
the API with SCHEDULER_ENABLED=false so only this process evaluates rules).

    python scripts/run_scheduler.py            # loop every SCHEDULER_INTERVAL_SECONDS
    python scripts/run_scheduler.py --once     # single tick, then exit
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from supportchat.core.config import SCHEDULER_INTERVAL_SECONDS
from supportchat.core.logging_config import setup_logging
from supportchat.services.scheduler import RuleScheduler

log = logging.getLogger("supportchat.scheduler")


def main() -> int:
    parser = argparse.ArgumentParser(description="Evaluate business hours and auto-rules for all tenants")
    parser.add_argument("--once", action="store_true", help="run a single evaluation and exit")
    parser.add_argument("--interval", type=float, default=SCHEDULER_INTERVAL_SECONDS)
    args = parser.parse_args()

    setup_logging("supportchat-scheduler")
    # No hub: changes are stamped for the API process to relay
    scheduler = RuleScheduler(hub=None, interval=args.interval)

    if args.once:
        results = scheduler.run_once()
        for tenant_id, result in results.items():
            log.info(f"{tenant_id}: {result.to_dict()}")
        return 0

    try:
        asyncio.run(scheduler.run())
    except KeyboardInterrupt:
        log.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
