#!/usr/bin/env python3
"""
Run the action execution worker from a shell.

Run from backend directory:
  python scripts/run_worker.py            one pass, then exit
  python scripts/run_worker.py --loop     keep polling until interrupted

Options:
  --batch-size N     Items in a single pass (default: WORKER_BATCH_SIZE)
  --interval SECS    Idle wait between passes in --loop mode (default: 30)
  --rules            Evaluate enabled rules before the first pass
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from autopilot.config import get_settings
from autopilot.database import async_session, init_db
from autopilot.services.executor import ExecutionWorker
from autopilot.services.rule_engine import RuleEngine


async def main():
    parser = argparse.ArgumentParser(description="Drain the action queue against the Amazon Ads API")
    parser.add_argument("--loop", action="store_true", help="Keep polling instead of running a single pass")
    parser.add_argument("--batch-size", type=int, help="Items in a single pass")
    parser.add_argument("--interval", type=float, default=30.0, help="Seconds to wait when the queue is empty")
    parser.add_argument("--rules", action="store_true", help="Evaluate enabled rules first")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, get_settings().log_level.upper(), logging.INFO))
    await init_db()

    if args.rules:
        results = await RuleEngine(async_session).run_scheduled()
        print(f"Evaluated {len(results)} rule(s): "
              f"{sum(r.actions_enqueued for r in results)} action(s) enqueued")

    worker = ExecutionWorker(async_session)
    if args.loop:
        stop = asyncio.Event()
        try:
            await worker.run_forever(interval_seconds=args.interval, stop=stop)
        except asyncio.CancelledError:
            stop.set()
        return

    stats = await worker.run_once(batch_size=args.batch_size)
    print(f"Worker {worker.worker_id}: {stats.to_dict()}")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped.")
