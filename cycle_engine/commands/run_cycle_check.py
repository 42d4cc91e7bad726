#!/usr/bin/env python3
"""
Run the daily cycle check (or only the retention purge) from the shell.

Useful for backfilling a missed day and for operating without a Celery
worker. Exits non-zero when the run fails at top level or any tenant
fails.

Usage:
    # Collect for tenants due today
    python -m cycle_engine.commands.run_cycle_check

    # Evaluate a specific UTC date
    python -m cycle_engine.commands.run_cycle_check --date 2025-01-05

    # Retention purge only, reporting without deleting
    python -m cycle_engine.commands.run_cycle_check --purge-only --dry-run
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from typing import Optional

from ..errors import CycleEngineError
from ..services.engine import CycleEngine

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger("cycle_engine.commands.run_cycle_check")


async def run_cycle_check(as_of: Optional[date], purge_only: bool, dry_run: bool) -> int:
    try:
        async with CycleEngine.build(purge_after_batch=False if dry_run else None) as engine:
            if purge_only:
                result = await engine.orchestrator.purge(dry_run=True if dry_run else None, now=as_of)
                print(json.dumps(result, indent=2))
                return 0

            summary = await engine.orchestrator.run(as_of)
            print(json.dumps(summary.to_response(), indent=2))

            if dry_run:
                retention = await engine.orchestrator.purge(dry_run=True, now=as_of)
                print(json.dumps(retention, indent=2))
            return 1 if summary.failed_count else 0

    except CycleEngineError as e:
        logger.error(f"❌ {e}")
        return 2


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the daily cycle check or the snapshot retention purge"
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        help="Evaluate this UTC date (YYYY-MM-DD) instead of today",
    )
    parser.add_argument(
        "--purge-only",
        action="store_true",
        help="Only run the snapshot retention purge",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what the purge would delete without deleting",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run_cycle_check(args.date, args.purge_only, args.dry_run)))


if __name__ == "__main__":
    main()
