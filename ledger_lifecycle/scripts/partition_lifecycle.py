#!/usr/bin/env python3
"""Run one partition lifecycle cycle and exit.

Useful for cron-driven deployments that disable the in-process scheduler,
and for inspecting the plan before enabling destructive stages.

Run with:
    python -m ledger_lifecycle.scripts.partition_lifecycle --dry-run
    python -m ledger_lifecycle.scripts.partition_lifecycle --cycle weekly

Exit status is 0 when every action succeeded or was skipped, 1 otherwise.
"""

import argparse
import asyncio
import json
import sys

from ledger_lifecycle.core.config import get_settings
from ledger_lifecycle.core.database import close_db, get_session_factory, init_db
from ledger_lifecycle.core.logging import setup_logging
from ledger_lifecycle.jobs.partition_scheduler_job import CycleKind, PartitionSchedulerJob


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one ledger partition lifecycle cycle.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan and log actions without executing them",
    )
    parser.add_argument(
        "--cycle",
        choices=[kind.value for kind in CycleKind],
        default=CycleKind.DAILY.value,
        help="daily: overflow, create, advance; weekly: also delete (default: daily)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the cycle report as JSON",
    )
    return parser.parse_args(argv)


async def run_cycle(cycle: CycleKind, dry_run: bool, as_json: bool) -> int:
    """Run one cycle against the configured database.

    Returns:
        Process exit status
    """
    settings = get_settings()
    await init_db()
    try:
        scheduler = PartitionSchedulerJob.from_settings(settings, get_session_factory())
        report = await scheduler.run_tick(cycle, dry_run=dry_run or None)
    finally:
        await close_db()

    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        mode = "dry run" if report.dry_run else "executed"
        print(f"{cycle.value} cycle {report.cycle_id} ({mode})")
        for action in report.planned:
            print(f"  {action['action']:<18} {action['partition_name']}  {action['reason']}")
        if report.invariant_violation:
            print(f"\nOverflow invariant violated: {report.invariant_violation}")
        for partition in report.unparsable:
            print(f"  unparsable bounds: {partition}")
        if not report.dry_run:
            print(f"\nOutcome: {report.counts}")
            for error in report.errors:
                print(f"  error: {error['action']} {error['partition_name']}: {error['error']}")

    return 1 if report.has_errors else 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return asyncio.run(run_cycle(CycleKind(args.cycle), args.dry_run, args.json))


if __name__ == "__main__":
    sys.exit(main())
