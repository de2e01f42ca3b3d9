#!/usr/bin/env python3
"""
Scheduled maintenance jobs for the trading journal
===================================================

Runs the periodic housekeeping that the data-service does not do inline:

  - account deletion lifecycle (soft delete, anonymize, hard delete)
  - cleanup of staging rows past their retention date
  - migration of PENDING staging rows left on already-approved formats

Usage:
    # Everything:
    python scripts/run_maintenance.py

    # Only some jobs:
    python scripts/run_maintenance.py --deletions --cleanup

    # Report what would happen without changing anything:
    python scripts/run_maintenance.py --dry-run

Meant to be run from cron (daily) with the same environment as the
data-service (DB_PATH / DATABASE_URL, REDIS_URL).
"""

import argparse
import json
import sys
from pathlib import Path

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from src.journal_lib.accounts.deletion import AccountDeletionService  # noqa: E402
from src.journal_lib.core.logging_config import get_logger, setup_logging  # noqa: E402
from src.journal_lib.core.models import init_db  # noqa: E402
from src.journal_lib.imports.approval import FormatApprovalService  # noqa: E402
from src.journal_lib.imports.staging import OrderStagingService  # noqa: E402

SYSTEM_ADMIN = "system-maintenance"

logger = get_logger("maintenance")


def _run_deletions(dry_run: bool) -> dict:
    return AccountDeletionService().process_scheduled_deletions(dry_run=dry_run)


def _run_cleanup(dry_run: bool) -> dict:
    return {"deleted_count": OrderStagingService().cleanup_expired_records(dry_run=dry_run)}


def _run_orphaned(dry_run: bool) -> dict:
    return FormatApprovalService().process_orphaned_staging_records(SYSTEM_ADMIN, dry_run=dry_run)


def run_maintenance(
    deletions: bool = True,
    cleanup: bool = True,
    orphaned: bool = True,
    dry_run: bool = False,
) -> dict:
    """Run the selected jobs; a failing job is reported and the rest still run."""
    report: dict = {"dry_run": dry_run}
    jobs = []
    if deletions:
        jobs.append(("deletions", _run_deletions))
    if cleanup:
        jobs.append(("cleanup", _run_cleanup))
    if orphaned:
        jobs.append(("orphaned", _run_orphaned))

    for name, job in jobs:
        try:
            report[name] = job(dry_run)
            logger.info("job_complete", job=name, result=report[name])
        except Exception as exc:
            logger.error("job_failed", job=name, error=str(exc))
            report[name] = {"error": str(exc)}
    return report


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Run scheduled trading journal maintenance jobs",
    )
    parser.add_argument(
        "--deletions",
        action="store_true",
        help="Advance accounts through the deletion lifecycle",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete staging rows past their retention date",
    )
    parser.add_argument(
        "--orphaned",
        action="store_true",
        help="Migrate pending staging rows on approved formats",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count what would change without writing",
    )
    args = parser.parse_args(argv)

    setup_logging(service="maintenance")
    init_db()

    # No job flags means run everything
    run_all = not (args.deletions or args.cleanup or args.orphaned)
    report = run_maintenance(
        deletions=run_all or args.deletions,
        cleanup=run_all or args.cleanup,
        orphaned=run_all or args.orphaned,
        dry_run=args.dry_run,
    )
    print(json.dumps(report, indent=2, default=str))

    failed = any(isinstance(v, dict) and "error" in v for v in report.values())
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
