#!/usr/bin/env python3
"""
Run due CRM syncs from the command line.

Meant for cron/launchd when the API's background scheduler is disabled.
It:
1. Registers a sync state per connected Google account and provider
2. Runs every due state (or every matching state with --force)
3. Logs all output to logs/ for debugging
4. Exits with non-zero status if any run failed

Usage:
    python scripts/run_all_syncs.py [--source SOURCE] [--account ACCOUNT] [--dry-run | --execute]

Options:
    --source SOURCE     Run only this source (gcal, gcontacts)
    --account ACCOUNT   Run only this account
    --dry-run           Don't actually sync, just report what would run
    --execute           Actually run syncs (required for non-dry-run)
    --force             Run matching states even if not due
    --workers N         Concurrent runs
    --deadline SECONDS  Cancel runs still going after this long
    --status            Just show sync status
"""
import argparse
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.services.errors import SyncInProgressError
from api.services.google_auth import get_google_auth
from api.services.sync_service import OUTCOME_SUCCESS, SyncRun, SyncService, get_sync_service
from config.settings import settings

# Configure logging
LOG_DIR = Path(__file__).parent.parent / "logs"
LOG_DIR.mkdir(exist_ok=True)

log_file = LOG_DIR / f"sync_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s [%(levelname)s] %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_file),
    ]
)
logger = logging.getLogger(__name__)


def print_status(service: SyncService) -> bool:
    """Print every sync state. Returns True if none is in error."""
    states = service.list_states()
    print("\nSync Status:")
    if not states:
        print("  No sync states yet")
        return True
    for state in states:
        account = state.account_id or "default"
        next_run = state.next_sync_at.isoformat() if state.next_sync_at else "now"
        last_ok = state.last_successful_sync_at.isoformat() if state.last_successful_sync_at else "never"
        print(f"  {state.source:<10} {account:<30} {state.status:<9} next={next_run} last_ok={last_ok}")
        if state.error_message:
            print(f"      error ({state.error_count}x): {state.error_message}")
    return all(s.status != "error" for s in states)


def force_runs(
    service: SyncService,
    source: str = None,
    account_id: str = None,
    cancel_event: threading.Event = None,
) -> list[SyncRun]:
    """Trigger every enabled state matching the filters, one after another."""
    runs = []
    for state in service.list_states():
        if source and state.source != source:
            continue
        if account_id and state.account_id != account_id:
            continue
        if not state.enabled:
            logger.info(f"Skipping disabled {state.source} ({state.account_id or 'default'})")
            continue
        try:
            runs.append(service.trigger_sync(state.source, state.account_id, cancel_event))
        except SyncInProgressError as e:
            logger.warning(str(e))
    return runs


def main():
    parser = argparse.ArgumentParser(description="Run CRM syncs")
    parser.add_argument("--source", help="Run only this source")
    parser.add_argument("--account", help="Run only this account")
    parser.add_argument("--dry-run", action="store_true", help="Don't actually sync")
    parser.add_argument("--execute", action="store_true", help="Actually run syncs (required for non-dry-run)")
    parser.add_argument("--force", action="store_true", help="Run even if not due")
    parser.add_argument("--workers", type=int, default=settings.sync_max_workers, help="Concurrent runs")
    parser.add_argument("--deadline", type=float, default=settings.sync_run_deadline_seconds,
                        help="Cancel runs after this many seconds")
    parser.add_argument("--status", action="store_true", help="Just show sync status")
    args = parser.parse_args()

    service = get_sync_service()

    if args.status:
        return 0 if print_status(service) else 1

    accounts = get_google_auth().list_accounts()
    if accounts:
        service.register_accounts(accounts)
    else:
        logger.warning(f"No Google accounts connected (no tokens in {settings.google_token_dir})")

    # Require --execute for actual syncs (safety measure)
    dry_run = args.dry_run or not args.execute
    if not args.execute and not args.dry_run:
        logger.info("Note: Running in dry-run mode. Use --execute to actually run syncs.")

    if dry_run:
        candidates = service.list_states() if args.force else service.list_due()
        candidates = [
            s for s in candidates
            if (not args.source or s.source == args.source)
            and (not args.account or s.account_id == args.account)
        ]
        logger.info(f"[DRY RUN] Would run {len(candidates)} sync(s):")
        for state in candidates:
            logger.info(f"  {state.source} ({state.account_id or 'default'})")
        return 0

    logger.info(f"Log file: {log_file}")
    if args.force:
        cancel_event = threading.Event()
        timer = None
        if args.deadline:
            timer = threading.Timer(args.deadline, cancel_event.set)
            timer.daemon = True
            timer.start()
        try:
            runs = force_runs(service, args.source, args.account, cancel_event)
        finally:
            if timer is not None:
                timer.cancel()
    else:
        runs = service.run_due_syncs(
            max_workers=args.workers,
            deadline_seconds=args.deadline,
            source=args.source,
            account_id=args.account,
        )

    failed = [r for r in runs if r.outcome != OUTCOME_SUCCESS]

    logger.info("=" * 60)
    logger.info("SYNC RUN COMPLETE")
    logger.info(f"Runs: {len(runs)}")
    logger.info(f"Succeeded: {len(runs) - len(failed)}")
    logger.info(f"Failed: {len(failed)}")
    for run in failed:
        logger.error(f"  {run.source} ({run.account_id or 'default'}): {run.outcome} - {run.error}")
    logger.info("=" * 60)

    service.prune_logs()

    # Exit with error if any sync failed
    if failed:
        sys.exit(1)

    return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
