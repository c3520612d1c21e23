"""CLI for settling open selections from a results feed.

Usage:
    python ingest_settlements.py --csv results.csv
    python ingest_settlements.py --csv results.csv --dry-run
    python ingest_settlements.py --csv results.csv --verify

CSV format:
    Date of Race,Country,Track,Time,Horse,Betfair SP,Betfair Lay Return,
    Betfair Place SP,Place Lay Return

Date of Race is DD/MM/YYYY (or YYYY-MM-DD); Country and Track are optional.
"""
import argparse
import logging
import sys
from pathlib import Path

import config
from feed import FeedSchemaError, read_feed_csv
from persistence import Persistence
from reconciliation import Reconciler
from running_totals import verify_system

logger = logging.getLogger(__name__)

# Maximum entries printed per diagnostic list
_PRINT_LIMIT = 10


def ingest_csv(db: Persistence, csv_path: str, dry_run: bool = False) -> dict:
    """Reconcile a feed CSV against the ledger.  Returns the report dict."""
    fieldnames, records = read_feed_csv(csv_path)
    logger.info("Read %d feed row(s) from %s", len(records), csv_path)
    report = Reconciler(db).reconcile(records, fieldnames=fieldnames, dry_run=dry_run)
    return report.to_dict()


def _print_list(title: str, entries: list, fmt) -> None:
    if not entries:
        return
    print(f"\n{title} ({len(entries)}):")
    for entry in entries[:_PRINT_LIMIT]:
        print(f"  {fmt(entry)}")
    if len(entries) > _PRINT_LIMIT:
        print(f"  ... {len(entries) - _PRINT_LIMIT} more")


def main():
    ap = argparse.ArgumentParser(description="Settle selections from a results feed CSV")
    ap.add_argument("--csv", required=True, help="Path to results CSV")
    ap.add_argument("--db", default="", help="SQLite database path (ignored with DATABASE_URL)")
    ap.add_argument("--dry-run", action="store_true", help="Match and report without writing")
    ap.add_argument("--verify", action="store_true",
                    help="Check running totals of every system afterwards")
    ap.add_argument("--log-level", default="", help="Logging level (default: LEDGER_LOG_LEVEL or INFO)")
    args = ap.parse_args()
    config.configure_logging(args.log_level)

    if not Path(args.csv).exists():
        print(f"File not found: {args.csv}")
        sys.exit(1)

    db = Persistence(Path(args.db) if args.db else None)
    try:
        result = ingest_csv(db, args.csv, dry_run=args.dry_run)
    except FeedSchemaError as e:
        print(f"Rejected: {e}")
        sys.exit(2)

    label = "Would settle" if result["dry_run"] else "Settled"
    print("Feed reconciled:")
    print(f"  {label}:        {result['matched_count']}")
    print(f"  Not settled:    {len(result['not_settled'])}")
    print(f"  Unmatched sel.: {len(result['unmatched_selections'])}")
    print(f"  Unmatched rows: {len(result['unmatched_feed_rows'])}")
    print(f"  Row errors:     {len(result['row_errors'])}")
    print(f"  Failed systems: {len(result['failed_systems'])}")

    _print_list("Row errors", result["row_errors"],
                lambda e: f"row {e['row']}: {e['error']}")
    _print_list("Unmatched selections", result["unmatched_selections"],
                lambda u: f"{u['system_name'] or u['system_id']} {u['date_iso']} "
                          f"{u['time'] or '--:--'} {u['horse']}: {u['reason']}")
    _print_list("Unmatched feed rows", result["unmatched_feed_rows"],
                lambda u: f"row {u['row']} {u['date_iso']} {u['time']} {u['horse']}: {u['reason']}")
    _print_list("Failed systems", result["failed_systems"],
                lambda f: f"{f['system_id']}: {f['error']}")

    if args.verify:
        bad = 0
        for system in db.list_systems(active_only=False):
            rows = verify_system(db, system.system_id)
            if rows:
                bad += 1
                print(f"  [warn] {system.name}: running totals off at row(s) {rows[:_PRINT_LIMIT]}")
        print(f"\nVerify: {'OK' if not bad else f'{bad} system(s) inconsistent'}")

    if result["failed_systems"]:
        sys.exit(3)


if __name__ == "__main__":
    main()
