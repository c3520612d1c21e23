"""CLI for appending selections to a system ledger.

Usage:
    python ingest_selections.py --csv picks.csv --system system-1
    python ingest_selections.py --csv picks.csv --system system-1 \
        --create "System 1" --place-market

CSV format:
    Time,Race,Selection

Time is "DD/MM/YYYY HH:MM", Race is "HH:MM Meeting", Selection is the horse.
Rows are appended in file order.
"""
import argparse
import csv
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple

import config
from ledger import Ledger
from persistence import Persistence

REQUIRED_COLUMNS = ("Time", "Race", "Selection")


def rows_to_items(rows: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Map CSV rows onto ``Ledger.create_selections`` items.

    Returns ``(items, errors)``; errors carry the CSV line number.
    """
    items: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for index, row in enumerate(rows):
        line = index + 2
        time_value = (row.get("Time") or "").strip()
        horse = (row.get("Selection") or "").strip()
        race = (row.get("Race") or "").strip()
        if not time_value or not horse:
            errors.append({"row": line, "error": "Time and Selection are required"})
            continue
        parts = time_value.split()
        if len(parts) != 2:
            errors.append({"row": line,
                           "error": f'Invalid time format: {time_value}. Expected "DD/MM/YYYY HH:MM"'})
            continue
        # Race column is "HH:MM Meeting"; drop the time prefix
        meeting = re.sub(r"^\d{1,2}:\d{2}\s*", "", race).strip()
        items.append({"date": parts[0], "time": parts[1], "horse": horse,
                      "meeting": meeting or None, "row": line})
    return items, errors


def ingest_csv(ledger: Ledger, csv_path: str, system_id: str) -> dict:
    with open(csv_path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        header = [(name or "").strip() for name in (reader.fieldnames or [])]
        missing = [c for c in REQUIRED_COLUMNS if c not in header]
        if missing:
            raise ValueError(f"CSV must contain {', '.join(repr(c) for c in REQUIRED_COLUMNS)} columns")
        rows = [{(k or "").strip(): v for k, v in row.items()} for row in reader]

    items, errors = rows_to_items(rows)
    result = ledger.create_selections(system_id, items)
    # create_selections reports by item index; translate back to CSV lines
    for err in result["errors"]:
        errors.append({"row": items[err["index"]]["row"], "error": err["error"]})
    return {"created": result["created"], "errors": sorted(errors, key=lambda e: e["row"])}


def main():
    ap = argparse.ArgumentParser(description="Append selections from a CSV to a system ledger")
    ap.add_argument("--csv", required=True, help="Path to selections CSV")
    ap.add_argument("--system", required=True, help="System id")
    ap.add_argument("--create", default="", metavar="NAME",
                    help="Create the system with this display name if it does not exist")
    ap.add_argument("--place-market", action="store_true",
                    help="New system also lays the place market")
    ap.add_argument("--db", default="", help="SQLite database path (ignored with DATABASE_URL)")
    args = ap.parse_args()
    config.configure_logging()

    if not Path(args.csv).exists():
        print(f"File not found: {args.csv}")
        sys.exit(1)

    db = Persistence(Path(args.db) if args.db else None)
    ledger = Ledger(db)
    if db.get_system(args.system) is None:
        if not args.create:
            print(f"System not found: {args.system} (use --create NAME)")
            sys.exit(1)
        ledger.create_system(args.system, args.create, has_place_market=args.place_market)

    try:
        result = ingest_csv(ledger, args.csv, args.system)
    except ValueError as e:
        print(f"Rejected: {e}")
        sys.exit(2)

    created = result["created"]
    print(f"Selections created: {len(created)}")
    if created:
        print(f"  Row orders: {created[0].row_order}-{created[-1].row_order}")
    if result["errors"]:
        print(f"\nErrors ({len(result['errors'])}):")
        for e in result["errors"][:10]:
            print(f"  row {e['row']}: {e['error']}")


if __name__ == "__main__":
    main()
