"""Typed rows for the settlement feed.

The ingestion side maps whatever file it receives onto these column names;
the reconciler only ever sees ``FeedRow`` objects.

Required columns:
    Date of Race, Time, Horse, Betfair SP, Betfair Lay Return,
    Betfair Place SP, Place Lay Return
Optional columns:
    Country, Track
"""
from __future__ import annotations

import csv
import re
from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from match_key import MatchKey, normalize_time

COL_DATE = "Date of Race"
COL_TIME = "Time"
COL_HORSE = "Horse"
COL_WIN_BSP = "Betfair SP"
COL_WIN_LAY_RETURN = "Betfair Lay Return"
COL_PLACE_BSP = "Betfair Place SP"
COL_PLACE_LAY_RETURN = "Place Lay Return"
COL_COUNTRY = "Country"
COL_TRACK = "Track"

REQUIRED_COLUMNS = (
    COL_DATE, COL_TIME, COL_HORSE,
    COL_WIN_BSP, COL_WIN_LAY_RETURN,
    COL_PLACE_BSP, COL_PLACE_LAY_RETURN,
)


class FeedSchemaError(ValueError):
    """The feed is missing required columns; nothing in it can be trusted."""

    def __init__(self, missing: Sequence[str]):
        self.missing = list(missing)
        super().__init__(
            "Feed is missing required column(s): " + ", ".join(repr(c) for c in self.missing)
        )


@dataclass
class FeedRow:
    """One settled (or not yet settled) runner from the feed."""
    row_number: int                       # 1-based line number, header = 1
    date_iso: str
    race_time: str
    horse: str
    country: str = ""
    meeting: str = ""
    win_bsp: Optional[float] = None
    win_lay_return: Optional[float] = None
    place_bsp: Optional[float] = None
    place_lay_return: Optional[float] = None

    @property
    def key(self) -> MatchKey:
        return MatchKey.build(self.date_iso, self.race_time, self.horse)

    def summary(self) -> Dict[str, Any]:
        return {"row": self.row_number, "date_iso": self.date_iso,
                "time": self.race_time, "horse": self.horse}


@dataclass
class RowError:
    row: int
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------

def parse_date_iso(value: Optional[str]) -> str:
    """``DD/MM/YYYY`` (UK) or ``YYYY-MM-DD`` -> ``YYYY-MM-DD``."""
    text = (value or "").strip()
    m = re.match(r"^(\d{1,2})/(\d{1,2})/(\d{4})$", text)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
    else:
        m = re.match(r"^(\d{4})-(\d{2})-(\d{2})$", text)
        if not m:
            raise ValueError(f'Invalid date {value!r}; expected "DD/MM/YYYY" or "YYYY-MM-DD"')
        year, month, day = int(m.group(1)), int(m.group(2)), int(m.group(3))
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        raise ValueError(f"Invalid date {value!r}") from None


def parse_number(value: Any, field_name: str) -> Optional[float]:
    """Blank -> None; anything else must be a number."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"Invalid number for {field_name!r}: {text!r}") from None


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

def validate_columns(fieldnames: Optional[Iterable[str]]) -> None:
    """Fail fast when a required column is absent."""
    present = {(f or "").strip() for f in (fieldnames or [])}
    missing = [c for c in REQUIRED_COLUMNS if c not in present]
    if missing:
        raise FeedSchemaError(missing)


def _get(record: Dict[str, Any], column: str) -> str:
    value = record.get(column)
    return "" if value is None else str(value).strip()


def parse_feed_row(record: Dict[str, Any], row_number: int) -> FeedRow:
    """Build a FeedRow from a column-mapped record.  Raises ValueError."""
    record = {(k or "").strip(): v for k, v in record.items()}
    raw_date = _get(record, COL_DATE)
    raw_time = _get(record, COL_TIME)
    horse = _get(record, COL_HORSE)
    if not raw_date or not raw_time or not horse:
        raise ValueError(f"{COL_DATE}, {COL_TIME}, and {COL_HORSE} are required")
    return FeedRow(
        row_number=row_number,
        date_iso=parse_date_iso(raw_date),
        race_time=normalize_time(raw_time),
        horse=horse,
        country=_get(record, COL_COUNTRY),
        meeting=_get(record, COL_TRACK),
        win_bsp=parse_number(record.get(COL_WIN_BSP), COL_WIN_BSP),
        win_lay_return=parse_number(record.get(COL_WIN_LAY_RETURN), COL_WIN_LAY_RETURN),
        place_bsp=parse_number(record.get(COL_PLACE_BSP), COL_PLACE_BSP),
        place_lay_return=parse_number(record.get(COL_PLACE_LAY_RETURN), COL_PLACE_LAY_RETURN),
    )


def parse_feed_rows(
    records: Iterable[Dict[str, Any]],
) -> Tuple[List[FeedRow], List[RowError]]:
    """Parse every record; bad rows are reported, not raised.

    Row numbers count the header as line 1, matching what an operator sees
    in a spreadsheet.
    """
    rows: List[FeedRow] = []
    errors: List[RowError] = []
    for index, record in enumerate(records):
        row_number = index + 2
        try:
            rows.append(parse_feed_row(record, row_number))
        except ValueError as e:
            errors.append(RowError(row=row_number, error=str(e)))
    return rows, errors


def read_feed_csv(csv_path: str) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Read a feed CSV into ``(fieldnames, records)``."""
    with open(csv_path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        records = [dict(row) for row in reader]
        fieldnames = [(name or "").strip() for name in (reader.fieldnames or [])]
    return fieldnames, records
