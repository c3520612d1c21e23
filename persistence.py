"""Persistence for per-system selection ledgers.

Supports SQLite (default, local dev) and PostgreSQL (production).
Set DATABASE_URL env var to use Postgres; otherwise falls back to SQLite.

Every read the ledger engine relies on is ordered by ``row_order``
ascending: that ordering, not the race date, is the ledger.
"""
from __future__ import annotations

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import config
from pl_calculator import PLSettings, round_pl

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Postgres compatibility layer
# ---------------------------------------------------------------------------

def _translate_sql(sql: str) -> str:
    """Translate SQLite SQL dialect to Postgres."""
    # Parameter placeholders: ? -> %s
    sql = sql.replace("?", "%s")
    # AUTOINCREMENT -> Postgres SERIAL
    sql = re.sub(
        r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT",
        "SERIAL PRIMARY KEY",
        sql,
        flags=re.IGNORECASE,
    )
    # Postgres REAL is single precision; P/L sums need 8 bytes
    sql = re.sub(r"\bREAL\b", "DOUBLE PRECISION", sql)
    # INSERT OR IGNORE -> INSERT ... ON CONFLICT DO NOTHING
    if re.search(r"INSERT\s+OR\s+IGNORE\s+INTO", sql, re.IGNORECASE):
        sql = re.sub(r"INSERT\s+OR\s+IGNORE\s+INTO", "INSERT INTO", sql, flags=re.IGNORECASE)
        sql = sql.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    return sql


class _PgCursorResult:
    """Wraps a psycopg2 cursor to provide sqlite3-compatible attributes."""

    def __init__(self, cursor, lastrowid: Optional[int] = None):
        self._cursor = cursor
        self._lastrowid = lastrowid

    @property
    def lastrowid(self) -> Optional[int]:
        return self._lastrowid

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    def __iter__(self):
        return iter(self._cursor)


class _PgConnectionWrapper:
    """Wraps a psycopg2 connection so Persistence can use the same API as sqlite3."""

    def __init__(self, pg_conn, cursor_factory, error_cls):
        self._conn = pg_conn
        self._cursor_factory = cursor_factory
        self._error_cls = error_cls

    def execute(self, sql, params=None):
        sql = _translate_sql(sql)
        cur = self._conn.cursor(cursor_factory=self._cursor_factory)
        cur.execute(sql, params or ())

        # For INSERT, retrieve the auto-generated serial value via lastval().
        # The probe runs under a savepoint: a failed lastval() (table without
        # a sequence) must not abort the surrounding transaction.
        _lastrowid = None
        is_insert = sql.strip().upper().startswith("INSERT")
        if is_insert and cur.rowcount and cur.rowcount > 0:
            lv_cur = self._conn.cursor()
            lv_cur.execute("SAVEPOINT lastval_probe")
            try:
                lv_cur.execute("SELECT lastval()")
                _lastrowid = lv_cur.fetchone()[0]
                lv_cur.execute("RELEASE SAVEPOINT lastval_probe")
            except self._error_cls:
                lv_cur.execute("ROLLBACK TO SAVEPOINT lastval_probe")
            finally:
                lv_cur.close()

        return _PgCursorResult(cur, _lastrowid)

    def executescript(self, sql):
        """Execute multiple SQL statements separated by semicolons."""
        cur = self._conn.cursor(cursor_factory=self._cursor_factory)
        for stmt in sql.split(";"):
            stmt = stmt.strip()
            if stmt:
                cur.execute(_translate_sql(stmt))
        return cur

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

SELECTION_COLUMNS = [
    "selection_id",
    "system_id",
    "row_order",
    "date_iso",
    "race_time",
    "country",
    "meeting",
    "horse",
    "has_result",
    "result",
    "win_bsp",
    "place_bsp",
    "win_pl",
    "place_pl",
    "running_win_pl",
    "running_place_pl",
    "is_new",
    "created_at",
    "updated_at",
]


@dataclass
class System:
    """A trading system: owner of one ledger."""
    system_id: str
    name: str
    slug: str = ""
    has_place_market: bool = False
    commission: Optional[float] = None     # None = use the configured default
    stake: Optional[float] = None
    is_active: bool = True
    created_at: str = ""

    def pl_settings(self, base: Optional[PLSettings] = None) -> PLSettings:
        return (base or PLSettings.from_env()).override(
            stake=self.stake, commission=self.commission,
        )


@dataclass
class Selection:
    """One lay selection: a row of a system ledger."""
    selection_id: Optional[int]
    system_id: str
    row_order: int
    date_iso: str
    horse: str
    race_time: Optional[str] = None
    country: Optional[str] = None
    meeting: Optional[str] = None
    has_result: bool = False
    result: Optional[str] = None
    win_bsp: Optional[float] = None
    place_bsp: Optional[float] = None
    win_pl: Optional[float] = None
    place_pl: Optional[float] = None       # None = place market not offered
    running_win_pl: Optional[float] = None
    running_place_pl: Optional[float] = None
    is_new: bool = True
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Presentation shape: P/L fields rounded for display."""
        d = asdict(self)
        for key in ("win_pl", "place_pl", "running_win_pl", "running_place_pl"):
            d[key] = round_pl(d[key])
        return d


def _row_to_system(row) -> System:
    d = dict(row)
    return System(
        system_id=d["system_id"],
        name=d["name"],
        slug=d["slug"] or "",
        has_place_market=bool(d["has_place_market"]),
        commission=d["commission"],
        stake=d["stake"],
        is_active=bool(d["is_active"]),
        created_at=d["created_at"] or "",
    )


def _row_to_selection(row) -> Selection:
    d = {k: v for k, v in dict(row).items() if k in SELECTION_COLUMNS}
    for flag in ("has_result", "is_new"):
        d[flag] = bool(d[flag])
    return Selection(**d)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")


class Persistence:
    def __init__(self, db_path: Path = None):
        database_url = config.database_url()
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tx_owner = None
        if database_url:
            import psycopg2
            import psycopg2.extras
            try:
                pg_conn = psycopg2.connect(database_url, connect_timeout=5)
            except psycopg2.Error:
                logger.error("Cannot connect to Postgres (timeout 5s)")
                raise
            pg_conn.autocommit = False
            self.conn = _PgConnectionWrapper(
                pg_conn, psycopg2.extras.DictCursor, psycopg2.Error,
            )
            self.db_backend = "postgres"
            self.db_path = None
        else:
            self.db_path = Path(db_path or config.db_path())
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.db_backend = "sqlite"
        logger.debug("Ledger store backend: %s", self.db_backend)
        self._init_db()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS systems (
                system_id        TEXT PRIMARY KEY,
                name             TEXT NOT NULL,
                slug             TEXT,
                has_place_market INTEGER NOT NULL DEFAULT 0,
                commission       REAL,
                stake            REAL,
                is_active        INTEGER NOT NULL DEFAULT 1,
                created_at       TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS row_order_counters (
                system_id  TEXT PRIMARY KEY REFERENCES systems(system_id),
                last_value INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS selections (
                selection_id     INTEGER PRIMARY KEY AUTOINCREMENT,
                system_id        TEXT NOT NULL REFERENCES systems(system_id),
                row_order        INTEGER NOT NULL,
                date_iso         TEXT NOT NULL,
                race_time        TEXT,
                country          TEXT,
                meeting          TEXT,
                horse            TEXT NOT NULL,
                has_result       INTEGER NOT NULL DEFAULT 0,
                result           TEXT,
                win_bsp          REAL,
                place_bsp        REAL,
                win_pl           REAL,
                place_pl         REAL,
                running_win_pl   REAL,
                running_place_pl REAL,
                is_new           INTEGER NOT NULL DEFAULT 1,
                created_at       TEXT NOT NULL,
                updated_at       TEXT NOT NULL,
                UNIQUE(system_id, row_order)
            );
            CREATE INDEX IF NOT EXISTS idx_sel_system_order ON selections(system_id, row_order);
            CREATE INDEX IF NOT EXISTS idx_sel_date_result ON selections(date_iso, has_result);
            CREATE INDEX IF NOT EXISTS idx_sel_system_new ON selections(system_id, is_new, date_iso)
            """
        )
        self.conn.commit()
        self._ensure_columns()

    def _get_table_columns(self, table_name: str) -> set:
        """Return set of column names for a table (works on both backends)."""
        if self.db_backend == "postgres":
            cur = self.conn.execute(
                "SELECT column_name FROM information_schema.columns WHERE table_name = ?",
                (table_name,),
            )
            return {row[0] for row in cur.fetchall()}
        else:
            cur = self.conn.execute(f"PRAGMA table_info({table_name})")
            return {row[1] for row in cur.fetchall()}

    def _ensure_columns(self) -> None:
        # systems created before per-system P/L tuning
        existing = self._get_table_columns("systems")
        desired = {
            "commission": "REAL",
            "stake": "REAL",
        }
        for column, col_type in desired.items():
            if column not in existing:
                self.conn.execute(f"ALTER TABLE systems ADD COLUMN {column} {col_type}")
        self.conn.commit()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        """True when the calling thread has a transaction open."""
        return self._tx_depth > 0 and self._tx_owner == threading.get_ident()

    @contextmanager
    def transaction(self) -> Iterator["Persistence"]:
        """Run a block as one unit: commit on success, roll back on error.

        Nested calls from the same thread join the outermost transaction.
        The connection is held for the whole block, so other threads
        sharing this instance wait for it to finish instead of joining it.
        Every write method runs through here.
        """
        with self._lock:
            if self._tx_depth == 0:
                self._tx_owner = threading.get_ident()
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._tx_owner = None
                    self.conn.rollback()
                    logger.debug("Transaction rolled back")
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._tx_owner = None
                    self.conn.commit()

    def lock_system(self, system_id: str) -> None:
        """Serialize writers of one ledger across processes (Postgres only).

        Must be called inside a transaction; the advisory lock is released
        when it ends.
        """
        if not self.in_transaction:
            raise RuntimeError("lock_system() requires an open transaction")
        if self.db_backend == "postgres":
            self.conn.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (system_id,))

    # ==================================================================
    # Systems
    # ==================================================================

    def create_system(
        self, system_id: str, name: str, slug: str = "",
        has_place_market: bool = False,
        commission: Optional[float] = None, stake: Optional[float] = None,
    ) -> System:
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO systems(system_id, name, slug, has_place_market,
                                    commission, stake, is_active, created_at)
                VALUES(?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (system_id, name, slug or _slugify(name), int(has_place_market),
                 commission, stake, _now()),
            )
            return self.get_system(system_id)

    def get_system(self, system_id: str) -> Optional[System]:
        row = self.conn.execute(
            "SELECT * FROM systems WHERE system_id = ?", (system_id,),
        ).fetchone()
        return _row_to_system(row) if row else None

    def get_systems(self, system_ids: Iterable[str]) -> Dict[str, System]:
        ids = sorted(set(system_ids))
        if not ids:
            return {}
        marks = ", ".join("?" for _ in ids)
        rows = self.conn.execute(
            f"SELECT * FROM systems WHERE system_id IN ({marks})", ids,
        ).fetchall()
        return {r["system_id"]: _row_to_system(r) for r in rows}

    def list_systems(self, active_only: bool = True) -> List[System]:
        sql = "SELECT * FROM systems"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = self.conn.execute(sql + " ORDER BY name").fetchall()
        return [_row_to_system(r) for r in rows]

    # ==================================================================
    # Ledger
    # ==================================================================

    def next_row_order(self, system_id: str) -> int:
        """Allocate the next row_order for a system.

        The counter row is seeded from the current maximum the first time a
        system is seen, then only ever incremented, so deleted values are
        never handed out again.  The UPDATE takes the counter's row lock, so
        call this inside the transaction that inserts the selection.
        """
        with self.transaction():
            self.conn.execute(
                """
                INSERT OR IGNORE INTO row_order_counters(system_id, last_value)
                VALUES(?, (SELECT COALESCE(MAX(row_order), 0) FROM selections WHERE system_id = ?))
                """,
                (system_id, system_id),
            )
            self.conn.execute(
                "UPDATE row_order_counters SET last_value = last_value + 1 WHERE system_id = ?",
                (system_id,),
            )
            value = self.conn.execute(
                "SELECT last_value FROM row_order_counters WHERE system_id = ?",
                (system_id,),
            ).fetchone()[0]
        return int(value)

    def insert_selection(self, selection: Selection) -> Selection:
        """Insert a new ledger row.  ``selection.row_order`` must already be allocated."""
        now = _now()
        with self.transaction():
            cur = self.conn.execute(
                """
                INSERT INTO selections(system_id, row_order, date_iso, race_time,
                    country, meeting, horse, has_result, result, win_bsp, place_bsp,
                    win_pl, place_pl, running_win_pl, running_place_pl, is_new,
                    created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (selection.system_id, selection.row_order, selection.date_iso,
                 selection.race_time, selection.country, selection.meeting,
                 selection.horse, int(selection.has_result), selection.result,
                 selection.win_bsp, selection.place_bsp, selection.win_pl,
                 selection.place_pl, selection.running_win_pl,
                 selection.running_place_pl, int(selection.is_new), now, now),
            )
            selection_id = cur.lastrowid
            if selection_id is None:
                selection_id = self.conn.execute(
                    "SELECT selection_id FROM selections WHERE system_id = ? AND row_order = ?",
                    (selection.system_id, selection.row_order),
                ).fetchone()[0]
            return self.get_selection(int(selection_id))

    def get_selection(self, selection_id: int) -> Optional[Selection]:
        row = self.conn.execute(
            "SELECT * FROM selections WHERE selection_id = ?", (selection_id,),
        ).fetchone()
        return _row_to_selection(row) if row else None

    def find_by_system_ordered_from(
        self, system_id: str, row_order: Optional[int] = None,
    ) -> List[Selection]:
        """Ledger suffix starting at *row_order* (inclusive), ascending.

        With no *row_order* the whole ledger is returned.
        """
        sql = "SELECT * FROM selections WHERE system_id = ?"
        params: List[Any] = [system_id]
        if row_order is not None:
            sql += " AND row_order >= ?"
            params.append(row_order)
        rows = self.conn.execute(sql + " ORDER BY row_order", params).fetchall()
        return [_row_to_selection(r) for r in rows]

    def find_preceding(self, system_id: str, row_order: int) -> Optional[Selection]:
        """The ledger row immediately before *row_order*, if any."""
        row = self.conn.execute(
            """
            SELECT * FROM selections
            WHERE system_id = ? AND row_order < ?
            ORDER BY row_order DESC
            LIMIT 1
            """,
            (system_id, row_order),
        ).fetchone()
        return _row_to_selection(row) if row else None

    def find_last(self, system_id: str) -> Optional[Selection]:
        row = self.conn.execute(
            "SELECT * FROM selections WHERE system_id = ? ORDER BY row_order DESC LIMIT 1",
            (system_id,),
        ).fetchone()
        return _row_to_selection(row) if row else None

    def find_unresulted(
        self, date_isos: Iterable[str], system_id: Optional[str] = None,
    ) -> List[Selection]:
        """Unresulted selections on the given dates, ordered by (system, row_order)."""
        dates = sorted(set(date_isos))
        if not dates:
            return []
        marks = ", ".join("?" for _ in dates)
        sql = f"SELECT * FROM selections WHERE has_result = 0 AND date_iso IN ({marks})"
        params: List[Any] = list(dates)
        if system_id is not None:
            sql += " AND system_id = ?"
            params.append(system_id)
        rows = self.conn.execute(sql + " ORDER BY system_id, row_order", params).fetchall()
        return [_row_to_selection(r) for r in rows]

    def list_selections(
        self, system_id: str = "", date_from: str = "", date_to: str = "",
        resulted_only: bool = False, country: str = "", meeting: str = "",
        min_odds: Optional[float] = None, max_odds: Optional[float] = None,
    ) -> List[Selection]:
        """Selections in ledger order, optionally filtered."""
        where_parts = ["1=1"]
        params: List[Any] = []
        if system_id:
            where_parts.append("system_id = ?")
            params.append(system_id)
        if date_from:
            where_parts.append("date_iso >= ?")
            params.append(date_from)
        if date_to:
            where_parts.append("date_iso <= ?")
            params.append(date_to)
        if resulted_only:
            where_parts.append("has_result = 1")
        if country:
            where_parts.append("country = ?")
            params.append(country)
        if meeting:
            where_parts.append("meeting = ?")
            params.append(meeting)
        if min_odds is not None:
            where_parts.append("win_bsp >= ?")
            params.append(min_odds)
        if max_odds is not None:
            where_parts.append("win_bsp <= ?")
            params.append(max_odds)
        where = " AND ".join(where_parts)
        rows = self.conn.execute(
            f"SELECT * FROM selections WHERE {where} ORDER BY system_id, row_order",
            params,
        ).fetchall()
        return [_row_to_selection(r) for r in rows]

    def update_selection(self, selection: Selection) -> None:
        """Write a selection's result fields (running totals are left alone)."""
        with self.transaction():
            self.conn.execute(
                """
                UPDATE selections SET
                    has_result = ?, result = ?, win_bsp = ?, place_bsp = ?,
                    win_pl = ?, place_pl = ?, country = ?, meeting = ?, updated_at = ?
                WHERE selection_id = ?
                """,
                (int(selection.has_result), selection.result, selection.win_bsp,
                 selection.place_bsp, selection.win_pl, selection.place_pl,
                 selection.country, selection.meeting, _now(),
                 selection.selection_id),
            )

    def update_running_totals(
        self, updates: Sequence[Tuple[int, float, Optional[float]]],
    ) -> int:
        """Persist ``(selection_id, running_win_pl, running_place_pl)`` triples."""
        with self.transaction():
            for selection_id, running_win, running_place in updates:
                self.conn.execute(
                    "UPDATE selections SET running_win_pl = ?, running_place_pl = ? WHERE selection_id = ?",
                    (running_win, running_place, selection_id),
                )
        return len(updates)

    def delete_selection(self, selection_id: int) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                "DELETE FROM selections WHERE selection_id = ?", (selection_id,),
            )
        return (cur.rowcount or 0) > 0

    def mark_selections_viewed(
        self, system_id: str = "", date_iso: str = "",
        selection_ids: Optional[Sequence[int]] = None,
    ) -> int:
        """Clear the ``is_new`` notification flag.  Returns rows changed."""
        where_parts = ["is_new = 1"]
        params: List[Any] = []
        if system_id:
            where_parts.append("system_id = ?")
            params.append(system_id)
        if date_iso:
            where_parts.append("date_iso = ?")
            params.append(date_iso)
        if selection_ids:
            marks = ", ".join("?" for _ in selection_ids)
            where_parts.append(f"selection_id IN ({marks})")
            params.extend(selection_ids)
        with self.transaction():
            cur = self.conn.execute(
                f"UPDATE selections SET is_new = 0 WHERE {' AND '.join(where_parts)}",
                params,
            )
        return cur.rowcount or 0
