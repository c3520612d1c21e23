"""Selection lifecycle and the administrative edit path.

Every mutation runs under the system's lock and inside one store
transaction, and leaves the running totals consistent:

* create      appends at the next row_order; its totals equal the ledger
              total so far
* edit/reset  rewrites the row's P/L, then walks the suffix from it
* delete      walks the suffix only if the row had a result (an unresulted
              row never contributed to any total)
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from feed import parse_date_iso
from match_key import normalize_time
from persistence import Persistence, Selection, System
from pl_calculator import (
    PLSettings, calculate_place_pl, calculate_win_pl, normalize_result,
)
from running_totals import recompute_from
from system_locks import DEFAULT_LOCKS, SystemLocks

logger = logging.getLogger(__name__)


class SystemNotFoundError(LookupError):
    pass


class SelectionNotFoundError(LookupError):
    pass


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


class Ledger:
    def __init__(
        self, db: Persistence, locks: Optional[SystemLocks] = None,
        base_settings: Optional[PLSettings] = None,
    ):
        self.db = db
        self.locks = locks or DEFAULT_LOCKS
        self.base_settings = base_settings

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require_system(self, system_id: str) -> System:
        system = self.db.get_system(system_id)
        if system is None:
            raise SystemNotFoundError(f"System {system_id!r} not found")
        return system

    def _require_selection(self, selection_id: int) -> Selection:
        selection = self.db.get_selection(selection_id)
        if selection is None:
            raise SelectionNotFoundError(f"Selection {selection_id} not found")
        return selection

    # ------------------------------------------------------------------
    # Systems
    # ------------------------------------------------------------------

    def create_system(
        self, system_id: str, name: str, slug: str = "",
        has_place_market: bool = False,
        commission: Optional[float] = None, stake: Optional[float] = None,
    ) -> System:
        if not (system_id or "").strip() or not (name or "").strip():
            raise ValueError("system_id and name are required")
        if self.db.get_system(system_id) is not None:
            raise ValueError(f"System {system_id!r} already exists")
        system = self.db.create_system(
            system_id, name, slug=slug, has_place_market=has_place_market,
            commission=commission, stake=stake,
        )
        logger.info("Created system %s (%s)", system_id, name)
        return system

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _build(
        self, system_id: str, date: str, horse: str, race_time: Optional[str],
        country: Optional[str], meeting: Optional[str],
    ) -> Selection:
        """Validate input into an unsaved selection (row_order still 0)."""
        if not (horse or "").strip():
            raise ValueError("horse is required")
        if not (date or "").strip():
            raise ValueError("date is required")
        return Selection(
            selection_id=None,
            system_id=system_id,
            row_order=0,
            date_iso=parse_date_iso(date),
            horse=horse.strip(),
            race_time=normalize_time(race_time) if _clean(race_time) else None,
            country=_clean(country),
            meeting=_clean(meeting),
        )

    def _append(self, selection: Selection) -> Selection:
        """Insert at the end of its ledger.  Caller holds lock + transaction."""
        last = self.db.find_last(selection.system_id)
        selection.row_order = self.db.next_row_order(selection.system_id)
        selection.running_win_pl = (last.running_win_pl or 0.0) if last else 0.0
        selection.running_place_pl = last.running_place_pl if last else None
        return self.db.insert_selection(selection)

    def create_selection(
        self, system_id: str, date: str, horse: str, race_time: Optional[str] = None,
        country: Optional[str] = None, meeting: Optional[str] = None,
    ) -> Selection:
        self._require_system(system_id)
        selection = self._build(system_id, date, horse, race_time, country, meeting)
        with self.locks.hold(system_id), self.db.transaction():
            self.db.lock_system(system_id)
            created = self._append(selection)
        logger.info(
            "Created selection %s #%d: %s %s %s", system_id, created.row_order,
            created.date_iso, created.race_time or "", created.horse,
        )
        return created

    def create_selections(
        self, system_id: str, items: Iterable[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Bulk create in input order.  Invalid items are reported by index."""
        self._require_system(system_id)
        valid: List[Selection] = []
        errors: List[Dict[str, Any]] = []
        for index, item in enumerate(items):
            try:
                valid.append(self._build(
                    system_id, item.get("date", ""), item.get("horse", ""),
                    item.get("time"), item.get("country"), item.get("meeting"),
                ))
            except ValueError as e:
                errors.append({"index": index, "error": str(e)})
        created: List[Selection] = []
        if valid:
            with self.locks.hold(system_id), self.db.transaction():
                self.db.lock_system(system_id)
                for selection in valid:
                    created.append(self._append(selection))
        logger.info(
            "Bulk create %s: %d created, %d error(s)", system_id, len(created), len(errors),
        )
        return {"created": created, "errors": errors}

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def update_selection_result(
        self, selection_id: int, result: str,
        win_bsp: Optional[float] = None, place_bsp: Optional[float] = None,
    ) -> Selection:
        """Set (or correct) a selection's result and re-derive its P/L."""
        result = normalize_result(result)
        for name, price in (("win_bsp", win_bsp), ("place_bsp", place_bsp)):
            if price is not None and price <= 0:
                raise ValueError(f"{name} must be positive, got {price}")
        selection = self._require_selection(selection_id)
        system = self._require_system(selection.system_id)
        settings = system.pl_settings(self.base_settings)

        win_pl = calculate_win_pl(result, win_bsp, settings)
        place_pl = None
        if system.has_place_market:
            place_pl = calculate_place_pl(result, place_bsp, settings)
        else:
            place_bsp = None

        with self.locks.hold(system.system_id), self.db.transaction():
            self.db.lock_system(system.system_id)
            current = self._require_selection(selection_id)
            self.db.update_selection(replace(
                current, has_result=True, result=result,
                win_bsp=win_bsp, place_bsp=place_bsp,
                win_pl=win_pl, place_pl=place_pl,
            ))
            recompute_from(self.db, system.system_id, current.row_order)
        logger.info(
            "Selection %d set to %s (win_pl=%.4f, place_pl=%s)",
            selection_id, result, win_pl, place_pl,
        )
        return self.db.get_selection(selection_id)

    def reset_selection_result(self, selection_id: int) -> Selection:
        """Administrative reset: the selection becomes unresulted again."""
        selection = self._require_selection(selection_id)
        system_id = selection.system_id
        with self.locks.hold(system_id), self.db.transaction():
            self.db.lock_system(system_id)
            current = self._require_selection(selection_id)
            if current.has_result:
                self.db.update_selection(replace(
                    current, has_result=False, result=None,
                    win_bsp=None, place_bsp=None, win_pl=None, place_pl=None,
                ))
                recompute_from(self.db, system_id, current.row_order)
                logger.info("Selection %d result reset", selection_id)
        return self.db.get_selection(selection_id)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_selection(self, selection_id: int) -> int:
        """Delete a selection.  Returns the number of later rows rewritten.

        The row_order it held is retired, never reused.
        """
        selection = self._require_selection(selection_id)
        system_id = selection.system_id
        rewritten = 0
        with self.locks.hold(system_id), self.db.transaction():
            self.db.lock_system(system_id)
            current = self._require_selection(selection_id)
            self.db.delete_selection(selection_id)
            if current.has_result:
                rewritten = recompute_from(self.db, system_id, current.row_order)
        logger.info(
            "Deleted selection %d (%s #%d); %d later row(s) rewritten",
            selection_id, system_id, current.row_order, rewritten,
        )
        return rewritten

    def mark_viewed(
        self, system_id: str = "", date_iso: str = "",
        selection_ids: Optional[List[int]] = None,
    ) -> int:
        return self.db.mark_selections_viewed(
            system_id=system_id, date_iso=date_iso, selection_ids=selection_ids,
        )
