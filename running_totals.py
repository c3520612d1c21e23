"""Running P/L totals for a system ledger.

``running_win_pl`` of a row is the sum of ``win_pl`` over every resulted
row at or before it in ``row_order``; unresulted rows add nothing but still
carry the total.  ``running_place_pl`` sums the rows whose ``place_pl`` is
set and stays None until the first such row.

Two strategies:

* ``recompute_from`` walks the suffix after a single edit or delete, seeded
  from the stored totals of the row just before it.
* ``recompute_system`` re-derives the whole ledger in one ascending pass;
  settlement batches use it once per system instead of many scattered
  suffix walks.

Neither pass has a cancellation point: a half-written suffix breaks the
prefix sums, so callers run them inside a store transaction.
"""
from __future__ import annotations

import logging
from typing import Iterable, Iterator, List, Optional, Tuple

from persistence import Persistence, Selection

logger = logging.getLogger(__name__)

# Stored totals within this distance of the recomputed value are left alone
_TOLERANCE = 1e-9


def accumulate(
    rows: Iterable[Selection], seed_win: float = 0.0,
    seed_place: Optional[float] = None,
) -> Iterator[Tuple[Selection, float, Optional[float]]]:
    """Yield ``(row, running_win, running_place)`` for rows in ledger order."""
    running_win = seed_win
    running_place = seed_place
    for row in rows:
        if row.has_result and row.win_pl is not None:
            running_win += row.win_pl
        if row.place_pl is not None:
            running_place = (running_place or 0.0) + row.place_pl
        yield row, running_win, running_place


def _differs(stored: Optional[float], value: Optional[float]) -> bool:
    if stored is None or value is None:
        return stored is not value
    return abs(stored - value) > _TOLERANCE


def _changed(
    rows: Iterable[Selection], seed_win: float, seed_place: Optional[float],
) -> List[Tuple[int, float, Optional[float]]]:
    updates = []
    for row, running_win, running_place in accumulate(rows, seed_win, seed_place):
        if (_differs(row.running_win_pl, running_win)
                or _differs(row.running_place_pl, running_place)):
            updates.append((row.selection_id, running_win, running_place))
    return updates


def recompute_from(db: Persistence, system_id: str, row_order: int) -> int:
    """Incremental pass over rows with ``row_order >=`` *row_order*.

    For an edit pass the edited row's own row_order; after a delete pass
    the deleted row's (it is already gone, so the walk starts at the next
    row).  Returns the number of rows rewritten.
    """
    preceding = db.find_preceding(system_id, row_order)
    seed_win = 0.0
    seed_place = None
    if preceding is not None:
        seed_win = preceding.running_win_pl or 0.0
        seed_place = preceding.running_place_pl
    suffix = db.find_by_system_ordered_from(system_id, row_order)
    updates = _changed(suffix, seed_win, seed_place)
    db.update_running_totals(updates)
    logger.debug(
        "Incremental recompute %s from row %d: %d/%d rows rewritten",
        system_id, row_order, len(updates), len(suffix),
    )
    return len(updates)


def recompute_system(db: Persistence, system_id: str) -> int:
    """Full ascending pass over a system ledger.  Returns rows rewritten."""
    ledger = db.find_by_system_ordered_from(system_id)
    updates = _changed(ledger, 0.0, None)
    db.update_running_totals(updates)
    logger.info(
        "Full recompute %s: %d/%d rows rewritten", system_id, len(updates), len(ledger),
    )
    return len(updates)


def verify_system(db: Persistence, system_id: str) -> List[int]:
    """Row orders whose stored totals disagree with a fresh pass."""
    ledger = db.find_by_system_ordered_from(system_id)
    return [
        row.row_order
        for row, running_win, running_place in accumulate(ledger)
        if _differs(row.running_win_pl, running_win)
        or _differs(row.running_place_pl, running_place)
    ]
