"""Pair settlement feed rows with unresulted ledger selections.

Only selections with ``has_result = 0`` on the feed's dates are candidates,
so running the same feed twice settles nothing the second time.

Matching is exact on the normalized ``MatchKey``; one key can cover the same
horse selected by several systems, and all of them settle from that row.
The first feed row to claim a key wins.  Any later row with the same key is
reported as a duplicate and never overwrites the first.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from feed import FeedRow
from match_key import MatchKey
from persistence import Persistence, Selection, System
from pl_calculator import (
    LOST, PLACED, WON, PLSettings,
    calculate_place_pl, calculate_win_pl, is_valid_price,
)

logger = logging.getLogger(__name__)

REASON_NO_CANDIDATE = "no_candidate"
REASON_DUPLICATE_KEY = "duplicate_key"
REASON_NO_FEED_ROW = "no_feed_row"
REASON_BAD_SELECTION_TIME = "invalid_selection_time"
REASON_NO_PRICE = "no_valid_price"


def has_valid_price(row: FeedRow) -> bool:
    """The race is settled once the feed carries a positive win SP."""
    return is_valid_price(row.win_bsp)


def derive_result(row: FeedRow, has_place_market: bool) -> str:
    """Result from the feed's lay-return signs.

    A negative win lay return means the horse won.  A negative place lay
    return with a non-negative win return means it placed, which only
    place-market systems record; everyone else books it as LOST.
    """
    if row.win_lay_return is not None and row.win_lay_return < 0:
        return WON
    if has_place_market and row.place_lay_return is not None and row.place_lay_return < 0:
        return PLACED
    return LOST


@dataclass
class Settlement:
    """An accepted match: the computed result fields for one selection."""
    selection: Selection
    feed_row: FeedRow
    result: str
    win_bsp: float
    win_pl: float
    place_bsp: Optional[float] = None
    place_pl: Optional[float] = None

    @property
    def system_id(self) -> str:
        return self.selection.system_id

    def settled_selection(self) -> Selection:
        """The selection as it should be stored once settled."""
        return replace(
            self.selection,
            has_result=True,
            result=self.result,
            win_bsp=self.win_bsp,
            place_bsp=self.place_bsp,
            win_pl=self.win_pl,
            place_pl=self.place_pl,
            country=self.feed_row.country or self.selection.country,
            meeting=self.feed_row.meeting or self.selection.meeting,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "selection_id": self.selection.selection_id,
            "system_id": self.system_id,
            "row_order": self.selection.row_order,
            "horse": self.selection.horse,
            "result": self.result,
            "win_pl": self.win_pl,
            "place_pl": self.place_pl,
            "feed_row": self.feed_row.row_number,
        }


@dataclass
class MatchOutcome:
    accepted: List[Settlement] = field(default_factory=list)
    unmatched_feed_rows: List[Dict[str, Any]] = field(default_factory=list)
    unmatched_selections: List[Dict[str, Any]] = field(default_factory=list)
    not_settled: List[Dict[str, Any]] = field(default_factory=list)

    def by_system(self) -> "OrderedDict[str, List[Settlement]]":
        """Accepted settlements grouped per system, in first-seen order."""
        groups: "OrderedDict[str, List[Settlement]]" = OrderedDict()
        for s in self.accepted:
            groups.setdefault(s.system_id, []).append(s)
        return groups


def _selection_entry(sel: Selection, system: Optional[System], reason: str) -> Dict[str, Any]:
    return {
        "selection_id": sel.selection_id,
        "system_id": sel.system_id,
        "system_name": system.name if system else None,
        "date_iso": sel.date_iso,
        "time": sel.race_time,
        "horse": sel.horse,
        "reason": reason,
    }


def _settle(
    sel: Selection, row: FeedRow, system: Optional[System], base: PLSettings,
) -> Settlement:
    has_place = bool(system and system.has_place_market)
    settings = system.pl_settings(base) if system else base
    result = derive_result(row, has_place)
    settlement = Settlement(
        selection=sel, feed_row=row, result=result,
        win_bsp=row.win_bsp,
        win_pl=calculate_win_pl(result, row.win_bsp, settings),
    )
    # No place price: the place market was not offered for this runner
    if has_place and is_valid_price(row.place_bsp):
        settlement.place_bsp = row.place_bsp
        settlement.place_pl = calculate_place_pl(result, row.place_bsp, settings)
    return settlement


def match_rows(
    rows: Iterable[FeedRow],
    candidates: Iterable[Selection],
    systems: Dict[str, System],
    base_settings: Optional[PLSettings] = None,
) -> MatchOutcome:
    """Match feed rows to candidate selections (no store access)."""
    base = base_settings or PLSettings.from_env()
    outcome = MatchOutcome()

    index: "OrderedDict[MatchKey, List[Selection]]" = OrderedDict()
    for sel in candidates:
        try:
            key = MatchKey.build(sel.date_iso, sel.race_time, sel.horse)
        except ValueError:
            outcome.unmatched_selections.append(_selection_entry(
                sel, systems.get(sel.system_id), REASON_BAD_SELECTION_TIME))
            continue
        index.setdefault(key, []).append(sel)

    claimed: Dict[MatchKey, int] = {}
    for row in rows:
        key = row.key
        if key in claimed:
            entry = row.summary()
            entry["reason"] = REASON_DUPLICATE_KEY
            entry["first_row"] = claimed[key]
            outcome.unmatched_feed_rows.append(entry)
            continue
        selections = index.get(key)
        if not selections:
            entry = row.summary()
            entry["reason"] = REASON_NO_CANDIDATE
            outcome.unmatched_feed_rows.append(entry)
            continue
        claimed[key] = row.row_number
        if not has_valid_price(row):
            for sel in selections:
                entry = _selection_entry(sel, systems.get(sel.system_id), REASON_NO_PRICE)
                entry["feed_row"] = row.row_number
                outcome.not_settled.append(entry)
            continue
        for sel in selections:
            outcome.accepted.append(_settle(sel, row, systems.get(sel.system_id), base))

    for key, selections in index.items():
        if key not in claimed:
            for sel in selections:
                outcome.unmatched_selections.append(_selection_entry(
                    sel, systems.get(sel.system_id), REASON_NO_FEED_ROW))

    logger.info(
        "Matched %d selection(s); %d unmatched feed row(s), %d unmatched selection(s), "
        "%d not yet settled",
        len(outcome.accepted), len(outcome.unmatched_feed_rows),
        len(outcome.unmatched_selections), len(outcome.not_settled),
    )
    return outcome


class SettlementMatcher:
    """Loads candidates from the ledger store and matches a feed against them."""

    def __init__(self, db: Persistence, base_settings: Optional[PLSettings] = None):
        self.db = db
        self.base_settings = base_settings

    def load_candidates(self, rows: Iterable[FeedRow]) -> List[Selection]:
        dates = {row.date_iso for row in rows}
        return self.db.find_unresulted(dates)

    def match(self, rows: List[FeedRow]) -> MatchOutcome:
        candidates = self.load_candidates(rows)
        systems = self.db.get_systems(sel.system_id for sel in candidates)
        return match_rows(rows, candidates, systems, self.base_settings)
