"""Tests for running_totals: prefix sums over a system ledger."""
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from ledger import Ledger
from persistence import Persistence, Selection
from pl_calculator import PLSettings
from running_totals import accumulate, recompute_from, recompute_system, verify_system


def _totals(db, system_id="s1"):
    return [
        (s.horse, s.running_win_pl, s.running_place_pl)
        for s in db.find_by_system_ordered_from(system_id)
    ]


def _assert_prefix_sums(db, system_id):
    """Stored totals equal the cumulative sums, row by row."""
    win = 0.0
    place = None
    for s in db.find_by_system_ordered_from(system_id):
        if s.has_result:
            win += s.win_pl
        if s.place_pl is not None:
            place = (place or 0.0) + s.place_pl
        assert s.running_win_pl == pytest.approx(win, abs=1e-9)
        if place is None:
            assert s.running_place_pl is None
        else:
            assert s.running_place_pl == pytest.approx(place, abs=1e-9)
    assert verify_system(db, system_id) == []


# ==================================================================
# Worked example
# ==================================================================

class TestLedgerExample:
    @pytest.fixture
    def abc(self, ledger, win_system):
        a = ledger.create_selection("s1", "2025-03-15", "A", "13:00")
        b = ledger.create_selection("s1", "2025-03-15", "B", "14:00")
        c = ledger.create_selection("s1", "2025-03-15", "C", "15:00")
        ledger.update_selection_result(a.selection_id, "WON", win_bsp=2.0)
        ledger.update_selection_result(b.selection_id, "LOST", win_bsp=6.0)
        ledger.update_selection_result(c.selection_id, "LOST", win_bsp=8.0)
        return a, b, c

    def test_running_totals(self, db, abc):
        wins = [round(w, 2) for _, w, _ in _totals(db)]
        assert wins == [-1.0, -0.02, 0.96]

    def test_delete_first_row(self, db, ledger, abc):
        a, _, _ = abc
        rewritten = ledger.delete_selection(a.selection_id)
        assert rewritten == 2
        wins = [round(w, 2) for _, w, _ in _totals(db)]
        assert wins == [0.98, 1.96]
        _assert_prefix_sums(db, "s1")

    def test_edit_middle_row(self, db, ledger, abc):
        _, b, _ = abc
        ledger.update_selection_result(b.selection_id, "WON", win_bsp=3.0)
        wins = [round(w, 2) for _, w, _ in _totals(db)]
        assert wins == [-1.0, -3.0, -2.02]

    def test_unresulted_row_carries_total(self, db, ledger, abc):
        d = ledger.create_selection("s1", "2025-03-16", "D", "13:00")
        assert d.running_win_pl == pytest.approx(0.96)
        ledger.create_selection("s1", "2025-03-16", "E", "14:00")
        ledger.delete_selection(d.selection_id)
        _assert_prefix_sums(db, "s1")


# ==================================================================
# Place totals
# ==================================================================

class TestPlaceTotals:
    def test_none_until_first_place_value(self):
        rows = [
            Selection(1, "s1", 1, "2025-03-15", "A", has_result=True, win_pl=0.98),
            Selection(2, "s1", 2, "2025-03-15", "B", has_result=True, win_pl=-2.0, place_pl=-0.5),
            Selection(3, "s1", 3, "2025-03-15", "C"),
        ]
        out = [(w, p) for _, w, p in accumulate(rows)]
        assert out[0] == (pytest.approx(0.98), None)
        assert out[1] == (pytest.approx(-1.02), pytest.approx(-0.5))
        assert out[2] == (pytest.approx(-1.02), pytest.approx(-0.5))

    def test_admin_place_values(self, db, ledger, place_system):
        a = ledger.create_selection("s2", "2025-03-15", "A", "13:00")
        b = ledger.create_selection("s2", "2025-03-15", "B", "14:00")
        ledger.update_selection_result(a.selection_id, "PLACED", win_bsp=6.0, place_bsp=2.0)
        ledger.update_selection_result(b.selection_id, "LOST", win_bsp=9.0, place_bsp=3.0)
        totals = _totals(db, "s2")
        assert totals[0][2] == pytest.approx(-1.0)
        assert totals[1][2] == pytest.approx(-0.02)
        _assert_prefix_sums(db, "s2")


# ==================================================================
# Strategies
# ==================================================================

class TestStrategies:
    def test_full_pass_repairs_damage(self, db, ledger, win_system):
        for i, horse in enumerate(["A", "B", "C"]):
            sel = ledger.create_selection("s1", "2025-03-15", horse, f"1{i}:00")
            ledger.update_selection_result(sel.selection_id, "LOST", win_bsp=5.0)
        last = db.find_last("s1")
        db.update_running_totals([(last.selection_id, 99.0, None)])
        assert verify_system(db, "s1") == [last.row_order]
        assert recompute_system(db, "s1") == 1
        _assert_prefix_sums(db, "s1")

    def test_only_changed_rows_written(self, db, ledger, win_system):
        for horse in ["A", "B", "C", "D"]:
            ledger.create_selection("s1", "2025-03-15", horse, "13:00")
        assert recompute_system(db, "s1") == 0
        first = db.find_by_system_ordered_from("s1")[0]
        db.update_selection(replace(first, has_result=True, result="LOST", win_pl=0.98))
        assert recompute_from(db, "s1", first.row_order) == 4

    def test_empty_ledger(self, db, win_system):
        assert recompute_system(db, "s1") == 0
        assert recompute_from(db, "s1", 1) == 0
        assert verify_system(db, "s1") == []

    def test_incremental_matches_full(self, db, ledger, win_system):
        sels = [ledger.create_selection("s1", "2025-03-15", f"H{i}", "13:00") for i in range(6)]
        for sel in sels:
            ledger.update_selection_result(sel.selection_id, "LOST", win_bsp=4.0)
        ledger.update_selection_result(sels[3].selection_id, "WON", win_bsp=4.0)
        incremental = _totals(db)
        recompute_system(db, "s1")
        assert _totals(db) == incremental



# ==================================================================
# Property tests over generated operation sequences
# ==================================================================

RESULTS = ["WON", "LOST", "PLACED", "NR", "VOID"]

# the autouse env fixture is function-scoped; each example builds its own store
property_settings = settings(
    max_examples=40, deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)

win_prices = st.floats(min_value=1.5, max_value=20.0)
place_prices = st.one_of(st.none(), st.floats(min_value=1.1, max_value=4.0))

operations = st.lists(
    st.tuples(
        st.sampled_from(["create", "settle", "reset", "delete"]),
        st.sampled_from(["s1", "s2"]),
        st.integers(min_value=0, max_value=50),
        st.sampled_from(RESULTS),
        win_prices,
        place_prices,
    ),
    max_size=30,
)

# (result or None for still open, win_bsp, place_bsp)
ledger_rows = st.tuples(st.one_of(st.none(), st.sampled_from(RESULTS)), win_prices, place_prices)


def _open_store(directory):
    db = Persistence(Path(directory) / "ledger.db")
    ledger = Ledger(db, base_settings=PLSettings())
    ledger.create_system("s1", "Win Layer")
    ledger.create_system("s2", "Place Layer", has_place_market=True)
    return db, ledger


def _apply(db, ledger, op):
    kind, system_id, pick, result, win_bsp, place_bsp = op
    rows = db.find_by_system_ordered_from(system_id)
    if kind == "create" or not rows:
        return ledger.create_selection(system_id, "2025-03-15", f"H{pick}", "14:00")
    target = rows[pick % len(rows)]
    if kind == "settle":
        ledger.update_selection_result(
            target.selection_id, result, win_bsp=win_bsp, place_bsp=place_bsp,
        )
    elif kind == "reset":
        ledger.reset_selection_result(target.selection_id)
    else:
        ledger.delete_selection(target.selection_id)
    return None


def _build(ledger, system_id, named_rows):
    """Append rows in order, then settle the ones that have a result."""
    created = [
        ledger.create_selection(system_id, "2025-03-15", horse, "14:00")
        for horse, _ in named_rows
    ]
    for sel, (_, (result, win_bsp, place_bsp)) in zip(created, named_rows):
        if result is not None:
            ledger.update_selection_result(
                sel.selection_id, result, win_bsp=win_bsp, place_bsp=place_bsp,
            )
    return created


@property_settings
@given(ops=operations)
def test_operations_keep_prefix_sums(ops):
    with tempfile.TemporaryDirectory() as tmp:
        db, ledger = _open_store(tmp)
        issued = {"s1": 0, "s2": 0}
        for op in ops:
            created = _apply(db, ledger, op)
            if created is not None:
                assert created.row_order > issued[created.system_id]
                issued[created.system_id] = created.row_order
            _assert_prefix_sums(db, op[1])

        for system_id in ("s1", "s2"):
            _assert_prefix_sums(db, system_id)
            orders = [s.row_order for s in db.find_by_system_ordered_from(system_id)]
            assert orders == sorted(set(orders))


@property_settings
@given(
    rows=st.lists(ledger_rows, max_size=10),
    extra=ledger_rows,
    position=st.integers(min_value=0, max_value=10),
)
def test_deleted_row_leaves_no_trace(rows, extra, position):
    named = [(f"H{i}", row) for i, row in enumerate(rows)]
    position = min(position, len(named))
    with_extra = named[:position] + [("Extra", extra)] + named[position:]

    with tempfile.TemporaryDirectory() as tmp_a, tempfile.TemporaryDirectory() as tmp_b:
        db_a, ledger_a = _open_store(tmp_a)
        created = _build(ledger_a, "s2", with_extra)
        ledger_a.delete_selection(created[position].selection_id)

        db_b, ledger_b = _open_store(tmp_b)
        _build(ledger_b, "s2", named)

        totals_a = _totals(db_a, "s2")
        totals_b = _totals(db_b, "s2")
        assert [h for h, _, _ in totals_a] == [h for h, _, _ in totals_b]
        for (_, win_a, place_a), (_, win_b, place_b) in zip(totals_a, totals_b):
            assert win_a == pytest.approx(win_b, abs=1e-9)
            if place_b is None:
                assert place_a is None
            else:
                assert place_a == pytest.approx(place_b, abs=1e-9)
        _assert_prefix_sums(db_a, "s2")
