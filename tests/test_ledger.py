"""Tests for the ledger edit path (create, result, reset, delete)."""
import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from ledger import Ledger, SelectionNotFoundError, SystemNotFoundError
from reconciliation import Reconciler
from system_locks import DEFAULT_LOCKS, SystemLocks


# ==================================================================
# Systems
# ==================================================================

class TestSystems:
    def test_duplicate_rejected(self, ledger, win_system):
        with pytest.raises(ValueError):
            ledger.create_system("s1", "Again")

    def test_blank_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.create_system(" ", "Name")
        with pytest.raises(ValueError):
            ledger.create_system("s9", "")


# ==================================================================
# Creation
# ==================================================================

class TestCreate:
    def test_create(self, ledger, win_system):
        sel = ledger.create_selection("s1", "15/03/2025", " Sea Star ", "2:30", country=" GB ")
        assert sel.row_order == 1
        assert sel.date_iso == "2025-03-15"
        assert sel.horse == "Sea Star"
        assert sel.race_time == "02:30"
        assert sel.country == "GB"
        assert sel.meeting is None
        assert sel.running_win_pl == 0.0
        assert sel.running_place_pl is None

    def test_time_optional(self, ledger, win_system):
        assert ledger.create_selection("s1", "2025-03-15", "Sea Star").race_time is None

    def test_unknown_system(self, ledger):
        with pytest.raises(SystemNotFoundError):
            ledger.create_selection("ghost", "2025-03-15", "Sea Star")

    @pytest.mark.parametrize("date,horse,time", [
        ("2025-03-15", "", "14:30"),
        ("", "Sea Star", "14:30"),
        ("15-03-2025", "Sea Star", "14:30"),
        ("2025-03-15", "Sea Star", "half two"),
    ])
    def test_invalid_input(self, ledger, win_system, date, horse, time):
        with pytest.raises(ValueError):
            ledger.create_selection("s1", date, horse, time)

    def test_bulk_create_keeps_order_and_reports_errors(self, db, ledger, win_system):
        result = ledger.create_selections("s1", [
            {"date": "15/03/2025", "time": "13:00", "horse": "First"},
            {"date": "15/03/2025", "time": "nonsense", "horse": "Broken"},
            {"date": "15/03/2025", "time": "14:00", "horse": "Second", "meeting": "Ascot"},
        ])
        assert [s.horse for s in result["created"]] == ["First", "Second"]
        assert [s.row_order for s in result["created"]] == [1, 2]
        assert result["errors"][0]["index"] == 1
        assert db.find_last("s1").meeting == "Ascot"

    def test_bulk_create_nothing_valid(self, db, ledger, win_system):
        result = ledger.create_selections("s1", [{"date": "", "horse": ""}])
        assert result["created"] == []
        assert len(result["errors"]) == 1
        assert db.find_last("s1") is None

    def test_concurrent_creates_get_distinct_orders(self, db, ledger, win_system):
        def worker(n):
            for i in range(10):
                ledger.create_selection("s1", "2025-03-15", f"W{n}-{i}", "14:00")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        orders = [s.row_order for s in db.find_by_system_ordered_from("s1")]
        assert orders == list(range(1, 41))


# ==================================================================
# Results
# ==================================================================

class TestResults:
    def test_set_result(self, ledger, win_system):
        sel = ledger.create_selection("s1", "2025-03-15", "Sea Star", "14:30")
        updated = ledger.update_selection_result(sel.selection_id, "won", win_bsp=4.5)
        assert updated.has_result is True
        assert updated.result == "WON"
        assert updated.win_pl == pytest.approx(-3.5)
        assert updated.place_pl is None
        assert updated.running_win_pl == pytest.approx(-3.5)

    def test_win_only_system_ignores_place_price(self, ledger, win_system):
        sel = ledger.create_selection("s1", "2025-03-15", "Sea Star", "14:30")
        updated = ledger.update_selection_result(sel.selection_id, "PLACED", win_bsp=4.5, place_bsp=1.8)
        assert updated.place_bsp is None
        assert updated.place_pl is None

    def test_place_system_without_place_price(self, ledger, place_system):
        sel = ledger.create_selection("s2", "2025-03-15", "Sea Star", "14:30")
        updated = ledger.update_selection_result(sel.selection_id, "WON", win_bsp=3.0)
        assert updated.place_pl == pytest.approx(1.0)
        assert updated.running_place_pl == pytest.approx(1.0)

    def test_void(self, ledger, win_system):
        sel = ledger.create_selection("s1", "2025-03-15", "Sea Star", "14:30")
        updated = ledger.update_selection_result(sel.selection_id, "VOID")
        assert updated.win_pl == 0.0
        assert updated.has_result is True

    @pytest.mark.parametrize("kwargs", [
        {"result": "WON"},
        {"result": "WON", "win_bsp": 0.0},
        {"result": "LOST", "win_bsp": -2.0},
        {"result": "LOST", "place_bsp": 0.0},
        {"result": "SCRATCHED"},
    ])
    def test_rejected(self, db, ledger, win_system, kwargs):
        sel = ledger.create_selection("s1", "2025-03-15", "Sea Star", "14:30")
        with pytest.raises(ValueError):
            ledger.update_selection_result(sel.selection_id, **kwargs)
        assert db.get_selection(sel.selection_id).has_result is False

    def test_unknown_selection(self, ledger):
        with pytest.raises(SelectionNotFoundError):
            ledger.update_selection_result(999, "LOST")
        with pytest.raises(SelectionNotFoundError):
            ledger.delete_selection(999)

    def test_reset(self, db, ledger, win_system):
        a = ledger.create_selection("s1", "2025-03-15", "A", "13:00")
        b = ledger.create_selection("s1", "2025-03-15", "B", "14:00")
        ledger.update_selection_result(a.selection_id, "LOST", win_bsp=5.0)
        ledger.update_selection_result(b.selection_id, "LOST", win_bsp=5.0)
        reset = ledger.reset_selection_result(a.selection_id)
        assert reset.has_result is False
        assert reset.result is None
        assert reset.win_pl is None
        assert reset.running_win_pl == 0.0
        assert db.get_selection(b.selection_id).running_win_pl == pytest.approx(0.98)

    def test_reset_unresulted_is_noop(self, ledger, win_system):
        a = ledger.create_selection("s1", "2025-03-15", "A", "13:00")
        assert ledger.reset_selection_result(a.selection_id).has_result is False


# ==================================================================
# Deletion and notifications
# ==================================================================

class TestDelete:
    def test_unresulted_delete_rewrites_nothing(self, db, ledger, win_system):
        a = ledger.create_selection("s1", "2025-03-15", "A", "13:00")
        ledger.update_selection_result(a.selection_id, "LOST", win_bsp=5.0)
        b = ledger.create_selection("s1", "2025-03-15", "B", "14:00")
        ledger.create_selection("s1", "2025-03-15", "C", "15:00")
        assert ledger.delete_selection(b.selection_id) == 0
        assert [s.horse for s in db.find_by_system_ordered_from("s1")] == ["A", "C"]

    def test_row_order_retired(self, ledger, win_system):
        a = ledger.create_selection("s1", "2025-03-15", "A", "13:00")
        ledger.delete_selection(a.selection_id)
        assert ledger.create_selection("s1", "2025-03-15", "B", "13:00").row_order == 2

    def test_mark_viewed(self, db, ledger, win_system):
        ledger.create_selection("s1", "2025-03-15", "A", "13:00")
        ledger.create_selection("s1", "2025-03-16", "B", "13:00")
        assert ledger.mark_viewed(system_id="s1", date_iso="2025-03-15") == 1
        assert [s.is_new for s in db.find_by_system_ordered_from("s1")] == [False, True]


class TestSystemLocks:
    def test_same_system_same_lock(self):
        locks = SystemLocks()
        assert locks.get("s1") is locks.get("s1")
        assert locks.get("s1") is not locks.get("s2")

    def test_timeout(self):
        locks = SystemLocks()
        with locks.hold("s1"):
            with pytest.raises(TimeoutError):
                with locks.hold("s1", timeout=0.01):
                    pass
            with locks.hold("s2", timeout=0.01):
                pass

    def test_released_after_error(self):
        locks = SystemLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("s1"):
                raise RuntimeError("boom")
        assert not locks.get("s1").locked()

    def test_ledger_and_reconciler_share_locks(self, db):
        ledger, reconciler = Ledger(db), Reconciler(db)
        assert ledger.locks is reconciler.locks is DEFAULT_LOCKS
        with ledger.locks.hold("s1"):
            with pytest.raises(TimeoutError):
                with reconciler.locks.hold("s1", timeout=0.01):
                    pass

    def test_explicit_locks_kept(self, db):
        locks = SystemLocks()
        assert Ledger(db, locks=locks).locks is locks
