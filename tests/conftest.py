"""Shared fixtures for ledger tests."""
import sys
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from ledger import Ledger
from persistence import Persistence
from pl_calculator import PLSettings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Tests always run on SQLite with the default stake/commission."""
    for name in ("DATABASE_URL", "LEDGER_STAKE", "LEDGER_COMMISSION", "LEDGER_DB_PATH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db(tmp_path):
    """Fresh DB for each test."""
    return Persistence(tmp_path / "test.db")


@pytest.fixture
def ledger(db):
    return Ledger(db, base_settings=PLSettings())


@pytest.fixture
def win_system(ledger):
    return ledger.create_system("s1", "Win Layer")


@pytest.fixture
def place_system(ledger):
    return ledger.create_system("s2", "Place Layer", has_place_market=True)


def feed_record(date="15/03/2025", time="14:30", horse="Sea Star",
                win_bsp="3.0", win_return="2.94", place_bsp="", place_return="",
                country="GB", track="Ascot"):
    """A feed row as read from CSV (all strings)."""
    return {
        "Date of Race": date,
        "Country": country,
        "Track": track,
        "Time": time,
        "Horse": horse,
        "Betfair SP": win_bsp,
        "Betfair Lay Return": win_return,
        "Betfair Place SP": place_bsp,
        "Place Lay Return": place_return,
    }
