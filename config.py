"""Runtime configuration for the selection ledger.

Values come from the process environment; a local ``.env`` file is loaded
first so development setups don't need exported variables.

    DATABASE_URL        PostgreSQL DSN.  When unset, SQLite is used.
    LEDGER_DB_PATH      SQLite file path (default: ledger.db)
    LEDGER_COMMISSION   Exchange commission on winning lays (default: 0.02)
    LEDGER_STAKE        Level stake in points (default: 1.0)
    LEDGER_LOG_LEVEL    Logging level for the CLIs (default: INFO)
"""
from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DB_PATH = "ledger.db"
DEFAULT_COMMISSION = 0.02
DEFAULT_STAKE = 1.0


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def database_url() -> str:
    """PostgreSQL DSN, normalized for psycopg2 (empty string if unset)."""
    url = os.getenv("DATABASE_URL", "").strip()
    # Hosted providers hand out postgres:// but psycopg2 requires postgresql://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def db_path() -> str:
    return os.getenv("LEDGER_DB_PATH", DEFAULT_DB_PATH)


def commission() -> float:
    return _env_float("LEDGER_COMMISSION", DEFAULT_COMMISSION)


def stake() -> float:
    return _env_float("LEDGER_STAKE", DEFAULT_STAKE)


def configure_logging(level: str = "") -> None:
    """Set up root logging for command-line entry points."""
    name = (level or os.getenv("LEDGER_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
