"""Profit/loss for lay selections on the win and place markets.

All selections are level-stake lays.  Winning the lay (the horse loses)
returns the stake minus exchange commission; losing the lay costs the
liability, ``stake * (price - 1)``.

Usage:
    from pl_calculator import PLSettings, calculate_win_pl
    calculate_win_pl("WON", 3.0)          # -> -2.0
    calculate_win_pl("LOST", None)        # -> 0.98
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import config


# ---------------------------------------------------------------------------
# Result codes
# ---------------------------------------------------------------------------

WON = "WON"
LOST = "LOST"
PLACED = "PLACED"
NR = "NR"
VOID = "VOID"
CANCELLED = "CANCELLED"

RESULTS = frozenset({WON, LOST, PLACED, NR, VOID, CANCELLED})

# Results where no bet stood
_NO_BET = frozenset({NR, VOID, CANCELLED})

# Display precision for P/L values (storage keeps full precision)
PL_DECIMALS = 2


@dataclass(frozen=True)
class PLSettings:
    """Stake and commission used to price a system's lays."""
    stake: float = 1.0
    commission: float = 0.02

    @property
    def lay_win(self) -> float:
        """Return on a winning lay: stake minus commission."""
        return self.stake * (1.0 - self.commission)

    @classmethod
    def from_env(cls) -> "PLSettings":
        return cls(stake=config.stake(), commission=config.commission())

    def override(
        self, stake: Optional[float] = None, commission: Optional[float] = None,
    ) -> "PLSettings":
        """Copy with per-system overrides applied (None keeps the current value)."""
        return PLSettings(
            stake=self.stake if stake is None else stake,
            commission=self.commission if commission is None else commission,
        )


DEFAULT_SETTINGS = PLSettings()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_result(value: Optional[str]) -> str:
    """Upper-case and validate a result code.  Raises ValueError if unknown."""
    result = (value or "").strip().upper()
    if result not in RESULTS:
        raise ValueError(
            f"Unknown result {value!r}; expected one of {', '.join(sorted(RESULTS))}"
        )
    return result


def round_pl(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return round(value, PL_DECIMALS)


def is_valid_price(price: Optional[float]) -> bool:
    """A Betfair SP is usable once it is present and positive."""
    return price is not None and price > 0


# ---------------------------------------------------------------------------
# Formulas
# ---------------------------------------------------------------------------

def calculate_win_pl(
    result: str, win_bsp: Optional[float],
    settings: PLSettings = DEFAULT_SETTINGS,
) -> float:
    """Win-market lay P/L.

    WON costs the liability, LOST and PLACED keep the stake less
    commission, and NR/VOID/CANCELLED are stake-neutral.
    """
    result = normalize_result(result)
    if result in _NO_BET:
        return 0.0
    if result == WON:
        if not is_valid_price(win_bsp):
            raise ValueError("win_bsp is required to price a WON result")
        return settings.stake * (1.0 - win_bsp)
    # LOST, and PLACED which is a loser on the win market
    return settings.lay_win


def calculate_place_pl(
    result: str, place_bsp: Optional[float],
    settings: PLSettings = DEFAULT_SETTINGS,
) -> float:
    """Place-market lay P/L.  Only meaningful for systems with a place market.

    Without a place price a WON/PLACED horse returns the stake: the place
    market was voided.
    """
    result = normalize_result(result)
    if result in _NO_BET:
        return 0.0
    if result in (WON, PLACED):
        if is_valid_price(place_bsp):
            return settings.stake * (1.0 - place_bsp)
        return settings.stake
    return settings.lay_win
