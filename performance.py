"""Per-system performance summary over resulted selections.

Level-stake lays, so a "win" for the system is a horse that LOST and ROI is
total win P/L per bet.

Usage:
    from performance import system_performance
    stats = system_performance(db, "system-1", date_from="2025-01-01")
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import pandas as pd

from persistence import Persistence
from pl_calculator import LOST, round_pl

# (label, upper bound on win_bsp); None = every bet
ODDS_BANDS = [
    ("Odds < 10.0", 10.0),
    ("Odds < 20.0", 20.0),
    ("Odds < 30.0", 30.0),
    ("All Odds", None),
]


def _strike_rate(wins: int, bets: int) -> float:
    return round(wins / bets * 100, 1) if bets else 0.0


def _monthly(df: pd.DataFrame) -> List[Dict[str, Any]]:
    months = pd.to_datetime(df["date_iso"]).dt.to_period("M")
    grouped = (
        df.assign(month=months)
        .groupby("month", sort=True)
        .agg(monthly_pl=("win_pl", "sum"), bets=("win_pl", "size"))
    )
    grouped["cumulative_pl"] = grouped["monthly_pl"].cumsum()
    return [
        {
            "month": str(period),
            "month_name": period.strftime("%B %Y"),
            "monthly_pl": round_pl(float(row.monthly_pl)),
            "cumulative_pl": round_pl(float(row.cumulative_pl)),
            "bets": int(row.bets),
        }
        for period, row in grouped.iterrows()
    ]


def _odds_bands(df: pd.DataFrame) -> List[Dict[str, Any]]:
    bands = []
    for label, upper in ODDS_BANDS:
        if upper is None:
            band = df
        else:
            band = df[df["win_bsp"].notna() & (df["win_bsp"] <= upper)]
        bets = len(band)
        wins = int((band["result"] == LOST).sum())
        priced = band["win_bsp"].dropna()
        bands.append({
            "range": label,
            "max_odds": upper,
            "profit": round_pl(float(band["win_pl"].sum())),
            "bets": bets,
            "wins": wins,
            "strike_rate": _strike_rate(wins, bets),
            "avg_odds": round_pl(float(priced.mean())) if len(priced) else 0.0,
        })
    return bands


def system_performance(
    db: Persistence, system_id: str, date_from: str = "", date_to: str = "",
    country: str = "", meeting: str = "",
    min_odds: Optional[float] = None, max_odds: Optional[float] = None,
) -> Dict[str, Any]:
    """Totals, strike rate, ROI, monthly cumulative P/L and odds bands."""
    system = db.get_system(system_id)
    if system is None:
        raise LookupError(f"System {system_id!r} not found")

    selections = db.list_selections(
        system_id=system_id, date_from=date_from, date_to=date_to,
        resulted_only=True, country=country, meeting=meeting,
        min_odds=min_odds, max_odds=max_odds,
    )
    summary: Dict[str, Any] = {
        "system_id": system.system_id,
        "system_name": system.name,
        "system_slug": system.slug,
        "total_pl": 0.0,
        "strike_rate": 0.0,
        "total_bets": 0,
        "roi": 0.0,
        "cumulative_pl": [],
        "profit_by_odds_range": [],
    }
    if not selections:
        return summary

    df = pd.DataFrame(
        [
            {"date_iso": s.date_iso, "result": s.result,
             "win_bsp": s.win_bsp, "win_pl": s.win_pl or 0.0}
            for s in selections
        ]
    )
    # VOID rows carry no price; keep the column numeric (NaN) either way
    df["win_bsp"] = df["win_bsp"].astype("float64")
    total_bets = len(df)
    total_pl = float(df["win_pl"].sum())
    wins = int((df["result"] == LOST).sum())

    summary.update(
        total_pl=round_pl(total_pl),
        strike_rate=_strike_rate(wins, total_bets),
        total_bets=total_bets,
        roi=round(total_pl / total_bets * 100, 1),
        cumulative_pl=_monthly(df),
        profit_by_odds_range=_odds_bands(df),
    )
    return summary
