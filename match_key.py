"""Composite key used to pair settlement feed rows with ledger selections.

Normalization rules:
    date   ISO ``YYYY-MM-DD``, taken as-is (callers parse first)
    time   seconds dropped, hour zero-padded: ``9:05`` / ``09:05:00`` /
           ``9.05`` -> ``09:05``
    horse  lower-cased, trimmed, internal whitespace collapsed:
           ``"  Sea  The Stars "`` -> ``"sea the stars"``
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

_TIME_RE = re.compile(r"^(\d{1,2})[:.](\d{2})(?:[:.]\d{2})?$")


def normalize_time(value: Optional[str]) -> str:
    """Return ``HH:MM``.  Raises ValueError for anything else."""
    text = (value or "").strip()
    m = _TIME_RE.match(text)
    if not m:
        raise ValueError(f"Invalid time {value!r}; expected HH:MM")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time {value!r}; out of range")
    return f"{hour:02d}:{minute:02d}"


def normalize_horse(value: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (value or "").strip().lower())


@dataclass(frozen=True)
class MatchKey:
    date_iso: str
    time: str
    horse: str

    @classmethod
    def build(cls, date_iso: str, time: Optional[str], horse: Optional[str]) -> "MatchKey":
        return cls(date_iso=date_iso, time=normalize_time(time), horse=normalize_horse(horse))

    def __str__(self) -> str:
        return f"{self.date_iso} {self.time} {self.horse}"
