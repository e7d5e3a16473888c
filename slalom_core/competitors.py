"""
Competitor helpers: gate penalties, finish detection, current selection,
run-time arithmetic and race-id conventions for best-of-two races.
"""
from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence

from .types import OnCourseCompetitor

# Gate penalty values: clean, touch, miss; None = gate not passed yet
VALID_GATE_PENALTIES = (0, 2, 50)

_GATE_SEPARATOR = re.compile(r"[,\s]+")
_CLASS_ID_PATTERN = re.compile(r"^(.+)_BR[12]_")

BR1_MARKER = "_BR1_"
BR2_MARKER = "_BR2_"


# ==================== GATES ====================


def parse_gates(gates: Optional[str]) -> List[Optional[int]]:
    """
    Split a gate string into per-gate penalties.

    Accepts comma separated ("0,0,2,50"), space separated ("0 0 2 50") and
    mixed input. Anything that is not a valid penalty value becomes None.

    Args:
        gates: Raw gate string from the timing system

    Returns:
        List of 0 / 2 / 50 / None, one entry per gate
    """
    if not isinstance(gates, str) or not gates.strip():
        return []

    penalties: List[Optional[int]] = []
    for part in _GATE_SEPARATOR.split(gates.strip()):
        if not part:
            continue
        try:
            value = int(part)
        except ValueError:
            penalties.append(None)
            continue
        penalties.append(value if value in VALID_GATE_PENALTIES else None)
    return penalties


def total_penalty(gates: Iterable[Optional[int]]) -> int:
    return sum(pen or 0 for pen in gates)


# ==================== FINISH / ON-COURSE ====================


def has_finished(competitor: Optional[OnCourseCompetitor]) -> bool:
    return competitor is not None and bool(competitor.dt_finish)


def is_on_course(competitor: Optional[OnCourseCompetitor]) -> bool:
    """Started and not yet finished."""
    if competitor is None:
        return False
    return bool(competitor.dt_start) and not competitor.dt_finish


def detect_finish(
    previous: Optional[OnCourseCompetitor],
    current: Optional[OnCourseCompetitor],
) -> bool:
    """True when the same bib goes from no dtFinish to a dtFinish timestamp."""
    if previous is None or current is None:
        return False
    if previous.bib != current.bib:
        return False
    return not has_finished(previous) and has_finished(current)


def select_current(
    competitors: Sequence[OnCourseCompetitor],
) -> Optional[OnCourseCompetitor]:
    """
    Pick the competitor who has been on course the longest.

    Lowest dtStart wins; competitors without dtStart sort last. Ties keep
    the input order.
    """
    if not competitors:
        return None
    ordered = sorted(
        competitors,
        key=lambda c: (c.dt_start is None, c.dt_start or ""),
    )
    return ordered[0]


def racing_bibs(competitors: Iterable[OnCourseCompetitor]) -> set[str]:
    """Bibs of competitors still racing (dtFinish absent)."""
    return {c.bib for c in competitors if not c.dt_finish}


# ==================== TIME ARITHMETIC ====================


def parse_seconds_to_cs(value: Optional[str]) -> Optional[int]:
    """Convert "78.99" (seconds) to 7899 centiseconds; None if not a positive time."""
    if not value:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return round(seconds * 100)


def format_centiseconds(cs: Optional[int]) -> str:
    if not cs or cs <= 0:
        return ""
    return f"{cs / 100:.2f}"


# ==================== RACE IDS ====================


def is_br1_race(race_id: Optional[str]) -> bool:
    return bool(race_id) and BR1_MARKER in race_id


def is_br2_race(race_id: Optional[str]) -> bool:
    return bool(race_id) and BR2_MARKER in race_id


def get_class_id(race_id: str) -> str:
    """
    Strip the run qualifier: "K1M_ST_BR2_6" -> "K1M_ST".
    Ids without a run qualifier are returned unchanged.
    """
    match = _CLASS_ID_PATTERN.match(race_id or "")
    return match.group(1) if match else race_id


def get_run_number(race_id: Optional[str]) -> Optional[int]:
    if is_br1_race(race_id):
        return 1
    if is_br2_race(race_id):
        return 2
    return None


def get_other_run_race_id(race_id: str) -> Optional[str]:
    if is_br1_race(race_id):
        return race_id.replace(BR1_MARKER, BR2_MARKER)
    if is_br2_race(race_id):
        return race_id.replace(BR2_MARKER, BR1_MARKER)
    return None


__all__ = [
    "VALID_GATE_PENALTIES",
    "parse_gates",
    "total_penalty",
    "has_finished",
    "is_on_course",
    "detect_finish",
    "select_current",
    "racing_bibs",
    "parse_seconds_to_cs",
    "format_centiseconds",
    "is_br1_race",
    "is_br2_race",
    "get_class_id",
    "get_run_number",
    "get_other_run_race_id",
]
