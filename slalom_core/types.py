"""Type definitions for results, competitors and scoreboard state."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional, TypedDict

ConnectionState = Literal["disconnected", "connecting", "connected", "reconnecting"]
ResultStatus = Literal["DNS", "DNF", "DSQ", ""]


@dataclass(frozen=True)
class RunResult:
    """One run of a best-of-two race."""

    time: str = ""
    pen: int = 0
    total: str = ""
    rank: int = 0
    status: ResultStatus = ""


@dataclass(frozen=True)
class ResultRow:
    """A row in the results list."""

    rank: int
    bib: str
    name: str = ""
    family_name: str = ""
    given_name: str = ""
    club: str = ""
    nat: str = ""
    total: str = ""
    pen: int = 0
    behind: str = ""
    status: ResultStatus = ""
    # Raw run time without penalty; in BR2 races this is the second run.
    time: str = ""
    # Best-run merge fields (BR2 races only)
    run1: Optional[RunResult] = None
    run2: Optional[RunResult] = None
    best_run: Optional[int] = None
    best_total: str = ""
    best_rank: Optional[int] = None


@dataclass(frozen=True)
class OnCourseCompetitor:
    """Competitor currently on course (or just finished)."""

    bib: str
    name: str = ""
    club: str = ""
    nat: str = ""
    race_id: str = ""
    time: str = ""
    total: str = ""
    pen: int = 0
    # "0,0,2,0,50,..." or "0 0 2 0 50 ..."
    gates: str = ""
    dt_start: Optional[str] = None
    # None while racing; the None -> timestamp transition is the finish signal.
    dt_finish: Optional[str] = None
    ttb_diff: str = ""
    ttb_name: str = ""
    rank: int = 0


@dataclass(frozen=True)
class RaceConfig:
    race_name: str = ""
    race_status: str = ""
    gate_count: int = 0


@dataclass(frozen=True)
class VisibilityState:
    display_current: bool = True
    display_top: bool = True
    display_title: bool = True
    display_top_bar: bool = True
    display_footer: bool = True
    display_day_time: bool = False
    display_on_course: bool = True


class ScoreboardState(TypedDict, total=False):
    """
    TypedDict representing the reconciled scoreboard state.

    Owned by the reconciliation engine; consumers only ever see
    ``ScoreboardSnapshot`` copies.
    """
    # Connection
    status: ConnectionState
    error: Optional[str]
    initialDataReceived: bool
    providerErrors: list  # list[ErrorEvent], bounded

    # Results
    results: List[ResultRow]
    raceName: str
    raceStatus: str
    raceId: Optional[str]

    # Highlight (timestamp-based expiry)
    highlightBib: Optional[str]
    highlightTimestamp: Optional[float]

    # Competitors
    currentCompetitor: Optional[OnCourseCompetitor]
    onCourse: List[OnCourseCompetitor]

    # Competitor who just left "current" before their result arrived
    departingCompetitor: Optional[OnCourseCompetitor]
    departedAt: Optional[float]

    visibility: VisibilityState
    config: Optional[RaceConfig]

    # Event info
    title: str
    infoText: str
    dayTime: str


@dataclass(frozen=True)
class ScoreboardSnapshot:
    """Read-only view of the scoreboard at a given instant.

    ``highlight_bib`` and ``departing_competitor`` are already filtered by
    their expiry windows: an expired highlight reads as ``None``.
    """

    status: ConnectionState
    error: Optional[str]
    initial_data_received: bool
    results: tuple[ResultRow, ...]
    race_name: str
    race_status: str
    race_id: Optional[str]
    current_competitor: Optional[OnCourseCompetitor]
    on_course: tuple[OnCourseCompetitor, ...]
    highlight_bib: Optional[str]
    highlight_timestamp: Optional[float]
    highlight_remaining: float
    departing_competitor: Optional[OnCourseCompetitor]
    departed_at: Optional[float]
    departing_remaining: float
    visibility: VisibilityState
    config: Optional[RaceConfig]
    title: str
    info_text: str
    day_time: str
    provider_errors: tuple = field(default_factory=tuple)
