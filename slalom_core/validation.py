"""
Input coercion helpers and wire schemas using Pydantic v2
Validates gateway envelopes, recordings and REST lookup payloads
"""

import logging
import math
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ==================== COERCION HELPERS ====================


def is_object(value: Any) -> bool:
    return isinstance(value, dict)


def safe_string(value: Any, default: str = "") -> str:
    """Convert scalars to str; anything else (None, dicts, lists) becomes default."""
    if value is None:
        return default
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return default
        return str(value)
    return default


def safe_number(value: Any, default: float = 0) -> float:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else default
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return default
        try:
            parsed = float(stripped)
        except ValueError:
            return default
        return parsed if math.isfinite(parsed) else default
    return default


def safe_int(value: Any, default: int = 0) -> int:
    number = safe_number(value, default)
    try:
        return int(number)
    except (OverflowError, ValueError):
        return default


def optional_string(value: Any) -> Optional[str]:
    """Empty/absent values normalize to None, never to ""."""
    text = safe_string(value).strip()
    return text or None


def truncate(payload: Any, limit: int = 100) -> str:
    text = payload if isinstance(payload, str) else repr(payload)
    return text[:limit]


# ==================== WIRE SCHEMAS ====================


class _WireModel(BaseModel):
    """Base for lenient wire payloads: nulls fall back to field defaults."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class ServerEnvelope(BaseModel):
    """Gateway message envelope: {type, timestamp, data}"""

    type: str = Field(..., min_length=1, max_length=64)
    timestamp: Optional[str] = None
    data: Any = None

    model_config = ConfigDict(extra="allow")


class ServerConnectedData(_WireModel):
    version: str = ""
    c123Connected: bool = True
    xmlLoaded: bool = False


class ServerTimeOfDayData(_WireModel):
    time: str = ""


class ServerOnCourseCompetitor(_WireModel):
    bib: str = Field(..., min_length=1)
    name: str = ""
    club: str = ""
    nat: str = ""
    raceId: str = ""
    raceName: str = ""
    startOrder: int = 0
    gates: str = ""
    completed: bool = False
    dtStart: str = ""
    dtFinish: str = ""
    pen: int = 0
    time: str = ""
    total: str = ""
    ttbDiff: str = ""
    ttbName: str = ""
    rank: int = 0
    position: int = 0

    @field_validator("bib", "name", "club", "nat", "raceId", "raceName", "gates",
                     "dtStart", "dtFinish", "time", "total", "ttbDiff", "ttbName",
                     mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        return safe_string(v).strip()

    @field_validator("startOrder", "pen", "rank", "position", mode="before")
    @classmethod
    def coerce_int(cls, v: Any) -> int:
        return safe_int(v)


class ServerOnCourseData(_WireModel):
    total: int = 0
    competitors: List[Any] = Field(default_factory=list)


class ServerResultRow(_WireModel):
    rank: int = 0
    bib: str = Field(..., min_length=1)
    name: str = ""
    givenName: str = ""
    familyName: str = ""
    club: str = ""
    nat: str = ""
    startOrder: int = 0
    gates: str = ""
    pen: int = 0
    time: str = ""
    total: str = ""
    behind: str = ""
    status: str = ""
    # First-run data, centiseconds
    prevTime: Optional[int] = None
    prevPen: Optional[int] = None
    prevTotal: Optional[int] = None
    prevRank: Optional[int] = None
    totalTotal: Optional[int] = None
    totalRank: Optional[int] = None
    betterRun: Optional[int] = None

    @field_validator("bib", "name", "givenName", "familyName", "club", "nat",
                     "gates", "time", "total", "behind", "status", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        return safe_string(v).strip()

    @field_validator("rank", "startOrder", "pen", mode="before")
    @classmethod
    def coerce_int(cls, v: Any) -> int:
        return safe_int(v)


class ServerResultsData(_WireModel):
    raceId: str = ""
    classId: str = ""
    isCurrent: bool = False
    mainTitle: str = ""
    subTitle: str = ""
    rows: List[Any] = Field(default_factory=list)


class ServerRaceConfigData(_WireModel):
    nrSplits: int = Field(0, ge=0)
    nrGates: int = Field(0, ge=0, le=99)
    gateConfig: str = ""
    gateCaptions: str = ""


class ServerErrorData(_WireModel):
    code: str = ""
    message: str = ""


class RecordedMessage(BaseModel):
    """One line of a JSONL recording"""

    ts: int = Field(..., ge=0, description="Offset from recording start, ms")
    src: str = Field(..., min_length=1)
    type: str = ""
    data: Any = None

    model_config = ConfigDict(extra="ignore")


class RecordingMeta(BaseModel):
    version: int = 1
    recorded: Optional[str] = None
    host: Optional[str] = None
    sources: dict = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")


class MergedRunData(_WireModel):
    """A single run from the merged-results endpoint (times in centiseconds)"""

    time: int = 0
    pen: int = 0
    total: int = 0
    rank: int = 0
    status: str = ""

    @field_validator("time", "pen", "total", "rank", mode="before")
    @classmethod
    def coerce_int(cls, v: Any) -> int:
        return safe_int(v)


class MergedResultRow(_WireModel):
    bib: str = Field(..., min_length=1)
    participantId: str = ""
    familyName: str = ""
    givenName: str = ""
    club: str = ""
    run1: Optional[MergedRunData] = None
    run2: Optional[MergedRunData] = None
    bestTotal: int = 0
    bestRank: int = 0

    @field_validator("bib", mode="before")
    @classmethod
    def coerce_bib(cls, v: Any) -> str:
        return safe_string(v).strip()

    @field_validator("run1", "run2", mode="before")
    @classmethod
    def empty_run_is_absent(cls, v: Any) -> Any:
        # The endpoint returns {} for a run that has no data yet
        if isinstance(v, dict) and not v:
            return None
        return v


class MergedResults(_WireModel):
    results: List[MergedResultRow] = Field(default_factory=list)
    merged: bool = True
    classId: str = ""


# ==================== EXPORT ====================

__all__ = [
    "is_object",
    "safe_string",
    "safe_number",
    "safe_int",
    "optional_string",
    "truncate",
    "ServerEnvelope",
    "ServerConnectedData",
    "ServerTimeOfDayData",
    "ServerOnCourseCompetitor",
    "ServerOnCourseData",
    "ServerResultRow",
    "ServerResultsData",
    "ServerRaceConfigData",
    "ServerErrorData",
    "RecordedMessage",
    "RecordingMeta",
    "MergedRunData",
    "MergedResultRow",
    "MergedResults",
]
