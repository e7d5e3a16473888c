"""Normalized event model produced by the protocol decoders.

Every decoded wire message becomes one or more of these immutable values.
The union is closed: anything a decoder does not recognize is dropped
before it becomes an event.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Union

from .errors import ErrorCode
from .types import (
    ConnectionState,
    OnCourseCompetitor,
    RaceConfig,
    ResultRow,
    VisibilityState,
)


@dataclass(frozen=True)
class ResultsEvent:
    rows: tuple[ResultRow, ...]
    race_name: str = ""
    race_status: str = ""
    race_id: Optional[str] = None
    highlight_bib: Optional[str] = None
    # True/False when the protocol says whether this race is the active one.
    is_current: Optional[bool] = None


@dataclass(frozen=True)
class OnCourseEvent:
    competitors: tuple[OnCourseCompetitor, ...]
    current: Optional[OnCourseCompetitor] = None
    # False for single-competitor updates that must not replace the list.
    update_on_course: bool = True


@dataclass(frozen=True)
class EventInfoEvent:
    """Partial update; ``None`` or empty fields mean "no update"."""

    title: Optional[str] = None
    info_text: Optional[str] = None
    day_time: Optional[str] = None


@dataclass(frozen=True)
class ConfigEvent:
    config: RaceConfig


@dataclass(frozen=True)
class VisibilityEvent:
    visibility: VisibilityState


@dataclass(frozen=True)
class ConnectionStatusEvent:
    state: ConnectionState


@dataclass(frozen=True)
class ErrorEvent:
    code: ErrorCode
    message: str
    cause: object = None
    timestamp: float = field(default_factory=time.time)


Event = Union[
    ResultsEvent,
    OnCourseEvent,
    EventInfoEvent,
    ConfigEvent,
    VisibilityEvent,
    ConnectionStatusEvent,
    ErrorEvent,
]

# Subscription categories, one per event type.
RESULTS = "results"
ON_COURSE = "on_course"
EVENT_INFO = "event_info"
CONFIG = "config"
VISIBILITY = "visibility"
CONNECTION = "connection"
ERROR = "error"

CATEGORY_BY_TYPE: dict[type, str] = {
    ResultsEvent: RESULTS,
    OnCourseEvent: ON_COURSE,
    EventInfoEvent: EVENT_INFO,
    ConfigEvent: CONFIG,
    VisibilityEvent: VISIBILITY,
    ConnectionStatusEvent: CONNECTION,
    ErrorEvent: ERROR,
}


def category_of(event: Event) -> str:
    return CATEGORY_BY_TYPE[type(event)]


def error_event(code: ErrorCode, message: str, cause: object = None) -> ErrorEvent:
    return ErrorEvent(code=code, message=message, cause=cause)
