"""
Pure reconciliation of normalized events into the scoreboard state.

``apply_event`` works on a copy of the state and never performs I/O;
the current time is passed in so transient windows (highlight, departing)
are a function of the inputs alone.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from .competitors import racing_bibs, select_current
from .config import EngineConfig
from .events import (
    ConfigEvent,
    ConnectionStatusEvent,
    ErrorEvent,
    Event,
    EventInfoEvent,
    OnCourseEvent,
    ResultsEvent,
    VisibilityEvent,
)
from .types import (
    ConnectionState,
    OnCourseCompetitor,
    ResultRow,
    ScoreboardSnapshot,
    ScoreboardState,
    VisibilityState,
)

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_CONFIG = EngineConfig()

# Keys that survive a reset on reconnect
_PRESERVED_ON_RESET = ("status", "visibility", "title", "infoText", "dayTime")


@dataclass
class ReconcileOutcome:
    """Result of applying one event."""

    state: ScoreboardState
    changed: bool
    # Bib whose highlight was (re)activated by this event, if any
    highlighted: Optional[str] = None
    # Bib that became the departing competitor, if any
    departed: Optional[str] = None


def default_state(status: ConnectionState = "disconnected") -> ScoreboardState:
    """Create an empty scoreboard state.

    Args:
        status: Initial connection status (usually the provider's status)

    Returns:
        Dict with keys:
        - status / error: connection indicator and last connection error text
        - initialDataReceived: False until the first Results event
        - providerErrors: bounded list of recent ErrorEvent values
        - results / raceName / raceStatus / raceId: last Results event
        - highlightBib / highlightTimestamp: just-finished competitor
        - currentCompetitor / onCourse: competitors on course
        - departingCompetitor / departedAt: competitor who just left "current"
        - visibility / config: pass-through substructures
        - title / infoText / dayTime: event info, merged field by field
    """
    return {
        "status": status,
        "error": None,
        "initialDataReceived": False,
        "providerErrors": [],
        "results": [],
        "raceName": "",
        "raceStatus": "",
        "raceId": None,
        "highlightBib": None,
        "highlightTimestamp": None,
        "currentCompetitor": None,
        "onCourse": [],
        "departingCompetitor": None,
        "departedAt": None,
        "visibility": VisibilityState(),
        "config": None,
        "title": "",
        "infoText": "",
        "dayTime": "",
    }


def copy_state(state: ScoreboardState) -> ScoreboardState:
    """Copy the containers of a state; the values in them are frozen dataclasses."""
    return {key: list(value) if isinstance(value, list) else value for key, value in state.items()}


def reset_state(state: ScoreboardState) -> ScoreboardState:
    """Empty every display field, keeping status, visibility and event info."""
    fresh = default_state()
    for key in _PRESERVED_ON_RESET:
        if key in state:
            fresh[key] = state[key]
    return fresh


# ==================== TRANSIENTS ====================


def highlight_active(state: ScoreboardState, now: float, config: EngineConfig = DEFAULT_ENGINE_CONFIG) -> bool:
    ts = state.get("highlightTimestamp")
    if not state.get("highlightBib") or ts is None:
        return False
    return now - ts < config.highlight_duration


def departing_active(state: ScoreboardState, now: float, config: EngineConfig = DEFAULT_ENGINE_CONFIG) -> bool:
    ts = state.get("departedAt")
    if state.get("departingCompetitor") is None or ts is None:
        return False
    return now - ts < config.departing_timeout


def expire_transients(state: ScoreboardState, now: float, config: EngineConfig = DEFAULT_ENGINE_CONFIG) -> bool:
    """Clear an expired highlight or departing competitor in place. Returns True if anything was cleared."""
    cleared = False
    if state.get("highlightBib") is not None and not highlight_active(state, now, config):
        state["highlightBib"] = None
        state["highlightTimestamp"] = None
        cleared = True
    if state.get("departingCompetitor") is not None and not departing_active(state, now, config):
        state["departingCompetitor"] = None
        state["departedAt"] = None
        cleared = True
    return cleared


def _activate_highlight(state: ScoreboardState, bib: str, now: float, config: EngineConfig) -> bool:
    """
    Highlight a bib that just produced a result.

    Rejected while the bib is still racing, and when the same bib is already
    highlighted (its timer is not restarted).
    """
    if bib in racing_bibs(state.get("onCourse", [])):
        logger.debug(f"Highlight for {bib} ignored: still on course")
        return False
    if state.get("highlightBib") == bib and highlight_active(state, now, config):
        return False

    state["highlightBib"] = bib
    state["highlightTimestamp"] = now
    departing = state.get("departingCompetitor")
    if departing is not None and departing.bib == bib:
        # The result caught up with the departure
        state["departingCompetitor"] = None
        state["departedAt"] = None
    return True


# ==================== REDUCER ====================


def sort_rows(rows) -> List[ResultRow]:
    # Unranked rows (rank 0) go last
    return sorted(rows, key=lambda r: (r.rank <= 0, r.rank))


def upgrade_results(state: ScoreboardState, race_id: Optional[str], rows) -> bool:
    """
    Replace the displayed rows of ``race_id`` in place (late best-run data).

    Race name, status and highlight are left alone. Returns False when the
    state now shows another race.
    """
    if state.get("raceId") != race_id:
        return False
    state["results"] = sort_rows(rows)
    return True


def _merge_partial(on_course: List[OnCourseCompetitor], update: OnCourseCompetitor) -> List[OnCourseCompetitor]:
    merged = list(on_course)
    for index, existing in enumerate(merged):
        if existing.bib == update.bib:
            # Partial updates do not carry start/finish timestamps
            merged[index] = replace(
                update,
                dt_start=update.dt_start or existing.dt_start,
                dt_finish=update.dt_finish or existing.dt_finish,
            )
            return merged
    merged.append(update)
    return merged


def _apply_on_course(new_state: ScoreboardState, event: OnCourseEvent, now: float, config: EngineConfig, outcome: ReconcileOutcome) -> None:
    previous_list: List[OnCourseCompetitor] = new_state.get("onCourse", [])
    previous_current: Optional[OnCourseCompetitor] = new_state.get("currentCompetitor")

    if event.update_on_course:
        on_course = list(event.competitors)
        current = event.current if event.current is not None else select_current(on_course)
    elif event.current is not None:
        on_course = _merge_partial(previous_list, event.current)
        current = select_current(on_course)
    else:
        on_course = list(previous_list)
        current = select_current(on_course)

    new_state["onCourse"] = on_course
    new_state["currentCompetitor"] = current

    if previous_current is not None and (current is None or current.bib != previous_current.bib):
        highlighted_prev = new_state.get("highlightBib") == previous_current.bib and highlight_active(
            new_state, now, config
        )
        if not highlighted_prev:
            new_state["departingCompetitor"] = previous_current
            new_state["departedAt"] = now
            outcome.departed = previous_current.bib

    # A bib seen earlier without dtFinish that now has one just finished
    previous_by_bib = {c.bib: c for c in previous_list}
    for competitor in on_course:
        before = previous_by_bib.get(competitor.bib)
        if before is not None and not before.dt_finish and competitor.dt_finish:
            if _activate_highlight(new_state, competitor.bib, now, config):
                outcome.highlighted = competitor.bib
                if outcome.departed == competitor.bib:
                    outcome.departed = None
            # One finish per update
            break


def _apply_results(new_state: ScoreboardState, event: ResultsEvent, now: float, config: EngineConfig, outcome: ReconcileOutcome) -> None:
    new_state["results"] = sort_rows(event.rows)
    new_state["raceName"] = event.race_name
    new_state["raceStatus"] = event.race_status
    new_state["raceId"] = event.race_id
    new_state["initialDataReceived"] = True
    if event.highlight_bib and _activate_highlight(new_state, event.highlight_bib, now, config):
        outcome.highlighted = event.highlight_bib


def _apply_connection(new_state: ScoreboardState, event: ConnectionStatusEvent) -> ScoreboardState:
    new_state["status"] = event.state
    if event.state == "connected":
        new_state["error"] = None
    elif event.state == "reconnecting":
        logger.info("Connection lost, resetting scoreboard state")
        new_state = reset_state(new_state)
    return new_state


def _apply_error(new_state: ScoreboardState, event: ErrorEvent, config: EngineConfig) -> None:
    errors = list(new_state.get("providerErrors", [])) + [event]
    new_state["providerErrors"] = errors[-config.max_provider_errors:]
    if event.code == "CONNECTION_ERROR":
        new_state["error"] = event.message


def _apply_event_info(new_state: ScoreboardState, event: EventInfoEvent) -> None:
    # Empty values mean "no update", never "clear"
    if event.title:
        new_state["title"] = event.title
    if event.info_text:
        new_state["infoText"] = event.info_text
    if event.day_time:
        new_state["dayTime"] = event.day_time


def _apply_transition(
    state: ScoreboardState,
    event: Event,
    now: float,
    config: EngineConfig,
) -> ReconcileOutcome:
    new_state = copy_state(state)
    outcome = ReconcileOutcome(state=new_state, changed=False)
    outcome.changed = expire_transients(new_state, now, config)

    if isinstance(event, ResultsEvent):
        _apply_results(new_state, event, now, config, outcome)
    elif isinstance(event, OnCourseEvent):
        _apply_on_course(new_state, event, now, config, outcome)
    elif isinstance(event, EventInfoEvent):
        _apply_event_info(new_state, event)
    elif isinstance(event, VisibilityEvent):
        new_state["visibility"] = event.visibility
    elif isinstance(event, ConfigEvent):
        new_state["config"] = event.config
    elif isinstance(event, ConnectionStatusEvent):
        new_state = _apply_connection(new_state, event)
        outcome.state = new_state
    elif isinstance(event, ErrorEvent):
        _apply_error(new_state, event, config)
    else:
        logger.debug(f"Ignoring unsupported event {type(event).__name__}")
        return outcome

    outcome.changed = outcome.changed or new_state != state
    return outcome


def apply_event(
    state: Dict[str, Any],
    event: Event,
    *,
    now: float,
    config: Optional[EngineConfig] = None,
) -> ReconcileOutcome:
    """Apply one event to the scoreboard state.

    Args:
        state: Current state dict (will be mutated for callers holding a reference)
        event: Decoded event
        now: Current time in seconds; used for transient windows
        config: Timing windows; defaults to EngineConfig()

    Returns:
        ReconcileOutcome with the new state and whether anything changed
    """
    outcome = _apply_transition(state, event, now, config or DEFAULT_ENGINE_CONFIG)

    state.clear()
    state.update(outcome.state)

    return outcome


# ==================== SNAPSHOT ====================


def build_snapshot(
    state: ScoreboardState,
    now: float,
    config: Optional[EngineConfig] = None,
) -> ScoreboardSnapshot:
    """Read-only view of the state; expired transients read as absent."""
    config = config or DEFAULT_ENGINE_CONFIG

    highlight_on = highlight_active(state, now, config)
    departing_on = departing_active(state, now, config)
    highlight_ts = state.get("highlightTimestamp")
    departed_at = state.get("departedAt")

    return ScoreboardSnapshot(
        status=state.get("status", "disconnected"),
        error=state.get("error"),
        initial_data_received=state.get("initialDataReceived", False),
        results=tuple(state.get("results", [])),
        race_name=state.get("raceName", ""),
        race_status=state.get("raceStatus", ""),
        race_id=state.get("raceId"),
        current_competitor=state.get("currentCompetitor"),
        on_course=tuple(state.get("onCourse", [])),
        highlight_bib=state.get("highlightBib") if highlight_on else None,
        highlight_timestamp=highlight_ts if highlight_on else None,
        highlight_remaining=max(0.0, config.highlight_duration - (now - highlight_ts)) if highlight_on else 0.0,
        departing_competitor=state.get("departingCompetitor") if departing_on else None,
        departed_at=departed_at if departing_on else None,
        departing_remaining=max(0.0, config.departing_timeout - (now - departed_at)) if departing_on else 0.0,
        visibility=state.get("visibility", VisibilityState()),
        config=state.get("config"),
        title=state.get("title", ""),
        info_text=state.get("infoText", ""),
        day_time=state.get("dayTime", ""),
        provider_errors=tuple(state.get("providerErrors", [])),
    )


__all__ = [
    "DEFAULT_ENGINE_CONFIG",
    "ReconcileOutcome",
    "default_state",
    "copy_state",
    "sort_rows",
    "upgrade_results",
    "reset_state",
    "highlight_active",
    "departing_active",
    "expire_transients",
    "apply_event",
    "build_snapshot",
]
