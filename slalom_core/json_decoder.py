"""
Decoders for the JSON protocols.

- Gateway protocol: one ``{type, timestamp, data}`` envelope per message,
  sent by the timing server over a WebSocket.
- CLI protocol: ``{msg, data}`` objects (``top``, ``comp``, ``oncourse``,
  ``control``, ``title``, ``infotext``, ``daytime``), also found as the
  ``ws`` lines of recordings.

Both recognize the relay status object ``{"type": "proxy_status", ...}``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .competitors import format_centiseconds, select_current
from .events import (
    ConfigEvent,
    Event,
    EventInfoEvent,
    OnCourseEvent,
    ResultsEvent,
    VisibilityEvent,
    error_event,
)
from .types import OnCourseCompetitor, RaceConfig, ResultRow, RunResult, VisibilityState
from .validation import (
    ServerConnectedData,
    ServerEnvelope,
    ServerErrorData,
    ServerOnCourseCompetitor,
    ServerOnCourseData,
    ServerRaceConfigData,
    ServerResultRow,
    ServerResultsData,
    ServerTimeOfDayData,
    is_object,
    optional_string,
    safe_int,
    safe_string,
    truncate,
)

logger = logging.getLogger(__name__)

PROXY_STATUS_TYPE = "proxy_status"

RACE_STATUS_IN_PROGRESS = "In Progress"
RACE_STATUS_UNOFFICIAL = "Unofficial"

_INVALID_STATUSES = ("DNS", "DNF", "DSQ")

RawMessage = Union[bytes, str]

# Deeply nested input exhausts the recursion limit inside json.loads
JSON_ERRORS = (ValueError, TypeError, RecursionError)


def _load_json(raw: RawMessage) -> Any:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    return json.loads(text)


# ==================== RELAY STATUS ====================


def proxy_status_events(message: Union[RawMessage, Dict[str, Any]]) -> Optional[List[Event]]:
    """
    Translate a relay status object.

    Returns None when the message is not a relay status object, so the
    caller can continue with its own protocol.
    """
    if not is_object(message):
        try:
            message = _load_json(message)
        except JSON_ERRORS:
            return None
    if not is_object(message) or message.get("type") != PROXY_STATUS_TYPE:
        return None

    status = safe_string(message.get("status"))
    if status == "disconnected":
        logger.warning("Relay reports lost upstream connection")
        return [error_event("CONNECTION_ERROR", "Proxy lost connection to C123")]
    logger.info(f"Relay status: {status or 'unknown'}")
    return []


# ==================== GATEWAY PROTOCOL ====================


def decode_server_message(raw: RawMessage) -> List[Event]:
    """
    Decode one gateway envelope.

    Unknown message types are ignored. Returns error events instead of
    raising on malformed input.
    """
    try:
        message = _load_json(raw)
    except JSON_ERRORS as e:
        logger.warning(f"Failed to parse server message as JSON: {e}")
        return [error_event("PARSE_ERROR", "Failed to parse C123 Server message as JSON", truncate(raw))]

    status_events = proxy_status_events(message)
    if status_events is not None:
        return status_events

    if not is_object(message):
        return [error_event("VALIDATION_ERROR", "Invalid C123 Server message format")]

    try:
        envelope = ServerEnvelope(**message)
    except PydanticValidationError as e:
        logger.warning(f"Invalid server envelope: {e.errors()[0].get('msg', 'invalid')}")
        return [error_event("VALIDATION_ERROR", "Invalid C123 Server message format", e)]

    handler = _SERVER_HANDLERS.get(envelope.type)
    if handler is None:
        logger.debug(f"Ignoring server message type {envelope.type}")
        return []

    if not is_object(envelope.data):
        return [error_event("VALIDATION_ERROR", f"{envelope.type} message without data object")]

    try:
        return handler(envelope.data)
    except PydanticValidationError as e:
        logger.warning(f"Invalid {envelope.type} payload: {e.errors()[0].get('msg', 'invalid')}")
        return [error_event("VALIDATION_ERROR", f"Invalid {envelope.type} message data", e)]


def _server_connected(data: Dict[str, Any]) -> List[Event]:
    connected = ServerConnectedData(**data)
    logger.info(
        f"Server connected (v{connected.version}, c123={connected.c123Connected}, xml={connected.xmlLoaded})"
    )
    if not connected.c123Connected:
        return [error_event("CONNECTION_ERROR", "C123 Server is not connected to timing system")]
    return []


def _server_time_of_day(data: Dict[str, Any]) -> List[Event]:
    return [EventInfoEvent(day_time=ServerTimeOfDayData(**data).time)]


def _server_on_course(data: Dict[str, Any]) -> List[Event]:
    payload = ServerOnCourseData(**data)
    competitors: List[OnCourseCompetitor] = []
    for item in payload.competitors:
        if not is_object(item):
            continue
        try:
            entry = ServerOnCourseCompetitor(**item)
        except PydanticValidationError:
            logger.debug("Skipping invalid on-course competitor")
            continue
        # Competitors in the start queue have no dtStart yet
        if not entry.dtStart:
            continue
        competitors.append(
            OnCourseCompetitor(
                bib=entry.bib,
                name=entry.name,
                club=entry.club,
                nat=entry.nat,
                race_id=entry.raceId,
                time=entry.time,
                total=entry.total,
                pen=entry.pen,
                gates=entry.gates,
                dt_start=entry.dtStart,
                dt_finish=entry.dtFinish or None,
                ttb_diff=entry.ttbDiff,
                ttb_name=entry.ttbName,
                rank=entry.rank,
            )
        )
    return [OnCourseEvent(competitors=tuple(competitors), current=select_current(competitors))]


def run_suffix(race_id: str) -> str:
    """"K1M_ST_BR2_6" -> " - 2. jízda"; empty for single-run races."""
    for run in ("1", "2"):
        if f"_BR{run}_" in race_id:
            return f" - {run}. jízda"
    return ""


def _server_result_row(entry: ServerResultRow) -> ResultRow:
    status = entry.status.upper()
    status = status if status in _INVALID_STATUSES else ""

    run1 = run2 = None
    best_run = best_rank = None
    best_total = ""
    if entry.prevTotal is not None or entry.prevTime is not None:
        run1 = RunResult(
            time=format_centiseconds(entry.prevTime),
            pen=entry.prevPen or 0,
            total=format_centiseconds(entry.prevTotal),
            rank=entry.prevRank or 0,
        )
        run2 = RunResult(
            time=entry.time,
            pen=entry.pen,
            total=_run_total(entry.time, entry.pen),
            rank=entry.rank,
            status=status,
        )
        best_run = entry.betterRun if entry.betterRun in (1, 2) else None
        best_rank = entry.totalRank
        best_total = format_centiseconds(entry.totalTotal)

    return ResultRow(
        rank=entry.rank,
        bib=entry.bib,
        name=entry.name,
        family_name=entry.familyName,
        given_name=entry.givenName,
        club=entry.club,
        nat=entry.nat,
        total=entry.total,
        pen=entry.pen,
        behind=entry.behind,
        status=status,
        time=entry.time,
        run1=run1,
        run2=run2,
        best_run=best_run,
        best_total=best_total,
        best_rank=best_rank,
    )


def _run_total(time: str, pen: int) -> str:
    try:
        seconds = float(time)
    except ValueError:
        return ""
    if seconds <= 0:
        return ""
    return f"{seconds + pen:.2f}"


def _server_results(data: Dict[str, Any]) -> List[Event]:
    payload = ServerResultsData(**data)
    rows: List[ResultRow] = []
    for item in payload.rows:
        if not is_object(item):
            continue
        try:
            rows.append(_server_result_row(ServerResultRow(**item)))
        except PydanticValidationError:
            logger.debug("Skipping invalid result row")

    race_name = payload.mainTitle + run_suffix(payload.raceId) if payload.mainTitle else payload.raceId
    return [
        ResultsEvent(
            rows=tuple(rows),
            race_name=race_name,
            race_status=RACE_STATUS_IN_PROGRESS if payload.isCurrent else RACE_STATUS_UNOFFICIAL,
            race_id=payload.raceId or None,
            highlight_bib=None,
            is_current=payload.isCurrent,
        )
    ]


def _server_race_config(data: Dict[str, Any]) -> List[Event]:
    # Race name and status are filled in by the provider from the last Results
    config = ServerRaceConfigData(**data)
    return [ConfigEvent(RaceConfig(gate_count=config.nrGates))]


def _server_error(data: Dict[str, Any]) -> List[Event]:
    error = ServerErrorData(**data)
    logger.warning(f"Server reported error {error.code}: {error.message}")
    return [error_event("UNKNOWN_ERROR", f"C123 Server: {error.message}", error.code or None)]


_SERVER_HANDLERS: Dict[str, Callable[[Dict[str, Any]], List[Event]]] = {
    "Connected": _server_connected,
    "TimeOfDay": _server_time_of_day,
    "OnCourse": _server_on_course,
    "Results": _server_results,
    "RaceConfig": _server_race_config,
    "Error": _server_error,
}


# ==================== CLI PROTOCOL ====================


def decode_cli_message(raw: Union[RawMessage, Dict[str, Any]]) -> List[Event]:
    """
    Decode one CLI protocol message (text or an already parsed object).

    The message type is read from ``msg`` and falls back to ``type``.
    """
    if is_object(raw):
        message = raw
    else:
        try:
            message = _load_json(raw)
        except JSON_ERRORS as e:
            logger.warning(f"Failed to parse CLI message as JSON: {e}")
            return [error_event("PARSE_ERROR", "Failed to parse CLI message as JSON", truncate(raw))]

    status_events = proxy_status_events(message)
    if status_events is not None:
        return status_events

    if not is_object(message):
        return [error_event("VALIDATION_ERROR", "CLI message must be an object")]

    msg_type = message.get("msg") or message.get("type")
    if not isinstance(msg_type, str):
        return [error_event("VALIDATION_ERROR", f"Invalid message type: {truncate(msg_type)}")]

    handler = _CLI_HANDLERS.get(msg_type)
    if handler is None:
        logger.debug(f"Ignoring CLI message type {msg_type}")
        return []

    data = message.get("data")
    expected = list if msg_type == "oncourse" else dict
    if not isinstance(data, expected):
        return [error_event("VALIDATION_ERROR", f"Invalid {msg_type} message data")]
    return handler(data)


def _cli_competitor(data: Any) -> Optional[OnCourseCompetitor]:
    if not is_object(data):
        return None
    bib = safe_string(data.get("Bib")).strip()
    if not bib:
        return None
    return OnCourseCompetitor(
        bib=bib,
        name=safe_string(data.get("Name")),
        club=safe_string(data.get("Club")),
        nat=safe_string(data.get("Nat")),
        race_id=safe_string(data.get("RaceId")),
        time=safe_string(data.get("Time")),
        total=safe_string(data.get("Total")),
        pen=safe_int(data.get("Pen")),
        gates=safe_string(data.get("Gates")),
        dt_start=optional_string(data.get("dtStart")),
        dt_finish=optional_string(data.get("dtFinish")),
        ttb_diff=safe_string(data.get("TTBDiff")),
        ttb_name=safe_string(data.get("TTBName")),
        rank=safe_int(data.get("Rank")),
    )


def _cli_top(data: Dict[str, Any]) -> List[Event]:
    rows: List[ResultRow] = []
    items = data.get("list")
    for item in items if isinstance(items, list) else []:
        if not is_object(item):
            logger.debug("Skipping invalid result row: not an object")
            continue
        bib = safe_string(item.get("Bib")).strip()
        if not bib:
            logger.debug("Skipping invalid result row: missing Bib")
            continue
        rows.append(
            ResultRow(
                rank=safe_int(item.get("Rank")),
                bib=bib,
                name=safe_string(item.get("Name")),
                family_name=safe_string(item.get("FamilyName")),
                given_name=safe_string(item.get("GivenName")),
                club=safe_string(item.get("Club")),
                nat=safe_string(item.get("Nat")),
                total=safe_string(item.get("Total")),
                pen=safe_int(item.get("Pen")),
                behind=safe_string(item.get("Behind")).replace("&nbsp;", ""),
            )
        )
    return [
        ResultsEvent(
            rows=tuple(rows),
            race_name=safe_string(data.get("RaceName")),
            race_status=safe_string(data.get("RaceStatus")),
            race_id=optional_string(data.get("RaceId")),
            highlight_bib=optional_string(data.get("HighlightBib")),
        )
    ]


def _cli_comp(data: Dict[str, Any]) -> List[Event]:
    # Only the current competitor; the on-course list comes from oncourse
    current = _cli_competitor(data)
    return [OnCourseEvent(competitors=(), current=current, update_on_course=False)]


def _cli_on_course(data: List[Any]) -> List[Event]:
    competitors = [c for c in (_cli_competitor(item) for item in data) if c is not None]
    return [OnCourseEvent(competitors=tuple(competitors), current=select_current(competitors))]


def _cli_control(data: Dict[str, Any]) -> List[Event]:
    def flag(key: str) -> bool:
        return safe_string(data.get(key)) == "1"

    return [
        VisibilityEvent(
            VisibilityState(
                display_current=flag("displayCurrent"),
                display_top=flag("displayTop"),
                display_title=flag("displayTitle"),
                display_top_bar=flag("displayTopBar"),
                display_footer=flag("displayFooter"),
                display_day_time=flag("displayDayTime"),
                display_on_course=flag("displayOnCourse"),
            )
        )
    ]


def _cli_title(data: Dict[str, Any]) -> List[Event]:
    return [EventInfoEvent(title=safe_string(data.get("text")))]


def _cli_info_text(data: Dict[str, Any]) -> List[Event]:
    return [EventInfoEvent(info_text=safe_string(data.get("text")))]


def _cli_day_time(data: Dict[str, Any]) -> List[Event]:
    return [EventInfoEvent(day_time=safe_string(data.get("time")))]


_CLI_HANDLERS: Dict[str, Callable[[Any], List[Event]]] = {
    "top": _cli_top,
    "comp": _cli_comp,
    "oncourse": _cli_on_course,
    "control": _cli_control,
    "title": _cli_title,
    "infotext": _cli_info_text,
    "daytime": _cli_day_time,
}


__all__ = [
    "JSON_ERRORS",
    "PROXY_STATUS_TYPE",
    "RACE_STATUS_IN_PROGRESS",
    "RACE_STATUS_UNOFFICIAL",
    "proxy_status_events",
    "decode_server_message",
    "decode_cli_message",
    "run_suffix",
]
