"""
Decoder for the timing system's native XML stream.

Each frame is one complete document rooted at ``<Canoe123>``. Recognized
children become normalized events; unknown children are ignored so newer
timing software versions do not break the scoreboard.
"""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import List, Optional, Union

from .events import (
    ConfigEvent,
    Event,
    EventInfoEvent,
    OnCourseEvent,
    ResultsEvent,
    error_event,
)
from .json_decoder import proxy_status_events
from .types import OnCourseCompetitor, RaceConfig, ResultRow
from .validation import optional_string, safe_int, truncate

logger = logging.getLogger(__name__)

ROOT_TAG = "Canoe123"

# Race status codes used by the timing system
RACE_STATUS_RUNNING = "3"
RACE_STATUS_FINISHED = "5"

_INVALID_STATUSES = ("DNS", "DNF", "DSQ")


def decode_xml(raw: Union[bytes, str]) -> List[Event]:
    """
    Decode one XML frame into events.

    Never raises: malformed markup becomes a PARSE_ERROR event and a missing
    root element a VALIDATION_ERROR event. A relay status object (JSON) sent
    on the same stream is recognized and translated as well.

    Args:
        raw: A single complete frame, delimiter already stripped

    Returns:
        Events in document order (possibly empty)
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    text = text.strip()
    if not text:
        return []

    if text.startswith("{"):
        status_events = proxy_status_events(text)
        if status_events is not None:
            return status_events

    try:
        document = ET.fromstring(text)
    except ET.ParseError as e:
        logger.warning(f"Failed to parse XML frame: {e}")
        return [error_event("PARSE_ERROR", "Failed to parse XML message", truncate(text))]

    root = document if document.tag == ROOT_TAG else document.find(f".//{ROOT_TAG}")
    if root is None:
        logger.warning(f"XML frame without {ROOT_TAG} root: <{document.tag}>")
        return [error_event("VALIDATION_ERROR", f"Missing {ROOT_TAG} root element")]

    events: List[Event] = []
    for child in root:
        event = _decode_element(child)
        if event is not None:
            events.append(event)
    return events


def _decode_element(element: ET.Element) -> Optional[Event]:
    tag = element.tag
    if tag == "OnCourse":
        return _decode_on_course(element)
    if tag == "Results":
        return _decode_results(element)
    if tag == "TimeOfDay":
        return EventInfoEvent(day_time=(element.text or "").strip())
    if tag == "RaceConfig":
        return ConfigEvent(RaceConfig(gate_count=safe_int(element.get("NrGates"))))
    logger.debug(f"Ignoring XML element <{tag}>")
    return None


# ==================== ON COURSE ====================


def _decode_on_course(element: ET.Element) -> OnCourseEvent:
    competitors: List[OnCourseCompetitor] = []
    for entry in element.findall("OnCourse"):
        competitor = _decode_on_course_entry(entry)
        if competitor is not None:
            competitors.append(competitor)

    # Single-competitor form: Participant directly under OnCourse
    if not competitors and element.find(".//Participant") is not None:
        competitor = _decode_on_course_entry(element)
        if competitor is not None:
            competitors.append(competitor)

    return OnCourseEvent(
        competitors=tuple(competitors),
        current=competitors[0] if competitors else None,
    )


def _decode_on_course_entry(container: ET.Element) -> Optional[OnCourseCompetitor]:
    participant = container.find(".//Participant")
    if participant is None:
        return None
    bib = (participant.get("Bib") or "").strip()
    if not bib:
        return None

    course = container.find(".//Result[@Type='C']")
    timing = container.find(".//Result[@Type='T']")
    course_attrs = course.attrib if course is not None else {}
    timing_attrs = timing.attrib if timing is not None else {}

    return OnCourseCompetitor(
        bib=bib,
        name=participant.get("Name", ""),
        club=participant.get("Club", ""),
        nat=participant.get("Nat", ""),
        race_id=participant.get("RaceId", ""),
        time=timing_attrs.get("Time", ""),
        total=timing_attrs.get("Total", ""),
        pen=safe_int(timing_attrs.get("Pen")),
        gates=course_attrs.get("Gates", ""),
        # "" means not set yet; keep it distinct from a real timestamp
        dt_start=optional_string(course_attrs.get("dtStart")),
        dt_finish=optional_string(course_attrs.get("dtFinish")),
        ttb_diff=timing_attrs.get("TTBDiff", ""),
        ttb_name=timing_attrs.get("TTBName", ""),
        rank=safe_int(timing_attrs.get("Rank")),
    )


# ==================== RESULTS ====================


def _decode_results(element: ET.Element) -> ResultsEvent:
    rows: List[ResultRow] = []
    for row in element.iter("Row"):
        participant = row.find(".//Participant")
        if participant is None:
            continue
        bib = (participant.get("Bib") or "").strip()
        if not bib:
            continue

        result = row.find(".//Result[@Type='T']")
        attrs = result.attrib if result is not None else {}
        status = (attrs.get("IRM") or "").strip().upper()

        rows.append(
            ResultRow(
                rank=safe_int(attrs.get("Rank") or row.get("Number")),
                bib=bib,
                name=participant.get("Name", ""),
                family_name=participant.get("FamilyName", ""),
                given_name=participant.get("GivenName", ""),
                club=participant.get("Club", ""),
                nat=participant.get("Nat", ""),
                total=attrs.get("Total") or attrs.get("Time") or "",
                pen=safe_int(attrs.get("Pen")),
                behind=attrs.get("Behind", ""),
                status=status if status in _INVALID_STATUSES else "",
                time=attrs.get("Time", ""),
            )
        )

    rows.sort(key=lambda r: r.rank)

    main_title = element.get("MainTitle", "")
    sub_title = element.get("SubTitle", "")
    race_name = main_title + (f" - {sub_title}" if sub_title else "")

    current_attr = element.get("Current")
    is_current = None if current_attr is None else current_attr == "Y"

    return ResultsEvent(
        rows=tuple(rows),
        race_name=race_name,
        race_status=RACE_STATUS_RUNNING if current_attr == "Y" else RACE_STATUS_FINISHED,
        race_id=optional_string(element.get("RaceId")),
        # No highlight bib on this protocol: finishers are detected from dtFinish
        highlight_bib=None,
        is_current=is_current,
    )


__all__ = ["ROOT_TAG", "decode_xml"]
