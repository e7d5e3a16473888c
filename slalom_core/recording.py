"""
Recording (JSONL) loader.

Line 1 may be a metadata object ``{"_meta": {...}}``; every other line is
``{ts, src, type, data}`` with ``ts`` in milliseconds from recording start.
Lines are sorted by ``ts`` once at load time.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from .errors import ParseError, ValidationError
from .events import ErrorEvent, Event, error_event
from .json_decoder import JSON_ERRORS, decode_cli_message
from .validation import RecordedMessage, RecordingMeta, is_object, truncate
from .xml_decoder import decode_xml

logger = logging.getLogger(__name__)

RecordingSource = Union[str, os.PathLike]


@dataclass
class Recording:
    meta: Optional[RecordingMeta]
    messages: List[RecordedMessage]
    errors: List[ErrorEvent] = field(default_factory=list)

    @property
    def duration(self) -> int:
        return self.messages[-1].ts if self.messages else 0


def _parse_line(line: str) -> Union[RecordedMessage, RecordingMeta]:
    try:
        parsed = json.loads(line)
    except JSON_ERRORS as e:
        raise ParseError("Invalid JSONL line in recording", cause=e) from e
    try:
        if is_object(parsed) and "_meta" in parsed:
            return RecordingMeta(**(parsed["_meta"] or {}))
        if not is_object(parsed):
            raise ValueError("line is not a JSON object")
        return RecordedMessage(**parsed)
    except (ValueError, TypeError) as e:
        raise ValidationError("Invalid recorded message", cause=e) from e


def parse_recording(
    lines: Iterable[str],
    sources: Optional[Sequence[str]] = None,
    strict: bool = False,
) -> Recording:
    """
    Parse JSONL lines into a Recording.

    Invalid lines are skipped and reported as PARSE_ERROR events in
    ``Recording.errors``; messages from sources not listed are dropped.
    With ``strict`` the first invalid line raises instead: ParseError for
    malformed JSON, ValidationError for a line that is not a recorded message.
    """
    meta: Optional[RecordingMeta] = None
    messages: List[RecordedMessage] = []
    errors: List[ErrorEvent] = []

    for line_no, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            entry = _parse_line(line)
        except (ParseError, ValidationError) as e:
            if strict:
                raise type(e)(f"{e.message} (line {line_no})", cause=e.cause) from e
            logger.warning(f"Skipping invalid JSONL line {line_no}: {truncate(line)}")
            errors.append(
                error_event(
                    "PARSE_ERROR",
                    "Invalid JSONL line in recording",
                    {"line": truncate(line), "error": str(e.cause)},
                )
            )
            continue

        if isinstance(entry, RecordingMeta):
            meta = entry
            continue
        if sources and entry.src not in sources:
            continue
        messages.append(entry)

    # Stable: equal timestamps keep file order
    messages.sort(key=lambda m: m.ts)
    return Recording(meta=meta, messages=messages, errors=errors)


def load_recording(
    source: RecordingSource,
    sources: Optional[Sequence[str]] = None,
    strict: bool = False,
) -> Recording:
    """
    Load a recording from a file path or from JSONL text.

    A str containing a newline or starting with "{" is treated as content.
    """
    if isinstance(source, str) and ("\n" in source or source.lstrip().startswith("{")):
        return parse_recording(source.splitlines(), sources, strict)

    path = Path(source)
    with path.open("r", encoding="utf-8") as fh:
        recording = parse_recording(fh, sources, strict)
    logger.info(f"Loaded {len(recording.messages)} messages from {path}")
    return recording


def decode_recorded_message(message: RecordedMessage) -> List[Event]:
    """Decode one recorded line with the decoder of its source."""
    if message.src == "ws":
        data = message.data
        if is_object(data) and ("msg" in data or "type" in data):
            return decode_cli_message(data)
        return decode_cli_message({"msg": message.type, "data": data})
    if message.src == "tcp":
        if not isinstance(message.data, str):
            return [error_event("VALIDATION_ERROR", f"Recorded tcp message {message.type} is not a string")]
        return decode_xml(message.data)
    logger.debug(f"No decoder for recorded source {message.src}")
    return []


__all__ = ["Recording", "parse_recording", "load_recording", "decode_recorded_message"]
