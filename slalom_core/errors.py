"""Error taxonomy shared by decoders, transports, providers and the merge resolver.

None of these are fatal: decoders turn them into ``ErrorEvent`` values,
transports turn connection failures into reconnect attempts, and the
best-run resolver degrades to single-run display on lookup failures.
A strict recording load raises ParseError or ValidationError directly.
"""
from __future__ import annotations

from typing import Literal

ErrorCode = Literal[
    "PARSE_ERROR",
    "VALIDATION_ERROR",
    "CONNECTION_ERROR",
    "LOOKUP_ERROR",
    "UNKNOWN_ERROR",
]


class ScoreboardError(Exception):
    """Base class for all slalom_core errors."""

    code: ErrorCode = "UNKNOWN_ERROR"

    def __init__(self, message: str, *, cause: object | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class ParseError(ScoreboardError):
    """Payload could not be parsed (malformed XML/JSON)."""

    code: ErrorCode = "PARSE_ERROR"


class ValidationError(ScoreboardError):
    """Payload parsed but is semantically invalid (e.g. missing root element)."""

    code: ErrorCode = "VALIDATION_ERROR"


class TransportError(ScoreboardError):
    """Transport-level failure, including a relay reporting upstream loss."""

    code: ErrorCode = "CONNECTION_ERROR"


class ResultsLookupError(ScoreboardError, LookupError):
    """Companion-run results could not be fetched."""

    code: ErrorCode = "LOOKUP_ERROR"


__all__ = [
    "ErrorCode",
    "ScoreboardError",
    "ParseError",
    "ValidationError",
    "TransportError",
    "ResultsLookupError",
]
