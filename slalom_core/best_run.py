"""
Best-of-two (BR1/BR2) merge.

A Results event for a second run ("..._BR2_...") shows second-run data
only. The resolver fetches the first run of the same class in the
background and, once it arrives, the rows are upgraded with both runs and
the better of the two.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple

from .competitors import format_centiseconds, get_class_id, is_br2_race, parse_seconds_to_cs
from .events import ResultsEvent
from .types import ResultRow, RunResult
from .validation import MergedResults, MergedRunData

logger = logging.getLogger(__name__)

_INVALID_STATUSES = ("DNS", "DNF", "DSQ")


class ResultsLookup(Protocol):
    """Collaborator that fetches merged first/second run data for a race."""

    async def get_merged_results(self, race_id: str) -> MergedResults:
        ...


@dataclass
class BR2MergeRecord:
    race_id: str
    class_id: str
    # bib -> first run, times in centiseconds
    first_run: Dict[str, MergedRunData] = field(default_factory=dict)
    # bib -> second run as last reported by the server
    second_run: Dict[str, MergedRunData] = field(default_factory=dict)
    # bib -> overall best-of-two rank
    best_ranks: Dict[str, int] = field(default_factory=dict)
    resolved: bool = False
    failed: bool = False


def _run_from_lookup(data: MergedRunData) -> Optional[RunResult]:
    status = data.status.upper()
    if status in _INVALID_STATUSES:
        return RunResult(pen=data.pen, rank=data.rank, status=status)
    if data.total > 0:
        return RunResult(
            time=format_centiseconds(data.time),
            pen=data.pen,
            total=format_centiseconds(data.total),
            rank=data.rank,
        )
    # Not started yet
    return None


def _second_run(row: ResultRow, cached: Optional[MergedRunData] = None) -> Optional[RunResult]:
    """
    Second run of a live BR2 row.

    The row's ``pen`` and ``total`` belong to the better of both runs, so the
    penalty and status of the fetched second run take precedence over them.
    """
    if cached is not None and cached.status.upper() in _INVALID_STATUSES:
        return RunResult(pen=cached.pen, rank=cached.rank, status=cached.status.upper())
    if row.status in _INVALID_STATUSES:
        return RunResult(pen=row.pen, rank=row.rank, status=row.status)
    time_cs = parse_seconds_to_cs(row.time)
    if time_cs is not None:
        pen = cached.pen if cached is not None else row.pen
        return RunResult(
            time=row.time,
            pen=pen,
            total=format_centiseconds(time_cs + pen * 100),
            rank=row.rank,
        )
    if cached is not None:
        run = _run_from_lookup(cached)
        if run is not None:
            return run
    return None


def _run_total_cs(run: Optional[RunResult]) -> Optional[int]:
    if run is None or run.status:
        return None
    return parse_seconds_to_cs(run.total)


def best_of(run1: Optional[RunResult], run2: Optional[RunResult]) -> Tuple[Optional[int], str]:
    """
    Pick the better run.

    Returns (1 | 2 | None, best total). Ties go to the first run; a run with
    a status (DNS/DNF/DSQ) or without a total never wins.
    """
    total1 = _run_total_cs(run1)
    total2 = _run_total_cs(run2)
    if total1 is None and total2 is None:
        return None, ""
    if total2 is None or (total1 is not None and total1 <= total2):
        return 1, format_centiseconds(total1)
    return 2, format_centiseconds(total2)


def merge_best_run(rows: Iterable[ResultRow], record: BR2MergeRecord) -> Tuple[ResultRow, ...]:
    """Attach first-run data and the best-of-two view to second-run rows."""
    merged = []
    for row in rows:
        if row.run1 is not None:
            # The protocol already delivered both runs
            merged.append(row)
            continue
        first = record.first_run.get(row.bib)
        run1 = _run_from_lookup(first) if first is not None else None
        run2 = _second_run(row, record.second_run.get(row.bib))
        if run1 is None and run2 is None:
            merged.append(row)
            continue
        best_run, best_total = best_of(run1, run2)
        merged.append(
            replace(
                row,
                run1=run1,
                run2=run2,
                best_run=best_run,
                best_total=best_total,
                best_rank=record.best_ranks.get(row.bib) or None,
            )
        )
    return tuple(merged)


class BestRunResolver:
    """
    Merge-state table keyed by class id.

    ``process`` never blocks: it returns the event as-is (or merged, when
    the first run is already known) and starts the lookup in the
    background. ``on_update(class_id)`` fires when a lookup resolves so the
    owner can re-merge its latest rows. Lookup failures are logged and the
    class stays on second-run-only data. Every later Results event of the
    same race re-arms a ``refresh_delay`` timer that fetches the merged
    results again; a failed re-fetch keeps the data already known.
    """

    def __init__(
        self,
        lookup: ResultsLookup,
        on_update: Optional[Callable[[str], None]] = None,
        refresh_delay: Optional[float] = 1.0,
    ) -> None:
        self.lookup = lookup
        self.on_update = on_update
        self.refresh_delay = refresh_delay
        self.records: Dict[str, BR2MergeRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._refresh: Dict[str, asyncio.TimerHandle] = {}
        self._disposed = False

    def record_for(self, race_id: Optional[str]) -> Optional[BR2MergeRecord]:
        if not is_br2_race(race_id):
            return None
        return self.records.get(get_class_id(race_id))

    def process(self, event: ResultsEvent) -> ResultsEvent:
        race_id = event.race_id
        if self._disposed or not is_br2_race(race_id):
            return event

        class_id = get_class_id(race_id)
        if event.is_current is False:
            # Race left the running state: back to plain rows
            self._discard(class_id)
            return event

        for other in [c for c in self.records if c != class_id]:
            self._discard(other)

        record = self.records.get(class_id)
        if record is None or record.race_id != race_id:
            self._discard(class_id)
            record = BR2MergeRecord(race_id=race_id, class_id=class_id)
            self.records[class_id] = record
            self._start_lookup(record)
        else:
            self._schedule_refresh(record)

        return self.apply(event)

    def apply(self, event: ResultsEvent) -> ResultsEvent:
        """Merge with whatever the table currently knows about the event's class."""
        record = self.record_for(event.race_id)
        if record is None or not record.resolved:
            return event
        return replace(event, rows=merge_best_run(event.rows, record))

    def reset(self) -> None:
        """Cancel every pending lookup and forget all records."""
        for class_id in list(self.records):
            self._discard(class_id)

    def dispose(self) -> None:
        self._disposed = True
        self.reset()

    def _discard(self, class_id: str) -> None:
        self.records.pop(class_id, None)
        handle = self._refresh.pop(class_id, None)
        if handle is not None:
            handle.cancel()
        task = self._tasks.pop(class_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _start_lookup(self, record: BR2MergeRecord) -> None:
        logger.info(f"Fetching first run for {record.class_id} ({record.race_id})")
        task = asyncio.ensure_future(self._lookup(record))
        self._tasks[record.class_id] = task

    def _schedule_refresh(self, record: BR2MergeRecord) -> None:
        if self.refresh_delay is None:
            return
        handle = self._refresh.pop(record.class_id, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._refresh[record.class_id] = loop.call_later(self.refresh_delay, self._refresh_now, record)

    def _refresh_now(self, record: BR2MergeRecord) -> None:
        self._refresh.pop(record.class_id, None)
        if self._disposed or self.records.get(record.class_id) is not record:
            return
        if record.class_id in self._tasks:
            # Lookup still running; its result is fresh enough
            return
        self._start_lookup(record)

    async def _lookup(self, record: BR2MergeRecord) -> None:
        try:
            merged = await self.lookup.get_merged_results(record.race_id)
        except LookupError as e:
            if not record.resolved:
                record.failed = True
            logger.warning(f"First-run lookup failed for {record.class_id}: {e}")
            return
        finally:
            if self._tasks.get(record.class_id) is asyncio.current_task():
                del self._tasks[record.class_id]

        if self.records.get(record.class_id) is not record:
            return

        first_run: Dict[str, MergedRunData] = {}
        second_run: Dict[str, MergedRunData] = {}
        best_ranks: Dict[str, int] = {}
        for row in merged.results:
            if row.run1 is not None:
                first_run[row.bib] = row.run1
            if row.run2 is not None:
                second_run[row.bib] = row.run2
            if row.bestRank:
                best_ranks[row.bib] = row.bestRank
        record.first_run = first_run
        record.second_run = second_run
        record.best_ranks = best_ranks
        record.resolved = True
        record.failed = False
        logger.info(f"First run resolved for {record.class_id}: {len(first_run)} competitors")
        if self.on_update is not None:
            self.on_update(record.class_id)


__all__ = [
    "ResultsLookup",
    "BR2MergeRecord",
    "best_of",
    "merge_best_run",
    "BestRunResolver",
]
