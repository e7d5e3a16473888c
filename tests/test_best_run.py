import asyncio

import pytest

from slalom_core.best_run import BestRunResolver, BR2MergeRecord, best_of, merge_best_run
from slalom_core.errors import ResultsLookupError
from slalom_core.events import ResultsEvent
from slalom_core.types import ResultRow, RunResult
from slalom_core.validation import MergedResults, MergedRunData

MERGED = {
    "classId": "K1M_ST",
    "merged": True,
    "results": [
        {
            "bib": "5",
            "familyName": "NOVAK",
            "run1": {"time": 7600, "pen": 2, "total": 7800, "rank": 1},
            "run2": {},
            "bestTotal": 7800,
            "bestRank": 1,
        },
        {"bib": "6", "run1": {}, "run2": {}, "bestTotal": 0, "bestRank": 0},
    ],
}


class _StubLookup:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.calls = []
        self.release = asyncio.Event()

    async def get_merged_results(self, race_id):
        self.calls.append(race_id)
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return MergedResults(**self.payload)


def _br2_event(race_id="K1M_ST_BR2_6", is_current=True, rows=None):
    rows = rows or (ResultRow(rank=1, bib="5", time="80.00", pen=2, total="78.00"),)
    return ResultsEvent(rows=tuple(rows), race_name="K1m - 2. jízda", race_id=race_id, is_current=is_current)


# ==================== MERGE ====================


def test_best_of_prefers_lower_total_and_first_run_on_tie():
    run1 = RunResult(time="76.00", pen=2, total="78.00")
    run2 = RunResult(time="80.00", pen=2, total="82.00")
    assert best_of(run1, run2) == (1, "78.00")
    assert best_of(run2, run1) == (2, "78.00")
    assert best_of(run1, RunResult(total="78.00")) == (1, "78.00")
    assert best_of(None, run2) == (2, "82.00")
    assert best_of(RunResult(status="DNF"), None) == (None, "")


def test_merge_best_run_rows():
    record = BR2MergeRecord(
        race_id="K1M_ST_BR2_6",
        class_id="K1M_ST",
        first_run={
            "5": MergedRunData(time=7600, pen=2, total=7800, rank=1),
            "7": MergedRunData(time=7900, pen=0, total=7900, rank=3),
        },
        best_ranks={"5": 1},
        resolved=True,
    )
    already = ResultRow(rank=4, bib="8", run1=RunResult(total="90.00"), best_total="90.00")
    rows = [
        ResultRow(rank=1, bib="5", time="80.00", pen=2, total="78.00"),
        ResultRow(rank=2, bib="6", time="75.00", pen=0, total="75.00"),
        ResultRow(rank=3, bib="7", status="DNS"),
        already,
    ]

    merged = merge_best_run(rows, record)

    assert merged[0].run1 == RunResult(time="76.00", pen=2, total="78.00", rank=1)
    assert merged[0].run2 == RunResult(time="80.00", pen=2, total="82.00", rank=1)
    assert merged[0].best_run == 1
    assert merged[0].best_total == "78.00"
    assert merged[0].best_rank == 1

    assert merged[1].run1 is None
    assert merged[1].best_run == 2
    assert merged[1].best_total == "75.00"
    assert merged[1].best_rank is None

    assert merged[2].run2 == RunResult(rank=3, status="DNS")
    assert merged[2].best_run == 1
    assert merged[2].best_total == "79.00"

    assert merged[3] is already


def test_second_run_penalty_comes_from_fetched_run2():
    # Live row pen belongs to the better run; the fetched run2 knows the real 4s penalty
    record = BR2MergeRecord(
        race_id="K1M_ST_BR2_6",
        class_id="K1M_ST",
        first_run={"5": MergedRunData(time=8000, pen=0, total=8000, rank=1)},
        second_run={"5": MergedRunData(time=7900, pen=4, total=8300, rank=2)},
        resolved=True,
    )
    rows = [ResultRow(rank=1, bib="5", time="79.00", pen=0, total="80.00")]

    merged = merge_best_run(rows, record)

    assert merged[0].run2 == RunResult(time="79.00", pen=4, total="83.00", rank=1)
    assert merged[0].best_run == 1
    assert merged[0].best_total == "80.00"


def test_fetched_second_run_status_is_authoritative():
    record = BR2MergeRecord(
        race_id="K1M_ST_BR2_6",
        class_id="K1M_ST",
        first_run={"5": MergedRunData(time=8000, pen=0, total=8000, rank=1)},
        second_run={
            "5": MergedRunData(pen=2, rank=9, status="dsq"),
            "6": MergedRunData(time=8100, pen=2, total=8300, rank=2),
        },
        resolved=True,
    )
    rows = [
        ResultRow(rank=1, bib="5", time="75.00", pen=0, total="75.00"),
        ResultRow(rank=2, bib="6"),
    ]

    merged = merge_best_run(rows, record)

    assert merged[0].run2 == RunResult(pen=2, rank=9, status="DSQ")
    assert merged[0].best_run == 1
    assert merged[0].best_total == "80.00"
    # No live time yet: the fetched run stands in
    assert merged[1].run2 == RunResult(time="81.00", pen=2, total="83.00", rank=2)
    assert merged[1].best_run == 2


# ==================== RESOLVER ====================


@pytest.mark.asyncio
async def test_resolver_fetches_first_run_in_background():
    lookup = _StubLookup(MERGED)
    updates = []
    resolver = BestRunResolver(lookup, updates.append)

    event = _br2_event()
    # Results processing never waits for the lookup
    assert resolver.process(event) is event
    await asyncio.sleep(0)
    assert lookup.calls == ["K1M_ST_BR2_6"]
    assert not resolver.record_for("K1M_ST_BR2_6").resolved

    lookup.release.set()
    for _ in range(10):
        if updates:
            break
        await asyncio.sleep(0)
    assert updates == ["K1M_ST"]

    record = resolver.record_for("K1M_ST_BR2_6")
    assert record.resolved
    assert set(record.first_run) == {"5"}
    assert record.best_ranks == {"5": 1}

    merged = resolver.process(event)
    assert merged.rows[0].best_total == "78.00"
    assert merged.rows[0].run1.time == "76.00"
    # Same race again: no second lookup
    assert lookup.calls == ["K1M_ST_BR2_6"]
    resolver.reset()


@pytest.mark.asyncio
async def test_resolver_ignores_single_run_races():
    lookup = _StubLookup(MERGED)
    resolver = BestRunResolver(lookup)
    event = _br2_event(race_id="K1M_ST_6")
    assert resolver.process(event) is event
    await asyncio.sleep(0)
    assert lookup.calls == []
    assert resolver.records == {}


@pytest.mark.asyncio
async def test_resolver_discards_record_when_race_not_current():
    lookup = _StubLookup(MERGED)
    resolver = BestRunResolver(lookup)
    resolver.process(_br2_event())
    assert "K1M_ST" in resolver.records

    event = _br2_event(is_current=False)
    assert resolver.process(event) is event
    assert resolver.records == {}


@pytest.mark.asyncio
async def test_resolver_evicts_other_classes():
    lookup = _StubLookup(MERGED)
    resolver = BestRunResolver(lookup)
    resolver.process(_br2_event())
    resolver.process(_br2_event(race_id="C1W_ST_BR2_3"))
    assert list(resolver.records) == ["C1W_ST"]
    await asyncio.sleep(0)
    resolver.reset()
    assert resolver.records == {}


@pytest.mark.asyncio
async def test_lookup_failure_keeps_second_run_only():
    lookup = _StubLookup(error=ResultsLookupError("HTTP 500"))
    updates = []
    resolver = BestRunResolver(lookup, updates.append)
    event = _br2_event()
    resolver.process(event)

    lookup.release.set()
    for _ in range(10):
        await asyncio.sleep(0)

    record = resolver.record_for(event.race_id)
    assert record.failed
    assert not record.resolved
    assert updates == []
    assert resolver.apply(event) is event


@pytest.mark.asyncio
async def test_disposed_resolver_passes_events_through():
    lookup = _StubLookup(MERGED)
    resolver = BestRunResolver(lookup)
    resolver.dispose()
    event = _br2_event()
    assert resolver.process(event) is event
    await asyncio.sleep(0)
    assert lookup.calls == []


@pytest.mark.asyncio
async def test_later_results_refetch_after_quiet_period():
    lookup = _StubLookup(MERGED)
    lookup.release.set()
    updates = []
    resolver = BestRunResolver(lookup, updates.append, refresh_delay=0.05)

    event = _br2_event()
    resolver.process(event)
    for _ in range(10):
        await asyncio.sleep(0)
    assert updates == ["K1M_ST"]

    # A burst of Results leads to a single re-fetch once it settles
    resolver.process(event)
    resolver.process(event)
    resolver.process(event)
    assert lookup.calls == ["K1M_ST_BR2_6"]
    await asyncio.sleep(0.2)

    assert lookup.calls == ["K1M_ST_BR2_6", "K1M_ST_BR2_6"]
    assert updates == ["K1M_ST", "K1M_ST"]
    resolver.reset()


@pytest.mark.asyncio
async def test_failed_refetch_keeps_known_first_run():
    lookup = _StubLookup(MERGED)
    lookup.release.set()
    resolver = BestRunResolver(lookup, refresh_delay=0.05)
    event = _br2_event()
    resolver.process(event)
    for _ in range(10):
        await asyncio.sleep(0)

    lookup.error = ResultsLookupError("HTTP 500")
    resolver.process(event)
    await asyncio.sleep(0.2)

    assert len(lookup.calls) == 2
    record = resolver.record_for(event.race_id)
    assert record.resolved
    assert not record.failed
    assert resolver.apply(event).rows[0].best_total == "78.00"
    resolver.reset()


@pytest.mark.asyncio
async def test_reset_cancels_pending_refetch():
    lookup = _StubLookup(MERGED)
    lookup.release.set()
    resolver = BestRunResolver(lookup, refresh_delay=0.05)
    resolver.process(_br2_event())
    for _ in range(10):
        await asyncio.sleep(0)
    resolver.process(_br2_event())

    resolver.reset()
    await asyncio.sleep(0.2)
    assert lookup.calls == ["K1M_ST_BR2_6"]
