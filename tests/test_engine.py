import asyncio
import time

import pytest

from slalom_core.config import EngineConfig
from slalom_core.engine import ScoreboardEngine
from slalom_core.errors import TransportError
from slalom_core.events import (
    ConnectionStatusEvent,
    ErrorEvent,
    EventInfoEvent,
    OnCourseEvent,
    ResultsEvent,
)
from slalom_core.providers import DataProvider
from slalom_core.types import OnCourseCompetitor, ResultRow
from slalom_core.validation import MergedResults


class _StubProvider(DataProvider):
    def __init__(self, fail=False):
        super().__init__()
        self._status = "disconnected"
        self.fail = fail
        self.connects = 0

    @property
    def status(self):
        return self._status

    async def connect(self):
        self.connects += 1
        self._set("connecting")
        if self.fail:
            self._set("disconnected")
            raise TransportError("Connection refused")
        self._set("connected")

    def disconnect(self):
        self._set("disconnected")

    def emit(self, event):
        self._dispatch(event)

    def _set(self, status):
        if status != self._status:
            self._status = status
            self._dispatch(ConnectionStatusEvent(status))


class _Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class _Lookup:
    def __init__(self):
        self.release = asyncio.Event()
        self.calls = []

    async def get_merged_results(self, race_id):
        self.calls.append(race_id)
        await self.release.wait()
        return MergedResults(
            results=[{"bib": "5", "run1": {"time": 7600, "pen": 2, "total": 7800, "rank": 1}, "bestRank": 1}]
        )


def _competitor(bib, dt_start="10:00:00.000", dt_finish=None):
    return OnCourseCompetitor(bib=bib, dt_start=dt_start, dt_finish=dt_finish)


def _on_course(competitor):
    return OnCourseEvent(competitors=(competitor,), current=competitor)


def _results(*bibs, highlight=None, race_id="K1M_ST_6", is_current=None):
    rows = tuple(ResultRow(rank=i + 1, bib=bib, time="80.00", pen=2, total="78.00") for i, bib in enumerate(bibs))
    return ResultsEvent(rows=rows, race_name="K1m", race_id=race_id, highlight_bib=highlight, is_current=is_current)


async def _wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_start_connects_and_notifies():
    provider = _StubProvider()
    engine = ScoreboardEngine(provider, clock=_Clock())
    snapshots = []
    engine.on_change(snapshots.append)

    await engine.start()

    assert engine.attached
    assert engine.snapshot().status == "connected"
    assert [s.status for s in snapshots] == ["connecting", "connected"]


@pytest.mark.asyncio
async def test_departing_competitor_through_engine():
    provider = _StubProvider()
    clock = _Clock()
    engine = ScoreboardEngine(provider, clock=clock)
    await engine.start()

    provider.emit(_on_course(_competitor("42")))
    clock.now += 1
    provider.emit(_on_course(_competitor("99")))

    snapshot = engine.snapshot()
    assert snapshot.current_competitor.bib == "99"
    assert snapshot.departing_competitor.bib == "42"
    assert snapshot.departed_at == clock.now
    assert engine.pending_timers == 1
    engine.stop()


@pytest.mark.asyncio
async def test_reconnecting_resets_snapshot():
    provider = _StubProvider()
    clock = _Clock()
    engine = ScoreboardEngine(provider, clock=clock)
    await engine.start()

    provider.emit(_on_course(_competitor("42")))
    provider.emit(_on_course(_competitor("99")))
    provider.emit(_results("1", "2", highlight="1"))
    provider.emit(EventInfoEvent(title="World Cup"))
    assert engine.snapshot().initial_data_received

    provider.emit(ConnectionStatusEvent("reconnecting"))

    snapshot = engine.snapshot()
    assert snapshot.status == "reconnecting"
    assert snapshot.results == ()
    assert snapshot.current_competitor is None
    assert snapshot.departing_competitor is None
    assert snapshot.highlight_bib is None
    assert snapshot.initial_data_received is False
    assert snapshot.title == "World Cup"
    assert engine.pending_timers == 0


@pytest.mark.asyncio
async def test_highlight_timer_forces_refresh_at_expiry():
    provider = _StubProvider()
    engine = ScoreboardEngine(provider, EngineConfig(highlight_duration=0.05), clock=time.monotonic)
    snapshots = []
    engine.on_change(snapshots.append)
    await engine.start()

    provider.emit(_results("7", highlight="7"))
    assert snapshots[-1].highlight_bib == "7"
    assert engine.pending_timers == 1

    await _wait_for(lambda: snapshots[-1].highlight_bib is None)
    assert engine.pending_timers == 0
    engine.stop()


@pytest.mark.asyncio
async def test_stop_cancels_timers_and_detaches():
    provider = _StubProvider()
    engine = ScoreboardEngine(provider, clock=_Clock())
    await engine.start()
    provider.emit(_results("7", highlight="7"))
    assert engine.pending_timers == 1

    engine.stop()

    assert engine.pending_timers == 0
    assert not engine.attached
    assert provider.status == "disconnected"
    assert engine.snapshot().status == "disconnected"

    # Events after stop no longer reach the engine
    provider.emit(EventInfoEvent(title="ignored"))
    assert engine.snapshot().title == ""


@pytest.mark.asyncio
async def test_failed_start_records_error():
    provider = _StubProvider(fail=True)
    engine = ScoreboardEngine(provider, clock=_Clock())

    with pytest.raises(TransportError):
        await engine.start()
    assert engine.snapshot().error == "Connection refused"
    assert engine.snapshot().status == "disconnected"


@pytest.mark.asyncio
async def test_reconnect_clears_errors_and_records_failure():
    provider = _StubProvider()
    engine = ScoreboardEngine(provider, clock=_Clock())
    await engine.start()
    provider.emit(ErrorEvent(code="CONNECTION_ERROR", message="Proxy lost connection to C123"))
    provider.emit(ErrorEvent(code="PARSE_ERROR", message="Failed to parse XML message"))
    assert len(engine.snapshot().provider_errors) == 2

    await engine.reconnect()
    snapshot = engine.snapshot()
    assert provider.connects == 2
    assert snapshot.status == "connected"
    assert snapshot.error is None
    assert snapshot.provider_errors == ()

    provider.fail = True
    await engine.reconnect()
    assert engine.snapshot().error == "Connection refused"


def test_clear_provider_errors():
    provider = _StubProvider()
    engine = ScoreboardEngine(provider, clock=_Clock())
    engine.attach()
    provider.emit(ErrorEvent(code="VALIDATION_ERROR", message="Missing Canoe123 root element"))
    assert len(engine.snapshot().provider_errors) == 1

    engine.clear_provider_errors()
    assert engine.snapshot().provider_errors == ()


def test_synchronous_use_without_event_loop():
    provider = _StubProvider()
    clock = _Clock()
    engine = ScoreboardEngine(provider, clock=clock)
    engine.attach()
    engine.attach()

    provider.emit(_results("7", highlight="7"))
    assert engine.pending_timers == 0
    assert engine.snapshot().highlight_bib == "7"

    clock.now += 10
    assert engine.snapshot().highlight_bib is None


def test_failing_change_listener_does_not_break_engine():
    provider = _StubProvider()
    engine = ScoreboardEngine(provider, clock=_Clock())
    seen = []

    def broken(snapshot):
        raise RuntimeError("ui bug")

    engine.on_change(broken)
    engine.on_change(seen.append)
    engine.attach()
    provider.emit(EventInfoEvent(title="Cup"))

    assert [s.title for s in seen] == ["Cup"]


@pytest.mark.asyncio
async def test_best_run_upgrade_after_lookup():
    provider = _StubProvider()
    lookup = _Lookup()
    engine = ScoreboardEngine(provider, lookup=lookup, clock=_Clock())
    snapshots = []
    engine.on_change(snapshots.append)
    await engine.start()

    provider.emit(_results("5", race_id="K1M_ST_BR2_6", is_current=True))
    assert engine.snapshot().results[0].run1 is None

    lookup.release.set()
    await _wait_for(lambda: engine.snapshot().results[0].run1 is not None)

    row = engine.snapshot().results[0]
    assert row.run1.total == "78.00"
    assert row.run2.total == "82.00"
    assert row.best_run == 1
    assert row.best_rank == 1
    assert lookup.calls == ["K1M_ST_BR2_6"]
    assert snapshots[-1].results[0].best_total == "78.00"
    engine.close()
