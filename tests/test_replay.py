import asyncio
import json

import pytest

from slalom_core.config import ReplayConfig
from slalom_core.errors import ParseError, TransportError, ValidationError
from slalom_core.events import ErrorEvent, EventInfoEvent, ResultsEvent
from slalom_core.recording import decode_recorded_message, load_recording, parse_recording
from slalom_core.replay import ReplayProvider
from slalom_core.validation import RecordedMessage

LINES = [
    {"_meta": {"version": 1, "recorded": "2025-05-01T10:00:00Z", "host": "192.168.1.5", "sources": {"ws": {"port": 8081}}}},
    {"ts": 1500, "src": "ws", "type": "daytime", "data": {"time": "10:00:01"}},
    {"ts": 0, "src": "ws", "type": "title", "data": {"text": "Cup"}},
    {"ts": 500, "src": "tcp", "type": "TimeOfDay", "data": "<Canoe123><TimeOfDay>10:00:00</TimeOfDay></Canoe123>"},
    {"ts": 200, "src": "udp27333", "type": "raw", "data": "ignored"},
    {"ts": 1000, "src": "ws", "type": "top", "data": {"RaceName": "K1m", "list": [{"Bib": "1", "Rank": 1}]}},
]

RECORDING = "\n".join(json.dumps(line) for line in LINES[:3]) + "\nnot json\n" + "\n".join(
    json.dumps(line) for line in LINES[3:]
)

SOURCES = ["ws", "tcp"]


async def _wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _collect(provider):
    events = []
    for subscribe in (provider.on_results, provider.on_event_info, provider.on_error):
        subscribe(events.append)
    return events


def _labels(events):
    labels = []
    for event in events:
        if isinstance(event, ResultsEvent):
            labels.append("results")
        elif isinstance(event, EventInfoEvent):
            labels.append(event.title or event.day_time)
        elif isinstance(event, ErrorEvent):
            labels.append(event.code)
    return labels


# ==================== RECORDING ====================


def test_parse_recording_sorts_filters_and_reports_bad_lines():
    recording = parse_recording(RECORDING.splitlines(), SOURCES)
    assert [m.ts for m in recording.messages] == [0, 500, 1000, 1500]
    assert recording.duration == 1500
    assert recording.meta.host == "192.168.1.5"
    assert len(recording.errors) == 1
    assert recording.errors[0].code == "PARSE_ERROR"
    assert recording.errors[0].message == "Invalid JSONL line in recording"
    assert recording.errors[0].cause["line"] == "not json"


def test_parse_recording_without_source_filter_keeps_everything():
    recording = parse_recording(RECORDING.splitlines())
    assert len(recording.messages) == 5


def test_nested_json_line_is_reported_not_raised():
    lines = [json.dumps(LINES[2]), '{"ts": 0, "data": ' + "[" * 100000]
    recording = parse_recording(lines)
    assert len(recording.messages) == 1
    assert [e.code for e in recording.errors] == ["PARSE_ERROR"]


def test_strict_parse_raises_on_first_invalid_line():
    with pytest.raises(ParseError) as excinfo:
        parse_recording(RECORDING.splitlines(), strict=True)
    assert "line 4" in excinfo.value.message

    with pytest.raises(ValidationError):
        parse_recording([json.dumps({"src": "ws", "type": "title"})], strict=True)
    with pytest.raises(ValidationError):
        parse_recording(["[1, 2]"], strict=True)
    with pytest.raises(ParseError):
        load_recording('{"ts": 0, "src": "ws", "data": ' + "[" * 100000, strict=True)

    valid = "\n".join(json.dumps(line) for line in LINES)
    assert len(parse_recording(valid.splitlines(), strict=True).messages) == 5


def test_load_recording_from_file(tmp_path):
    path = tmp_path / "race.jsonl"
    path.write_text(RECORDING, encoding="utf-8")
    recording = load_recording(str(path), SOURCES)
    assert len(recording.messages) == 4
    assert load_recording(path, ["tcp"]).messages[0].type == "TimeOfDay"


def test_decode_recorded_message_by_source():
    title = RecordedMessage(ts=0, src="ws", type="title", data={"text": "Cup"})
    assert decode_recorded_message(title) == [EventInfoEvent(title="Cup")]

    wrapped = RecordedMessage(ts=0, src="ws", type="ignored", data={"msg": "infotext", "data": {"text": "Live"}})
    assert decode_recorded_message(wrapped) == [EventInfoEvent(info_text="Live")]

    xml = RecordedMessage(ts=0, src="tcp", type="TimeOfDay", data="<Canoe123><TimeOfDay>09:00:00</TimeOfDay></Canoe123>")
    assert decode_recorded_message(xml) == [EventInfoEvent(day_time="09:00:00")]

    assert decode_recorded_message(RecordedMessage(ts=0, src="udp10600", data="x")) == []
    assert [e.code for e in decode_recorded_message(RecordedMessage(ts=0, src="tcp", data={}))] == ["VALIDATION_ERROR"]


# ==================== REPLAY ====================


@pytest.mark.asyncio
async def test_manual_advance_dispatches_due_messages():
    provider = ReplayProvider(RECORDING, ReplayConfig(sources=SOURCES, auto_play=False))
    events = _collect(provider)
    statuses = []
    provider.on_connection_change(lambda e: statuses.append(e.state))

    await provider.connect()
    assert statuses == ["connecting", "connected"]
    assert provider.state == "idle"
    assert provider.message_count == 4
    assert provider.duration == 1500
    assert provider.meta.version == 1
    assert _labels(events) == ["PARSE_ERROR"]

    assert provider.advance(0) == 1
    assert provider.advance(600) == 1
    assert provider.position == 600
    assert _labels(events) == ["PARSE_ERROR", "Cup", "10:00:00"]

    assert provider.advance(10_000) == 2
    assert provider.state == "finished"
    assert _labels(events)[-2:] == ["results", "10:00:01"]

    provider.disconnect()
    assert provider.status == "disconnected"
    assert statuses[-1] == "disconnected"


@pytest.mark.asyncio
async def test_pause_after_stops_playback():
    provider = ReplayProvider(RECORDING, ReplayConfig(sources=SOURCES, auto_play=False, pause_after=2))
    events = _collect(provider)
    await provider.connect()

    assert provider.advance(5_000) == 2
    assert provider.state == "paused"
    assert provider.position == 500
    assert _labels(events) == ["PARSE_ERROR", "Cup", "10:00:00"]


@pytest.mark.asyncio
async def test_seek_stop_and_argument_checks():
    provider = ReplayProvider(RECORDING, ReplayConfig(sources=SOURCES, auto_play=False))
    events = _collect(provider)
    await provider.connect()

    provider.seek(1000)
    assert provider.position == 1000
    assert provider.advance(0) == 1
    assert _labels(events)[-1] == "results"

    provider.stop()
    assert provider.position == 0
    assert provider.state == "idle"

    provider.seek(99_999)
    assert provider.state == "finished"

    with pytest.raises(ValueError):
        provider.seek(-1)
    with pytest.raises(ValueError):
        provider.set_speed(-1)


@pytest.mark.asyncio
async def test_realtime_playback_at_speed():
    provider = ReplayProvider(RECORDING, ReplayConfig(sources=SOURCES, speed=20))
    events = _collect(provider)
    await provider.connect()
    assert provider.state == "playing"

    await _wait_for(lambda: provider.state == "finished")
    assert _labels(events) == ["PARSE_ERROR", "Cup", "10:00:00", "results", "10:00:01"]
    provider.disconnect()


@pytest.mark.asyncio
async def test_pause_and_resume():
    provider = ReplayProvider(RECORDING, ReplayConfig(sources=SOURCES, speed=1))
    events = _collect(provider)
    await provider.connect()
    await _wait_for(lambda: "Cup" in _labels(events))

    provider.pause()
    assert provider.state == "paused"
    position = provider.position
    await asyncio.sleep(0.1)
    assert provider.position == position

    provider.set_speed(0)
    provider.resume()
    await _wait_for(lambda: provider.state == "finished")
    assert _labels(events) == ["PARSE_ERROR", "Cup", "10:00:00", "results", "10:00:01"]


@pytest.mark.asyncio
async def test_loop_restarts_from_the_beginning():
    provider = ReplayProvider(RECORDING, ReplayConfig(sources=SOURCES, speed=0, loop=True))
    events = _collect(provider)
    await provider.connect()

    await _wait_for(lambda: _labels(events).count("Cup") >= 2)
    provider.disconnect()
    assert provider.state == "idle"
    assert provider.status == "disconnected"


@pytest.mark.asyncio
async def test_missing_recording_file():
    provider = ReplayProvider("/nonexistent/recording.jsonl")
    with pytest.raises(TransportError):
        await provider.connect()
    assert provider.status == "disconnected"


@pytest.mark.asyncio
async def test_strict_replay_refuses_invalid_recording():
    provider = ReplayProvider(RECORDING, ReplayConfig(sources=SOURCES, strict=True))
    errors = []
    provider.on_error(errors.append)
    with pytest.raises(ParseError):
        await provider.connect()
    assert provider.status == "disconnected"
    assert errors == []
