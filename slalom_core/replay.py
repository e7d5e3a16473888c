"""
Replay provider: plays a recording back on a virtual clock.

The clock is the recording's own timeline (ms). It advances either with
real time scaled by ``speed`` (``play``) or manually (``advance``), which
makes replays deterministic in tests.
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Literal, Optional

from .config import ReplayConfig
from .errors import ParseError, TransportError, ValidationError
from .events import ConnectionStatusEvent
from .providers import DataProvider
from .recording import Recording, RecordingSource, decode_recorded_message, load_recording
from .types import ConnectionState
from .validation import RecordedMessage, RecordingMeta

logger = logging.getLogger(__name__)

PlaybackState = Literal["idle", "playing", "paused", "finished"]


class ReplayProvider(DataProvider):
    """
    Provider fed from a JSONL recording instead of a socket.

    Args:
        source: Path to a recording file, or the JSONL text itself
        config: Playback options (speed, sources, auto_play, loop, pause_after)
        safe_mode: Listener errors are logged instead of raised (default True)
    """

    def __init__(
        self,
        source: RecordingSource,
        config: Optional[ReplayConfig] = None,
        safe_mode: bool = True,
    ) -> None:
        super().__init__(safe_mode=safe_mode)
        self.source = source
        self.config = config or ReplayConfig()
        self.speed = self.config.speed
        self.loop = self.config.loop
        self.pause_after = self.config.pause_after

        self._status: ConnectionState = "disconnected"
        self._recording: Optional[Recording] = None
        self._messages: List[RecordedMessage] = []
        self._index = 0
        self._position = 0.0
        self._state: PlaybackState = "idle"
        self._dispatched = 0
        self._handle: Optional[asyncio.TimerHandle] = None

    # ==================== PROVIDER CONTRACT ====================

    @property
    def status(self) -> ConnectionState:
        return self._status

    async def connect(self) -> None:
        if self._status != "disconnected":
            return
        self._set_status("connecting")
        try:
            recording = load_recording(self.source, self.config.sources, self.config.strict)
        except (ParseError, ValidationError) as e:
            logger.warning(f"Invalid recording: {e.message}")
            self._set_status("disconnected")
            raise
        except OSError as e:
            logger.warning(f"Failed to load recording: {e}")
            self._set_status("disconnected")
            raise TransportError("Failed to load recording", cause=e) from e

        self._recording = recording
        self._messages = recording.messages
        self._index = 0
        self._position = 0.0
        self._state = "idle"
        for error in recording.errors:
            self._dispatch(error)

        self._set_status("connected")
        if self.config.auto_play and self._messages:
            self.play()

    def disconnect(self) -> None:
        self.stop()
        self._set_status("disconnected")

    # ==================== PLAYBACK CONTROLS ====================

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def position(self) -> float:
        """Virtual clock, ms from recording start."""
        return self._position

    @property
    def duration(self) -> int:
        return self._messages[-1].ts if self._messages else 0

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def meta(self) -> Optional[RecordingMeta]:
        return self._recording.meta if self._recording else None

    def play(self) -> None:
        if self._state == "playing":
            return
        if self._state == "finished":
            self.seek(0)
        self._state = "playing"
        self._dispatched = 0
        self._schedule_next()

    def pause(self) -> None:
        if self._state != "playing":
            return
        self._cancel_timer()
        self._state = "paused"

    def resume(self) -> None:
        if self._state == "paused":
            self.play()

    def stop(self) -> None:
        """Stop playback and rewind."""
        self._cancel_timer()
        self._state = "idle"
        self._index = 0
        self._position = 0.0

    def seek(self, position_ms: float) -> None:
        if position_ms < 0:
            raise ValueError("seek position must be >= 0")
        was_playing = self._state == "playing"
        self._cancel_timer()

        self._index = next(
            (i for i, m in enumerate(self._messages) if m.ts >= position_ms),
            len(self._messages),
        )
        self._position = float(position_ms)
        if self._index >= len(self._messages):
            self._state = "finished"
            return
        self._state = "idle"
        if was_playing:
            self.play()

    def set_speed(self, multiplier: float) -> None:
        """Change playback speed; 0 dispatches the rest of the recording without delay."""
        if multiplier < 0:
            raise ValueError("speed multiplier must be >= 0")
        self.speed = multiplier
        if self._state == "playing":
            self._cancel_timer()
            self._schedule_next()

    def advance(self, ms: float) -> int:
        """
        Move the virtual clock forward and dispatch every message now due.

        Works whether or not real-time playback is running; honours
        pause_after. Returns the number of messages dispatched.
        """
        if ms < 0:
            raise ValueError("cannot advance by a negative amount")
        target = self._position + ms
        count = 0
        while self._index < len(self._messages) and self._messages[self._index].ts <= target:
            if self._dispatch_next():
                count += 1
                break
            count += 1
        else:
            self._position = target
        if self._index >= len(self._messages) and self._state != "paused":
            self._finish()
        elif self._state == "playing":
            self._cancel_timer()
            self._schedule_next()
        return count

    # ==================== INTERNALS ====================

    def _set_status(self, status: ConnectionState) -> None:
        if status == self._status:
            return
        self._status = status
        self._dispatch(ConnectionStatusEvent(status))

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule_next(self) -> None:
        if self._state != "playing":
            return
        if self._index >= len(self._messages):
            self._finish()
            return
        message = self._messages[self._index]
        if self.speed == 0:
            delay = 0.0
        else:
            delay = max(0.0, (message.ts - self._position) / 1000.0 / self.speed)
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._handle = None
        if self._state != "playing":
            return
        if self._dispatch_next():
            return
        self._schedule_next()

    def _dispatch_next(self) -> bool:
        """Dispatch the message at the cursor. Returns True when pause_after kicked in."""
        message = self._messages[self._index]
        self._index += 1
        self._position = max(self._position, float(message.ts))
        self._dispatched += 1
        for event in decode_recorded_message(message):
            self._dispatch(event)

        if self.pause_after is not None and self._dispatched >= self.pause_after:
            self._cancel_timer()
            self._state = "paused"
            self._dispatched = 0
            return True
        return False

    def _finish(self) -> None:
        self._cancel_timer()
        if self.loop and self._state == "playing" and self._messages:
            logger.debug("Recording finished, looping")
            self._index = 0
            self._position = 0.0
            self._schedule_next()
            return
        self._state = "finished"


__all__ = ["PlaybackState", "ReplayProvider"]
