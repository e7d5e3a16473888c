"""
Reconnecting transports.

A transport owns one physical connection at a time, turns incoming bytes
into frames, runs them through its decoder and hands the resulting events
to a single ``on_event`` sink. Connection state follows::

    disconnected -> connecting -> connected -> reconnecting -> connecting -> ...

with ``disconnected`` reachable from any state via ``disconnect()``. Every
transition is emitted as a ``ConnectionStatusEvent``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, List, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import ReconnectConfig
from .errors import TransportError
from .events import ConnectionStatusEvent, Event
from .types import ConnectionState

logger = logging.getLogger(__name__)

Payload = Union[bytes, str]
Decoder = Callable[[Payload], List[Event]]
EventSink = Callable[[Event], None]

FRAME_DELIMITER = b"|"
READ_CHUNK_SIZE = 65536


class DelimitedFramer:
    """
    Split a byte stream into frames on a single-byte delimiter.

    Partial frames are buffered until the delimiter arrives; blank frames
    (keep-alives, doubled delimiters) are skipped.
    """

    def __init__(self, delimiter: bytes = FRAME_DELIMITER) -> None:
        if len(delimiter) != 1:
            raise ValueError("delimiter must be a single byte")
        self.delimiter = delimiter
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer.extend(chunk)
        *complete, remainder = bytes(self._buffer).split(self.delimiter)
        self._buffer = bytearray(remainder)
        frames = []
        for raw in complete:
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                frames.append(text)
        return frames

    def reset(self) -> None:
        self._buffer.clear()


class ReconnectingTransport:
    """
    Base class implementing the connection state machine.

    Subclasses provide ``_open_connection``, ``_iter_payloads`` and
    ``_close_connection``. At most one connection attempt is in flight; a
    second ``connect()`` joins the running attempt. ``disconnect()`` is
    synchronous and cancels every pending timer and task it owns.
    """

    # Exceptions that mean "this attempt/connection failed", not a bug
    connect_errors: tuple = (OSError, asyncio.TimeoutError)
    read_errors: tuple = (OSError,)

    def __init__(
        self,
        decoder: Decoder,
        on_event: EventSink,
        config: Optional[ReconnectConfig] = None,
        name: str = "transport",
    ) -> None:
        self._decoder = decoder
        self._on_event = on_event
        self.config = config or ReconnectConfig()
        self.name = name

        self._status: ConnectionState = "disconnected"
        self._delay = self.config.initial_delay
        self._generation = 0
        self._connection: Any = None
        self._attempt: Optional[asyncio.Future] = None
        self._reader: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._closing: Set[asyncio.Task] = set()

    # ==================== PUBLIC API ====================

    @property
    def status(self) -> ConnectionState:
        return self._status

    @property
    def connected(self) -> bool:
        return self._status == "connected"

    @property
    def reconnect_delay(self) -> float:
        """Delay that the next scheduled retry will use."""
        return self._delay

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    async def connect(self) -> None:
        """
        Open the connection.

        Returns immediately when already connected and joins the attempt in
        flight when connecting. Raises TransportError when the attempt fails;
        with auto_reconnect a retry is already scheduled at that point.
        """
        if self._status == "connected":
            return
        attempt = self._attempt
        if attempt is None or attempt.done():
            self._cancel_retry()
            attempt = asyncio.ensure_future(self._connect_once(self._generation))
            self._attempt = attempt
        try:
            await asyncio.shield(attempt)
        except asyncio.CancelledError:
            if attempt.cancelled():
                raise TransportError(f"{self.name}: connection attempt cancelled by disconnect") from None
            raise
        # A joined background retry reports failure through the status only
        if not self.connected:
            raise TransportError(f"{self.name}: connection failed")

    def disconnect(self) -> None:
        """Close the connection and suppress any scheduled reconnect. Idempotent."""
        self._generation += 1
        self._cancel_retry()

        if self._attempt is not None and not self._attempt.done():
            self._attempt.cancel()
        self._attempt = None

        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        self._reader = None

        connection, self._connection = self._connection, None
        if connection is not None:
            closing = asyncio.ensure_future(self._safe_close(connection))
            self._closing.add(closing)
            closing.add_done_callback(self._closing.discard)

        self._delay = self.config.initial_delay
        if self._status != "disconnected":
            logger.info(f"{self.name}: disconnected")
            self._set_status("disconnected")

    async def wait_closed(self) -> None:
        """Wait until connections closed by ``disconnect()`` are fully shut down."""
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    # ==================== STATE MACHINE ====================

    def _set_status(self, status: ConnectionState) -> None:
        if status == self._status:
            return
        self._status = status
        self._on_event(ConnectionStatusEvent(status))

    async def _connect_once(self, generation: int) -> None:
        self._set_status("connecting")
        try:
            connection = await asyncio.wait_for(
                self._open_connection(), timeout=self.config.connect_timeout
            )
        except self.connect_errors as e:
            if generation != self._generation:
                raise TransportError(f"{self.name}: connection attempt superseded") from e
            logger.warning(f"{self.name}: connection failed: {e!r}")
            self._handle_connection_loss()
            raise TransportError(f"{self.name}: connection failed", cause=e) from e

        if generation != self._generation:
            await self._safe_close(connection)
            raise TransportError(f"{self.name}: connection attempt superseded")

        self._connection = connection
        self._delay = self.config.initial_delay
        logger.info(f"{self.name}: connected")
        self._set_status("connected")
        self._reader = asyncio.create_task(self._read_loop(connection, generation))

    async def _read_loop(self, connection: Any, generation: int) -> None:
        try:
            async for payload in self._iter_payloads(connection):
                if generation != self._generation:
                    return
                self._process_payload(payload)
        except self.read_errors as e:
            logger.warning(f"{self.name}: read failed: {e!r}")
        except Exception:
            # A broken decoder drops this connection; the reconnect below starts a clean one
            logger.exception(f"{self.name}: unexpected error in read loop")

        if generation != self._generation:
            return
        self._connection = None
        self._reader = None
        await self._safe_close(connection)
        if generation != self._generation:
            return
        logger.info(f"{self.name}: connection closed by peer")
        self._handle_connection_loss()

    def _process_payload(self, payload: Payload) -> None:
        for event in self._decoder(payload):
            try:
                self._on_event(event)
            except Exception:
                # A failing subscriber must not take the connection down
                logger.exception(f"{self.name}: event handler raised for {type(event).__name__}")

    def _handle_connection_loss(self) -> None:
        if not self.config.auto_reconnect:
            self._set_status("disconnected")
            return
        self._set_status("reconnecting")
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        self._cancel_retry()
        delay = self._delay
        self._delay = min(self._delay * self.config.backoff_factor, self.config.max_delay)
        logger.info(f"{self.name}: reconnecting in {delay:.1f}s")
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self._retry, self._generation)

    def _retry(self, generation: int) -> None:
        self._retry_handle = None
        if generation != self._generation:
            return
        self._attempt = asyncio.ensure_future(self._retry_once(generation))

    async def _retry_once(self, generation: int) -> None:
        try:
            await self._connect_once(generation)
        except TransportError as e:
            logger.debug(f"{self.name}: reconnect attempt failed: {e.message}")

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def _safe_close(self, connection: Any) -> None:
        try:
            await self._close_connection(connection)
        except self.read_errors as e:
            logger.debug(f"{self.name}: error while closing: {e!r}")

    # ==================== SUBCLASS HOOKS ====================

    async def _open_connection(self) -> Any:
        raise NotImplementedError

    def _iter_payloads(self, connection: Any) -> AsyncIterator[Payload]:
        raise NotImplementedError

    async def _close_connection(self, connection: Any) -> None:
        raise NotImplementedError


class TcpTransport(ReconnectingTransport):
    """Raw TCP stream of ``|`` delimited frames."""

    def __init__(
        self,
        host: str,
        port: int,
        decoder: Decoder,
        on_event: EventSink,
        config: Optional[ReconnectConfig] = None,
        delimiter: bytes = FRAME_DELIMITER,
    ) -> None:
        super().__init__(decoder, on_event, config, name=f"tcp://{host}:{port}")
        self.host = host
        self.port = port
        self.delimiter = delimiter

    async def _open_connection(self):
        return await asyncio.open_connection(self.host, self.port)

    async def _iter_payloads(self, connection) -> AsyncIterator[Payload]:
        reader, _writer = connection
        # Fresh framer per connection: a partial frame never spans reconnects
        framer = DelimitedFramer(self.delimiter)
        while True:
            chunk = await reader.read(READ_CHUNK_SIZE)
            if not chunk:
                if framer.pending:
                    logger.debug(f"{self.name}: dropping {framer.pending} bytes of incomplete frame")
                return
            for frame in framer.feed(chunk):
                yield frame

    async def _close_connection(self, connection) -> None:
        _reader, writer = connection
        writer.close()
        await writer.wait_closed()


class WebSocketTransport(ReconnectingTransport):
    """Message-framed WebSocket; every message is one payload."""

    connect_errors = (OSError, asyncio.TimeoutError, WebSocketException)
    read_errors = (OSError, ConnectionClosed)

    def __init__(
        self,
        url: str,
        decoder: Decoder,
        on_event: EventSink,
        config: Optional[ReconnectConfig] = None,
    ) -> None:
        super().__init__(decoder, on_event, config, name=url)
        self.url = url

    async def _open_connection(self):
        return await websockets.connect(self.url, close_timeout=5)

    async def _iter_payloads(self, connection) -> AsyncIterator[Payload]:
        async for message in connection:
            yield message

    async def _close_connection(self, connection) -> None:
        await connection.close()


__all__ = [
    "FRAME_DELIMITER",
    "DelimitedFramer",
    "ReconnectingTransport",
    "TcpTransport",
    "WebSocketTransport",
]
