"""
Data providers: the public connect/subscribe contract consumed by the engine.

A provider owns its transport (recreated on every connect after a
disconnect) and fans decoded events out to per-category listeners.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from .callbacks import Callback, CallbackRegistry, Subscription
from .config import ReconnectConfig
from .events import (
    CONFIG,
    CONNECTION,
    ERROR,
    EVENT_INFO,
    ON_COURSE,
    RESULTS,
    VISIBILITY,
    ConfigEvent,
    Event,
    ResultsEvent,
    category_of,
)
from .json_decoder import (
    RACE_STATUS_IN_PROGRESS,
    RACE_STATUS_UNOFFICIAL,
    decode_cli_message,
    decode_server_message,
)
from .transport import ReconnectingTransport, TcpTransport, WebSocketTransport
from .types import ConnectionState
from .xml_decoder import decode_xml

logger = logging.getLogger(__name__)

C123_DEFAULT_PORT = 27333
SERVER_DEFAULT_PORT = 27123
SERVER_WS_PATH = "/ws"


def websocket_url(server_url: str, path: str = SERVER_WS_PATH) -> str:
    """
    Normalize a server address to its WebSocket endpoint.

    "http://host:27123" -> "ws://host:27123/ws", "https://..." -> "wss://...",
    a bare "host:port" gets "ws://". An explicit path is kept.
    """
    url = server_url.strip()
    if "://" not in url:
        url = f"ws://{url}"
    parts = urlsplit(url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    url_path = parts.path if parts.path not in ("", "/") else path
    return urlunsplit((scheme, parts.netloc, url_path, parts.query, ""))


class DataProvider:
    """
    Base provider: subscription methods plus event dispatch.

    Subclasses implement ``connect``, ``disconnect`` and ``status``. Every
    ``on_*`` method returns a ``Subscription`` that can be called (or
    ``unsubscribe()``d) any number of times.
    """

    def __init__(self, safe_mode: bool = False) -> None:
        self._callbacks = CallbackRegistry(safe_mode=safe_mode)

    @property
    def status(self) -> ConnectionState:
        raise NotImplementedError

    @property
    def connected(self) -> bool:
        return self.status == "connected"

    async def connect(self) -> None:
        raise NotImplementedError

    def disconnect(self) -> None:
        raise NotImplementedError

    # Subscriptions

    def subscribe(self, category: str, callback: Callback) -> Subscription:
        return self._callbacks.subscribe(category, callback)

    def on_results(self, callback: Callback) -> Subscription:
        return self.subscribe(RESULTS, callback)

    def on_on_course(self, callback: Callback) -> Subscription:
        return self.subscribe(ON_COURSE, callback)

    def on_event_info(self, callback: Callback) -> Subscription:
        return self.subscribe(EVENT_INFO, callback)

    def on_config(self, callback: Callback) -> Subscription:
        return self.subscribe(CONFIG, callback)

    def on_visibility(self, callback: Callback) -> Subscription:
        return self.subscribe(VISIBILITY, callback)

    def on_connection_change(self, callback: Callback) -> Subscription:
        return self.subscribe(CONNECTION, callback)

    def on_error(self, callback: Callback) -> Subscription:
        return self.subscribe(ERROR, callback)

    def _dispatch(self, event: Event) -> None:
        event = self._transform(event)
        if event is None:
            return
        self._callbacks.emit(category_of(event), event)

    def _transform(self, event: Event) -> Optional[Event]:
        """Hook for provider-specific enrichment before fan-out."""
        return event


class TransportProvider(DataProvider):
    """Provider backed by a ReconnectingTransport (live sockets)."""

    def __init__(
        self,
        reconnect: Optional[ReconnectConfig] = None,
        safe_mode: bool = False,
    ) -> None:
        super().__init__(safe_mode=safe_mode)
        self.reconnect_config = reconnect or ReconnectConfig()
        self._transport: Optional[ReconnectingTransport] = None

    @property
    def status(self) -> ConnectionState:
        return self._transport.status if self._transport is not None else "disconnected"

    @property
    def transport(self) -> Optional[ReconnectingTransport]:
        return self._transport

    async def connect(self) -> None:
        if self._transport is None:
            self._transport = self._create_transport()
        await self._transport.connect()

    def disconnect(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.disconnect()

    def _create_transport(self) -> ReconnectingTransport:
        raise NotImplementedError


class C123Provider(TransportProvider):
    """Timing system XML over TCP (directly or through the relay)."""

    def __init__(
        self,
        host: str,
        port: int = C123_DEFAULT_PORT,
        reconnect: Optional[ReconnectConfig] = None,
        safe_mode: bool = False,
    ) -> None:
        super().__init__(reconnect=reconnect, safe_mode=safe_mode)
        self.host = host
        self.port = port

    def _create_transport(self) -> ReconnectingTransport:
        return TcpTransport(self.host, self.port, decode_xml, self._dispatch, self.reconnect_config)


class C123ServerProvider(TransportProvider):
    """
    Timing server gateway (JSON envelopes over WebSocket).

    RaceConfig messages carry no race name or status; they are filled in
    from the most recent Results message.
    """

    def __init__(
        self,
        server_url: str,
        reconnect: Optional[ReconnectConfig] = None,
        safe_mode: bool = False,
    ) -> None:
        super().__init__(reconnect=reconnect, safe_mode=safe_mode)
        self.server_url = server_url
        self.url = websocket_url(server_url)
        self._race_name = ""
        self._race_is_current = True

    def _create_transport(self) -> ReconnectingTransport:
        return WebSocketTransport(self.url, decode_server_message, self._dispatch, self.reconnect_config)

    def _transform(self, event: Event) -> Optional[Event]:
        if isinstance(event, ResultsEvent):
            self._race_name = event.race_name or (event.race_id or "")
            self._race_is_current = bool(event.is_current)
        elif isinstance(event, ConfigEvent):
            status = RACE_STATUS_IN_PROGRESS if self._race_is_current else RACE_STATUS_UNOFFICIAL
            return ConfigEvent(replace(event.config, race_name=self._race_name, race_status=status))
        return event


class CLIProvider(TransportProvider):
    """Legacy CLI WebSocket protocol (``{msg, data}`` messages)."""

    def __init__(
        self,
        url: str,
        reconnect: Optional[ReconnectConfig] = None,
        safe_mode: bool = False,
    ) -> None:
        super().__init__(reconnect=reconnect, safe_mode=safe_mode)
        self.url = websocket_url(url, path="")

    def _create_transport(self) -> ReconnectingTransport:
        return WebSocketTransport(self.url, decode_cli_message, self._dispatch, self.reconnect_config)


__all__ = [
    "C123_DEFAULT_PORT",
    "SERVER_DEFAULT_PORT",
    "websocket_url",
    "DataProvider",
    "TransportProvider",
    "C123Provider",
    "C123ServerProvider",
    "CLIProvider",
]
