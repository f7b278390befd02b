from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

logger = logging.getLogger(__name__)


class ChannelClosedError(RuntimeError):
    """Raised when sending on a channel whose transport is not open."""


def _noop(*_args: Any) -> None:
    return None


@dataclass(slots=True)
class ChannelHandlers:
    on_connect: Callable[[], None] = _noop
    on_disconnect: Callable[[str], None] = _noop
    on_reconnect: Callable[[int], None] = _noop
    on_reconnect_failed: Callable[[], None] = _noop
    on_message: Callable[[str, Any], None] = _noop


class LiveChannel(Protocol):
    @property
    def connected(self) -> bool: ...

    async def open(self) -> None: ...

    def close(self) -> None: ...

    def send(self, event: str, data: Any) -> None: ...


ChannelFactory = Callable[[str, ChannelHandlers], LiveChannel]


def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data}, separators=(",", ":"))


def decode_frame(raw: str | bytes) -> tuple[str, Any] | None:
    """Accept ``{"event": name, "data": payload}`` or ``[name, payload]``."""
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    try:
        message = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None

    if isinstance(message, Mapping):
        event = message.get("event")
        data = message.get("data")
    elif isinstance(message, list) and message:
        event = message[0]
        data = message[1] if len(message) > 1 else None
    else:
        return None

    if not isinstance(event, str) or not event:
        return None
    return event, data


class WebSocketChannel:
    """JSON-frame WebSocket transport that owns its own reconnection policy.

    ``open()`` resolves once the first handshake succeeds and raises the
    handshake error otherwise; it never retries. After a successful open, a
    dropped connection is retried ``reconnection_attempts`` times,
    ``reconnection_delay_seconds`` apart, before ``on_reconnect_failed``.
    """

    def __init__(
        self,
        url: str,
        handlers: ChannelHandlers,
        *,
        reconnection_attempts: int = 5,
        reconnection_delay_seconds: float = 1.0,
        connect_timeout_seconds: float = 10.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._url = url
        self._handlers = handlers
        self._reconnection_attempts = reconnection_attempts
        self._reconnection_delay_seconds = reconnection_delay_seconds
        self._connect_timeout_seconds = connect_timeout_seconds
        self._headers = dict(headers or {})
        self._ws: ClientConnection | None = None
        self._task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[Any]] = set()
        self._closing = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def open(self) -> None:
        if self._task is not None:
            return
        self._closing = False
        websocket = await self._dial()
        if self._closing:
            await websocket.close()
            return
        self._ws = websocket
        self._handlers.on_connect()
        self._task = asyncio.create_task(self._run(), name=f"ws-channel-{self._url}")

    def close(self) -> None:
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
        websocket, self._ws = self._ws, None
        if websocket is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # the event loop is gone and took the transport with it
            return
        self._spawn(websocket.close())

    def send(self, event: str, data: Any) -> None:
        if not self.connected or self._ws is None:
            raise ChannelClosedError(f"cannot send {event!r}: channel is not open")
        self._spawn(self._ws.send(encode_frame(event, data)))

    async def _dial(self) -> ClientConnection:
        return await connect(
            self._url,
            additional_headers=self._headers or None,
            open_timeout=self._connect_timeout_seconds,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=5,
            max_size=2**22,
        )

    async def _run(self) -> None:
        while not self._closing:
            reason = await self._read_until_closed()
            if self._closing:
                return
            self._ws = None
            self._handlers.on_disconnect(reason)
            if not await self._reconnect():
                self._handlers.on_reconnect_failed()
                return

    async def _read_until_closed(self) -> str:
        websocket = self._ws
        if websocket is None:
            return "transport missing"
        try:
            async for raw in websocket:
                frame = decode_frame(raw)
                if frame is None:
                    logger.debug("Dropping undecodable frame", extra={"url": self._url})
                    continue
                event, data = frame
                try:
                    self._handlers.on_message(event, data)
                except Exception:
                    logger.exception("Message handler failed", extra={"url": self._url, "event": event})
        except ConnectionClosed as exc:
            return f"connection closed ({exc.rcvd.code if exc.rcvd else 'no close frame'})"
        except Exception as exc:
            logger.exception("Reading from event source failed", extra={"url": self._url})
            await self._discard(websocket)
            return f"read failed ({exc.__class__.__name__})"
        return "server closed"

    @staticmethod
    async def _discard(websocket: ClientConnection) -> None:
        try:
            await websocket.close()
        except Exception:
            logger.debug("Closing a failed transport raised", exc_info=True)

    async def _reconnect(self) -> bool:
        for attempt in range(1, self._reconnection_attempts + 1):
            await asyncio.sleep(self._reconnection_delay_seconds)
            if self._closing:
                return False
            try:
                websocket = await self._dial()
            except (OSError, TimeoutError, ConnectionClosed) as exc:
                logger.warning(
                    "Reconnect attempt failed",
                    extra={
                        "url": self._url,
                        "attempt": attempt,
                        "max_attempts": self._reconnection_attempts,
                        "reason": exc.__class__.__name__,
                    },
                )
                continue
            except Exception:
                logger.exception("Reconnect attempt failed", extra={"url": self._url, "attempt": attempt})
                continue
            if self._closing:
                await websocket.close()
                return False
            self._ws = websocket
            self._handlers.on_reconnect(attempt)
            return True
        return False

    def _spawn(self, coroutine: Any) -> None:
        task = asyncio.get_running_loop().create_task(coroutine)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


def websocket_channel_factory(
    *,
    reconnection_attempts: int = 5,
    reconnection_delay_seconds: float = 1.0,
    connect_timeout_seconds: float = 10.0,
    headers: Mapping[str, str] | None = None,
) -> ChannelFactory:
    def build(url: str, handlers: ChannelHandlers) -> LiveChannel:
        return WebSocketChannel(
            url,
            handlers,
            reconnection_attempts=reconnection_attempts,
            reconnection_delay_seconds=reconnection_delay_seconds,
            connect_timeout_seconds=connect_timeout_seconds,
            headers=headers,
        )

    return build
