from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from bar_exchange_sync.sources.connection import ConnectionManager
from bar_exchange_sync.sources.websocket import ChannelClosedError, ChannelHandlers


class FakeChannel:
    def __init__(
        self,
        url: str,
        handlers: ChannelHandlers,
        *,
        error: BaseException | None = None,
        before_open: Callable[[], None] | None = None,
        hold_open: bool = False,
    ) -> None:
        self.url = url
        self.handlers = handlers
        self.error = error
        self.before_open = before_open
        self.hold_open = hold_open
        self.connected = False
        self.closed = False
        self.sent: list[tuple[str, Any]] = []

    async def open(self) -> None:
        if self.before_open is not None:
            self.before_open()
        if self.hold_open:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        self.connected = True
        self.handlers.on_connect()

    def close(self) -> None:
        self.closed = True
        self.connected = False

    def send(self, event: str, data: Any) -> None:
        if not self.connected:
            raise ChannelClosedError("closed")
        self.sent.append((event, data))

    def deliver(self, event: str, data: Any) -> None:
        self.handlers.on_message(event, data)

    def drop(self) -> None:
        self.connected = False
        self.handlers.on_disconnect("transport error")

    def restore(self) -> None:
        self.connected = True
        self.handlers.on_reconnect(1)

    def give_up(self) -> None:
        self.connected = False
        self.handlers.on_reconnect_failed()


class FakeChannelFactory:
    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.failures: list[BaseException] = []
        self.before_open: Callable[[], None] | None = None
        self.hold_open = False

    def __call__(self, url: str, handlers: ChannelHandlers) -> FakeChannel:
        error = self.failures.pop(0) if self.failures else None
        channel = FakeChannel(url, handlers, error=error, before_open=self.before_open, hold_open=self.hold_open)
        self.channels.append(channel)
        return channel

    @property
    def last(self) -> FakeChannel:
        return self.channels[-1]


@pytest.fixture
def channel_factory() -> FakeChannelFactory:
    return FakeChannelFactory()


@pytest.fixture
def manager(channel_factory: FakeChannelFactory) -> ConnectionManager:
    return ConnectionManager(default_target="ws://bar.test/ws", channel_factory=channel_factory)
