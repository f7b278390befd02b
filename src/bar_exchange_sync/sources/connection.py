from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import Any

from bar_exchange_sync.core.config import Settings
from bar_exchange_sync.sources.listeners import EventCallback, EventListenerRegistry, Unsubscribe
from bar_exchange_sync.sources.websocket import (
    ChannelClosedError,
    ChannelFactory,
    ChannelHandlers,
    LiveChannel,
    websocket_channel_factory,
)

logger = logging.getLogger(__name__)

EVENT_PRICE_UPDATE = "price_update"
EVENT_MARKET_CRASH = "market_crash"
EVENT_MARKET_CRASH_END = "market_crash_end"
EVENT_MARKET_UPDATE = "market_update"
EVENT_ORDER_PLACED = "order_placed"
EVENT_ORDER_STATUS_CHANGED = "order_status_changed"
EVENT_ORDER_CANCELLED = "order_cancelled"

INTENT_SUBSCRIBE = "subscribe"
INTENT_UNSUBSCRIBE = "unsubscribe"


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def branch_topic(branch_id: str) -> str:
    return f"branch:{branch_id}"


class ConnectionManager:
    """Owns at most one live channel and fans its messages out to listeners.

    State only moves through channel lifecycle callbacks plus ``connect()`` and
    ``disconnect()``. Callbacks from a channel that has since been replaced are
    ignored. Transport reconnection belongs to the channel; a rejected
    ``connect()`` is never retried here.
    """

    def __init__(
        self,
        *,
        default_target: str,
        channel_factory: ChannelFactory,
        registry: EventListenerRegistry | None = None,
    ) -> None:
        self._default_target = default_target
        self._channel_factory = channel_factory
        self._registry = registry or EventListenerRegistry()
        self._channel: LiveChannel | None = None
        self._state = ConnectionState.DISCONNECTED
        self._epoch = 0
        self._topics: set[str] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def registry(self) -> EventListenerRegistry:
        return self._registry

    @property
    def topics(self) -> frozenset[str]:
        return frozenset(self._topics)

    async def connect(self, target: str | None = None) -> LiveChannel:
        if self._channel is not None:
            self.disconnect()

        url = target or self._default_target
        self._epoch += 1
        epoch = self._epoch
        self._state = ConnectionState.CONNECTING
        channel = self._channel_factory(url, self._handlers_for(epoch))
        self._channel = channel
        logger.info("Connecting to event source", extra={"url": url})

        try:
            await channel.open()
        except asyncio.CancelledError:
            if epoch == self._epoch:
                self._channel = None
                self._state = ConnectionState.DISCONNECTED
            channel.close()
            logger.info("Connection attempt cancelled", extra={"url": url})
            raise
        except Exception as exc:
            if epoch == self._epoch:
                self._channel = None
                self._state = ConnectionState.DISCONNECTED
            logger.error(
                "Event source connection failed",
                extra={"url": url, "reason": exc.__class__.__name__, "detail": str(exc)},
            )
            raise

        if epoch != self._epoch:
            channel.close()
            raise ChannelClosedError("connection attempt was superseded before it completed")
        self._state = ConnectionState.CONNECTED
        return channel

    def disconnect(self) -> None:
        self._epoch += 1
        channel, self._channel = self._channel, None
        self._topics.clear()
        self._state = ConnectionState.DISCONNECTED
        if channel is not None:
            channel.close()
            logger.info("Disconnected from event source")

    def is_live(self) -> bool:
        return (
            self._state is ConnectionState.CONNECTED
            and self._channel is not None
            and self._channel.connected
        )

    def subscribe(self, topic: str) -> bool:
        if not self.is_live():
            logger.warning("Cannot subscribe: event source not connected", extra={"topic": topic})
            return False
        self._topics.add(topic)
        return self._send(INTENT_SUBSCRIBE, topic)

    def unsubscribe(self, topic: str) -> bool:
        if topic not in self._topics:
            return False
        self._topics.discard(topic)
        if not self.is_live():
            return False
        return self._send(INTENT_UNSUBSCRIBE, topic)

    def subscribe_to_branch(self, branch_id: str) -> bool:
        return self.subscribe(branch_topic(branch_id))

    def unsubscribe_from_branch(self, branch_id: str) -> bool:
        return self.unsubscribe(branch_topic(branch_id))

    def on(self, event_name: str, callback: EventCallback) -> Unsubscribe:
        return self._registry.on(event_name, callback)

    def on_price_update(self, callback: EventCallback) -> Unsubscribe:
        return self.on(EVENT_PRICE_UPDATE, callback)

    def on_market_crash(self, callback: EventCallback) -> Unsubscribe:
        return self.on(EVENT_MARKET_CRASH, callback)

    def on_market_crash_end(self, callback: EventCallback) -> Unsubscribe:
        return self.on(EVENT_MARKET_CRASH_END, callback)

    def on_market_update(self, callback: EventCallback) -> Unsubscribe:
        return self.on(EVENT_MARKET_UPDATE, callback)

    def on_order_placed(self, callback: EventCallback) -> Unsubscribe:
        return self.on(EVENT_ORDER_PLACED, callback)

    def on_order_status_changed(self, callback: EventCallback) -> Unsubscribe:
        return self.on(EVENT_ORDER_STATUS_CHANGED, callback)

    def on_order_cancelled(self, callback: EventCallback) -> Unsubscribe:
        return self.on(EVENT_ORDER_CANCELLED, callback)

    def _send(self, intent: str, topic: str) -> bool:
        if self._channel is None:
            return False
        try:
            self._channel.send(intent, topic)
        except ChannelClosedError:
            logger.warning("Dropped intent on closed channel", extra={"intent": intent, "topic": topic})
            return False
        return True

    def _handlers_for(self, epoch: int) -> ChannelHandlers:
        def current() -> bool:
            return epoch == self._epoch

        def on_connect() -> None:
            if current():
                self._state = ConnectionState.CONNECTED

        def on_disconnect(reason: str) -> None:
            if not current():
                return
            self._state = ConnectionState.RECONNECTING
            logger.warning("Event source connection lost", extra={"reason": reason})

        def on_reconnect(attempt: int) -> None:
            if not current():
                return
            self._state = ConnectionState.CONNECTED
            logger.info("Event source reconnected", extra={"attempt": attempt})
            # rooms are per transport, so a fresh transport starts unsubscribed
            for topic in sorted(self._topics):
                self._send(INTENT_SUBSCRIBE, topic)

        def on_reconnect_failed() -> None:
            if not current():
                return
            self._channel = None
            self._state = ConnectionState.DISCONNECTED
            logger.error("Event source reconnection gave up")

        def on_message(event: str, data: Any) -> None:
            if current():
                self._registry.emit(event, data)

        return ChannelHandlers(
            on_connect=on_connect,
            on_disconnect=on_disconnect,
            on_reconnect=on_reconnect,
            on_reconnect_failed=on_reconnect_failed,
            on_message=on_message,
        )


def build_connection_manager(settings: Settings) -> ConnectionManager:
    headers = {"Authorization": f"Bearer {settings.api_token}"} if settings.api_token else None
    return ConnectionManager(
        default_target=settings.resolved_socket_url(),
        channel_factory=websocket_channel_factory(
            reconnection_attempts=settings.reconnection_attempts,
            reconnection_delay_seconds=settings.reconnection_delay_seconds,
            connect_timeout_seconds=settings.connect_timeout_seconds,
            headers=headers,
        ),
    )


_shared_manager: ConnectionManager | None = None


def get_connection_manager(settings: Settings | None = None) -> ConnectionManager:
    """Return the process-wide manager, building it on first use.

    The shared instance lives until :func:`shutdown_connection_manager`; every
    screen or watcher reuses it instead of opening its own connection.
    """
    global _shared_manager
    if _shared_manager is None:
        _shared_manager = build_connection_manager(settings or Settings())
    return _shared_manager


def shutdown_connection_manager() -> None:
    global _shared_manager
    if _shared_manager is None:
        return
    _shared_manager.disconnect()
    _shared_manager = None
