from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from bar_exchange_sync.core.config import Settings
from bar_exchange_sync.core.entities import EntityKind, Expanded, Reference
from bar_exchange_sync.pipeline.orchestrator import LiveSyncPipeline, ReconcileSummary, SyncNotStartedError
from bar_exchange_sync.pipeline.scheduler import SchedulerMode
from bar_exchange_sync.sources.connection import ConnectionManager, ConnectionState
from bar_exchange_sync.sources.rest import BarExchangeRESTClient


class FakeBackend:
    def __init__(self) -> None:
        self.orders: list[dict[str, Any]] = [
            {
                "_id": "o1",
                "user": {"_id": "u1", "name": "Ada"},
                "branch": "b1",
                "tableNumber": 4,
                "totalAmount": 18.0,
                "status": "pending",
                "createdAt": "2026-01-15T20:00:00Z",
            }
        ]
        self.branches: list[dict[str, Any]] = [{"_id": "b1", "name": "Soho", "marketCrashActive": False}]
        self.items: list[dict[str, Any]] = [{"_id": "i1", "name": "IPA", "currentPrice": 5.0, "category": "c1"}]
        self.calls: dict[str, int] = {}
        self.gate: asyncio.Event | None = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] = self.calls.get(path, 0) + 1
        if path == "/api/orders/all":
            if self.gate is not None:
                await self.gate.wait()
            return httpx.Response(status_code=200, request=request, json=self.orders)
        if path == "/api/branches":
            return httpx.Response(status_code=200, request=request, json=self.branches)
        if path == "/api/items":
            return httpx.Response(status_code=200, request=request, json={"data": self.items})
        return httpx.Response(status_code=404, request=request)

    def order_fetches(self) -> int:
        return self.calls.get("/api/orders/all", 0)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


def _pipeline(manager: ConnectionManager, backend: FakeBackend, **settings: Any) -> LiveSyncPipeline:
    options = {"probe_interval_seconds": 60.0, "poll_interval_seconds": 60.0, **settings}
    client = BarExchangeRESTClient(
        base_url="http://bar.test/api",
        transport=httpx.MockTransport(backend.handler),
    )
    return LiveSyncPipeline(Settings(**options), connection=manager, rest_client=client, branch_id="b1")


async def _drain() -> None:
    for _ in range(10):
        await asyncio.sleep(0.005)


def test_start_populates_stores_and_subscribes_branch(manager, channel_factory, backend) -> None:
    changes: list[EntityKind] = []

    async def scenario() -> LiveSyncPipeline:
        pipeline = _pipeline(manager, backend)
        pipeline.on_change(changes.append)
        await pipeline.start()
        assert pipeline.mode is SchedulerMode.LISTENING
        assert pipeline.is_live() is True
        pipeline.stop()
        return pipeline

    pipeline = asyncio.run(scenario())

    assert len(pipeline.orders) == 1
    assert pipeline.branches.get("b1").get("name") == "Soho"
    assert pipeline.items.get("i1").get("category") == Reference(id="c1")
    assert channel_factory.last.sent == [("subscribe", "branch:b1"), ("unsubscribe", "branch:b1")]
    assert changes == [EntityKind.ORDER, EntityKind.BRANCH, EntityKind.ITEM]
    assert pipeline.mode is SchedulerMode.STOPPED


def test_push_update_keeps_expanded_references(manager, channel_factory, backend) -> None:
    async def scenario() -> LiveSyncPipeline:
        pipeline = _pipeline(manager, backend)
        await pipeline.start()
        channel_factory.last.deliver("order_status_changed", {"_id": "o1", "status": "delivered", "user": "u1"})
        pipeline.stop()
        return pipeline

    pipeline = asyncio.run(scenario())

    order = pipeline.orders.get("o1")
    assert order.get("status") == "delivered"
    assert order.get("totalAmount") == 18.0
    assert isinstance(order.get("user"), Expanded)
    assert order.get("user").data["name"] == "Ada"


def test_price_update_moves_current_price_and_keeps_previous(manager, channel_factory, backend) -> None:
    async def scenario() -> LiveSyncPipeline:
        pipeline = _pipeline(manager, backend)
        await pipeline.start()
        channel = channel_factory.last
        channel.deliver("price_update", {"itemId": "i1", "oldPrice": 5.0, "newPrice": 6.5, "highestDailyPrice": 7})
        channel.deliver("price_update", {"itemId": "i-unknown", "newPrice": 1.0})
        channel.deliver("price_update", "garbage")
        pipeline.stop()
        return pipeline

    pipeline = asyncio.run(scenario())

    item = pipeline.items.get("i1")
    assert item.get("currentPrice") == 6.5
    assert item.get("previousPrice") == 5.0
    assert item.get("highestDailyPrice") == 7
    assert item.get("name") == "IPA"
    assert "i-unknown" not in pipeline.items


def test_market_crash_flags_branch_and_end_triggers_reconcile(manager, channel_factory, backend) -> None:
    observed: dict[str, Any] = {}

    async def scenario() -> LiveSyncPipeline:
        pipeline = _pipeline(manager, backend)
        await pipeline.start()
        channel = channel_factory.last

        channel.deliver("market_crash", {"branchId": "b1"})
        observed["during"] = [branch.id for branch in pipeline.crashing_branches()]
        observed["fetches_during"] = backend.order_fetches()

        backend.items = [{"_id": "i1", "name": "IPA", "currentPrice": 4.0, "category": "c1"}]
        channel.deliver("market_crash_end", {"branchId": "b1"})
        observed["after"] = [branch.id for branch in pipeline.crashing_branches()]
        await _drain()
        pipeline.stop()
        return pipeline

    pipeline = asyncio.run(scenario())

    assert observed["during"] == ["b1"]
    assert observed["fetches_during"] == 1
    assert observed["after"] == []
    assert backend.order_fetches() == 2
    assert pipeline.items.get("i1").get("currentPrice") == 4.0


def test_back_to_back_signals_share_one_fetch(manager, channel_factory, backend) -> None:
    async def scenario() -> None:
        pipeline = _pipeline(manager, backend)
        await pipeline.start()
        for _ in range(3):
            channel_factory.last.deliver("market_update", {"branchId": "b1"})
        await _drain()
        pipeline.stop()

    asyncio.run(scenario())

    assert backend.order_fetches() == 2


def test_cancel_before_create_is_replayed(manager, channel_factory, backend) -> None:
    observed: dict[str, Any] = {}

    async def scenario() -> LiveSyncPipeline:
        pipeline = _pipeline(manager, backend)
        await pipeline.start()
        channel = channel_factory.last

        channel.deliver("order_cancelled", {"_id": "o2"})
        observed["pending"] = pipeline.pending_update_ids()
        observed["known"] = "o2" in pipeline.orders

        channel.deliver("order_placed", {"_id": "o2", "status": "pending", "tableNumber": 4, "user": "u1"})
        pipeline.stop()
        return pipeline

    pipeline = asyncio.run(scenario())

    assert observed == {"pending": ("o2",), "known": False}
    assert pipeline.orders.get("o2").get("status") == "cancelled"
    assert pipeline.pending_update_ids() == ()


def test_reconcile_drops_buffered_updates_for_returned_orders(manager, channel_factory, backend) -> None:
    async def scenario() -> tuple[LiveSyncPipeline, ReconcileSummary | None]:
        pipeline = _pipeline(manager, backend)
        await pipeline.start()
        channel_factory.last.deliver("order_status_changed", {"_id": "o3", "status": "delivered"})
        channel_factory.last.deliver("order_status_changed", {"_id": "o4", "status": "delivered"})
        backend.orders = [*backend.orders, {"_id": "o3", "status": "pending", "tableNumber": 2}]
        summary = await pipeline.reconcile()
        pipeline.stop()
        return pipeline, summary

    pipeline, summary = asyncio.run(scenario())

    assert summary == ReconcileSummary(orders=2, branches=1, items=1)
    assert pipeline.orders.get("o3").get("status") == "pending"
    assert pipeline.pending_update_ids() == ("o4",)


def test_pending_buffer_is_bounded(manager, channel_factory, backend) -> None:
    async def scenario() -> LiveSyncPipeline:
        pipeline = _pipeline(manager, backend, pending_update_buffer_size=2)
        await pipeline.start()
        for order_id in ("x1", "x2", "x3"):
            channel_factory.last.deliver("order_status_changed", {"_id": order_id, "status": "delivered"})
        pipeline.stop()
        return pipeline

    pipeline = asyncio.run(scenario())

    assert pipeline.pending_update_ids() == ("x2", "x3")


def test_reconcile_result_is_discarded_after_stop(manager, backend) -> None:
    async def scenario() -> tuple[LiveSyncPipeline, ReconcileSummary | None]:
        pipeline = _pipeline(manager, backend)
        await pipeline.start()

        backend.gate = asyncio.Event()
        backend.orders = []
        in_flight = asyncio.create_task(pipeline.reconcile())
        await asyncio.sleep(0.01)
        pipeline.stop()
        backend.gate.set()
        return pipeline, await in_flight

    pipeline, result = asyncio.run(scenario())

    assert result is None
    assert len(pipeline.orders) == 1


def test_reconcile_requires_a_running_pipeline(manager, backend) -> None:
    pipeline = _pipeline(manager, backend)

    with pytest.raises(SyncNotStartedError):
        asyncio.run(pipeline.reconcile())

    pipeline.stop()
    pipeline.stop()


def test_degraded_start_polls_and_still_loads_baseline(manager, channel_factory, backend) -> None:
    channel_factory.failures.append(ConnectionRefusedError("socket down"))

    async def scenario() -> LiveSyncPipeline:
        pipeline = _pipeline(manager, backend)
        with pytest.raises(ConnectionRefusedError):
            await pipeline.start()
        assert pipeline.mode is SchedulerMode.POLLING
        assert pipeline.is_live() is False
        pipeline.stop()
        return pipeline

    pipeline = asyncio.run(scenario())

    assert len(pipeline.orders) == 1
    assert backend.order_fetches() == 1


def test_stop_during_reconnect_leaves_shared_manager_reusable(manager, channel_factory, backend) -> None:
    channel_factory.failures.append(ConnectionRefusedError("socket down"))

    async def scenario() -> None:
        first = _pipeline(manager, backend)
        with pytest.raises(ConnectionRefusedError):
            await first.start()

        channel_factory.hold_open = True
        await first._scheduler.poll_once()
        await asyncio.sleep(0)
        assert manager.state is ConnectionState.CONNECTING
        first.stop()
        await asyncio.sleep(0)
        assert manager.state is ConnectionState.DISCONNECTED

        channel_factory.hold_open = False
        second = _pipeline(manager, backend)
        await second.start()
        assert second.mode is SchedulerMode.LISTENING
        second.stop()

    asyncio.run(scenario())


def test_grouped_orders_use_configured_window(manager, channel_factory, backend) -> None:
    backend.orders = [
        {"_id": "a", "branch": "b1", "tableNumber": 1, "user": "u1", "createdAt": "2026-01-15T20:00:00Z"},
        {"_id": "b", "branch": "b1", "tableNumber": 1, "user": "u1", "createdAt": "2026-01-15T18:00:00Z"},
    ]

    async def scenario() -> tuple[int, int]:
        wide = _pipeline(manager, backend)
        await wide.start()
        wide_count = len(wide.grouped_orders())
        wide.stop()

        narrow = _pipeline(manager, backend, grouping_window_hours=1.0)
        await narrow.start()
        narrow_count = len(narrow.grouped_orders())
        narrow.stop()
        return wide_count, narrow_count

    assert asyncio.run(scenario()) == (1, 2)
