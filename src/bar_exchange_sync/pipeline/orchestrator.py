from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from bar_exchange_sync.core.config import Settings
from bar_exchange_sync.core.entities import EntityKind, EntityRecord, coerce_id, extract_id
from bar_exchange_sync.pipeline.scheduler import FallbackScheduler, SchedulerMode
from bar_exchange_sync.sources.connection import (
    ConnectionManager,
    ConnectionState,
    get_connection_manager,
)
from bar_exchange_sync.sources.listeners import EventCallback, EventListenerRegistry, Unsubscribe
from bar_exchange_sync.sources.rest import BarExchangeRESTClient
from bar_exchange_sync.transforms.grouping import STATUS_CANCELLED, OrderGroup, group_orders
from bar_exchange_sync.transforms.store import EntityStore

logger = logging.getLogger(__name__)

CHANGE_EVENT = "changed"
PRICE_EXTREMA_FIELDS = ("highestDailyPrice", "lowestDailyPrice")


class SyncNotStartedError(RuntimeError):
    """Raised when a reconciliation is requested from a pipeline that is not running."""


@dataclass(frozen=True, slots=True)
class ReconcileSummary:
    orders: int
    branches: int
    items: int | None


class LiveSyncPipeline:
    """Keeps orders, items and branches converged from push events and bulk fetches.

    Push handlers and reconciliation fetches both feed the same
    :class:`EntityStore` instances, so either path reaches the same merged
    state. Results of a fetch that lands after :meth:`stop` are discarded.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        connection: ConnectionManager | None = None,
        rest_client: BarExchangeRESTClient | None = None,
        branch_id: str | None = None,
    ) -> None:
        self._settings = settings
        self._connection = connection or get_connection_manager(settings)
        self._owns_rest = rest_client is None
        self._rest = rest_client or BarExchangeRESTClient(
            base_url=settings.api_base_url,
            timeout_seconds=settings.rest_timeout_seconds,
            retries=settings.rest_max_retries,
            token=settings.api_token,
        )
        self._branch_id = branch_id or settings.branch_id
        self._window = timedelta(hours=settings.grouping_window_hours)

        self.orders = EntityStore(EntityKind.ORDER)
        self.items = EntityStore(EntityKind.ITEM)
        self.branches = EntityStore(EntityKind.BRANCH)

        self._pending_updates: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()
        self._changes = EventListenerRegistry()
        self._generation = 0
        self._active = False
        self._scheduler: FallbackScheduler | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._reconcile_again = False

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def branch_id(self) -> str | None:
        return self._branch_id

    @property
    def active(self) -> bool:
        return self._active

    @property
    def mode(self) -> SchedulerMode:
        if self._scheduler is None:
            return SchedulerMode.UNATTACHED
        return self._scheduler.mode

    def is_live(self) -> bool:
        return self._connection.is_live()

    def pending_update_ids(self) -> tuple[str, ...]:
        return tuple(self._pending_updates)

    def on_change(self, callback: EventCallback) -> Unsubscribe:
        """``callback`` receives the :class:`EntityKind` that changed."""
        return self._changes.on(CHANGE_EVENT, callback)

    async def start(self) -> None:
        if self._scheduler is not None:
            raise RuntimeError("pipeline already started")
        self._generation += 1
        self._active = True
        self._scheduler = FallbackScheduler(
            is_live=self._connection.is_live,
            connect=self._connect_and_subscribe,
            reconcile=self.reconcile,
            attach_listeners=self._attach_listeners,
            can_connect=lambda: self._connection.state is ConnectionState.DISCONNECTED,
            probe_interval_seconds=self._settings.probe_interval_seconds,
            poll_interval_seconds=self._settings.poll_interval_seconds,
        )
        await self._scheduler.start()

    def stop(self) -> None:
        if not self._active and self._scheduler is None:
            return
        self._active = False
        self._generation += 1
        if self._scheduler is not None:
            self._scheduler.stop()
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            self._reconcile_task = None
        if self._branch_id is not None:
            self._connection.unsubscribe_from_branch(self._branch_id)

    async def aclose(self) -> None:
        self.stop()
        if self._owns_rest:
            await self._rest.aclose()

    async def reconcile(self) -> ReconcileSummary | None:
        """Fetch the authoritative record sets and replace the local snapshot.

        Returns ``None`` when the pipeline was stopped while the requests
        were in flight; nothing is applied in that case.
        """
        if not self._active:
            raise SyncNotStartedError("reconcile() requires a started pipeline")
        generation = self._generation

        orders = await self._rest.fetch_orders()
        branches = await self._rest.fetch_branches()
        items = await self._rest.fetch_items(self._branch_id) if self._branch_id is not None else None

        if generation != self._generation or not self._active:
            logger.debug("Discarding reconciliation result from a stopped run")
            return None

        order_count = self.orders.replace_all(orders)
        branch_count = self.branches.replace_all(branches)
        item_count = self.items.replace_all(items) if items is not None else None
        for order_id in [order_id for order_id in self._pending_updates if order_id in self.orders]:
            del self._pending_updates[order_id]

        logger.info(
            "Reconciled snapshot",
            extra={"orders": order_count, "branches": branch_count, "items": item_count},
        )
        self._notify(EntityKind.ORDER)
        self._notify(EntityKind.BRANCH)
        if item_count is not None:
            self._notify(EntityKind.ITEM)
        return ReconcileSummary(orders=order_count, branches=branch_count, items=item_count)

    def request_reconcile(self) -> None:
        """Coalesce signal-driven fetches: one in flight, at most one queued behind it."""
        if not self._active:
            return
        if self._reconcile_task is not None and not self._reconcile_task.done():
            self._reconcile_again = True
            return
        self._reconcile_task = asyncio.get_running_loop().create_task(
            self._run_requested_reconcile(), name="sync-signal-reconcile"
        )

    def grouped_orders(self) -> list[OrderGroup]:
        return group_orders(self.orders.records(), window=self._window)

    def crashing_branches(self) -> tuple[EntityRecord, ...]:
        return tuple(branch for branch in self.branches.records() if branch.get("marketCrashActive") is True)

    async def _connect_and_subscribe(self) -> None:
        await self._connection.connect()
        if self._branch_id is not None:
            self._connection.subscribe_to_branch(self._branch_id)

    async def _run_requested_reconcile(self) -> None:
        while True:
            self._reconcile_again = False
            try:
                await self.reconcile()
            except SyncNotStartedError:
                return
            except Exception:
                logger.exception("Signal-triggered reconciliation failed")
            if not self._reconcile_again or not self._active:
                return

    def _attach_listeners(self) -> Unsubscribe:
        connection = self._connection
        unsubscribers = [
            connection.on_price_update(self._handle_price_update),
            connection.on_market_crash(self._handle_market_crash),
            connection.on_market_crash_end(self._handle_market_crash_end),
            connection.on_market_update(self._handle_market_update),
            connection.on_order_placed(self._handle_order_placed),
            connection.on_order_status_changed(self._handle_order_status_changed),
            connection.on_order_cancelled(self._handle_order_cancelled),
        ]

        def detach() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return detach

    def _notify(self, kind: EntityKind) -> None:
        self._changes.emit(CHANGE_EVENT, kind)

    def _handle_price_update(self, payload: Any) -> None:
        if not isinstance(payload, Mapping):
            logger.warning("Ignoring malformed price update")
            return
        item_id = coerce_id(payload.get("itemId"))
        if item_id is None:
            logger.warning("Ignoring price update without itemId")
            return
        if item_id not in self.items:
            logger.debug("Price update for an item outside the snapshot", extra={"item_id": item_id})
            return

        update: dict[str, Any] = {"_id": item_id}
        if "oldPrice" in payload:
            update["previousPrice"] = payload["oldPrice"]
        if "newPrice" in payload:
            update["currentPrice"] = payload["newPrice"]
        for field_name in PRICE_EXTREMA_FIELDS:
            if field_name in payload:
                update[field_name] = payload[field_name]
        self.items.apply(update)
        self._notify(EntityKind.ITEM)

    def _set_crash_flag(self, payload: Any, active: bool) -> bool:
        branch_id = coerce_id(payload.get("branchId")) if isinstance(payload, Mapping) else None
        if branch_id is None:
            logger.warning("Ignoring market crash event without branchId")
            return False
        self.branches.apply({"_id": branch_id, "marketCrashActive": active})
        self._notify(EntityKind.BRANCH)
        return True

    def _handle_market_crash(self, payload: Any) -> None:
        self._set_crash_flag(payload, True)

    def _handle_market_crash_end(self, payload: Any) -> None:
        # prices reset server-side when a crash ends; re-read instead of guessing
        if self._set_crash_flag(payload, False):
            self.request_reconcile()

    def _handle_market_update(self, payload: Any) -> None:
        self.request_reconcile()

    def _handle_order_placed(self, payload: Any) -> None:
        if not isinstance(payload, Mapping) or extract_id(payload) is None:
            logger.warning("Ignoring order_placed without an order id")
            return
        record = self.orders.apply(payload)
        if record is None:
            return
        for update in self._pending_updates.pop(record.id, []):
            self.orders.apply(update)
        self._notify(EntityKind.ORDER)

    def _handle_order_status_changed(self, payload: Any) -> None:
        self._apply_partial_order(payload, event="order_status_changed")

    def _handle_order_cancelled(self, payload: Any) -> None:
        if isinstance(payload, Mapping) and "status" not in payload:
            payload = {**payload, "status": STATUS_CANCELLED}
        self._apply_partial_order(payload, event="order_cancelled")

    def _apply_partial_order(self, payload: Any, *, event: str) -> None:
        order_id = extract_id(payload) if isinstance(payload, Mapping) else None
        if order_id is None:
            logger.warning("Ignoring partial order event without an order id", extra={"event": event})
            return
        if order_id not in self.orders:
            self._buffer_update(order_id, dict(payload))
            return
        self.orders.apply(payload)
        self._notify(EntityKind.ORDER)

    def _buffer_update(self, order_id: str, update: dict[str, Any]) -> None:
        self._pending_updates.setdefault(order_id, []).append(update)
        self._pending_updates.move_to_end(order_id)
        while len(self._pending_updates) > self._settings.pending_update_buffer_size:
            evicted, _ = self._pending_updates.popitem(last=False)
            logger.warning("Evicted buffered order update", extra={"order_id": evicted})
        logger.debug("Buffered update for an order not seen yet", extra={"order_id": order_id})
