from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, NamedTuple

from bar_exchange_sync.core.entities import (
    EntityRecord,
    Expanded,
    coerce_float,
    coerce_id,
    coerce_timestamp,
    untag_reference,
)
from bar_exchange_sync.transforms.merge import merge_reference

DEFAULT_GROUPING_WINDOW = timedelta(hours=8)

STATUS_PENDING = "pending"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"

STATUS_PRIORITY: dict[str, int] = {
    STATUS_PENDING: 4,
    "preparing": 3,
    "ready": 2,
    STATUS_DELIVERED: 1,
    STATUS_CANCELLED: 0,
}
UNKNOWN_STATUS_PRIORITY = -1

_EPOCH = datetime.min.replace(tzinfo=UTC)


class GroupKey(NamedTuple):
    branch_id: str | None
    table_number: str | None
    customer_id: str | None


def status_priority(status: str | None) -> int:
    if status is None:
        return UNKNOWN_STATUS_PRIORITY
    return STATUS_PRIORITY.get(status.lower(), UNKNOWN_STATUS_PRIORITY)


def order_timestamp(order: EntityRecord) -> datetime | None:
    return coerce_timestamp(order.get("createdAt"))


def order_total(order: EntityRecord) -> float:
    total = coerce_float(order.get("totalAmount"))
    if total is None:
        total = coerce_float(order.get("total"))
    return total or 0.0


def order_status(order: EntityRecord) -> str | None:
    status = order.get("status")
    return status.lower() if isinstance(status, str) else None


def is_paid(order: EntityRecord) -> bool:
    if order.get("paid") is True:
        return True
    payment_status = order.get("paymentStatus")
    return isinstance(payment_status, str) and payment_status.lower() == "paid"


def group_key(order: EntityRecord) -> GroupKey:
    return GroupKey(
        branch_id=order.ref_id("branch"),
        table_number=coerce_id(order.get("tableNumber")),
        customer_id=order.ref_id("user"),
    )


@dataclass(frozen=True, slots=True)
class OrderGroup:
    key: GroupKey
    anchor_time: datetime | None
    member_ids: tuple[str, ...]
    orders: tuple[EntityRecord, ...]
    items: tuple[Any, ...]
    total: float
    status: str | None
    all_paid: bool
    all_delivered: bool
    customer: Any = None

    @property
    def id(self) -> str:
        """The anchoring (most recent) order id doubles as the group id."""
        return self.member_ids[0]

    @property
    def is_group(self) -> bool:
        return len(self.member_ids) > 1


@dataclass(slots=True)
class _GroupBuilder:
    key: GroupKey
    anchor_time: datetime | None
    member_ids: list[str] = field(default_factory=list)
    orders: list[EntityRecord] = field(default_factory=list)
    items: list[Any] = field(default_factory=list)
    total: float = 0.0
    status: str | None = None
    all_paid: bool = True
    all_delivered: bool = True
    customer: Any = None

    def add(self, order: EntityRecord) -> None:
        status = order_status(order)
        if not self.member_ids:
            self.status = status
        elif status_priority(status) > status_priority(self.status):
            self.status = status

        self.member_ids.append(order.id)
        self.orders.append(order)
        self.total += order_total(order)
        line_items = order.get("items")
        if isinstance(line_items, (list, tuple)):
            self.items.extend(line_items)

        if status != STATUS_CANCELLED:
            if not is_paid(order):
                self.all_paid = False
            if status != STATUS_DELIVERED:
                self.all_delivered = False

        incoming_customer = order.get("user")
        if self.customer is None:
            self.customer = incoming_customer
        elif isinstance(incoming_customer, Expanded) and not isinstance(self.customer, Expanded):
            self.customer = merge_reference(self.customer, incoming_customer)

    def build(self) -> OrderGroup:
        return OrderGroup(
            key=self.key,
            anchor_time=self.anchor_time,
            member_ids=tuple(self.member_ids),
            orders=tuple(self.orders),
            items=tuple(self.items),
            total=self.total,
            status=self.status,
            all_paid=self.all_paid,
            all_delivered=self.all_delivered,
            customer=self.customer,
        )


def group_orders(
    orders: Iterable[EntityRecord],
    window: timedelta = DEFAULT_GROUPING_WINDOW,
) -> list[OrderGroup]:
    """Cluster orders into table sessions, most recent session first.

    Orders sharing (branch, table, customer) join the session opened by the
    most recent of them while they are strictly less than ``window`` older
    than it; a larger gap opens a new session for the same key.
    """
    ordered = sorted(
        orders,
        key=lambda order: order_timestamp(order) or _EPOCH,
        reverse=True,
    )

    builders: list[_GroupBuilder] = []
    open_by_key: dict[GroupKey, _GroupBuilder] = {}
    for order in ordered:
        key = group_key(order)
        timestamp = order_timestamp(order)
        builder = open_by_key.get(key)
        if builder is None or not _within_window(builder.anchor_time, timestamp, window):
            builder = _GroupBuilder(key=key, anchor_time=timestamp)
            builders.append(builder)
            open_by_key[key] = builder
        builder.add(order)

    return [builder.build() for builder in builders]


def _within_window(anchor: datetime | None, timestamp: datetime | None, window: timedelta) -> bool:
    if anchor is None or timestamp is None:
        return anchor is None and timestamp is None
    return abs(anchor - timestamp) < window


def find_successor(previous: OrderGroup, groups: Sequence[OrderGroup]) -> OrderGroup | None:
    """Re-find a group after a rebuild: shared members first, then the same key."""
    previous_members = set(previous.member_ids)
    for candidate in groups:
        if previous_members.intersection(candidate.member_ids):
            return candidate
    for candidate in groups:
        if candidate.key == previous.key:
            return candidate
    return None


def _customer_search_fields(customer: Any) -> list[str]:
    if isinstance(customer, Expanded):
        return [str(customer.data.get(name) or "") for name in ("name", "username")]
    return []


def filter_groups(
    groups: Iterable[OrderGroup],
    *,
    status: str | None = None,
    branch_id: str | None = None,
    search: str | None = None,
) -> list[OrderGroup]:
    needle = search.strip().lower() if search else ""
    selected: list[OrderGroup] = []
    for group in groups:
        if status is not None and status.lower() != "all" and group.status != status.lower():
            continue
        if branch_id is not None and group.key.branch_id != branch_id:
            continue
        if needle:
            haystack = [
                *_customer_search_fields(group.customer),
                group.key.table_number or "",
                *group.member_ids,
            ]
            if not any(needle in value.lower() for value in haystack):
                continue
        selected.append(group)
    return selected


def group_to_payload(group: OrderGroup) -> dict[str, Any]:
    anchor = group.orders[0]
    return {
        "_id": group.id,
        "isGroup": group.is_group,
        "orderIds": list(group.member_ids),
        "allOrders": [order.to_payload() for order in group.orders],
        "items": list(group.items),
        "totalAmount": group.total,
        "status": group.status,
        "allPaid": group.all_paid,
        "allDelivered": group.all_delivered,
        "user": untag_reference(group.customer),
        "branch": untag_reference(anchor.get("branch")),
        "tableNumber": anchor.get("tableNumber"),
        "createdAt": group.anchor_time.isoformat() if group.anchor_time is not None else None,
    }
