from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from bar_exchange_sync.core.config import Settings
from bar_exchange_sync.core.entities import EntityKind, EntityRecord, Expanded, decode_record
from bar_exchange_sync.core.logging import configure_logging
from bar_exchange_sync.pipeline.orchestrator import LiveSyncPipeline
from bar_exchange_sync.sources.connection import get_connection_manager, shutdown_connection_manager
from bar_exchange_sync.transforms.grouping import OrderGroup, filter_groups, group_orders

app = typer.Typer(help="Live order and price synchronization for the bar exchange admin")
console = Console()


def _load_orders(path: Path) -> list[EntityRecord]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{path} is not valid JSON: {exc.msg}") from exc
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        raise typer.BadParameter(f"{path} must hold a JSON list of orders or an object with a 'data' list")

    records: list[EntityRecord] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        record = decode_record(EntityKind.ORDER, entry)
        if record is not None:
            records.append(record)
    return records


def _customer_label(customer: Any) -> str:
    if isinstance(customer, Expanded):
        return str(customer.data.get("name") or customer.data.get("username") or customer.id)
    if customer is None:
        return "-"
    return str(getattr(customer, "id", customer))


def _groups_table(groups: Sequence[OrderGroup], *, title: str = "Table sessions") -> Table:
    table = Table(title=title)
    table.add_column("Session")
    table.add_column("Table", justify="right")
    table.add_column("Customer")
    table.add_column("Orders", justify="right")
    table.add_column("Items", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Status")
    table.add_column("Paid")
    table.add_column("Started")

    for group in groups:
        table.add_row(
            group.id,
            group.key.table_number or "-",
            _customer_label(group.customer),
            str(len(group.member_ids)),
            str(len(group.items)),
            f"{group.total:.2f}",
            group.status or "-",
            "yes" if group.all_paid else "no",
            group.anchor_time.strftime("%Y-%m-%d %H:%M") if group.anchor_time is not None else "-",
        )
    return table


@app.command("group")
def group(
    orders_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Exported JSON order list"),
    window_hours: float | None = typer.Option(
        default=None,
        min=0.01,
        help="Session window in hours (default: BXS_GROUPING_WINDOW_HOURS)",
    ),
    status: str | None = typer.Option(default=None, help="Only show sessions with this displayed status"),
    search: str | None = typer.Option(default=None, help="Match customer name, table number or order id"),
) -> None:
    """
    Group an exported order list into table sessions without touching the network.
    """
    settings = Settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)
    window = timedelta(hours=window_hours if window_hours is not None else settings.grouping_window_hours)

    groups = group_orders(_load_orders(orders_file), window=window)
    selected = filter_groups(groups, status=status, search=search)
    console.print(_groups_table(selected))
    console.print(f"{len(selected)} of {len(groups)} sessions")


async def _watch(pipeline: LiveSyncPipeline, *, duration_seconds: float | None, refresh_seconds: float) -> None:
    dirty = True

    def _mark_dirty(_kind: EntityKind) -> None:
        nonlocal dirty
        dirty = True

    pipeline.on_change(_mark_dirty)

    try:
        await pipeline.start()
    except Exception as exc:  # pylint: disable=broad-except
        console.print(f"[red]Startup degraded:[/red] {exc}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration_seconds if duration_seconds is not None else None
    last_live: bool | None = None
    try:
        while deadline is None or loop.time() < deadline:
            live = pipeline.is_live()
            if live != last_live:
                console.print("[green]live[/green]" if live else "[yellow]offline (polling)[/yellow]")
                last_live = live
            if dirty:
                dirty = False
                console.print(_groups_table(pipeline.grouped_orders()))
                crashing = pipeline.crashing_branches()
                if crashing:
                    console.print(f"[red]Market crash active:[/red] {', '.join(b.id for b in crashing)}")
            await asyncio.sleep(refresh_seconds)
    finally:
        await pipeline.aclose()
        pipeline.connection.disconnect()


@app.command("watch")
def watch(
    branch: str | None = typer.Option(default=None, help="Branch id to subscribe to (default: BXS_BRANCH_ID)"),
    duration: float | None = typer.Option(default=None, min=1, help="Stop after this many seconds"),
    refresh_seconds: float = typer.Option(default=1.0, min=0.1, help="Minimum delay between redraws"),
) -> None:
    """
    Follow a venue live: push events when connected, slow polling when not.
    """
    settings = Settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)

    pipeline = LiveSyncPipeline(settings, connection=get_connection_manager(settings), branch_id=branch)
    try:
        asyncio.run(_watch(pipeline, duration_seconds=duration, refresh_seconds=refresh_seconds))
    except KeyboardInterrupt:
        console.print("Stopped")
    finally:
        shutdown_connection_manager()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
