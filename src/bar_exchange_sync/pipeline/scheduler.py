from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_INTERVAL_SECONDS = 300.0


class SchedulerMode(StrEnum):
    UNATTACHED = "unattached"
    LISTENING = "listening"
    POLLING = "polling"
    STOPPED = "stopped"


class FallbackScheduler:
    """Keeps one monitored resource fresh through push, or through polling when push is down.

    A fast liveness probe decides between two modes. ``LISTENING`` relies on
    push listeners (attached once, on first entry, and kept for the lifetime
    of the scheduler). ``POLLING`` runs a single slow loop that re-invokes the
    reconciliation fetch and, when the connection is fully down, retries it.
    """

    def __init__(
        self,
        *,
        is_live: Callable[[], bool],
        connect: Callable[[], Awaitable[Any]],
        reconcile: Callable[[], Awaitable[Any]],
        attach_listeners: Callable[[], Callable[[], None]],
        can_connect: Callable[[], bool] = lambda: True,
        probe_interval_seconds: float = DEFAULT_PROBE_INTERVAL_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._is_live = is_live
        self._connect = connect
        self._reconcile = reconcile
        self._attach_listeners = attach_listeners
        self._can_connect = can_connect
        self._probe_interval_seconds = probe_interval_seconds
        self._poll_interval_seconds = poll_interval_seconds

        self._mode = SchedulerMode.UNATTACHED
        self._detach: Callable[[], None] | None = None
        self._attach_count = 0
        self._probe_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None

    @property
    def mode(self) -> SchedulerMode:
        return self._mode

    @property
    def attach_count(self) -> int:
        return self._attach_count

    @property
    def listeners_attached(self) -> bool:
        return self._detach is not None

    @property
    def polling_active(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def probing_active(self) -> bool:
        return self._probe_task is not None and not self._probe_task.done()

    async def start(self) -> None:
        """Baseline fetch, connect, then start probing.

        The first baseline or connect error is re-raised unmodified once the
        scheduler has settled into its degraded mode, so the caller can report
        it while the resource keeps converging in the background.
        """
        if self._mode is not SchedulerMode.UNATTACHED:
            raise RuntimeError(f"scheduler cannot start from mode {self._mode}")

        startup_error: BaseException | None = None
        try:
            await self._reconcile()
        except Exception as exc:
            logger.error("Baseline reconciliation failed", extra={"reason": exc.__class__.__name__})
            startup_error = exc

        if self._mode is SchedulerMode.STOPPED:
            return

        try:
            await self._connect()
        except Exception as exc:
            if startup_error is None:
                startup_error = exc
            if self._mode is not SchedulerMode.STOPPED:
                self._enter_polling()
        else:
            if self._mode is not SchedulerMode.STOPPED:
                self._enter_listening()

        if self._mode is not SchedulerMode.STOPPED:
            self._probe_task = asyncio.create_task(self._probe_loop(), name="sync-liveness-probe")

        if startup_error is not None:
            raise startup_error

    def stop(self) -> None:
        self._mode = SchedulerMode.STOPPED
        for task in (self._probe_task, self._poll_task, self._connect_task):
            if task is not None:
                task.cancel()
        self._probe_task = None
        self._poll_task = None
        self._connect_task = None
        if self._detach is not None:
            detach, self._detach = self._detach, None
            detach()

    def probe_once(self) -> SchedulerMode:
        if self._mode is SchedulerMode.STOPPED:
            return self._mode
        if self._is_live():
            if self._mode is not SchedulerMode.LISTENING:
                logger.info("Live channel available; listening for push events")
                self._enter_listening()
        elif self._mode is not SchedulerMode.POLLING:
            logger.warning(
                "Live channel unavailable; falling back to polling",
                extra={"poll_interval_seconds": self._poll_interval_seconds},
            )
            self._enter_polling()
        return self._mode

    async def poll_once(self) -> None:
        if self._mode is not SchedulerMode.POLLING:
            return
        if self._can_connect() and self._connect_task is None:
            self._connect_task = asyncio.create_task(self._attempt_connect(), name="sync-reconnect")
        try:
            await self._reconcile()
        except Exception:
            logger.exception("Fallback reconciliation failed; retrying next poll")

    def _enter_listening(self) -> None:
        self._mode = SchedulerMode.LISTENING
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        if self._detach is None and self._attach_count == 0:
            self._detach = self._attach_listeners()
            self._attach_count += 1

    def _enter_polling(self) -> None:
        self._mode = SchedulerMode.POLLING
        if not self.polling_active:
            self._poll_task = asyncio.create_task(self._poll_loop(), name="sync-fallback-poll")

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self._probe_interval_seconds)
            self.probe_once()

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval_seconds)
            await self.poll_once()

    async def _attempt_connect(self) -> None:
        try:
            await self._connect()
        except Exception as exc:
            logger.warning("Reconnect from polling mode failed", extra={"reason": exc.__class__.__name__})
        else:
            self.probe_once()
        finally:
            self._connect_task = None
