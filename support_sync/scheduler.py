# support_sync/scheduler.py
import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Hashable
from enum import Enum
from typing import Any

from support_sync.infrastructure.logger import get_logger

Tick = Callable[[], Awaitable[Any]]


class PollKind(Enum):
    ROOMS = "rooms"
    MESSAGES = "messages"
    NOTIFICATIONS = "notifications"


class SyncScheduler:
    """
    Periodic polling loops, at most one per kind.

    Each loop is bound to a scope (an identity or a room id). Starting a kind
    for another scope (or interval) replaces the running loop; starting it
    again with the same scope and interval leaves it alone. A failing tick
    is logged and the loop keeps going.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or get_logger("SyncScheduler")
        self._loops: dict[PollKind, tuple[Hashable, float, asyncio.Task]] = {}

    def is_running(self, kind: PollKind) -> bool:
        loop = self._loops.get(kind)
        return loop is not None and not loop[2].done()

    def active_scope(self, kind: PollKind) -> Hashable | None:
        if not self.is_running(kind):
            return None
        return self._loops[kind][0]

    def interval(self, kind: PollKind) -> float | None:
        if not self.is_running(kind):
            return None
        return self._loops[kind][1]

    @property
    def running(self) -> dict[PollKind, Hashable]:
        return {kind: scope for kind, (scope, _, task) in self._loops.items() if not task.done()}

    async def start(
        self, kind: PollKind, scope: Hashable, interval: float, tick: Tick
    ) -> bool:
        """Start polling ``kind`` for ``scope``; returns False if it already was."""
        current = self._loops.get(kind)
        if (
            current is not None
            and current[0] == scope
            and current[1] == interval
            and not current[2].done()
        ):
            return False
        await self.stop(kind)

        task = asyncio.create_task(
            self._run(kind, scope, interval, tick), name=f"poll:{kind.value}:{scope}"
        )
        self._loops[kind] = (scope, interval, task)
        self.logger.info(f"Started {kind.value} polling for {scope} every {interval}s")
        return True

    async def stop(self, kind: PollKind) -> None:
        loop = self._loops.pop(kind, None)
        if loop is None:
            return
        scope, _, task = loop
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self.logger.info(f"Stopped {kind.value} polling for {scope}")

    async def stop_all(self) -> None:
        for kind in list(self._loops):
            await self.stop(kind)

    async def _run(self, kind: PollKind, scope: Hashable, interval: float, tick: Tick) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except Exception as e:
                self.logger.error(f"{kind.value} poll for {scope} failed: {str(e)}")
