"""Asyncio periodic runner for reconciliation loops.

The health sweep, the quota recomputation and the backup schedule driver
each run on their own ``PeriodicRunner``: an asyncio task that calls an
async tick callback every ``interval_seconds`` on the same event loop as the
orchestrator, so the callbacks share the registry and its locks.

┌──────────────────────────────────────────────────────────────────────┐
│  PeriodicRunner                                                      │
│                                                                      │
│   start(tick_callback, interval)                                     │
│      └── loop task:                                                  │
│            while not stop_event.wait(interval):                      │
│                tick_count += 1                                       │
│                await tick_callback()   ◄── failures logged, loop     │
│                                            keeps running             │
│   stop()                                                             │
│      └── stop_event.set(); await loop task (cancel after grace)      │
└──────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[Any]]


class PeriodicRunner:
    """Runs an async callback at a fixed interval until stopped.

    Example:
        >>> runner = PeriodicRunner("health-sweep")
        >>> runner.start(orchestrator.health_sweep, interval_seconds=30)
        >>> # ... later ...
        >>> await runner.stop()
    """

    def __init__(self, name: str, *, run_immediately: bool = False) -> None:
        self.name = name
        self._run_immediately = run_immediately
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._tick_count = 0
        self._failures = 0
        self._last_tick: datetime | None = None
        self._last_error: str | None = None
        self._interval: float = 0.0

    def start(self, tick_callback: TickCallback, interval_seconds: float) -> None:
        """Start the loop as a task on the running event loop."""
        if self.is_running:
            logger.warning("PeriodicRunner %s already started", self.name)
            return
        self._interval = interval_seconds
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(
            self._loop(tick_callback, interval_seconds), name=f"periodic:{self.name}"
        )

    async def _loop(self, tick_callback: TickCallback, interval_seconds: float) -> None:
        logger.info("PeriodicRunner %s started (interval=%.1fs)", self.name, interval_seconds)
        first = self._run_immediately
        while True:
            if not first:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
                if self._stop_event.is_set():
                    break
            first = False
            await self.tick(tick_callback)
        logger.info("PeriodicRunner %s stopped", self.name)

    async def tick(self, tick_callback: TickCallback) -> None:
        """Run one tick; exceptions are logged and counted, never raised."""
        self._tick_count += 1
        self._last_tick = datetime.now(UTC)
        try:
            await tick_callback()
        except Exception as exc:
            self._failures += 1
            self._last_error = str(exc)
            logger.exception("PeriodicRunner %s tick failed: %s", self.name, exc)

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Stop the loop, waiting up to ``grace_seconds`` for the current tick."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=grace_seconds)
        except TimeoutError:
            logger.warning("PeriodicRunner %s did not stop cleanly, cancelling", self.name)
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.is_running,
            "runner": self.name,
            "tick_count": self._tick_count,
            "failures": self._failures,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "last_error": self._last_error,
            "interval_seconds": self._interval,
        }
