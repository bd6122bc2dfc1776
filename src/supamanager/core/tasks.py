"""Task Supervisor — supervised fire-and-forget work on the event loop.

WHY
───
``create_project``, ``create_backup`` and ``restore_backup`` answer the caller
immediately and keep working afterwards.  A bare ``asyncio.create_task``
loses exceptions and can be cancelled together with the request that
spawned it.  The supervisor keeps a strong reference to every task, bounds
concurrency with a semaphore, shields the work from the caller's
cancellation and records every failure.

ARCHITECTURE
────────────
::

    TaskSupervisor(max_concurrency=8)
      ├── .spawn(name, factory)   ─ start supervised task, returns handle
      ├── .wait(name)             ─ await completion of one task
      ├── .drain()                ─ await everything in flight
      ├── .shutdown(cancel=True)  ─ cancel + await at process exit
      └── .stats()                ─ SupervisorStats

    The factory is a zero-argument callable returning a coroutine.  It must
    reflect its own outcome in state (ProjectInfo/BackupInfo/RestoreInfo);
    the supervisor only guarantees that nothing escapes unlogged.

Example::

    supervisor = TaskSupervisor(max_concurrency=4)
    supervisor.spawn("provision:p1", lambda: orchestrator._provision(...))
    await supervisor.drain()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from supamanager.core.errors import error_payload
from supamanager.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SupervisorStats:
    """Counters for the supervisor."""

    spawned: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    running: int = 0
    last_error: dict[str, Any] | None = None
    last_error_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "spawned": self.spawned,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "running": self.running,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


@dataclass
class _Entry:
    name: str
    task: asyncio.Task
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class TaskSupervisor:
    """Bounded pool of supervised asyncio tasks."""

    def __init__(self, max_concurrency: int = 8) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: dict[str, _Entry] = {}
        self._stats = SupervisorStats()
        self._closed = False

    def spawn(self, name: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Start ``factory()`` as a supervised task named ``name``.

        Names are unique among running tasks; a name is reusable once its
        previous task has finished.
        """
        if self._closed:
            raise RuntimeError("supervisor is shut down")
        existing = self._tasks.get(name)
        if existing is not None and not existing.task.done():
            raise RuntimeError(f"task {name} is already running")

        async def _run() -> Any:
            async with self._semaphore:
                return await factory()

        task = asyncio.get_running_loop().create_task(_run(), name=name)
        self._tasks[name] = _Entry(name=name, task=task)
        self._stats.spawned += 1
        self._stats.running += 1
        task.add_done_callback(self._on_done)
        logger.debug("supervisor.spawned", task=name)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._stats.running -= 1
        name = task.get_name()
        if task.cancelled():
            self._stats.cancelled += 1
            logger.warning("supervisor.task_cancelled", task=name)
            return
        exc = task.exception()
        if exc is None:
            self._stats.succeeded += 1
            return
        self._stats.failed += 1
        self._stats.last_error = error_payload(exc)
        self._stats.last_error_at = datetime.now(UTC)
        logger.error(
            "supervisor.task_failed",
            task=name,
            error=self._stats.last_error,
            exc_info=exc,
        )

    async def wait(self, name: str) -> Any:
        """Wait for the named task; re-raises its exception."""
        entry = self._tasks.get(name)
        if entry is None:
            raise KeyError(name)
        # shield so the waiter's cancellation never kills supervised work
        return await asyncio.shield(entry.task)

    async def drain(self) -> None:
        """Wait until every task currently known has finished."""
        while True:
            pending = [e.task for e in self._tasks.values() if not e.task.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def shutdown(self, *, cancel: bool = True) -> None:
        """Stop accepting work and finish (or cancel) what is in flight."""
        self._closed = True
        pending = [e.task for e in self._tasks.values() if not e.task.done()]
        if cancel:
            for task in pending:
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def running(self) -> list[str]:
        return [name for name, e in self._tasks.items() if not e.task.done()]

    def stats(self) -> SupervisorStats:
        return self._stats
