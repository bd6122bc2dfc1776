"""Mock Runtime Adapters — test doubles for failure simulation.

All of them extend ``StubRuntimeAdapter`` so the simulated containers and
volumes keep working; only the failure behaviour differs.

Architecture::

    StubRuntimeAdapter
    ├── FailingRuntimeAdapter   (chosen operations always fail)
    ├── FlakeyRuntimeAdapter    (first N calls raise RuntimeUnavailableError)
    ├── SlowRuntimeAdapter      (adds latency to exec and chosen operations)
    └── UnhealthyServiceAdapter (named services never pass a probe)

Example::

    # Docker daemon drops twice, then recovers
    adapter = FlakeyRuntimeAdapter(failures=2, operations={"create_network"})

    # Volume creation always fails -> provisioning must roll back
    adapter = FailingRuntimeAdapter(operations={"create_volume"})
"""

from __future__ import annotations

import asyncio
from typing import Any

from supamanager.core.errors import RuntimeOperationError, RuntimeUnavailableError
from supamanager.runtime._base import StubRuntimeAdapter


class FailingRuntimeAdapter(StubRuntimeAdapter):
    """Operations named in ``operations`` always fail.

    ``unavailable=True`` raises ``RuntimeUnavailableError`` (retryable),
    otherwise ``RuntimeOperationError``.
    """

    def __init__(self, *, operations: set[str], unavailable: bool = False, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failing_operations = set(operations)
        self.raise_unavailable = unavailable

    @property
    def runtime_name(self) -> str:
        return "failing"

    def _record(self, *call: Any) -> None:
        if call[0] in self.failing_operations:
            self.calls.append(call)
            if self.raise_unavailable:
                raise RuntimeUnavailableError(f"failing: {call[0]} unavailable")
            raise RuntimeOperationError(f"failing: {call[0]} failure injected")
        super()._record(*call)


class FlakeyRuntimeAdapter(StubRuntimeAdapter):
    """The first ``failures`` matching calls raise ``RuntimeUnavailableError``.

    With ``operations=None`` every operation counts towards the budget.
    """

    def __init__(self, *, failures: int = 1, operations: set[str] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failures_remaining = failures
        self.flakey_operations = operations
        self.injected = 0

    @property
    def runtime_name(self) -> str:
        return "flakey"

    def _record(self, *call: Any) -> None:
        matches = self.flakey_operations is None or call[0] in self.flakey_operations
        if matches and self.failures_remaining > 0:
            self.failures_remaining -= 1
            self.injected += 1
            raise RuntimeUnavailableError(f"flakey: {call[0]} unavailable")
        super()._record(*call)


class SlowRuntimeAdapter(StubRuntimeAdapter):
    """Adds ``latency`` seconds to exec calls and to every operation named in
    ``operations`` (caller-timeout and interleaving tests)."""

    def __init__(self, *, latency: float = 0.5, operations: set[str] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.latency = latency
        self.slow_operations = set(operations or ())

    async def _call(self, operation, func, *args):
        if operation in self.slow_operations:
            await asyncio.sleep(self.latency)
        return await super()._call(operation, func, *args)

    @property
    def runtime_name(self) -> str:
        return "slow"

    async def _do_exec(self, container_id, cmd, stdin, timeout):
        await asyncio.sleep(self.latency)
        return await super()._do_exec(container_id, cmd, stdin, timeout)


class UnhealthyServiceAdapter(StubRuntimeAdapter):
    """Named services never pass a probe (the containers still run).

    Example::

        adapter = UnhealthyServiceAdapter(services={"auth"})
        # provisioning waits out the health timeout, then rolls back
    """

    def __init__(self, *, services: set[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.unhealthy_services = set(services)

    @property
    def runtime_name(self) -> str:
        return "unhealthy"

    async def _do_probe(self, container_id, probe):
        container = self.containers.get(container_id)
        if container is not None and container.spec.name in self.unhealthy_services:
            self._record("probe", container_id)
            return False
        return await super()._do_probe(container_id, probe)
