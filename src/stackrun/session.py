"""Interactive build/run session for one stack.

WHY
───
A developer edits code, presses a key, and gets a freshly built and
restarted cluster. Each cycle must leave nothing behind from the previous
one: the session owns exactly one ``RunContext`` at a time and tears it
down completely before building again.

ARCHITECTURE
────────────
::

    IDLE ──start──► BUILDING ──► RUNNING ──► WAITING_FOR_INPUT
                       ▲                         │
                       │          'r'            │
                       └────── REFRESHING ◄──────┤
                                                 │ 'q' / Ctrl-C
                                                 ▼
                                   QUITTING ──► TORN_DOWN

    cycle
      ├── teardown(previous RunContext)    ─ TeardownError after trying all
      ├── build_stack                      ─ failures stop the cycle here
      ├── provision network + volume
      ├── RunStorageTask                   ─ only with buckets, failure stops the cycle
      ├── settle_all(RunFunctionTask ...)  ─ sorted by name, previous ports preferred
      └── settle_all(RunGatewayTask ...)   ─ one per API

Failures of a cycle are returned in its ``CycleResult``; only teardown
failures are raised.
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import AsyncIterable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from stackrun.build import build_stack
from stackrun.config import StackRunSettings
from stackrun.errors import StackRunError, TaskGroupError, TeardownError
from stackrun.logging import LogContext, get_logger
from stackrun.models import Image, RunContext, Stack
from stackrun.run import (
    PortAllocator,
    RunFunctionTask,
    RunGatewayTask,
    RunStorageTask,
    container_subscriptions,
    gateway_service_name,
    network_name,
    provision,
    sort_images,
    storage_env,
    volume_name,
)
from stackrun.run.services import STORAGE_SERVICE
from stackrun.runtime import ContainerRuntime
from stackrun.tasks import ProgressCallback, SettledGroup, Task, settle_all
from stackrun.templates import TemplateStore

logger = get_logger(__name__)

REFRESH_KEYS = frozenset({"r", "R"})
QUIT_KEYS = frozenset({"q", "Q", "\x03"})

# Bound on waiting for log/exit watchers to wind down after their container stopped
WATCHER_GRACE_SECONDS = 1.0


def new_run_id() -> str:
    """Eight random hex characters identifying one run cycle."""
    return secrets.token_hex(4)


class SessionState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    REFRESHING = "refreshing"
    QUITTING = "quitting"
    TORN_DOWN = "torn_down"


@dataclass
class CycleResult:
    """Outcome of one build/run cycle."""

    run_id: str
    builds: SettledGroup[Image] | None = None
    context: RunContext | None = None
    error: StackRunError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def failures(self) -> dict[str, BaseException]:
        """Per-function and per-service failures of the cycle, build failures first."""
        failures: dict[str, BaseException] = {}
        if self.builds is not None:
            failures.update(self.builds.errors)
        if self.context is not None:
            failures.update(self.context.failures)
            failures.update(self.context.service_failures)
        return failures


class Session:
    """Owns the live ``RunContext`` of a stack across refreshes.

    Args:
        stack: The stack to build and run
        runtime: Container runtime driving builds and containers
        templates: Installed runtime templates
        settings: Paths, ports and timeouts
        progress: Receives ``(task name, message)`` progress updates
    """

    def __init__(
        self,
        stack: Stack,
        *,
        runtime: ContainerRuntime,
        templates: TemplateStore,
        settings: StackRunSettings,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.stack = stack
        self.runtime = runtime
        self.templates = templates
        self.settings = settings
        self.progress = progress
        self.state = SessionState.IDLE
        self.context: RunContext | None = None
        self._previous_ports: dict[str, int] = {}
        self._previous_service_ports: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def start(self) -> CycleResult:
        """Run the first build/run cycle."""
        return await self._cycle()

    async def refresh(self) -> CycleResult:
        """Tear down the running cluster, rebuild every function and run again."""
        self.state = SessionState.REFRESHING
        logger.info("session.refresh", stack=self.stack.name)
        return await self._cycle()

    async def _cycle(self) -> CycleResult:
        await self.teardown()

        run_id = new_run_id()
        async with LogContext(run_id=run_id, stack=self.stack.name):
            self.state = SessionState.BUILDING
            builds = await build_stack(
                self.stack,
                runtime=self.runtime,
                templates=self.templates,
                settings=self.settings,
                progress=self.progress,
            )
            result = CycleResult(run_id=run_id, builds=builds)
            if not builds.ok:
                result.error = TaskGroupError("builds", builds.errors, builds.total)
                self.state = SessionState.WAITING_FOR_INPUT
                return result

            self.state = SessionState.RUNNING
            result.context = self.context = RunContext(run_id=run_id)
            result.error = await self._run(self.context, list(builds.results.values()))

        self.state = SessionState.WAITING_FOR_INPUT
        logger.info("session.cycle_complete", run_id=run_id, ok=result.ok)
        return result

    async def _run(self, context: RunContext, images: list[Image]) -> StackRunError | None:
        resources = await provision(self.stack.name, self.runtime, self.progress)
        context.network = resources.results.get(network_name(self.stack.name))
        context.volume = resources.results.get(volume_name(self.stack.name))
        if not resources.ok:
            return TaskGroupError("resources", resources.errors, resources.total)

        allocator = PortAllocator(self.settings.min_port, self.settings.max_port)
        service_env: dict[str, str] = {}
        if self.stack.buckets:
            args = self._service_args(context, allocator, STORAGE_SERVICE)
            storage = await self._settle_services(context, [RunStorageTask(self.stack, **args)])
            if storage.errors:
                return TaskGroupError("services", storage.errors, storage.total)
            service_env = storage_env(context.run_id, self.settings)

        subscriptions = container_subscriptions(self.stack, self.settings.gateway_port)
        tasks = [
            RunFunctionTask(
                image,
                runtime=self.runtime,
                run_id=context.run_id,
                allocator=allocator,
                settings=self.settings,
                network=context.network,
                volume=context.volume,
                subscriptions=subscriptions,
                preferred_port=self._previous_ports.get(image.name),
                stack_dir=self.stack.directory,
                service_env=service_env,
            )
            for image in sort_images(images)
        ]
        runs = await settle_all(tasks, self.progress)
        for running in runs.results.values():
            context.record(running)
        context.failures.update(runs.errors)
        self._previous_ports.update(context.ports)

        gateways = await self._settle_services(
            context,
            [
                RunGatewayTask(
                    self.stack, api, **self._service_args(context, allocator, gateway_service_name(api))
                )
                for api in sorted(self.stack.apis)
            ],
        )

        if runs.errors and gateways.errors:
            errors = {**runs.errors, **gateways.errors}
            return TaskGroupError("containers", errors, runs.total + gateways.total)
        if runs.errors:
            return TaskGroupError("functions", runs.errors, runs.total)
        if gateways.errors:
            return TaskGroupError("gateways", gateways.errors, gateways.total)
        return None

    def _service_args(self, context: RunContext, allocator: PortAllocator, name: str) -> dict[str, Any]:
        return {
            "runtime": self.runtime,
            "run_id": context.run_id,
            "allocator": allocator,
            "settings": self.settings,
            "network": context.network,
            "preferred_port": self._previous_service_ports.get(name),
        }

    async def _settle_services(self, context: RunContext, tasks: list[Task]) -> SettledGroup:
        services = await settle_all(tasks, self.progress)
        for running in services.results.values():
            context.record_service(running)
            self._previous_service_ports[running.function] = running.port
        context.service_failures.update(services.errors)
        return services

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        """Release every resource of the current ``RunContext``.

        Every container, the network and the volume are attempted even if
        some fail.

        Raises:
            TeardownError: If any resource could not be released.
        """
        context, self.context = self.context, None
        if context is None:
            return

        errors: dict[str, BaseException] = {}
        handles = context.handles()
        outcomes = await asyncio.gather(
            *(self._release_container(handle) for handle in handles),
            return_exceptions=True,
        )
        self._collect(errors, [handle.name for handle in handles], outcomes)
        await self._settle_watchers(context)

        names: list[str] = []
        releases: list[Any] = []
        if context.network is not None:
            names.append(context.network.name)
            releases.append(self.runtime.remove_network(context.network))
        if context.volume is not None:
            names.append(context.volume.name)
            releases.append(self.runtime.remove_volume(context.volume))
        self._collect(errors, names, await asyncio.gather(*releases, return_exceptions=True))

        if errors:
            logger.error("session.teardown_failed", run_id=context.run_id, failed=list(errors))
            raise TeardownError(errors)
        logger.info("session.torn_down", run_id=context.run_id, containers=len(handles))

    async def _release_container(self, handle: Any) -> None:
        await self.runtime.stop_container(handle)
        await self.runtime.remove_container(handle)

    @staticmethod
    def _collect(errors: dict[str, BaseException], names: list[str], outcomes: list[Any]) -> None:
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                errors[name] = outcome

    @staticmethod
    async def _settle_watchers(context: RunContext) -> None:
        if not context.watchers:
            return
        _, pending = await asyncio.wait(context.watchers, timeout=WATCHER_GRACE_SECONDS)
        for watcher in pending:
            watcher.cancel()
        await asyncio.gather(*context.watchers, return_exceptions=True)

    async def quit(self) -> None:
        """Tear down and end the session. Teardown errors are re-raised."""
        self.state = SessionState.QUITTING
        try:
            await self.teardown()
        finally:
            self.state = SessionState.TORN_DOWN
            logger.info("session.quit", stack=self.stack.name)

    # ------------------------------------------------------------------
    # Interactive loop
    # ------------------------------------------------------------------

    async def run(
        self,
        keys: AsyncIterable[str],
        on_cycle: Callable[[CycleResult], None] | None = None,
    ) -> None:
        """Start, then refresh or quit on key presses until quit.

        The session is always torn down on the way out, including when the
        surrounding task is cancelled.
        """
        report = on_cycle or (lambda result: None)
        try:
            report(await self.start())
            async for key in keys:
                if key in QUIT_KEYS:
                    break
                if key in REFRESH_KEYS:
                    report(await self.refresh())
        finally:
            await self.quit()


__all__ = [
    "CycleResult",
    "QUIT_KEYS",
    "REFRESH_KEYS",
    "Session",
    "SessionState",
    "new_run_id",
]
