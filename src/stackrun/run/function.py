"""Run one built function image as a container.

Steps per function:

1. Claim a host port in the shared ``PortAllocator`` (the given port, else
   the next free one).
2. Resolve the shared network's daemon-side name; on failure warn once and
   fall back to the default network.
3. Compose the container: ``{function}-{run_id}``, gateway port bound to
   the host port, alias = function name on the shared network, shared
   volume mount. The environment holds subscriptions, service endpoints
   and the stack ``.env``, later entries winning.
4. Truncate ``{log_dir}/{function}.txt`` and follow the container's stdio
   into it.
5. Race the start against ``container_start_timeout``.

The exit watcher only logs; a container exiting later does not change the
task's result.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from stackrun.config import StackRunSettings
from stackrun.envfile import ENV_FILE, parse_env_file
from stackrun.errors import (
    ContainerStartTimeout,
    ErrorContext,
    NetworkResolutionWarning,
    StackRunError,
)
from stackrun.logging import get_logger
from stackrun.models import Image, RunningContainer
from stackrun.run.ports import PortAllocator
from stackrun.runtime import (
    DEFAULT_NETWORK,
    ContainerHandle,
    ContainerRuntime,
    ContainerSpec,
    NetworkHandle,
    VolumeHandle,
)
from stackrun.tasks import Task
from stackrun.timeout import TimeoutExpired, first_of

logger = get_logger(__name__)

RUN_ID_LABEL = "stackrun.run-id"
SUBSCRIPTIONS_ENV = "LOCAL_SUBSCRIPTIONS"
VOLUME_ENV = "STACKRUN_DEV_VOLUME"


def container_name(function_name: str, run_id: str) -> str:
    return f"{function_name}-{run_id}"


async def resolve_network(
    runtime: ContainerRuntime, network: NetworkHandle | None, context: ErrorContext
) -> str:
    """Daemon-side name of *network*, or the default network with one warning."""
    if network is None:
        return DEFAULT_NETWORK
    try:
        return await runtime.resolve_network_name(network)
    except StackRunError as exc:
        warning = NetworkResolutionWarning(
            f"Unable to resolve network {network.name}, using {DEFAULT_NETWORK}",
            context=context,
            cause=exc,
        )
        logger.warning("network.resolve_failed", **warning.to_dict())
        return DEFAULT_NETWORK


async def start_bounded(
    runtime: ContainerRuntime, spec: ContainerSpec, timeout: float, context: ErrorContext
) -> ContainerHandle:
    """Start *spec*, giving up after *timeout* seconds.

    Raises:
        ContainerStartTimeout: If the daemon did not report the container
            started in time.
        StackRunError: Daemon failures, with *context* merged in.
    """
    try:
        return await first_of(runtime.start_container(spec), timeout, operation=f"start {spec.name}")
    except TimeoutExpired as exc:
        raise ContainerStartTimeout(spec.image, timeout, context=context, cause=exc) from exc
    except StackRunError as exc:
        raise exc.with_context(function=context.function, image_id=context.image_id)


class RunFunctionTask(Task[RunningContainer]):
    """Start the container for one :class:`Image` and report its host port."""

    def __init__(
        self,
        image: Image,
        *,
        runtime: ContainerRuntime,
        run_id: str,
        allocator: PortAllocator,
        settings: StackRunSettings,
        network: NetworkHandle | None = None,
        volume: VolumeHandle | None = None,
        subscriptions: dict[str, list[str]] | None = None,
        port: int | None = None,
        preferred_port: int | None = None,
        stack_dir: Path | None = None,
        service_env: dict[str, str] | None = None,
    ) -> None:
        super().__init__(image.name)
        self.image = image
        self.runtime = runtime
        self.run_id = run_id
        self.allocator = allocator
        self.settings = settings
        self.network = network
        self.volume = volume
        self.subscriptions = subscriptions or {}
        self.port = port
        self.preferred_port = preferred_port
        self.stack_dir = stack_dir
        self.service_env = service_env or {}

    def _context(self) -> ErrorContext:
        return ErrorContext(function=self.image.name, image_id=self.image.id)

    async def _do(self) -> RunningContainer:
        if self.port is not None:
            port = await self.allocator.claim(self.port)
        else:
            port = await self.allocator.allocate(self.preferred_port)
        try:
            return await self._start(port)
        except BaseException:
            self.allocator.release(port)
            raise

    async def _start(self, port: int) -> RunningContainer:
        network = await self._resolve_network()
        spec = ContainerSpec(
            image=self.image.id,
            name=container_name(self.image.name, self.run_id),
            network=network,
            aliases=(self.image.name,) if network != DEFAULT_NETWORK else (),
            ports={self.settings.gateway_port: port},
            environment=self._environment(),
            volume=self.volume.name if self.volume else None,
            volume_mount=self.settings.volume_mount if self.volume else None,
            labels={RUN_ID_LABEL: self.run_id},
        )
        log_path = await asyncio.to_thread(self._prepare_log)

        self.update(f"Starting container on port {port}")
        handle = await start_bounded(
            self.runtime, spec, self.settings.container_start_timeout, self._context()
        )

        logger.info(
            "container.started",
            function=self.image.name,
            container=spec.name,
            port=port,
            network=network,
        )
        watchers = (
            asyncio.create_task(self._follow_logs(handle, log_path)),
            asyncio.create_task(self._watch_exit(handle)),
        )
        return RunningContainer(function=self.image.name, handle=handle, port=port, watchers=watchers)

    async def _resolve_network(self) -> str:
        return await resolve_network(self.runtime, self.network, self._context())

    def _environment(self) -> dict[str, str]:
        env = {SUBSCRIPTIONS_ENV: json.dumps(self.subscriptions)}
        if self.volume is not None:
            env[VOLUME_ENV] = self.settings.volume_mount
        env.update(self.service_env)
        if self.stack_dir is not None:
            env.update(parse_env_file(Path(self.stack_dir) / ENV_FILE))
        return env

    def _prepare_log(self) -> Path:
        path = self.settings.function_log_path(self.image.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")
        return path

    async def _follow_logs(self, handle: ContainerHandle, path: Path) -> None:
        try:
            await self.runtime.stream_logs(handle, path)
        except StackRunError as exc:
            logger.warning("container.logs_failed", function=self.image.name, error=str(exc))

    async def _watch_exit(self, handle: ContainerHandle) -> None:
        try:
            status = await self.runtime.wait_container(handle)
        except StackRunError as exc:
            logger.warning("container.wait_failed", function=self.image.name, error=str(exc))
            return
        logger.info("container.exited", function=self.image.name, status_code=status)


__all__ = [
    "RUN_ID_LABEL",
    "RunFunctionTask",
    "container_name",
    "resolve_network",
    "start_bounded",
]
