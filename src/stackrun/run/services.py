"""Local service containers started alongside the functions.

* **storage**: one object storage container (S3 API) per run, started
  before any function when the stack declares buckets. Each bucket is a
  directory under ``{stack}/.stackrun/run/buckets``, bind-mounted into the
  container so objects survive refreshes.
* **API gateways**: one container per declared API, serving that API's
  OpenAPI document and routing to functions by their network alias.

.. code-block:: text

    RunStorageTask                      RunGatewayTask(api)
      ├── claim API + console ports       ├── claim gateway port
      ├── mkdir buckets/{bucket}          ├── load the API document
      ├── pull storage image              ├── pull gateway image
      └── start minio-{run_id}            └── start api-{api}-{run_id}
                                              with /openapi.json copied in

Functions reach the storage service through the endpoint in
:func:`storage_env`; it resolves only on the shared network.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from stackrun.config import StackRunSettings
from stackrun.errors import ErrorContext, StackRunError
from stackrun.logging import get_logger
from stackrun.models import RunningContainer, Stack
from stackrun.run.function import RUN_ID_LABEL, resolve_network, start_bounded
from stackrun.run.ports import PortAllocator
from stackrun.runtime import (
    DEFAULT_NETWORK,
    ContainerHandle,
    ContainerRuntime,
    ContainerSpec,
    NetworkHandle,
)
from stackrun.tasks import Task

logger = get_logger(__name__)

STORAGE_SERVICE = "storage"
STORAGE_PORT = 9000
STORAGE_CONSOLE_PORT = 9001
STORAGE_RUN_DIR = Path(".stackrun") / "run"
STORAGE_MOUNT = "/stackrun/run"

API_GATEWAY_PORT = 8080
API_DOCUMENT_PATH = "/openapi.json"


def storage_container_name(run_id: str) -> str:
    return f"minio-{run_id}"


def gateway_service_name(api: str) -> str:
    return f"api-{api}"


def storage_env(run_id: str, settings: StackRunSettings) -> dict[str, str]:
    """Environment pointing a function at the run's storage service."""
    return {
        "MINIO_ENDPOINT": f"http://{storage_container_name(run_id)}:{STORAGE_PORT}",
        "MINIO_ACCESS_KEY": settings.storage_access_key,
        "MINIO_SECRET_KEY": settings.storage_secret_key,
    }


class _ServiceTask(Task[RunningContainer]):
    """Shared port handling, image pull and bounded start of one service."""

    image: str

    def __init__(
        self,
        name: str,
        *,
        runtime: ContainerRuntime,
        run_id: str,
        allocator: PortAllocator,
        settings: StackRunSettings,
        network: NetworkHandle | None = None,
        preferred_port: int | None = None,
    ) -> None:
        super().__init__(name)
        self.runtime = runtime
        self.run_id = run_id
        self.allocator = allocator
        self.settings = settings
        self.network = network
        self.preferred_port = preferred_port

    def _context(self) -> ErrorContext:
        return ErrorContext(function=self.name, metadata={"image": self.image})

    async def _pull(self) -> None:
        self.update(f"Pulling {self.image}")
        try:
            await self.runtime.pull_image(self.image)
        except StackRunError as exc:
            raise exc.with_context(function=self.name, image=self.image)

    async def _start(self, spec: ContainerSpec, port: int) -> RunningContainer:
        self.update(f"Starting {spec.name} on port {port}")
        handle = await start_bounded(
            self.runtime, spec, self.settings.container_start_timeout, self._context()
        )
        logger.info("service.started", service=self.name, container=spec.name, port=port)
        watcher = asyncio.create_task(self._watch_exit(handle))
        return RunningContainer(function=self.name, handle=handle, port=port, watchers=(watcher,))

    async def _watch_exit(self, handle: ContainerHandle) -> None:
        try:
            status = await self.runtime.wait_container(handle)
        except StackRunError as exc:
            logger.warning("service.wait_failed", service=self.name, error=str(exc))
            return
        logger.info("service.exited", service=self.name, status_code=status)


class RunStorageTask(_ServiceTask):
    """Start the object storage service for the stack's buckets."""

    def __init__(self, stack: Stack, **kwargs) -> None:
        super().__init__(STORAGE_SERVICE, **kwargs)
        self.stack = stack
        self.image = self.settings.storage_image

    @property
    def run_dir(self) -> Path:
        return Path(self.stack.directory) / STORAGE_RUN_DIR

    def _create_buckets(self) -> Path:
        for bucket in self.stack.buckets:
            (self.run_dir / "buckets" / bucket).mkdir(parents=True, exist_ok=True)
        return self.run_dir.resolve()

    async def _do(self) -> RunningContainer:
        port = await self.allocator.allocate(self.preferred_port)
        console_port: int | None = None
        try:
            console_port = await self.allocator.allocate()
            network = await resolve_network(self.runtime, self.network, self._context())
            run_dir = await asyncio.to_thread(self._create_buckets)
            await self._pull()
            spec = ContainerSpec(
                image=self.image,
                name=storage_container_name(self.run_id),
                network=network,
                command=(
                    "server",
                    f"{STORAGE_MOUNT}/buckets",
                    "--console-address",
                    f":{STORAGE_CONSOLE_PORT}",
                ),
                ports={STORAGE_PORT: port, STORAGE_CONSOLE_PORT: console_port},
                binds={STORAGE_MOUNT: str(run_dir)},
                labels={RUN_ID_LABEL: self.run_id},
            )
            return await self._start(spec, port)
        except BaseException:
            self.allocator.release(port)
            if console_port is not None:
                self.allocator.release(console_port)
            raise


class RunGatewayTask(_ServiceTask):
    """Start the gateway serving one API of the stack."""

    def __init__(self, stack: Stack, api: str, **kwargs) -> None:
        super().__init__(gateway_service_name(api), **kwargs)
        self.stack = stack
        self.api = api
        self.image = self.settings.api_gateway_image

    async def _do(self) -> RunningContainer:
        port = await self.allocator.allocate(self.preferred_port)
        try:
            document = await asyncio.to_thread(self.stack.api_document, self.api)
            network = await resolve_network(self.runtime, self.network, self._context())
            await self._pull()
            spec = ContainerSpec(
                image=self.image,
                name=f"{gateway_service_name(self.api)}-{self.run_id}",
                network=network,
                aliases=(gateway_service_name(self.api),) if network != DEFAULT_NETWORK else (),
                ports={API_GATEWAY_PORT: port},
                files={API_DOCUMENT_PATH: json.dumps(document).encode("utf-8")},
                labels={RUN_ID_LABEL: self.run_id},
            )
            return await self._start(spec, port)
        except BaseException:
            self.allocator.release(port)
            raise


__all__ = [
    "API_GATEWAY_PORT",
    "RunGatewayTask",
    "RunStorageTask",
    "STORAGE_PORT",
    "gateway_service_name",
    "storage_container_name",
    "storage_env",
]
