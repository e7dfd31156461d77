"""In-memory container runtime for tests.

No daemon is contacted. Builds emit a short canned event stream ending in a
fresh image id, containers start immediately and run until stopped.

.. code-block:: text

    StubRuntime behavior:

    build_image(context, tag)
      ├── tag in fail_builds  → stream ends with an errorDetail event
      ├── unreachable=True    → BuilderUnreachableError
      └── otherwise           → ..., {"aux": {"ID": "sha256:<new id>"}}

    Inject failures:
      runtime.unreachable = True            → ping()/build_image() raise
      runtime.never_start.add(image_id)     → start_container() never returns
      runtime.fail_network_resolution=True  → resolve_network_name() raises
      runtime.fail_remove.add(name)         → stop/remove of that resource raises
      runtime.fail_pulls.add(reference)     → pull_image() raises

    Track usage:
      runtime.builds         → one record per build (tag, buildargs, members)
      runtime.pulls          → pulled image references, in order
      runtime.started        → ContainerSpec per started container, in order
      runtime.removed        → names of removed containers/networks/volumes
      runtime.resolve_calls  → number of network name resolutions

Example:
    >>> runtime = StubRuntime()
    >>> handle = await runtime.start_container(ContainerSpec(image="abc", name="a-1"))
    >>> await runtime.stop_container(handle)
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import tarfile
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from stackrun.errors import BuilderUnreachableError, DaemonError
from stackrun.runtime._types import (
    BuildEvent,
    ContainerHandle,
    ContainerSpec,
    NetworkHandle,
    VolumeHandle,
)


@dataclass
class BuildRecord:
    tag: str
    buildargs: dict[str, str]
    members: list[str] = field(default_factory=list)


class StubRuntime:
    """``ContainerRuntime`` that keeps everything in memory."""

    def __init__(self) -> None:
        self.unreachable = False
        self.fail_builds: dict[str, str] = {}
        self.never_start: set[str] = set()
        self.fail_network_resolution = False
        self.fail_remove: set[str] = set()
        self.fail_pulls: set[str] = set()
        # image id -> bytes the container writes to its log
        self.log_output: dict[str, bytes] = {}

        self.builds: list[BuildRecord] = []
        self.pulls: list[str] = []
        self.started: list[ContainerSpec] = []
        self.removed: list[str] = []
        self.resolve_calls = 0
        self.networks: dict[str, NetworkHandle] = {}
        self.volumes: dict[str, VolumeHandle] = {}
        self.containers: dict[str, ContainerSpec] = {}

        self._counter = itertools.count(1)
        self._exits: dict[str, asyncio.Future[int]] = {}

    # -- daemon ------------------------------------------------------------

    async def ping(self) -> None:
        if self.unreachable:
            raise DaemonError("Docker daemon was not found!")

    # -- images ------------------------------------------------------------

    async def build_image(
        self,
        context: IO[bytes],
        *,
        tag: str,
        buildargs: dict[str, str],
    ) -> AsyncIterator[BuildEvent]:
        if self.unreachable:
            raise BuilderUnreachableError()

        with tarfile.open(fileobj=context, mode="r") as archive:
            members = sorted(member.name for member in archive.getmembers())
        self.builds.append(BuildRecord(tag=tag, buildargs=dict(buildargs), members=members))

        yield {"stream": "Step 1/2 : FROM scratch\n"}
        await asyncio.sleep(0)
        if tag in self.fail_builds:
            message = self.fail_builds[tag]
            yield {"errorDetail": {"message": message}, "error": message}
            return

        yield {"status": "Copying context", "progress": "[==>   ]"}
        await asyncio.sleep(0)
        digest = hashlib.sha256(f"{tag}:{next(self._counter)}".encode()).hexdigest()
        yield {"aux": {"ID": f"sha256:{digest}"}}
        yield {"stream": f"Successfully tagged {tag}\n"}

    async def pull_image(self, reference: str) -> None:
        if reference in self.fail_pulls:
            raise DaemonError(f"pull access denied for {reference}")
        self.pulls.append(reference)

    # -- networks & volumes ------------------------------------------------

    async def create_network(self, name: str) -> NetworkHandle:
        network = NetworkHandle(id=uuid.uuid4().hex, name=name)
        self.networks[network.id] = network
        return network

    async def resolve_network_name(self, network: NetworkHandle) -> str:
        self.resolve_calls += 1
        if self.fail_network_resolution:
            raise DaemonError(f"network {network.id} not found")
        return network.name

    async def remove_network(self, network: NetworkHandle) -> None:
        self._check_remove(network.name)
        self.networks.pop(network.id, None)
        self.removed.append(network.name)

    async def create_volume(self, name: str) -> VolumeHandle:
        volume = VolumeHandle(name=name)
        self.volumes[name] = volume
        return volume

    async def remove_volume(self, volume: VolumeHandle) -> None:
        self._check_remove(volume.name)
        self.volumes.pop(volume.name, None)
        self.removed.append(volume.name)

    # -- containers --------------------------------------------------------

    async def start_container(self, spec: ContainerSpec) -> ContainerHandle:
        if spec.image in self.never_start:
            await asyncio.Event().wait()

        handle = ContainerHandle(id=uuid.uuid4().hex, name=spec.name)
        self.containers[handle.id] = spec
        self.started.append(spec)
        self._exits[handle.id] = asyncio.get_running_loop().create_future()
        return handle

    async def stream_logs(self, container: ContainerHandle, path: Path) -> None:
        spec = self.containers.get(container.id)
        if spec is not None:
            with open(path, "ab") as sink:
                sink.write(self.log_output.get(spec.image, b""))
        await self.wait_container(container)

    async def wait_container(self, container: ContainerHandle) -> int:
        exit_future = self._exits.get(container.id)
        if exit_future is None:
            return 0
        return await asyncio.shield(exit_future)

    def exit(self, container: ContainerHandle, status: int) -> None:
        """Simulate the container exiting on its own."""
        exit_future = self._exits.get(container.id)
        if exit_future is not None and not exit_future.done():
            exit_future.set_result(status)

    async def stop_container(self, container: ContainerHandle) -> None:
        self._check_remove(container.name)
        self.exit(container, 0)

    async def remove_container(self, container: ContainerHandle) -> None:
        self._check_remove(container.name)
        self.containers.pop(container.id, None)
        self.removed.append(container.name)

    @property
    def running(self) -> list[str]:
        """Names of containers started and not yet removed."""
        return [spec.name for spec in self.containers.values()]

    def _check_remove(self, name: str) -> None:
        if name in self.fail_remove:
            raise DaemonError(f"failed to remove {name}")


__all__ = ["BuildRecord", "StubRuntime"]
