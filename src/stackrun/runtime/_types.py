"""Container runtime protocol and value types.

``ContainerRuntime`` is everything a build/run cycle needs from a container
daemon: an image build that streams progress events, network and volume
lifecycle, and container start/stop/remove with log and exit watching.
Handles are small frozen dataclasses so callers never hold SDK objects.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Protocol, runtime_checkable

# Network every container can join when no custom network resolves
DEFAULT_NETWORK = "bridge"

BuildEvent = dict[str, Any]


@dataclass(frozen=True)
class NetworkHandle:
    id: str
    name: str


@dataclass(frozen=True)
class VolumeHandle:
    name: str


@dataclass(frozen=True)
class ContainerHandle:
    id: str
    name: str

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass(frozen=True)
class ContainerSpec:
    """Parameters for starting one function or service container."""

    image: str
    name: str
    network: str = DEFAULT_NETWORK
    aliases: tuple[str, ...] = ()
    # container port -> host port
    ports: dict[int, int] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    volume: str | None = None
    volume_mount: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    # Overrides the image command when non-empty
    command: tuple[str, ...] = ()
    # container path -> host path, bind mounted
    binds: dict[str, str] = field(default_factory=dict)
    # absolute container path -> content, copied in before the container starts
    files: dict[str, bytes] = field(default_factory=dict)


@runtime_checkable
class ContainerRuntime(Protocol):
    """What stackrun drives on the container daemon."""

    async def ping(self) -> None:
        """Raise ``DaemonError`` if the daemon is not reachable."""
        ...

    def build_image(
        self,
        context: IO[bytes],
        *,
        tag: str,
        buildargs: dict[str, str],
    ) -> AsyncIterator[BuildEvent]:
        """Submit a tar build context and stream the builder's progress events."""
        ...

    async def pull_image(self, reference: str) -> None:
        """Make *reference* (``repository[:tag]``) available locally."""
        ...

    async def create_network(self, name: str) -> NetworkHandle: ...

    async def resolve_network_name(self, network: NetworkHandle) -> str:
        """Return the daemon-side name of *network*."""
        ...

    async def remove_network(self, network: NetworkHandle) -> None: ...

    async def create_volume(self, name: str) -> VolumeHandle: ...

    async def remove_volume(self, volume: VolumeHandle) -> None: ...

    async def start_container(self, spec: ContainerSpec) -> ContainerHandle:
        """Create and start a container; returns once the daemon reports it started.

        Cancelling the call must leave no container behind, even when the
        daemon finishes creating it after the cancellation.
        """
        ...

    async def stream_logs(self, container: ContainerHandle, path: Path) -> None:
        """Append the container's combined stdio to *path* until it exits."""
        ...

    async def wait_container(self, container: ContainerHandle) -> int:
        """Wait for the container to exit and return its status code."""
        ...

    async def stop_container(self, container: ContainerHandle) -> None:
        """Stop a container; already stopped or removed containers are fine."""
        ...

    async def remove_container(self, container: ContainerHandle) -> None: ...
