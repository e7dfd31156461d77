"""Shared network and volume for a stack's containers."""

from __future__ import annotations

from stackrun.runtime import ContainerRuntime, NetworkHandle, VolumeHandle
from stackrun.tasks import ProgressCallback, SettledGroup, Task, settle_all


def network_name(stack_name: str) -> str:
    return f"{stack_name}-net"


def volume_name(stack_name: str) -> str:
    return f"{stack_name}-vol"


class CreateNetworkTask(Task[NetworkHandle]):
    def __init__(self, name: str, runtime: ContainerRuntime) -> None:
        super().__init__(name)
        self.runtime = runtime

    async def _do(self) -> NetworkHandle:
        self.update("Creating network")
        return await self.runtime.create_network(self.name)


class CreateVolumeTask(Task[VolumeHandle]):
    def __init__(self, name: str, runtime: ContainerRuntime) -> None:
        super().__init__(name)
        self.runtime = runtime

    async def _do(self) -> VolumeHandle:
        self.update("Creating volume")
        return await self.runtime.create_volume(self.name)


async def provision(
    stack_name: str,
    runtime: ContainerRuntime,
    progress: ProgressCallback | None = None,
) -> SettledGroup:
    """Create the stack network and volume concurrently.

    The caller records whatever was created before checking for errors so
    a half-provisioned cycle can still be torn down.
    """
    return await settle_all(
        [
            CreateNetworkTask(network_name(stack_name), runtime),
            CreateVolumeTask(volume_name(stack_name), runtime),
        ],
        progress,
    )


__all__ = [
    "CreateNetworkTask",
    "CreateVolumeTask",
    "network_name",
    "provision",
    "volume_name",
]
