"""Container runtimes.

``ContainerRuntime`` is the protocol the build and run pipelines drive.
``DockerRuntime`` talks to the local Docker daemon; ``StubRuntime`` keeps
everything in memory for tests.
"""

from stackrun.runtime._types import (
    DEFAULT_NETWORK,
    BuildEvent,
    ContainerHandle,
    ContainerRuntime,
    ContainerSpec,
    NetworkHandle,
    VolumeHandle,
)
from stackrun.runtime.docker import DockerRuntime
from stackrun.runtime.stub import StubRuntime

__all__ = [
    "BuildEvent",
    "ContainerHandle",
    "ContainerRuntime",
    "ContainerSpec",
    "DEFAULT_NETWORK",
    "DockerRuntime",
    "NetworkHandle",
    "StubRuntime",
    "VolumeHandle",
]
