"""Docker Engine runtime.

Drives the local Docker daemon through the Docker SDK for Python. The SDK
is blocking, so every call is pushed onto a worker thread with
``asyncio.to_thread``; the image build's event stream is consumed one event
per thread hop so independent builds interleave on the event loop.

Key Concepts:
    DockerRuntime: ``ContainerRuntime`` implementation on ``docker.APIClient``.
    Error mapping: connection failures during a build become
        ``BuilderUnreachableError``; any other daemon failure becomes
        ``DaemonError`` (or ``ImageBuildError`` while building).
    Idempotent teardown: stop/remove tolerate containers, networks and
        volumes that are already stopped or gone.

Tags:
    container, docker, runtime, build, network, volume
"""

from __future__ import annotations

import asyncio
import io
import tarfile
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import IO, Any, TypeVar

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.types import Mount

from stackrun.errors import (
    BuilderUnreachableError,
    DaemonError,
    ImageBuildError,
)
from stackrun.logging import get_logger
from stackrun.runtime._types import (
    BuildEvent,
    ContainerHandle,
    ContainerSpec,
    NetworkHandle,
    VolumeHandle,
)

logger = get_logger(__name__)

T = TypeVar("T")

_END = object()

DAEMON_NOT_FOUND = (
    "Docker daemon was not found!\n"
    "Check that Docker is installed and that the service is running."
)


def split_reference(reference: str) -> tuple[str, str]:
    """Split ``repository[:tag]``, defaulting the tag to ``latest``.

    A colon inside a registry host (``localhost:5000/img``) is not a tag.
    """
    repository, _, tag = reference.rpartition(":")
    if not repository or "/" in tag:
        return reference, "latest"
    return repository, tag


def _archive(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for path, content in files.items():
            info = tarfile.TarInfo(path.lstrip("/"))
            info.size = len(content)
            info.mtime = int(time.time())
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


class DockerRuntime:
    """``ContainerRuntime`` backed by the local Docker daemon.

    Parameters
    ----------
    client
        Optional pre-built ``docker.DockerClient``. When omitted the client
        is created from the environment (``DOCKER_HOST`` etc.) on first use.
    """

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._client = client

    @property
    def api(self) -> docker.APIClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise DaemonError(DAEMON_NOT_FOUND, cause=exc) from exc
        return self._client.api

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except DaemonError:
            raise
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise DaemonError(f"{fn.__name__} failed: {exc}", cause=exc) from exc

    # ------------------------------------------------------------------
    # Daemon
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        await self._call(lambda: self.api.ping())

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def build_image(
        self,
        context: IO[bytes],
        *,
        tag: str,
        buildargs: dict[str, str],
    ) -> AsyncIterator[BuildEvent]:
        def _submit() -> Any:
            return self.api.build(
                fileobj=context,
                custom_context=True,
                tag=tag,
                buildargs=buildargs,
                decode=True,
                rm=True,
            )

        try:
            stream = await asyncio.to_thread(_submit)
        except DaemonError as exc:
            raise BuilderUnreachableError(cause=exc.cause) from exc
        except requests.exceptions.ConnectionError as exc:
            raise BuilderUnreachableError(cause=exc) from exc
        except DockerException as exc:
            raise ImageBuildError(str(exc), cause=exc) from exc

        logger.debug("image.build_submitted", tag=tag)
        while True:
            try:
                event = await asyncio.to_thread(next, stream, _END)
            except requests.exceptions.ConnectionError as exc:
                raise BuilderUnreachableError(cause=exc) from exc
            except (DockerException, requests.exceptions.RequestException) as exc:
                raise ImageBuildError(str(exc), cause=exc) from exc
            if event is _END:
                return
            yield event

    async def pull_image(self, reference: str) -> None:
        repository, tag = split_reference(reference)
        await self._call(self.api.pull, repository, tag=tag)
        logger.info("image.pulled", image=f"{repository}:{tag}")

    # ------------------------------------------------------------------
    # Networks & volumes
    # ------------------------------------------------------------------

    async def create_network(self, name: str) -> NetworkHandle:
        def _create() -> dict[str, Any]:
            try:
                return self.api.create_network(name, driver="bridge")
            except APIError as exc:
                if exc.status_code != 409:
                    raise
                # Left behind by an earlier session that did not tear down
                existing = self.api.networks(names=[name])
                if not existing:
                    raise
                logger.warning("network.reused", network=name)
                return existing[0]

        created = await self._call(_create)
        logger.info("network.created", network=name)
        return NetworkHandle(id=created["Id"], name=name)

    async def resolve_network_name(self, network: NetworkHandle) -> str:
        info = await self._call(self.api.inspect_network, network.id)
        return info["Name"]

    async def remove_network(self, network: NetworkHandle) -> None:
        def _remove() -> None:
            try:
                self.api.remove_network(network.id)
            except NotFound:
                logger.debug("network.already_removed", network=network.name)

        await self._call(_remove)
        logger.info("network.removed", network=network.name)

    async def create_volume(self, name: str) -> VolumeHandle:
        created = await self._call(self.api.create_volume, name=name)
        logger.info("volume.created", volume=name)
        return VolumeHandle(name=created["Name"])

    async def remove_volume(self, volume: VolumeHandle) -> None:
        def _remove() -> None:
            try:
                self.api.remove_volume(volume.name)
            except NotFound:
                logger.debug("volume.already_removed", volume=volume.name)

        await self._call(_remove)
        logger.info("volume.removed", volume=volume.name)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def start_container(self, spec: ContainerSpec) -> ContainerHandle:
        def _start() -> ContainerHandle:
            api = self.api
            mounts = []
            if spec.volume and spec.volume_mount:
                mounts.append(Mount(target=spec.volume_mount, source=spec.volume, type="volume"))
            for target, source in spec.binds.items():
                mounts.append(Mount(target=target, source=source, type="bind"))
            host_config = api.create_host_config(
                port_bindings=dict(spec.ports),
                network_mode=spec.network,
                mounts=mounts or None,
            )
            networking_config = None
            if spec.aliases:
                networking_config = api.create_networking_config(
                    {spec.network: api.create_endpoint_config(aliases=list(spec.aliases))}
                )
            created = api.create_container(
                image=spec.image,
                name=spec.name,
                environment=[f"{key}={value}" for key, value in spec.environment.items()],
                ports=list(spec.ports),
                labels=dict(spec.labels),
                command=list(spec.command) or None,
                host_config=host_config,
                networking_config=networking_config,
            )
            try:
                if spec.files:
                    api.put_archive(created["Id"], "/", _archive(spec.files))
                api.start(created["Id"])
            except (DockerException, requests.exceptions.RequestException):
                api.remove_container(created["Id"], force=True)
                raise
            return ContainerHandle(id=created["Id"], name=spec.name)

        job = asyncio.ensure_future(self._call(_start))
        try:
            return await asyncio.shield(job)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted: wait for it and remove
            # whatever it started before letting the cancellation through.
            await asyncio.wait({job})
            if not job.cancelled() and job.exception() is None:
                handle = job.result()
                logger.warning("container.late_start_removed", container=handle.name)
                try:
                    await self.remove_container(handle)
                except DaemonError as exc:
                    logger.error("container.late_start_leaked", container=handle.name, error=str(exc))
            raise

    async def stream_logs(self, container: ContainerHandle, path: Path) -> None:
        def _follow() -> None:
            chunks = self.api.logs(
                container.id, stdout=True, stderr=True, stream=True, follow=True
            )
            with open(path, "ab") as sink:
                for chunk in chunks:
                    sink.write(chunk)
                    sink.flush()

        await self._call(_follow)

    async def wait_container(self, container: ContainerHandle) -> int:
        result = await self._call(self.api.wait, container.id)
        return int(result.get("StatusCode", -1))

    async def stop_container(self, container: ContainerHandle) -> None:
        def _stop() -> None:
            try:
                self.api.stop(container.id)
            except NotFound:
                logger.debug("container.already_removed", container=container.name)
            except APIError as exc:
                if exc.status_code != 304:
                    raise
                logger.info("container.already_stopped", container=container.name)

        await self._call(_stop)

    async def remove_container(self, container: ContainerHandle) -> None:
        def _remove() -> None:
            try:
                self.api.remove_container(container.id, force=True)
            except NotFound:
                logger.debug("container.already_removed", container=container.name)

        await self._call(_remove)


__all__ = ["DockerRuntime", "split_reference"]
