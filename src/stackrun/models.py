"""Data model for stacks, images and run contexts.

``Stack`` and ``FunctionDescriptor`` are frozen pydantic models: a stack is
loaded once per invocation and never mutated during a build/run cycle.
``Image`` is a frozen dataclass produced once per function per build cycle;
a rebuild produces a new value. ``RunContext`` is the ephemeral set of live
resources of one run cycle, owned by :class:`stackrun.session.Session`.

Examples:
    >>> stack = Stack(
    ...     name="demo",
    ...     functions=[FunctionDescriptor(name="a", runtime="t1", path="./a")],
    ... )
    >>> stack.function("a").runtime
    't1'
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Subscription(BaseModel):
    """A function's subscription to a topic."""

    model_config = ConfigDict(frozen=True)

    topic: str


class FunctionDescriptor(BaseModel):
    """One independently buildable and runnable unit of a stack."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    path: str
    runtime: str
    build_scripts: tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("build_scripts", "buildScripts")
    )
    excludes: tuple[str, ...] = ()
    tag: str | None = None
    subs: tuple[Subscription, ...] = ()


class Stack(BaseModel):
    """Named, ordered collection of function descriptors."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    functions: tuple[FunctionDescriptor, ...] = ()
    # Declared topics, each listed in the subscriptions map even without subscribers
    topics: tuple[str, ...] = ()
    # Buckets served by the local storage service
    buckets: tuple[str, ...] = ()
    # API name to OpenAPI document path, relative to ``directory``
    apis: dict[str, str] = Field(default_factory=dict)
    # Directory the stack was loaded from; function paths are relative to it
    directory: Path = Field(default=Path("."), exclude=True)

    @field_validator("topics", "buckets", mode="before")
    @classmethod
    def _resource_names(cls, value: Any) -> Any:
        # ``topics: {orders: {}}`` and ``topics: [orders]`` are both accepted
        if isinstance(value, dict):
            return tuple(value)
        return value

    @field_validator("functions")
    @classmethod
    def _unique_names(cls, value: tuple[FunctionDescriptor, ...]) -> tuple[FunctionDescriptor, ...]:
        seen: set[str] = set()
        for func in value:
            if func.name in seen:
                raise ValueError(f"duplicate function name: {func.name}")
            seen.add(func.name)
        return value

    def function(self, name: str) -> FunctionDescriptor:
        """Return the function called *name*."""
        for func in self.functions:
            if func.name == name:
                return func
        raise KeyError(name)

    def api_document(self, name: str) -> dict[str, Any]:
        """Load the OpenAPI document of API *name* (YAML or JSON)."""
        path = self.directory / self.apis[name]
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(document, dict):
            raise ValueError(f"API document {path} is not a mapping")
        return document

    @classmethod
    def from_file(cls, path: str | Path) -> Stack:
        """Load a stack descriptor from a YAML file."""
        path = Path(path)
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls.model_validate({**data, "directory": path.parent.resolve()})


@dataclass(frozen=True)
class Image:
    """Build artifact for one function."""

    id: str
    function: FunctionDescriptor

    @property
    def name(self) -> str:
        return self.function.name

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass(frozen=True)
class RunningContainer:
    """A started container (function or service) and its bound host port."""

    function: str
    handle: Any
    port: int
    # Background log follower and exit watcher of the container
    watchers: tuple[asyncio.Task, ...] = field(default=(), compare=False, repr=False)


@dataclass
class RunContext:
    """Live session resources of one run cycle.

    Each run task writes only its own function's entry in ``containers``
    and ``ports``; ``network`` and ``volume`` are shared read-only.
    """

    run_id: str
    network: Any = None
    volume: Any = None
    containers: dict[str, Any] = field(default_factory=dict)
    ports: dict[str, int] = field(default_factory=dict)
    failures: dict[str, BaseException] = field(default_factory=dict)
    # Storage service and API gateways, keyed by service name
    services: dict[str, RunningContainer] = field(default_factory=dict)
    service_failures: dict[str, BaseException] = field(default_factory=dict)
    watchers: list[asyncio.Task] = field(default_factory=list, repr=False)

    def record(self, running: RunningContainer) -> None:
        self.containers[running.function] = running.handle
        self.ports[running.function] = running.port
        self.watchers.extend(running.watchers)

    def record_service(self, running: RunningContainer) -> None:
        self.services[running.function] = running
        self.watchers.extend(running.watchers)

    def handles(self) -> list[Any]:
        """Every started container, functions first."""
        return [*self.containers.values(), *(service.handle for service in self.services.values())]

    @property
    def is_empty(self) -> bool:
        return not self.containers and not self.services and self.network is None and self.volume is None


__all__ = [
    "FunctionDescriptor",
    "Image",
    "RunContext",
    "RunningContainer",
    "Stack",
    "Subscription",
]
