"""
Structured error types for stackrun.

Every failure a build or run cycle can produce is a ``StackRunError``
carrying a category, optional structured context, and the chained cause.
Per-function errors stay local to their task and are collected by
:func:`stackrun.tasks.settle_all`; a sibling group only fails once every
member has settled, with a ``TaskGroupError`` enumerating all of them.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                      StackRunError                           │
        │           (category, context, cause, to_dict())              │
        ├─────────────────────────────────────────────────────────────┤
        │  BUILD                 RUN                  SESSION          │
        │  ─────                 ───                  ───────          │
        │  TemplateNotFound      PortAllocation       TeardownError    │
        │  BuildScriptError      ContainerStartTimeout TaskGroupError  │
        │  ImageBuildError       DaemonError          TaskAlreadyRun   │
        │   └ BuilderUnreachable NetworkResolutionWarning (logged)     │
        └─────────────────────────────────────────────────────────────┘

Guardrails:
    - ``NetworkResolutionWarning`` is logged, never raised: the run falls
      back to the default network.
    - ``TeardownError`` is always re-raised; it means leaked containers,
      networks or volumes.

Tags:
    error-handling, exception-hierarchy, stackrun
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for logging and exit-code decisions."""

    TEMPLATE = "TEMPLATE"  # Runtime template missing
    BUILD = "BUILD"  # Build scripts, image builder
    RUNTIME = "RUNTIME"  # Container daemon calls
    NETWORK = "NETWORK"  # Port allocation, network resolution
    TIMEOUT = "TIMEOUT"  # Bounded waits
    TEARDOWN = "TEARDOWN"  # Resource cleanup
    ORCHESTRATION = "ORCHESTRATION"  # Task and group bookkeeping
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error."""

    stack: str | None = None
    function: str | None = None
    image_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.stack is not None:
            result["stack"] = self.stack
        if self.function is not None:
            result["function"] = self.function
        if self.image_id is not None:
            result["image_id"] = self.image_id
        result.update(self.metadata)
        return result


class StackRunError(Exception):
    """Base class for every error raised by stackrun."""

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> StackRunError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# BUILD ERRORS
# =============================================================================


class TemplateNotFoundError(StackRunError):
    """The function's runtime template is not installed locally."""

    default_category = ErrorCategory.TEMPLATE

    def __init__(self, runtime: str, **kwargs: Any):
        self.runtime = runtime
        super().__init__(f"Template {runtime} is not available.", **kwargs)


class BuildScriptError(StackRunError):
    """A declared build script exited non-zero."""

    default_category = ErrorCategory.BUILD

    def __init__(self, script: str, returncode: int, output: str, **kwargs: Any):
        self.script = script
        self.returncode = returncode
        self.output = output
        message = f"Build script '{script}' failed with exit code {returncode}"
        if output.strip():
            message += f":\n{output.rstrip()}"
        super().__init__(message, **kwargs)


class ImageBuildError(StackRunError):
    """The image builder reported an error."""

    default_category = ErrorCategory.BUILD


class BuilderUnreachableError(ImageBuildError):
    """The image builder (container daemon) could not be reached."""

    def __init__(self, message: str | None = None, **kwargs: Any):
        super().__init__(
            message or "Unable to connect to docker, is it running locally?",
            category=ErrorCategory.RUNTIME,
            **kwargs,
        )


# =============================================================================
# RUN ERRORS
# =============================================================================


class DaemonError(StackRunError):
    """A container daemon call failed."""

    default_category = ErrorCategory.RUNTIME


class PortAllocationError(StackRunError):
    """No free host port left in the configured range."""

    default_category = ErrorCategory.NETWORK


class ContainerStartTimeout(StackRunError):
    """The container did not report started within the bound."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, image_id: str, timeout: float, **kwargs: Any):
        self.image_id = image_id
        self.timeout = timeout
        super().__init__(
            f"Container for image {image_id} not started after {timeout:g} seconds.",
            **kwargs,
        )


class NetworkResolutionWarning(StackRunError):
    """The shared network could not be resolved; the default network is used."""

    default_category = ErrorCategory.NETWORK


# =============================================================================
# SESSION / ORCHESTRATION ERRORS
# =============================================================================


class TaskAlreadyRunError(StackRunError):
    """A task was run a second time."""

    default_category = ErrorCategory.ORCHESTRATION

    def __init__(self, name: str):
        self.task_name = name
        super().__init__(f"Task '{name}' has already been run")


class TaskGroupError(StackRunError):
    """One or more members of a sibling task group failed.

    Raised only after every member settled. ``errors`` maps each failed
    task name to its exception, in task order.
    """

    default_category = ErrorCategory.ORCHESTRATION

    def __init__(self, label: str, errors: dict[str, BaseException], total: int):
        self.label = label
        self.errors = dict(errors)
        self.total = total
        names = ", ".join(self.errors)
        super().__init__(
            f"{len(self.errors)} of {total} {label} failed ({names}), see error details above."
        )


class TeardownError(StackRunError):
    """Session resources could not be released. Always fatal."""

    default_category = ErrorCategory.TEARDOWN

    def __init__(self, errors: dict[str, BaseException]):
        self.errors = dict(errors)
        details = "\n".join(f"  {name}: {err}" for name, err in self.errors.items())
        super().__init__(f"Failed to tear down {len(self.errors)} resource(s):\n{details}")


__all__ = [
    "BuildScriptError",
    "BuilderUnreachableError",
    "ContainerStartTimeout",
    "DaemonError",
    "ErrorCategory",
    "ErrorContext",
    "ImageBuildError",
    "NetworkResolutionWarning",
    "PortAllocationError",
    "StackRunError",
    "TaskAlreadyRunError",
    "TaskGroupError",
    "TeardownError",
    "TemplateNotFoundError",
]
