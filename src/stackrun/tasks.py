"""Tasks and sibling-group settling.

WHY
───
Each step of a build/run cycle (staging, one image build, one container
start) is a named unit of asynchronous work that reports progress while
it runs and resolves exactly once. Sibling groups
(all builds, all runs) must never let one member's failure cancel the
others: the group settles completely and *then* reports every error.

ARCHITECTURE
────────────
::

    Task[T]
      ├── .name
      ├── .run(progress)   ─ resolves once, second call raises
      └── ._do()           ─ subclass implements

    settle_all(tasks, progress)
      ├── asyncio.gather(return_exceptions=True)   ─ all members settle
      └── SettledGroup
            ├── .results   name → value   (input order)
            ├── .errors    name → error   (input order)
            └── .raise_for_errors(label)  ─ TaskGroupError with every error

Progress flows through an explicit ``ProgressCallback(name, message)``; the
console reporter is one such callback, tests pass a list's ``append``.

Example::

    group = await settle_all([BuildFunctionTask(...), BuildFunctionTask(...)])
    images = list(group.results.values())
    group.raise_for_errors("builds")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from stackrun.errors import TaskAlreadyRunError, TaskGroupError
from stackrun.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[str, str], None]


def _discard(name: str, message: str) -> None:
    return None


class Task(Generic[T]):
    """A named unit of asynchronous work.

    Subclasses implement :meth:`_do` and report progress with
    ``self.update(message)``. :meth:`run` may be awaited exactly once.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._started = False
        self._progress: ProgressCallback = _discard

    @property
    def name(self) -> str:
        return self._name

    def update(self, message: str) -> None:
        """Report a progress message for live display."""
        self._progress(self._name, message)

    async def run(self, progress: ProgressCallback | None = None) -> T:
        """Execute the task and return its result.

        Raises:
            TaskAlreadyRunError: If the task has been run before.
        """
        if self._started:
            raise TaskAlreadyRunError(self._name)
        self._started = True
        self._progress = progress if progress is not None else _discard

        logger.debug("task.start", task=self._name)
        try:
            result = await self._do()
        except Exception as exc:
            logger.debug("task.failed", task=self._name, error=str(exc))
            raise
        logger.debug("task.complete", task=self._name)
        return result

    async def _do(self) -> T:
        """Implement in subclass."""
        raise NotImplementedError


@dataclass
class SettledGroup(Generic[T]):
    """Outcome of a sibling group once every member has settled."""

    results: dict[str, T] = field(default_factory=dict)
    errors: dict[str, BaseException] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def total(self) -> int:
        return len(self.results) + len(self.errors)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def raise_for_errors(self, label: str) -> None:
        """Raise a single ``TaskGroupError`` carrying every collected error."""
        if self.errors:
            raise TaskGroupError(label, self.errors, self.total)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": len(self.results),
            "failed": len(self.errors),
            "duration_seconds": self.duration_seconds,
            "errors": {name: str(err) for name, err in self.errors.items()},
        }


async def settle_all(
    tasks: Iterable[Task[T]],
    progress: ProgressCallback | None = None,
) -> SettledGroup[T]:
    """Run *tasks* concurrently and wait for every one of them to settle.

    No member is cancelled when a sibling fails. Successes and failures are
    returned separately, keyed by task name, in input order.
    """
    tasks = list(tasks)
    group: SettledGroup[T] = SettledGroup(started_at=datetime.now(UTC))

    outcomes = await asyncio.gather(
        *(task.run(progress) for task in tasks),
        return_exceptions=True,
    )

    for task, outcome in zip(tasks, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            group.errors[task.name] = outcome
            logger.warning("task_group.item_failed", task=task.name, error=str(outcome))
        else:
            group.results[task.name] = outcome

    group.completed_at = datetime.now(UTC)
    logger.info(
        "task_group.complete",
        succeeded=len(group.results),
        failed=len(group.errors),
        duration_seconds=group.duration_seconds,
    )
    return group


__all__ = [
    "ProgressCallback",
    "SettledGroup",
    "Task",
    "settle_all",
]
