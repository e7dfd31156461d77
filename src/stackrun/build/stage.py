"""Staging area for a stack's build contexts."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from stackrun.logging import get_logger
from stackrun.tasks import Task

logger = get_logger(__name__)


def stack_staging_dir(staging_root: Path, stack_name: str) -> Path:
    return Path(staging_root) / stack_name


class StageStackTask(Task[Path]):
    """Clear and recreate ``{staging_root}/{stack}``.

    Runs before any function build of the cycle, so each cycle starts from
    an empty staging area.
    """

    def __init__(self, stack_name: str, staging_root: Path) -> None:
        super().__init__(f"Staging {stack_name}")
        self.stack_dir = stack_staging_dir(staging_root, stack_name)

    async def _do(self) -> Path:
        self.update(f"Preparing {self.stack_dir}")
        await asyncio.to_thread(self._reset)
        logger.debug("stage.ready", path=str(self.stack_dir))
        return self.stack_dir

    def _reset(self) -> None:
        if self.stack_dir.exists():
            shutil.rmtree(self.stack_dir)
        self.stack_dir.mkdir(parents=True)


__all__ = ["StageStackTask", "stack_staging_dir"]
