"""Builders and recorders shared by stackrun tests."""

from __future__ import annotations

import asyncio
from pathlib import Path

from stackrun.models import FunctionDescriptor, Image

TEMPLATE = "official/python"


def write_function(root: Path, name: str) -> Path:
    """Create a function source directory with a few files worth excluding."""
    source = root / name
    source.mkdir(parents=True)
    (source / "main.py").write_text(f"print('{name}')\n")
    (source / "debug.log").write_text("noise\n")
    (source / "node_modules").mkdir()
    (source / "node_modules" / "dep.js").write_text("//\n")
    return source


def make_image(name: str, image_id: str | None = None) -> Image:
    func = FunctionDescriptor(name=name, path=f"./{name}", runtime=TEMPLATE)
    return Image(id=image_id or f"{name}0123456789abcdef", function=func)


class ProgressLog(list):
    """``ProgressCallback`` that records every ``(name, message)`` pair."""

    def __call__(self, name: str, message: str) -> None:
        self.append((name, message))

    def messages(self, name: str) -> list[str]:
        return [message for task, message in self if task == name]


def other_tasks() -> set[asyncio.Task]:
    """Tasks still alive besides the running test."""
    current = asyncio.current_task()
    return {task for task in asyncio.all_tasks() if task is not current and not task.done()}


async def keys(*pressed: str):
    """Async iterable of key presses, yielding to the loop between keys."""
    for key in pressed:
        await asyncio.sleep(0)
        yield key
