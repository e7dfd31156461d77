"""Locally installed runtime templates.

A runtime template is a scaffold directory (Dockerfile plus runtime glue)
that is merged with the user's function source at build time. Templates
live under ``{template_dir}/{runtime}``; a runtime id may contain a
repository prefix (``official/python``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

IGNORE_FILE = ".dockerignore"


@runtime_checkable
class TemplateStore(Protocol):
    """Read-only view of installed templates."""

    def is_available(self, runtime: str) -> bool: ...

    def path(self, runtime: str) -> Path: ...


class DirectoryTemplateStore:
    """Templates stored as plain directories under *root*."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path(self, runtime: str) -> Path:
        return self.root / runtime

    def is_available(self, runtime: str) -> bool:
        return self.path(runtime).is_dir()


def read_ignore_patterns(template_dir: Path) -> list[str]:
    """Return the entries of the template's ignore file, if it has one.

    Blank lines and ``#`` comments are skipped.
    """
    ignore_file = template_dir / IGNORE_FILE
    if not ignore_file.is_file():
        return []
    patterns = []
    for line in ignore_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return patterns


__all__ = [
    "DirectoryTemplateStore",
    "IGNORE_FILE",
    "TemplateStore",
    "read_ignore_patterns",
]
