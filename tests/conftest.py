"""
Shared pytest fixtures for stackrun tests.

Docker is never required: ``StubRuntime`` stands in for the daemon and all
filesystem state lives under ``tmp_path``.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import structlog
import yaml

from stackrun.config import StackRunSettings
from stackrun.models import Stack
from stackrun.runtime import StubRuntime
from stackrun.templates import DirectoryTemplateStore
from tests._support.helpers import TEMPLATE, ProgressLog, write_function


# =============================================================================
# Settings & runtime
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo any logging configuration a test applied."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def settings(tmp_path: Path) -> StackRunSettings:
    return StackRunSettings(
        _env_file=None,
        home=tmp_path / "home",
        container_start_timeout=0.2,
    )


@pytest.fixture
def runtime() -> StubRuntime:
    return StubRuntime()


# =============================================================================
# Templates & stack on disk
# =============================================================================


@pytest.fixture
def templates(settings: StackRunSettings) -> DirectoryTemplateStore:
    """A single installed template with a Dockerfile and an ignore file."""
    template_dir = settings.template_dir / TEMPLATE
    template_dir.mkdir(parents=True)
    (template_dir / "Dockerfile").write_text("FROM python:3.12-slim\nCOPY function /app\n")
    (template_dir / ".dockerignore").write_text("# generated\n*.log\n\n__pycache__\n")
    return DirectoryTemplateStore(settings.template_dir)


@pytest.fixture
def stack_dir(tmp_path: Path) -> Path:
    """A stack directory with three functions and a ``stack.yaml``."""
    root = tmp_path / "project"
    root.mkdir()
    for name in ("a", "b", "c"):
        write_function(root / "functions", name)
    descriptor = {
        "name": "demo",
        "topics": {"orders": {}, "audit": {}},
        "functions": [
            {
                "name": "b",
                "path": "functions/b",
                "runtime": TEMPLATE,
                "excludes": ["node_modules"],
            },
            {
                "name": "a",
                "path": "functions/a",
                "runtime": TEMPLATE,
                "subs": [{"topic": "orders"}],
            },
            {"name": "c", "path": "functions/c", "runtime": TEMPLATE},
        ],
    }
    (root / "stack.yaml").write_text(yaml.safe_dump(descriptor, sort_keys=False))
    return root


@pytest.fixture
def stack(stack_dir: Path) -> Stack:
    return Stack.from_file(stack_dir / "stack.yaml")


@pytest.fixture
def progress() -> ProgressLog:
    return ProgressLog()
