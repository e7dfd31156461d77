"""Build one function of a stack into a container image.

Pipeline per function::

    template available?  ── no ──► TemplateNotFoundError
         │
    build scripts (shell, cwd = function source, in order)
         │
    {staging}/{stack}/{function}/
         ├── <template files>
         └── function/<source minus excludes and template ignore entries>
         │
    tar ──► runtime.build_image(tag, PROVIDER=<provider>)
         │
    events ──► progress lines ──► last aux.ID ──► Image

Build scripts run before the source is copied so anything they generate is
part of the build context.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import tarfile
import tempfile
from collections.abc import Callable, Iterable
from fnmatch import fnmatch
from pathlib import Path
from typing import IO

from stackrun.build.events import event_to_line, image_id_from_events
from stackrun.build.stage import StageStackTask, stack_staging_dir
from stackrun.config import StackRunSettings
from stackrun.errors import (
    BuildScriptError,
    ErrorContext,
    ImageBuildError,
    TemplateNotFoundError,
)
from stackrun.logging import get_logger
from stackrun.models import FunctionDescriptor, Image, Stack
from stackrun.runtime import BuildEvent, ContainerRuntime
from stackrun.tasks import ProgressCallback, SettledGroup, Task, settle_all
from stackrun.templates import TemplateStore, read_ignore_patterns

logger = get_logger(__name__)

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")

# Subdirectory of the build context holding the function source
SOURCE_DIR = "function"


def sanitize(value: str) -> str:
    """Lowercase *value* and strip every character outside ``[a-z0-9]``."""
    return _NON_ALPHANUMERIC.sub("", value.lower())


def tag_for_function(stack_name: str, func: FunctionDescriptor, provider: str) -> str:
    """Image tag for *func*: its custom tag or ``{stack}-{function}``, suffixed by provider."""
    base = func.tag or f"{sanitize(stack_name)}-{sanitize(func.name)}"
    return f"{base}-{sanitize(provider)}"


def ignore_patterns(root: Path, patterns: Iterable[str]) -> Callable[[str, list[str]], set[str]]:
    """``shutil.copytree`` ignore callable for glob *patterns* relative to *root*.

    A pattern matches an entry's bare name or its path relative to *root*.
    """
    cleaned = []
    for pattern in patterns:
        pattern = pattern.strip().rstrip("/")
        if pattern.startswith("./"):
            pattern = pattern[2:]
        if pattern:
            cleaned.append(pattern.lstrip("/"))

    def _ignore(directory: str, names: list[str]) -> set[str]:
        relative_dir = Path(directory).relative_to(root)
        ignored = set()
        for name in names:
            relative = (relative_dir / name).as_posix()
            if any(fnmatch(name, p) or fnmatch(relative, p) for p in cleaned):
                ignored.add(name)
        return ignored

    return _ignore


def _template_ignore(template_dir: Path) -> Callable[[str, list[str]], set[str]]:
    # the template's own sample source is replaced by the function source
    def _ignore(directory: str, names: list[str]) -> set[str]:
        if Path(directory) == template_dir and SOURCE_DIR in names:
            return {SOURCE_DIR}
        return set()

    return _ignore


class BuildFunctionTask(Task[Image]):
    """Produce an :class:`Image` for one function descriptor."""

    def __init__(
        self,
        func: FunctionDescriptor,
        *,
        stack_name: str,
        base_dir: Path,
        runtime: ContainerRuntime,
        templates: TemplateStore,
        staging_root: Path,
        provider: str = "local",
    ) -> None:
        super().__init__(func.name)
        self.func = func
        self.stack_name = stack_name
        self.base_dir = Path(base_dir)
        self.runtime = runtime
        self.templates = templates
        self.provider = provider
        self.stage_dir = stack_staging_dir(staging_root, stack_name) / func.name
        self.tag = tag_for_function(stack_name, func, provider)

    @property
    def source_dir(self) -> Path:
        return (self.base_dir / self.func.path).resolve()

    def _context(self) -> ErrorContext:
        return ErrorContext(stack=self.stack_name, function=self.func.name)

    async def _do(self) -> Image:
        if not self.templates.is_available(self.func.runtime):
            raise TemplateNotFoundError(self.func.runtime, context=self._context())
        template_dir = self.templates.path(self.func.runtime)

        await self._run_build_scripts()

        self.update("Staging build context")
        excludes = [*self.func.excludes, *read_ignore_patterns(template_dir)]
        await asyncio.to_thread(self._stage, template_dir, excludes)

        self.update(f"Building image {self.tag}")
        with tempfile.TemporaryFile() as context:
            await asyncio.to_thread(self._pack, context)
            context.seek(0)
            image_id = await self._build(context)

        logger.info("build.image_ready", function=self.func.name, tag=self.tag, image_id=image_id[:12])
        return Image(id=image_id, function=self.func)

    async def _run_build_scripts(self) -> None:
        for script in self.func.build_scripts:
            self.update(f"Running build script: {script}")
            proc = await asyncio.create_subprocess_shell(
                script,
                cwd=self.source_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await proc.communicate()
            text = output.decode("utf-8", errors="replace")
            if proc.returncode != 0:
                raise BuildScriptError(script, proc.returncode, text, context=self._context())
            logger.debug("build.script_complete", function=self.func.name, script=script)

    def _stage(self, template_dir: Path, excludes: list[str]) -> None:
        if self.stage_dir.exists():
            shutil.rmtree(self.stage_dir)
        shutil.copytree(template_dir, self.stage_dir, ignore=_template_ignore(template_dir))
        source = self.source_dir
        shutil.copytree(source, self.stage_dir / SOURCE_DIR, ignore=ignore_patterns(source, excludes))

    def _pack(self, fileobj: IO[bytes]) -> None:
        with tarfile.open(fileobj=fileobj, mode="w") as archive:
            for child in sorted(self.stage_dir.iterdir()):
                archive.add(child, arcname=child.name)

    async def _build(self, context: IO[bytes]) -> str:
        events: list[BuildEvent] = []
        try:
            async for event in self.runtime.build_image(
                context, tag=self.tag, buildargs={"PROVIDER": self.provider}
            ):
                events.append(event)
                line = event_to_line(event)
                if line:
                    self.update(line)
            return image_id_from_events(events)
        except ImageBuildError as exc:
            raise exc.with_context(stack=self.stack_name, function=self.func.name)


async def build_stack(
    stack: Stack,
    *,
    runtime: ContainerRuntime,
    templates: TemplateStore,
    settings: StackRunSettings,
    progress: ProgressCallback | None = None,
) -> SettledGroup[Image]:
    """Stage the stack, then build every function concurrently.

    Returns once every build settled. ``results`` maps function name to
    :class:`Image`; ``errors`` names exactly the functions that failed.
    """
    await StageStackTask(stack.name, settings.staging_dir).run(progress)
    tasks = [
        BuildFunctionTask(
            func,
            stack_name=stack.name,
            base_dir=stack.directory,
            runtime=runtime,
            templates=templates,
            staging_root=settings.staging_dir,
            provider=settings.provider,
        )
        for func in stack.functions
    ]
    return await settle_all(tasks, progress)


__all__ = [
    "BuildFunctionTask",
    "SOURCE_DIR",
    "build_stack",
    "ignore_patterns",
    "sanitize",
    "tag_for_function",
]
