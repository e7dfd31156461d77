"""
Typer application for stackrun.

``stackrun run [DIRECTORY]`` loads the stack descriptor, checks that the
container daemon answers, then builds and runs the stack until ``q``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
import yaml
from rich.markup import escape
from typer import Typer

from stackrun import __version__
from stackrun.config import StackRunSettings
from stackrun.console import KeyReader, LiveProgress, err_console, print_cycle
from stackrun.errors import DaemonError, StackRunError
from stackrun.logging import configure_logging, get_logger
from stackrun.models import Stack
from stackrun.runtime import ContainerRuntime, DockerRuntime
from stackrun.session import CycleResult, Session
from stackrun.templates import DirectoryTemplateStore

logger = get_logger(__name__)

app = Typer(
    name="stackrun",
    help="stackrun: build every function of a stack and run them together locally.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

SOMETHING_WENT_WRONG = "Something went wrong, see error details."

# Swapped out in tests
create_runtime = DockerRuntime
open_keys = KeyReader


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"stackrun {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """stackrun CLI."""


async def serve(stack: Stack, runtime: ContainerRuntime, settings: StackRunSettings) -> None:
    """Run an interactive session for *stack* until the user quits."""
    await runtime.ping()

    progress = LiveProgress()
    session = Session(
        stack,
        runtime=runtime,
        templates=DirectoryTemplateStore(settings.template_dir),
        settings=settings,
        progress=progress,
    )

    def on_cycle(result: CycleResult) -> None:
        progress.stop()
        print_cycle(result)

    try:
        async with open_keys() as keys:
            await session.run(keys, on_cycle)
    finally:
        progress.stop()


@app.command()
def run(
    directory: Path = typer.Argument(Path("."), help="Directory holding the stack descriptor."),
    file: str = typer.Option("stack.yaml", "--file", "-f", help="Stack descriptor, relative to DIRECTORY."),
    provider: str | None = typer.Option(None, "--provider", "-p", help="Provider passed to image builds."),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, ...)."),
) -> None:
    """Build and run every function of a stack. Press [bold]r[/bold] to refresh, [bold]q[/bold] to quit."""
    overrides = {"provider": provider, "log_level": log_level}
    settings = StackRunSettings(**{key: value for key, value in overrides.items() if value is not None})
    configure_logging(level=settings.log_level, json_format=settings.json_logs)

    descriptor = directory / file
    try:
        stack = Stack.from_file(descriptor)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        err_console.print(f"[bold red]Error[/bold red]: unable to load {descriptor}: {escape(str(exc))}")
        raise typer.Exit(code=1) from exc

    try:
        asyncio.run(serve(stack, create_runtime(), settings))
    except DaemonError as exc:
        err_console.print(f"[bold red]Error[/bold red]: {escape(exc.message)}")
        raise typer.Exit(code=1) from exc
    except StackRunError as exc:
        logger.error("session.failed", **exc.to_dict())
        err_console.print(f"[bold red]{SOMETHING_WENT_WRONG}[/bold red]\n{escape(exc.message)}")
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        # Ctrl-C quits; the session has already been torn down
        pass


if __name__ == "__main__":
    app()
