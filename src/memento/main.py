"""CLI entrypoint for memento."""

import sys
from pathlib import Path

import rich_click as click

from memento import __version__
from memento.config import ConfigError
from memento.orchestrator.controllers import (
    EnqueueCommand,
    ExecuteCommand,
    InitCommand,
    MementoCliController,
    StartCommand,
    StatusCommand,
    StopCommand,
    TasksCommand,
)
from memento.orchestrator.coordinator import InitializationError
from memento.orchestrator.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = MementoCliController()

_PROJECT_OPTION = click.option(
    "--project-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory holding `.memento/` (default: MEMENTO_PROJECT_ROOT or cwd).",
)


@click.group()
@click.version_option(version=__version__, prog_name="memento")
def memento() -> None:
    """Durable task coordination for CLI agents."""


@memento.command("init")
@_PROJECT_OPTION
def init(project_root: Path | None) -> None:
    """Create `.memento/` with default config, memory notes and task areas."""

    _emit_lines(_guarded(CONTROLLER.init, InitCommand(project_root=project_root)))


@memento.command("start")
@_PROJECT_OPTION
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0.01),
    default=0.2,
    show_default=True,
    help="Seconds between supervisory ticks.",
)
@click.option(
    "--headless",
    is_flag=True,
    default=False,
    help="Do not launch the interactive session; accept tasks via `memento enqueue` only.",
)
def start(project_root: Path | None, poll_interval: float, headless: bool) -> None:
    """Run the coordinator in the foreground until SIGINT/SIGTERM."""

    _emit_lines(
        _guarded(
            CONTROLLER.start,
            StartCommand(
                project_root=project_root,
                poll_interval_seconds=poll_interval,
                headless=headless,
            ),
        ),
    )


@memento.command("stop")
@_PROJECT_OPTION
@click.option(
    "--wait",
    "wait_seconds",
    type=click.FloatRange(min=0),
    default=10.0,
    show_default=True,
    help="Seconds to wait for the coordinator to release its lock.",
)
def stop(project_root: Path | None, wait_seconds: float) -> None:
    """Ask the running coordinator to shut down."""

    _emit_lines(
        _guarded(CONTROLLER.stop, StopCommand(project_root=project_root, wait_seconds=wait_seconds)),
    )


@memento.command("status")
@_PROJECT_OPTION
def status(project_root: Path | None) -> None:
    """Show coordinator state, active workers and task counts."""

    _emit_lines(_guarded(CONTROLLER.status, StatusCommand(project_root=project_root)))


@memento.command("enqueue")
@_PROJECT_OPTION
@click.argument("description")
def enqueue(project_root: Path | None, description: str) -> None:
    """Add a pending task with the current memory snapshot."""

    _emit_lines(
        _guarded(
            CONTROLLER.enqueue,
            EnqueueCommand(project_root=project_root, description=description),
        ),
    )


@memento.command("tasks")
@_PROJECT_OPTION
@click.option(
    "--area",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Only list one lifecycle area.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="Newest tasks shown per area.",
)
def tasks(project_root: Path | None, area: str | None, limit: int) -> None:
    """List task records by lifecycle area."""

    _emit_lines(
        _guarded(
            CONTROLLER.tasks,
            TasksCommand(
                project_root=project_root,
                area=TaskStatus(area) if area is not None else None,
                limit=limit,
            ),
        ),
    )


@memento.command("execute")
@_PROJECT_OPTION
@click.option("--task-id", required=True, help="Pending task to claim and run.")
@click.option("--worker-id", required=True, help="Worker id recorded on the claim.")
def execute(project_root: Path | None, task_id: str, worker_id: str) -> None:
    """Executor entry point: run one task through the agent (spawned by `start`)."""

    result = _guarded(
        CONTROLLER.execute,
        ExecuteCommand(project_root=project_root, task_id=task_id, worker_id=worker_id),
    )
    _emit_lines(result.lines)
    if result.exit_code:
        sys.exit(result.exit_code)


def _guarded(handler, command):
    try:
        return handler(command)
    except (ConfigError, InitializationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    memento()
