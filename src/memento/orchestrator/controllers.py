"""Controllers for coordinator CLI commands."""

from __future__ import annotations

import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from memento.config import Settings
from memento.logging_config import configure_logging
from memento.memory import MemoryBank
from memento.orchestrator.contracts import format_timestamp
from memento.orchestrator.coordinator import Coordinator
from memento.orchestrator.executor import TaskExecutor
from memento.orchestrator.models import SupervisorState, Task, TaskStatus
from memento.orchestrator.status import StatusFile, lock_is_held, read_lock_pid
from memento.orchestrator.store import AREAS, TaskStore

_DESCRIPTION_PREVIEW_CHARS = 60
_STOP_POLL_SECONDS = 0.2


@dataclass(slots=True)
class InitCommand:
    """CLI input for project initialization."""

    project_root: Path | None


@dataclass(slots=True)
class StartCommand:
    """CLI input for running the coordinator in the foreground."""

    project_root: Path | None
    poll_interval_seconds: float = 0.2
    headless: bool = False


@dataclass(slots=True)
class StopCommand:
    project_root: Path | None
    wait_seconds: float = 10.0


@dataclass(slots=True)
class StatusCommand:
    project_root: Path | None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for adding a task without the interactive session."""

    project_root: Path | None
    description: str


@dataclass(slots=True)
class TasksCommand:
    project_root: Path | None
    area: TaskStatus | None
    limit: int


@dataclass(slots=True)
class ExecuteCommand:
    """CLI input for the executor entry point spawned by the coordinator."""

    project_root: Path | None
    task_id: str
    worker_id: str


@dataclass(slots=True)
class ExecuteResult:
    lines: list[str]
    exit_code: int


class MementoCliController:
    """Coordinates setup, supervision and inspection CLI operations."""

    def init(self, command: InitCommand) -> list[str]:
        settings = Settings.load(command.project_root)
        settings.paths.ensure()
        TaskStore(settings.paths.tasks_dir).ensure_layout()
        created = MemoryBank(settings.paths.memory_dir).ensure_defaults()
        lines = [
            f"Initialized memento in {settings.paths.base_dir}",
            f"Config: {settings.paths.config_path}",
        ]
        lines.extend(f"Created memory/{label}" for label in created)
        return lines

    def start(self, command: StartCommand) -> list[str]:
        settings = Settings.load(command.project_root)
        if command.headless:
            settings.coordinator.session_command = ""
        configure_logging(
            level=settings.log_level,
            log_file=settings.paths.commander_log_path,
            context="commander",
        )
        coordinator = Coordinator(settings)
        coordinator.start()
        coordinator.run_loop(poll_interval_seconds=command.poll_interval_seconds)
        return ["Coordinator stopped."]

    def stop(self, command: StopCommand) -> list[str]:
        settings = Settings.load(command.project_root, create=False)
        lock_path = settings.paths.lock_path
        if not lock_is_held(lock_path):
            return ["Coordinator is not running."]
        pid = read_lock_pid(lock_path)
        if pid is None:
            return [f"Coordinator lock {lock_path} is held but records no pid."]
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return [f"Coordinator pid {pid} is gone."]

        deadline = time.monotonic() + command.wait_seconds
        while time.monotonic() < deadline:
            if not lock_is_held(lock_path):
                return [f"Coordinator (pid {pid}) stopped."]
            time.sleep(_STOP_POLL_SECONDS)
        return [f"Sent SIGTERM to coordinator pid {pid}; it is still shutting down."]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.load(command.project_root, create=False)
        status = StatusFile(settings.paths.status_path).read()
        running = lock_is_held(settings.paths.lock_path)

        lines: list[str] = []
        if status is None:
            lines.append("Coordinator: not running")
        elif running:
            lines.append(
                f"Coordinator: {status.state.value} "
                f"(pid={status.pid}, started={format_timestamp(status.start_time)})",
            )
        else:
            stale = "" if status.state == SupervisorState.STOPPED else f" (last state {status.state.value})"
            lines.append(f"Coordinator: not running{stale}")
        if status is not None:
            lines.append(f"Last update: {format_timestamp(status.last_update)}")
            if running:
                lines.append(f"Workers: {len(status.workers)}/{settings.coordinator.max_workers}")
                for worker_id, entry in sorted(status.workers.items()):
                    lines.append(
                        f"  {worker_id} -> {entry.task_id} "
                        f"(since {format_timestamp(entry.start_time)})",
                    )

        counts = TaskStore(settings.paths.tasks_dir).counts()
        lines.append(
            "Tasks: " + " ".join(f"{area.value}={counts[area]}" for area in AREAS),
        )
        return lines

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        description = command.description.strip()
        if not description:
            raise ValueError("Task description must not be empty.")
        settings = Settings.load(command.project_root)
        store = TaskStore(settings.paths.tasks_dir)
        store.ensure_layout()
        memory = MemoryBank(settings.paths.memory_dir)
        task = store.create(description, memory.snapshot())
        lines = [f"Task enqueued: task_id={task.id} status={task.status.value}"]
        if not lock_is_held(settings.paths.lock_path):
            lines.append("Coordinator is not running; the task stays pending until it starts.")
        return lines

    def tasks(self, command: TasksCommand) -> list[str]:
        settings = Settings.load(command.project_root, create=False)
        store = TaskStore(settings.paths.tasks_dir)
        areas = (command.area,) if command.area is not None else AREAS
        lines: list[str] = []
        for area in areas:
            tasks = store.list_area(area)
            lines.append(f"{area.value} ({len(tasks)}):")
            for task in tasks[-command.limit :]:
                lines.append(f"  {_task_line(task)}")
        return lines

    def execute(self, command: ExecuteCommand) -> ExecuteResult:
        settings = Settings.load(command.project_root, create=False)
        configure_logging(level=settings.log_level, log_file=None, context=command.worker_id)
        executor = TaskExecutor(
            store=TaskStore(settings.paths.tasks_dir),
            settings=settings.executor,
            logs_dir=settings.paths.logs_dir,
        )
        outcome = executor.execute(command.task_id, worker_id=command.worker_id)
        if outcome.task is not None and outcome.task.result is not None:
            result = outcome.task.result
            line = f"Task {outcome.task_id}: {result.status.value}"
            if result.cause is not None:
                line += f" ({result.cause.value})"
            lines = [line]
        else:
            lines = [f"Task {outcome.task_id} not executed: {outcome.error or 'unknown error'}"]
        return ExecuteResult(lines=lines, exit_code=outcome.exit_code)


def _task_line(task: Task) -> str:
    description = " ".join(task.description.split())
    if len(description) > _DESCRIPTION_PREVIEW_CHARS:
        description = description[: _DESCRIPTION_PREVIEW_CHARS - 3] + "..."
    parts = [task.id]
    if task.attempt > 1:
        parts.append(f"attempt={task.attempt}")
    if task.worker_id is not None and task.status == TaskStatus.PROCESSING:
        parts.append(f"worker={task.worker_id}")
    if task.result is not None:
        outcome = task.result.status.value
        if task.result.cause is not None:
            outcome += f"/{task.result.cause.value}"
        parts.append(outcome)
    if task.status == TaskStatus.COMPLETED and not task.processed:
        parts.append("unprocessed")
    parts.append(description)
    return "  ".join(parts)
