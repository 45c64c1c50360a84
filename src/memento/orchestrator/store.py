"""Durable directory-backed task queue."""

from __future__ import annotations

import fcntl
import logging
import os
import re
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from memento.orchestrator.contracts import (
    read_task,
    task_to_record,
    utc_now,
    write_json_atomic,
    write_task,
)
from memento.orchestrator.models import FailureCause, Task, TaskResult, TaskStatus

logger = logging.getLogger(__name__)

AREAS: tuple[TaskStatus, ...] = (TaskStatus.PENDING, TaskStatus.PROCESSING, TaskStatus.COMPLETED)
_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_CREATE_ATTEMPTS = 5


class TaskRecordError(OSError):
    """Task record is missing or cannot be parsed."""

    def __init__(self, message: str, *, task_id: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class ClaimConflictError(RuntimeError):
    """Task is not in ``pending``: already claimed, resolved, or never existed."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is not pending; claim rejected.")
        self.task_id = task_id


def new_task_id() -> str:
    """Monotonic-time prefix plus random suffix."""

    return f"task_{int(time.time() * 1000)}_{uuid4().hex[:10]}"


class TaskStore:
    """Task records as ``<area>/<id>.json`` files; area moves are single renames.

    Claim, resolve and mark-processed take a per-task ``flock`` so that two
    writers racing on the same id cannot both relocate or rewrite it.
    """

    def __init__(
        self,
        tasks_dir: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks_dir = tasks_dir
        self.locks_dir = tasks_dir / ".locks"
        self._clock = clock

    def ensure_layout(self) -> None:
        for area in AREAS:
            self.area_dir(area).mkdir(parents=True, exist_ok=True)
        self.locks_dir.mkdir(parents=True, exist_ok=True)

    def area_dir(self, area: TaskStatus) -> Path:
        return self.tasks_dir / area.value

    def record_path(self, task_id: str, area: TaskStatus) -> Path:
        _validate_task_id(task_id)
        return self.area_dir(area) / f"{task_id}.json"

    def create(
        self,
        description: str,
        context_snapshot: dict[str, str],
        *,
        attempt: int = 1,
        retry_of: str | None = None,
    ) -> Task:
        """Write a new record into ``pending`` under a fresh, never-reused id."""

        pending_dir = self.area_dir(TaskStatus.PENDING)
        pending_dir.mkdir(parents=True, exist_ok=True)
        for _ in range(_CREATE_ATTEMPTS):
            task = Task(
                id=new_task_id(),
                description=description,
                status=TaskStatus.PENDING,
                created_at=self._clock(),
                memory_context=dict(context_snapshot),
                attempt=attempt,
                retry_of=retry_of,
            )
            if self.locate(task.id) is not None:
                continue
            staging = pending_dir / f".{task.id}.create.tmp"
            write_json_atomic(staging, task_to_record(task))
            try:
                os.link(staging, self.record_path(task.id, TaskStatus.PENDING))
            except FileExistsError:
                continue
            finally:
                staging.unlink(missing_ok=True)
            logger.info("Task %s created (attempt %d)", task.id, attempt)
            return task
        raise TaskRecordError("Could not allocate a unique task id.", task_id="")

    def load(self, task_id: str, area: TaskStatus = TaskStatus.PENDING) -> Task:
        """Read one record from a given area; the area decides the reported status."""

        path = self.record_path(task_id, area)
        try:
            task = read_task(path)
        except FileNotFoundError as error:
            raise TaskRecordError(
                f"Task {task_id} not found in {area.value}.",
                task_id=task_id,
            ) from error
        except (OSError, ValueError, TypeError) as error:
            raise TaskRecordError(
                f"Task record {path} is unreadable: {error}",
                task_id=task_id,
            ) from error
        task.status = area
        return task

    def locate(self, task_id: str) -> TaskStatus | None:
        """Return the area holding ``task_id``.

        Areas are checked in lifecycle order so a record moving forward during
        the lookup is still found.
        """

        for area in AREAS:
            if self.record_path(task_id, area).exists():
                return area
        return None

    def find(self, task_id: str) -> Task | None:
        area = self.locate(task_id)
        if area is None:
            return None
        return self.load(task_id, area)

    def claim(self, task_id: str, *, worker_id: str, worker_pid: int | None = None) -> Task:
        """Move ``pending → processing`` and stamp the claiming worker."""

        source = self.record_path(task_id, TaskStatus.PENDING)
        target = self.record_path(task_id, TaskStatus.PROCESSING)
        target.parent.mkdir(parents=True, exist_ok=True)
        unreadable: TaskRecordError | None = None
        with self._task_lock(task_id):
            try:
                os.rename(source, target)
            except FileNotFoundError as error:
                raise ClaimConflictError(task_id) from error

            try:
                task = self.load(task_id, TaskStatus.PROCESSING)
            except TaskRecordError as error:
                unreadable = error
            else:
                task.worker_id = worker_id
                task.worker_pid = worker_pid if worker_pid is not None else os.getpid()
                task.processing_start_time = self._clock()
                write_task(target, task)

        if unreadable is not None:
            # Claimed but unusable: close it out so it cannot linger in processing.
            self.resolve(
                task_id,
                TaskResult.failure(
                    cause=FailureCause.INTERNAL_ERROR,
                    summary="Task record became unreadable during claim.",
                    errors=str(unreadable),
                ),
            )
            raise unreadable
        logger.info("Task %s claimed by %s", task_id, worker_id)
        return task

    def resolve(self, task_id: str, result: TaskResult) -> Task:
        """Move the record into ``completed`` with its terminal result.

        Looks in ``processing`` first and then ``pending`` (crash-recovery path).
        A record already in ``completed`` is returned untouched.
        """

        with self._task_lock(task_id):
            for area in (TaskStatus.PROCESSING, TaskStatus.PENDING):
                source = self.record_path(task_id, area)
                if not source.exists():
                    continue
                task = self._load_for_resolution(task_id, area)
                finished_at = self._clock()
                task.status = TaskStatus.COMPLETED
                task.result = result
                if result.succeeded:
                    task.completed_at = finished_at
                else:
                    task.failed_at = finished_at
                started = task.processing_start_time or task.created_at
                if started is not None:
                    task.execution_time_ms = max(
                        0,
                        int((finished_at - started).total_seconds() * 1000),
                    )
                target = self.record_path(task_id, TaskStatus.COMPLETED)
                target.parent.mkdir(parents=True, exist_ok=True)
                write_task(source, task)
                os.rename(source, target)
                logger.info(
                    "Task %s resolved from %s: %s%s",
                    task_id,
                    area.value,
                    result.status.value,
                    f" ({result.cause.value})" if result.cause is not None else "",
                )
                return task

            if self.record_path(task_id, TaskStatus.COMPLETED).exists():
                logger.debug("Task %s already completed; resolve is a no-op", task_id)
                return self.load(task_id, TaskStatus.COMPLETED)
        raise TaskRecordError(f"Task {task_id} not found in any area.", task_id=task_id)

    def mark_processed(self, task_id: str) -> None:
        """Flag a completed record as acknowledged by the coordinator."""

        path = self.record_path(task_id, TaskStatus.COMPLETED)
        with self._task_lock(task_id):
            task = self.load(task_id, TaskStatus.COMPLETED)
            if task.processed:
                return
            task.processed = True
            write_task(path, task)

    def iter_area(self, area: TaskStatus) -> Iterator[Task]:
        """Lazily yield readable records of one area in id order."""

        directory = self.area_dir(area)
        if not directory.exists():
            return
        for path in sorted(directory.glob("*.json")):
            task_id = path.stem
            try:
                yield self.load(task_id, area)
            except TaskRecordError as error:
                # Vanished between listing and reading means it moved on.
                if isinstance(error.__cause__, FileNotFoundError):
                    continue
                logger.warning("Skipping unreadable task record: %s", error)

    def list_area(self, area: TaskStatus) -> list[Task]:
        """Records of one area, oldest first."""

        tasks = list(self.iter_area(area))
        tasks.sort(key=lambda task: (task.created_at is None, task.created_at or 0, task.id))
        return tasks

    def list_unprocessed(self) -> Iterator[Task]:
        """Completed records not yet acknowledged; safe to restart on every poll."""

        for task in self.iter_area(TaskStatus.COMPLETED):
            if not task.processed:
                yield task

    def counts(self) -> dict[TaskStatus, int]:
        result: dict[TaskStatus, int] = {}
        for area in AREAS:
            directory = self.area_dir(area)
            result[area] = len(list(directory.glob("*.json"))) if directory.exists() else 0
        return result

    def _load_for_resolution(self, task_id: str, area: TaskStatus) -> Task:
        try:
            return self.load(task_id, area)
        except TaskRecordError as error:
            logger.error("Resolving unreadable record %s with a placeholder: %s", task_id, error)
            return Task(
                id=task_id,
                description="",
                status=area,
                created_at=None,
            )

    @contextmanager
    def _task_lock(self, task_id: str) -> Iterator[None]:
        _validate_task_id(task_id)
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        with (self.locks_dir / f"{task_id}.lock").open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _validate_task_id(task_id: str) -> None:
    if not _TASK_ID_PATTERN.match(task_id):
        raise ValueError(f"Invalid task id: {task_id!r}")

