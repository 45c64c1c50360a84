"""File-based contracts for task records and the supervisor status record."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from memento.orchestrator.models import (
    FailureCause,
    ResultStatus,
    SupervisorState,
    SystemStatus,
    Task,
    TaskResult,
    TaskStatus,
    WorkerStatusEntry,
)


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""

    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def write_text_atomic(path: Path, text: str) -> None:
    """Write to a sibling temp file, fsync, then ``os.replace`` into place."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def task_to_record(task: Task) -> dict[str, Any]:
    """Serialize a task into its persisted camelCase record."""

    record: dict[str, Any] = {
        "id": task.id,
        "description": task.description,
        "status": task.status.value,
        "memoryContext": dict(task.memory_context),
        "attempt": task.attempt,
    }
    if task.created_at is not None:
        record["createdAt"] = format_timestamp(task.created_at)
    if task.retry_of is not None:
        record["retryOf"] = task.retry_of
    if task.worker_id is not None:
        record["workerId"] = task.worker_id
    if task.worker_pid is not None:
        record["workerPid"] = task.worker_pid
    if task.processing_start_time is not None:
        record["processingStartTime"] = format_timestamp(task.processing_start_time)
    if task.result is not None:
        record["result"] = result_to_record(task.result)
    if task.completed_at is not None:
        record["completedAt"] = format_timestamp(task.completed_at)
    if task.failed_at is not None:
        record["failedAt"] = format_timestamp(task.failed_at)
    if task.execution_time_ms is not None:
        record["executionTime"] = task.execution_time_ms
    if task.processed:
        record["processed"] = True
    return record


def task_from_record(raw: dict[str, Any]) -> Task:
    """Deserialize and validate a persisted task record."""

    task_id = raw.get("id")
    description = raw.get("description")
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValueError("task.id must be a non-empty string")
    if not isinstance(description, str):
        raise TypeError("task.description must be a string")

    status_raw = raw.get("status", TaskStatus.PENDING.value)
    try:
        status = TaskStatus(status_raw)
    except ValueError as error:
        raise ValueError(f"task.status is not a known lifecycle state: {status_raw!r}") from error

    memory_context_raw = raw.get("memoryContext") or {}
    if not isinstance(memory_context_raw, dict):
        raise TypeError("task.memoryContext must be an object")
    memory_context = {str(key): str(value) for key, value in memory_context_raw.items()}

    attempt = raw.get("attempt", 1)
    if not isinstance(attempt, int) or isinstance(attempt, bool) or attempt < 1:
        raise ValueError("task.attempt must be an integer >= 1")

    worker_pid = raw.get("workerPid")
    if worker_pid is not None and (not isinstance(worker_pid, int) or isinstance(worker_pid, bool)):
        raise TypeError("task.workerPid must be an integer when provided")

    result_raw = raw.get("result")
    if result_raw is not None and not isinstance(result_raw, dict):
        raise TypeError("task.result must be an object when provided")

    execution_time = raw.get("executionTime")
    if execution_time is not None and not isinstance(execution_time, (int, float)):
        raise TypeError("task.executionTime must be a number when provided")

    return Task(
        id=task_id,
        description=description,
        status=status,
        created_at=parse_timestamp(raw.get("createdAt")),
        memory_context=memory_context,
        attempt=attempt,
        retry_of=_optional_str(raw.get("retryOf")),
        worker_id=_optional_str(raw.get("workerId")),
        worker_pid=worker_pid,
        processing_start_time=parse_timestamp(raw.get("processingStartTime")),
        result=result_from_record(result_raw) if result_raw is not None else None,
        completed_at=parse_timestamp(raw.get("completedAt")),
        failed_at=parse_timestamp(raw.get("failedAt")),
        execution_time_ms=int(execution_time) if execution_time is not None else None,
        processed=bool(raw.get("processed", False)),
    )


def result_to_record(result: TaskResult) -> dict[str, Any]:
    record: dict[str, Any] = {
        "status": result.status.value,
        "summary": result.summary,
        "details": result.details,
        "errors": result.errors,
        "memoryUpdates": {
            category: dict(files) for category, files in result.memory_updates.items()
        },
    }
    if result.cause is not None:
        record["cause"] = result.cause.value
    if result.exit_code is not None:
        record["exitCode"] = result.exit_code
    return record


def result_from_record(raw: dict[str, Any]) -> TaskResult:
    """Lenient reader for stored results, including legacy ``error``/``stack`` failures."""

    status = (
        ResultStatus.SUCCESS
        if raw.get("status") == ResultStatus.SUCCESS.value
        else ResultStatus.FAILED
    )
    cause: FailureCause | None = None
    cause_raw = raw.get("cause")
    if isinstance(cause_raw, str):
        try:
            cause = FailureCause(cause_raw)
        except ValueError:
            cause = None
    exit_code = raw.get("exitCode")
    return TaskResult(
        status=status,
        summary=coerce_text(raw.get("summary")),
        details=coerce_text(raw.get("details", raw.get("stack"))),
        errors=coerce_text(raw.get("errors", raw.get("error"))),
        memory_updates=normalize_memory_updates(raw.get("memoryUpdates")),
        cause=cause,
        exit_code=exit_code if isinstance(exit_code, int) and not isinstance(exit_code, bool) else None,
    )


def normalize_memory_updates(value: object) -> dict[str, dict[str, str]]:
    """Keep only ``{category: {file: text}}`` entries with string leaves."""

    if not isinstance(value, dict):
        return {}
    updates: dict[str, dict[str, str]] = {}
    for category, files in value.items():
        if not isinstance(category, str) or not isinstance(files, dict):
            continue
        entries = {
            name: content
            for name, content in files.items()
            if isinstance(name, str) and isinstance(content, str)
        }
        if entries:
            updates[category] = entries
    return updates


def coerce_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(str(item) for item in value)
    return json.dumps(value, ensure_ascii=False)


def read_task(path: Path) -> Task:
    return task_from_record(load_json(path))


def write_task(path: Path, task: Task) -> None:
    write_json_atomic(path, task_to_record(task))


def status_to_record(status: SystemStatus) -> dict[str, Any]:
    return {
        "commander": {
            "pid": status.pid,
            "startTime": format_timestamp(status.start_time),
            "status": status.state.value,
        },
        "workers": {
            worker_id: {
                "taskId": entry.task_id,
                "startTime": format_timestamp(entry.start_time),
            }
            for worker_id, entry in status.workers.items()
        },
        "lastUpdate": format_timestamp(status.last_update),
    }


def status_from_record(raw: dict[str, Any]) -> SystemStatus:
    """Deserialize the status record; raises on structurally invalid payloads."""

    commander = raw.get("commander")
    if not isinstance(commander, dict):
        raise TypeError("status.commander must be an object")
    pid = commander.get("pid")
    if not isinstance(pid, int) or isinstance(pid, bool):
        raise TypeError("status.commander.pid must be an integer")
    state = SupervisorState(commander.get("status"))
    start_time = parse_timestamp(commander.get("startTime"))
    if start_time is None:
        raise ValueError("status.commander.startTime must be an ISO timestamp")

    workers: dict[str, WorkerStatusEntry] = {}
    workers_raw = raw.get("workers") or {}
    if not isinstance(workers_raw, dict):
        raise TypeError("status.workers must be an object")
    for worker_id, entry in workers_raw.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("taskId"), str):
            continue
        workers[str(worker_id)] = WorkerStatusEntry(
            task_id=entry["taskId"],
            start_time=parse_timestamp(entry.get("startTime")) or start_time,
        )

    return SystemStatus(
        pid=pid,
        start_time=start_time,
        state=state,
        last_update=parse_timestamp(raw.get("lastUpdate")) or start_time,
        workers=workers,
    )


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
