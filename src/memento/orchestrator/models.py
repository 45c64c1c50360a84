"""Domain models for the task queue, worker slots and supervisor status."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol


class TaskStatus(str, Enum):
    """Task lifecycle states; each one is also a storage area."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class ResultStatus(str, Enum):
    """Outcome reported by the agent or synthesized by the executor."""

    SUCCESS = "success"
    FAILED = "failed"


class FailureCause(str, Enum):
    """Normalized causes for synthesized failure results."""

    TIMEOUT = "timeout"
    COORDINATOR_TIMEOUT = "coordinator_timeout"
    AGENT_EXIT = "agent_exit"
    MISSING_RESULT = "missing_result"
    AGENT_NOT_FOUND = "agent_not_found"
    INVALID_COMMAND = "invalid_command"
    SPAWN_ERROR = "spawn_error"
    INTERRUPTED = "interrupted"
    INTERNAL_ERROR = "internal_error"
    EXECUTOR_LOST = "executor_lost"
    STALE_PROCESSING = "stale_processing"
    DISPATCH_FAILED = "dispatch_failed"
    AGENT_REPORTED = "agent_reported"


class SupervisorState(str, Enum):
    """Coordinator lifecycle persisted in ``status.json``."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(slots=True)
class TaskResult:
    """Structured task outcome."""

    status: ResultStatus
    summary: str = ""
    details: str = ""
    errors: str = ""
    memory_updates: dict[str, dict[str, str]] = field(default_factory=dict)
    cause: FailureCause | None = None
    exit_code: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    @classmethod
    def failure(
        cls,
        *,
        cause: FailureCause,
        summary: str,
        details: str = "",
        errors: str = "",
        exit_code: int | None = None,
    ) -> TaskResult:
        """Build a synthesized failure result."""

        return cls(
            status=ResultStatus.FAILED,
            summary=summary,
            details=details,
            errors=errors,
            cause=cause,
            exit_code=exit_code,
        )


@dataclass(slots=True)
class Task:
    """One unit of work with a durable lifecycle record."""

    id: str
    description: str
    status: TaskStatus
    created_at: datetime | None
    memory_context: dict[str, str] = field(default_factory=dict)
    attempt: int = 1
    retry_of: str | None = None
    worker_id: str | None = None
    worker_pid: int | None = None
    processing_start_time: datetime | None = None
    result: TaskResult | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    execution_time_ms: int | None = None
    processed: bool = False


class WorkerProcess(Protocol):
    """Subset of ``subprocess.Popen`` the coordinator relies on."""

    pid: int

    def poll(self) -> int | None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def wait(self, timeout: float | None = None) -> int: ...


@dataclass(slots=True)
class WorkerSlot:
    """Coordinator-held record of one active executor."""

    worker_id: str
    task_id: str
    process: WorkerProcess
    start_time: float
    started_at: datetime
    adopted: bool = False


@dataclass(slots=True)
class WorkerStatusEntry:
    """Worker entry inside the persisted status record."""

    task_id: str
    start_time: datetime


@dataclass(slots=True)
class SystemStatus:
    """Persisted supervisor snapshot."""

    pid: int
    start_time: datetime
    state: SupervisorState
    last_update: datetime
    workers: dict[str, WorkerStatusEntry] = field(default_factory=dict)
