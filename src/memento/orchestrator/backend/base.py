"""Agent runner interface used by the task executor."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from memento.orchestrator.models import TaskResult


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to drive one agent invocation."""

    task_id: str
    instruction: str
    command_template: str
    timeout_seconds: float
    stdout_path: Path
    stderr_path: Path
    prompt_path: Path
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from the agent runner."""

    exit_code: int | None
    timed_out: bool
    interrupted: bool
    result: TaskResult | None
    parse_error: str | None
    stdout_path: Path
    stderr_path: Path
    duration_seconds: float

    @property
    def succeeded(self) -> bool:
        return (
            not self.timed_out
            and not self.interrupted
            and self.exit_code == 0
            and self.result is not None
        )


class AgentRunner(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent once and return execution metadata."""
