"""Single-task executor: claim, drive one agent run, always resolve."""

from __future__ import annotations

import logging
import os
import traceback
from dataclasses import dataclass
from pathlib import Path

from memento.config import ExecutorSettings
from memento.orchestrator.backend import (
    AgentRunError,
    AgentRunner,
    AgentRunRequest,
    AgentRunResult,
    CliAgentRunner,
)
from memento.orchestrator.lifecycle import stop_signal_handlers
from memento.orchestrator.models import FailureCause, Task, TaskResult, TaskStatus
from memento.orchestrator.protocol import build_instruction
from memento.orchestrator.store import ClaimConflictError, TaskRecordError, TaskStore

logger = logging.getLogger(__name__)

EXIT_SUCCEEDED = 0
EXIT_TASK_FAILED = 1
EXIT_NOT_CLAIMED = 2

_STDERR_TAIL_CHARS = 2000


@dataclass(slots=True)
class ExecutionOutcome:
    """What one executor invocation did to its task."""

    task_id: str
    claimed: bool
    task: Task | None = None
    error: str | None = None

    @property
    def exit_code(self) -> int:
        if not self.claimed:
            return EXIT_NOT_CLAIMED
        if self.task is not None and self.task.result is not None and self.task.result.succeeded:
            return EXIT_SUCCEEDED
        return EXIT_TASK_FAILED


class TaskExecutor:
    """Execute exactly one pending task through the configured agent."""

    def __init__(
        self,
        *,
        store: TaskStore,
        settings: ExecutorSettings,
        logs_dir: Path,
        runner: AgentRunner | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logs_dir = logs_dir
        self.runner = runner or CliAgentRunner()
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def execute(self, task_id: str, *, worker_id: str) -> ExecutionOutcome:
        """Run the task lifecycle; once claimed, the task always ends in ``completed``."""

        with stop_signal_handlers(self._request_stop):
            try:
                self.store.load(task_id, TaskStatus.PENDING)
            except TaskRecordError as error:
                logger.error("Cannot execute task %s: %s", task_id, error)
                return ExecutionOutcome(task_id=task_id, claimed=False, error=str(error))

            try:
                task = self.store.claim(task_id, worker_id=worker_id, worker_pid=os.getpid())
            except ClaimConflictError as error:
                logger.warning("%s", error)
                return ExecutionOutcome(task_id=task_id, claimed=False, error=str(error))
            except TaskRecordError as error:
                logger.error("Task %s became unreadable during claim: %s", task_id, error)
                return ExecutionOutcome(
                    task_id=task_id,
                    claimed=True,
                    task=self.store.find(task_id),
                    error=str(error),
                )

            try:
                result = self._run_agent(task)
            except Exception as error:  # noqa: BLE001
                logger.exception("Executor failed while running task %s", task_id)
                result = TaskResult.failure(
                    cause=FailureCause.INTERNAL_ERROR,
                    summary=f"Executor internal error: {error}",
                    details=traceback.format_exc(),
                    errors=str(error),
                )
            return self._resolve(task_id, result)

    def _run_agent(self, task: Task) -> TaskResult:
        if self._stop_requested:
            return _interrupted_result(self._stop_signal_name)

        request = AgentRunRequest(
            task_id=task.id,
            instruction=build_instruction(task),
            command_template=self.settings.agent_command,
            timeout_seconds=self.settings.timeout_seconds,
            stdout_path=self.logs_dir / f"{task.id}.stdout.log",
            stderr_path=self.logs_dir / f"{task.id}.stderr.log",
            prompt_path=self.logs_dir / f"{task.id}.prompt.txt",
            shutdown_requested=lambda: self._stop_requested,
        )
        try:
            run = self.runner.run(request)
        except AgentRunError as error:
            logger.error("Agent for task %s could not start: %s", task.id, error)
            return TaskResult.failure(
                cause=error.cause,
                summary=f"Agent could not be started: {error}",
                errors=str(error),
            )
        if run.interrupted:
            return _interrupted_result(self._stop_signal_name, exit_code=run.exit_code)
        return result_from_run(run, timeout_seconds=self.settings.timeout_seconds)

    def _resolve(self, task_id: str, result: TaskResult) -> ExecutionOutcome:
        try:
            resolved = self.store.resolve(task_id, result)
        except TaskRecordError as error:
            logger.error("Task %s could not be resolved: %s", task_id, error)
            return ExecutionOutcome(task_id=task_id, claimed=True, error=str(error))
        return ExecutionOutcome(task_id=task_id, claimed=True, task=resolved)

    def _request_stop(self, signal_name: str) -> None:
        if not self._stop_requested:
            logger.warning("Received %s; stopping the agent", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name


def result_from_run(run: AgentRunResult, *, timeout_seconds: float) -> TaskResult:
    """Success needs exit code 0 and a parsed block; everything else is a failure."""

    if run.succeeded and run.result is not None:
        run.result.exit_code = run.exit_code
        return run.result
    if run.timed_out:
        return TaskResult.failure(
            cause=FailureCause.TIMEOUT,
            summary=f"Agent exceeded the {timeout_seconds:g}s deadline and was terminated.",
            errors=_stderr_tail(run.stderr_path),
            exit_code=run.exit_code,
        )
    if run.exit_code != 0:
        details = run.result.summary if run.result is not None else ""
        return TaskResult.failure(
            cause=FailureCause.AGENT_EXIT,
            summary=f"Agent exited with code {run.exit_code}.",
            details=details,
            errors=_stderr_tail(run.stderr_path),
            exit_code=run.exit_code,
        )
    reason = run.parse_error or "No result block found in agent output."
    return TaskResult.failure(
        cause=FailureCause.MISSING_RESULT,
        summary="Agent finished without a valid result block.",
        errors=reason,
        exit_code=run.exit_code,
    )


def _interrupted_result(signal_name: str | None, *, exit_code: int | None = None) -> TaskResult:
    return TaskResult.failure(
        cause=FailureCause.INTERRUPTED,
        summary=f"Executor interrupted by {signal_name or 'signal'} before the agent finished.",
        exit_code=exit_code,
    )


def _stderr_tail(path: Path) -> str:
    try:
        text = path.read_text("utf-8", errors="replace")
    except OSError:
        return ""
    return text[-_STDERR_TAIL_CHARS:].strip()
