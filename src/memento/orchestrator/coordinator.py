"""Long-running supervisor: session watch, bounded dispatch, sweeps and recovery."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Callable
from datetime import datetime

from memento.config import MementoPaths, Settings
from memento.memory import MemoryBank
from memento.orchestrator.backend import terminate_process
from memento.orchestrator.contracts import utc_now
from memento.orchestrator.lifecycle import stop_signal_handlers
from memento.orchestrator.models import (
    FailureCause,
    SupervisorState,
    SystemStatus,
    Task,
    TaskResult,
    TaskStatus,
    WorkerProcess,
    WorkerSlot,
    WorkerStatusEntry,
)
from memento.orchestrator.retry import decide_retry
from memento.orchestrator.session import InteractiveSession, SessionHandle, SessionStartError
from memento.orchestrator.signals import (
    MemoryUpdateRequested,
    SessionEvent,
    SessionSignalTranslator,
    TaskRequested,
)
from memento.orchestrator.status import (
    LockHeldError,
    StatusFile,
    SupervisorLock,
    pid_alive,
)
from memento.orchestrator.store import TaskRecordError, TaskStore

logger = logging.getLogger(__name__)

ExecutorSpawner = Callable[[str, str], WorkerProcess]
SessionFactory = Callable[[], SessionHandle]

_ADOPTED_POLL_SECONDS = 0.1


class InitializationError(RuntimeError):
    """Coordinator cannot start: layout, config or lock problem."""


class AdoptedProcess:
    """Executor left over from a previous coordinator, supervised by pid only."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None

    def poll(self) -> int | None:
        if self.returncode is None and not pid_alive(self.pid):
            # Not our child: the real exit status is unknowable.
            self.returncode = 0
        return self.returncode

    def terminate(self) -> None:
        os.kill(self.pid, signal.SIGTERM)

    def kill(self) -> None:
        os.kill(self.pid, signal.SIGKILL)

    def wait(self, timeout: float | None = None) -> int:
        deadline = None if timeout is None else time.monotonic() + timeout
        while (code := self.poll()) is None:
            if deadline is not None and time.monotonic() >= deadline:
                raise subprocess.TimeoutExpired(f"pid {self.pid}", timeout or 0)
            time.sleep(_ADOPTED_POLL_SECONDS)
        return code


def spawn_executor_process(paths: MementoPaths) -> ExecutorSpawner:
    """Launch ``memento execute`` as a detached child logging to ``logs/<worker>.log``."""

    def _spawn(task_id: str, worker_id: str) -> WorkerProcess:
        log_path = paths.worker_log_path(worker_id)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env["MEMENTO_PROJECT_ROOT"] = str(paths.project_root)
        with log_path.open("a", encoding="utf-8") as log_handle:
            return subprocess.Popen(  # noqa: S603
                [
                    sys.executable,
                    "-m",
                    "memento.main",
                    "execute",
                    "--task-id",
                    task_id,
                    "--worker-id",
                    worker_id,
                ],
                cwd=paths.project_root,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
            )

    return _spawn


class Coordinator:
    """Single supervisory loop owning every worker-slot transition.

    Each :meth:`tick` drains the interactive session, reaps exited executors,
    dispatches pending tasks while capacity allows and runs whichever sweeps
    are due. On-disk task areas are the source of truth; ``slots`` is a cache
    keyed by task id and rebuilt by :meth:`reconcile` on startup.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        store: TaskStore | None = None,
        memory: MemoryBank | None = None,
        spawn_executor: ExecutorSpawner | None = None,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.paths = settings.paths
        self.store = store or TaskStore(self.paths.tasks_dir, clock=clock)
        self.memory = memory or MemoryBank(self.paths.memory_dir)
        self.status_file = StatusFile(self.paths.status_path)
        self.lock = SupervisorLock(self.paths.lock_path)
        self._spawn_executor = spawn_executor or spawn_executor_process(self.paths)
        self._session_factory = session_factory or self._start_interactive_session
        self._session_enabled = session_factory is not None or bool(
            settings.coordinator.session_command.strip(),
        )
        self._clock = clock
        self._monotonic = monotonic

        self.state: SupervisorState | None = None
        self.slots: dict[str, WorkerSlot] = {}
        self.session: SessionHandle | None = None
        self._translator = SessionSignalTranslator()
        self._dispatch_failures: dict[str, int] = {}
        self._started_at = clock()
        self._worker_seq = 0
        self._next_timeout_sweep = 0.0
        self._next_completion_sweep = 0.0
        self._session_restart_at: float | None = None
        self._stop_requested = False

    @property
    def max_workers(self) -> int:
        return self.settings.coordinator.max_workers

    def initialize(self) -> None:
        """Prepare layout, take the lock and rebuild slots from ``processing``."""

        self._started_at = self._clock()
        try:
            self.paths.ensure()
            self.store.ensure_layout()
            self.memory.ensure_defaults()
            self.lock.acquire()
        except LockHeldError as error:
            raise InitializationError(str(error)) from error
        except OSError as error:
            raise InitializationError(f"Cannot prepare {self.paths.base_dir}: {error}") from error

        self._set_state(SupervisorState.INITIALIZING)
        self.reconcile()

    def start(self) -> None:
        """Initialize, launch the interactive session and enter ``running``."""

        self.initialize()
        self._start_session()
        now = self._monotonic()
        self._next_timeout_sweep = now + self.settings.coordinator.timeout_sweep_interval_ms / 1000
        self._next_completion_sweep = now
        self._set_state(SupervisorState.RUNNING)
        logger.info(
            "Coordinator running (pid=%s, max_workers=%d, adopted=%d)",
            os.getpid(),
            self.max_workers,
            len(self.slots),
        )

    def reconcile(self) -> None:
        """Resolve or adopt every task left in ``processing`` by a previous run."""

        now = self._clock()
        timeout_seconds = self.settings.coordinator.worker_timeout_seconds
        for task in self.store.list_area(TaskStatus.PROCESSING):
            try:
                self._reconcile_task(task, now=now, timeout_seconds=timeout_seconds)
            except (TaskRecordError, OSError) as error:
                logger.error("Reconciliation of task %s failed: %s", task.id, error)
        self._persist_status()

    def run_loop(self, *, poll_interval_seconds: float = 0.2) -> None:
        """Tick until SIGINT/SIGTERM, then shut down."""

        with stop_signal_handlers(self._request_stop):
            try:
                while not self._stop_requested:
                    try:
                        self.tick()
                    except Exception:  # noqa: BLE001
                        logger.exception("Supervisory tick failed; continuing")
                    time.sleep(poll_interval_seconds)
            finally:
                self.stop()

    def tick(self) -> None:
        self._drain_session()
        self._reap_workers()
        self.dispatch_pending()
        now = self._monotonic()
        if now >= self._next_timeout_sweep:
            self.timeout_sweep()
            self._next_timeout_sweep = now + self.settings.coordinator.timeout_sweep_interval_ms / 1000
        if now >= self._next_completion_sweep:
            self.completion_sweep()
            self._next_completion_sweep = (
                now + self.settings.coordinator.completion_sweep_interval_ms / 1000
            )
        self._maybe_restart_session(now)

    def stop(self) -> None:
        """Terminate executors and the session without waiting for their tasks."""

        self._stop_requested = True
        if self.state in (None, SupervisorState.STOPPED) or not self.lock.held:
            return
        logger.info("Coordinator stopping; %d executor(s) active", len(self.slots))
        for slot in self.slots.values():
            try:
                slot.process.terminate()
            except OSError as error:
                logger.debug("Executor %s already gone: %s", slot.worker_id, error)
        self.slots.clear()
        if self.session is not None:
            self.session.stop()
            self.session = None
        self._set_state(SupervisorState.STOPPED)
        self.lock.release()

    def enqueue(self, description: str) -> Task:
        """Create a pending task carrying the current memory snapshot."""

        task = self.store.create(description, self.memory.snapshot())
        logger.info("Task %s enqueued: %s", task.id, description)
        return task

    def dispatch_pending(self) -> int:
        """Start executors for the oldest pending tasks while slots are free."""

        if self.state != SupervisorState.RUNNING:
            return 0
        started = 0
        capacity = self.max_workers - len(self.slots)
        if capacity <= 0:
            return 0
        for task in self.store.list_area(TaskStatus.PENDING):
            if started >= capacity:
                break
            if task.id in self.slots:
                continue
            if self._start_worker(task):
                started += 1
        return started

    def timeout_sweep(self) -> list[str]:
        """Terminate executors older than ``workerTimeout`` and fail their tasks."""

        limit = self.settings.coordinator.worker_timeout_seconds
        now = self._monotonic()
        expired = [
            slot for slot in self.slots.values() if now - slot.start_time >= limit
        ]
        for slot in expired:
            logger.warning(
                "Executor %s exceeded %.0fs on task %s; terminating",
                slot.worker_id,
                limit,
                slot.task_id,
            )
            del self.slots[slot.task_id]
            self._resolve_failed(
                slot.task_id,
                FailureCause.COORDINATOR_TIMEOUT,
                f"Executor {slot.worker_id} exceeded the {limit:g}s worker timeout.",
            )
            terminate_process(slot.process)
        if expired:
            self._persist_status()
        return [slot.task_id for slot in expired]

    def completion_sweep(self) -> int:
        """Fold completed results back into memory and the session."""

        handled = 0
        for task in self.store.list_unprocessed():
            try:
                self._handle_completed(task)
            except (TaskRecordError, OSError, ValueError) as error:
                logger.error("Completion handling for task %s failed: %s", task.id, error)
                continue
            handled += 1
        return handled

    def handle_event(self, event: SessionEvent) -> None:
        if isinstance(event, TaskRequested):
            self.enqueue(event.description)
            self.dispatch_pending()
        elif isinstance(event, MemoryUpdateRequested):
            self.memory.ensure_defaults()
            self._send_to_session(self.memory.describe() + "\n")

    def _reconcile_task(self, task: Task, *, now: datetime, timeout_seconds: float) -> None:
        if task.result is not None:
            # Crashed after writing the result but before the rename.
            self.store.resolve(task.id, task.result)
            return

        started = task.processing_start_time or task.created_at
        age_seconds = (now - started).total_seconds() if started is not None else float("inf")
        if age_seconds >= timeout_seconds:
            self._resolve_failed(
                task.id,
                FailureCause.STALE_PROCESSING,
                f"Task was processing for {age_seconds:.0f}s when the coordinator started.",
            )
            return
        if task.worker_pid is None or not pid_alive(task.worker_pid):
            self._resolve_failed(
                task.id,
                FailureCause.EXECUTOR_LOST,
                f"Executor pid {task.worker_pid} is no longer running.",
            )
            return
        self._adopt(task, worker_pid=task.worker_pid, now=now)

    def _adopt(self, task: Task, *, worker_pid: int, now: datetime) -> None:
        started = task.processing_start_time or task.created_at or now
        age_seconds = max(0.0, (now - started).total_seconds())
        worker_id = task.worker_id or f"adopted_{task.id}"
        self.slots[task.id] = WorkerSlot(
            worker_id=worker_id,
            task_id=task.id,
            process=AdoptedProcess(worker_pid),
            start_time=self._monotonic() - age_seconds,
            started_at=started,
            adopted=True,
        )
        logger.info("Adopted running executor %s (pid=%s) for task %s", worker_id, worker_pid, task.id)

    def _start_worker(self, task: Task) -> bool:
        self._worker_seq += 1
        worker_id = f"worker_{int(time.time() * 1000)}_{self._worker_seq}"
        try:
            process = self._spawn_executor(task.id, worker_id)
        except OSError as error:
            logger.error("Cannot spawn executor for task %s: %s", task.id, error)
            self._record_dispatch_failure(task.id, str(error))
            return False
        self.slots[task.id] = WorkerSlot(
            worker_id=worker_id,
            task_id=task.id,
            process=process,
            start_time=self._monotonic(),
            started_at=self._clock(),
        )
        logger.info("Dispatched task %s to %s (pid=%s)", task.id, worker_id, process.pid)
        self._persist_status()
        return True

    def _reap_workers(self) -> None:
        reaped = False
        for task_id, slot in list(self.slots.items()):
            exit_code = slot.process.poll()
            if exit_code is None:
                continue
            del self.slots[task_id]
            reaped = True
            area = self.store.locate(task_id)
            if area == TaskStatus.PROCESSING:
                self._reap_processing(slot, exit_code)
            elif area == TaskStatus.PENDING:
                self._record_dispatch_failure(
                    task_id,
                    f"executor {slot.worker_id} exited with code {exit_code} before claiming",
                )
            else:
                self._dispatch_failures.pop(task_id, None)
                logger.debug("Executor %s finished task %s (exit %s)", slot.worker_id, task_id, exit_code)
        if reaped:
            self._persist_status()

    def _reap_processing(self, slot: WorkerSlot, exit_code: int) -> None:
        try:
            task = self.store.load(slot.task_id, TaskStatus.PROCESSING)
        except TaskRecordError as error:
            logger.error("Cannot inspect task %s after its executor exited: %s", slot.task_id, error)
            task = None

        if task is not None and task.worker_id != slot.worker_id:
            # Claimed by another executor, e.g. one left over from a previous coordinator.
            self._dispatch_failures.pop(slot.task_id, None)
            if task.worker_pid is not None and pid_alive(task.worker_pid):
                self._adopt(task, worker_pid=task.worker_pid, now=self._clock())
                return
            self._resolve_failed(
                slot.task_id,
                FailureCause.EXECUTOR_LOST,
                f"Executor {task.worker_id} (pid {task.worker_pid}) is no longer running.",
            )
            return

        if slot.adopted:
            summary = f"Adopted executor {slot.worker_id} (pid {slot.process.pid}) exited without resolving."
            exit_code_seen: int | None = None
        else:
            summary = f"Executor {slot.worker_id} exited with code {exit_code} without resolving."
            exit_code_seen = exit_code
        self._resolve_failed(
            slot.task_id,
            FailureCause.EXECUTOR_LOST,
            summary,
            exit_code=exit_code_seen,
        )

    def _record_dispatch_failure(self, task_id: str, reason: str) -> None:
        failures = self._dispatch_failures.get(task_id, 0) + 1
        if failures <= self.settings.coordinator.retry_attempts:
            self._dispatch_failures[task_id] = failures
            logger.warning("Dispatch of task %s failed (%d): %s", task_id, failures, reason)
            return
        self._dispatch_failures.pop(task_id, None)
        self._resolve_failed(
            task_id,
            FailureCause.DISPATCH_FAILED,
            f"Task could not be dispatched after {failures} attempts: {reason}",
        )

    def _handle_completed(self, task: Task) -> None:
        result = task.result
        if result is not None and result.memory_updates:
            self.memory.apply_updates(result.memory_updates)
        self._send_to_session(_feedback_text(task))

        decision = decide_retry(task=task, retry_attempts=self.settings.coordinator.retry_attempts)
        if decision.should_retry:
            retry = self.store.create(
                task.description,
                task.memory_context,
                attempt=task.attempt + 1,
                retry_of=task.id,
            )
            logger.info("Task %s re-enqueued as %s: %s", task.id, retry.id, decision.reason)
        elif result is not None and not result.succeeded:
            logger.info("Task %s not retried: %s", task.id, decision.reason)
        self.store.mark_processed(task.id)

    def _resolve_failed(
        self,
        task_id: str,
        cause: FailureCause,
        summary: str,
        *,
        exit_code: int | None = None,
    ) -> None:
        try:
            self.store.resolve(
                task_id,
                TaskResult.failure(cause=cause, summary=summary, exit_code=exit_code),
            )
        except TaskRecordError as error:
            logger.error("Cannot resolve task %s as %s: %s", task_id, cause.value, error)

    def _drain_session(self) -> None:
        if self.session is None:
            return
        for chunk in self.session.drain_output():
            for event in self._translator.feed(chunk):
                self._dispatch_event(event)

    def _dispatch_event(self, event: SessionEvent) -> None:
        try:
            self.handle_event(event)
        except (TaskRecordError, OSError) as error:
            logger.error("Session event %s failed: %s", event, error)

    def _send_to_session(self, text: str) -> None:
        if self.session is None or not self.session.send(text):
            logger.info("No interactive session; dropped message: %s", text.strip())

    def _start_session(self) -> None:
        if not self._session_enabled:
            logger.info("No session command configured; running headless")
            return
        try:
            self.session = self._session_factory()
        except SessionStartError as error:
            logger.error("%s", error)
            self.session = None
        self._translator = SessionSignalTranslator()

    def _maybe_restart_session(self, now: float) -> None:
        if self.state != SupervisorState.RUNNING or not self._session_enabled:
            return
        if self.session is not None and self.session.alive:
            return
        if self._session_restart_at is None:
            if self.session is not None:
                self._drain_session()
                for event in self._translator.flush():
                    self._dispatch_event(event)
                self.session.stop()
                self.session = None
            delay = self.settings.coordinator.session_restart_delay_ms / 1000
            logger.warning("Interactive session is not running; restarting in %.1fs", delay)
            self._session_restart_at = now + delay
            return
        if now >= self._session_restart_at:
            self._session_restart_at = None
            self._start_session()

    def _start_interactive_session(self) -> SessionHandle:
        session = InteractiveSession(
            self.settings.coordinator.session_command,
            cwd=self.paths.project_root,
        )
        session.start()
        return session

    def _set_state(self, state: SupervisorState) -> None:
        self.state = state
        logger.debug("Coordinator state: %s", state.value)
        self._persist_status()

    def _persist_status(self) -> None:
        if self.state is None:
            return
        status = SystemStatus(
            pid=os.getpid(),
            start_time=self._started_at,
            state=self.state,
            last_update=self._clock(),
            workers={
                slot.worker_id: WorkerStatusEntry(task_id=slot.task_id, start_time=slot.started_at)
                for slot in self.slots.values()
            },
        )
        try:
            self.status_file.write(status)
        except OSError as error:
            logger.error("Cannot write status file: %s", error)

    def _request_stop(self, signal_name: str) -> None:
        if not self._stop_requested:
            logger.info("Received %s; shutting down", signal_name)
        self._stop_requested = True


def _feedback_text(task: Task) -> str:
    result = task.result
    if result is None or result.succeeded:
        summary = result.summary if result is not None and result.summary else "success"
        return f"Task completed: {task.description}\nResult: {summary}\n"
    cause = f" ({result.cause.value})" if result.cause is not None else ""
    return f"Task failed{cause}: {task.description}\nResult: {result.summary or 'failed'}\n"
