"""Subprocess-based agent runner: instruction on stdin, result block on stdout."""

from __future__ import annotations

import codecs
import logging
import os
import queue
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import IO

from memento.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from memento.orchestrator.models import FailureCause, WorkerProcess
from memento.orchestrator.protocol import ResultBlockScanner

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_READ_SIZE = 4096
# Output pipes may be held open by agent grandchildren after the agent exits.
_DRAIN_GRACE_SECONDS = 2.0

_Chunk = tuple[str, str | None]


class AgentRunError(RuntimeError):
    """Agent could not be started; carries a retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        cause: FailureCause = FailureCause.SPAWN_ERROR,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.cause = cause


class CliAgentRunner:
    """Run the configured agent command for one task."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_path.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_path.write_text(request.instruction, "utf-8")

        run_args, command_head = _build_run_args(
            command_template=request.command_template,
            task_id=request.task_id,
            prompt_file=request.prompt_path,
        )
        env = os.environ.copy()
        env["MEMENTO_TASK_ID"] = request.task_id

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise AgentRunError(
                f"Agent command not found: {command_head}",
                transient=False,
                cause=FailureCause.AGENT_NOT_FOUND,
            ) from error
        except OSError as error:
            raise AgentRunError(
                f"Agent failed to start: {error}",
                transient=True,
            ) from error

        logger.info("Agent started for task %s (pid=%s): %s", request.task_id, process.pid, command_head)
        with (
            request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
            request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            return _supervise_process(
                process=process,
                request=request,
                stdout_handle=stdout_handle,
                stderr_handle=stderr_handle,
            )


def _build_run_args(
    *,
    command_template: str,
    task_id: str,
    prompt_file: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError(
            "Agent command template is empty.",
            transient=False,
            cause=FailureCause.INVALID_COMMAND,
        )
    try:
        rendered = stripped.format(
            task_id=shlex.quote(task_id),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
            cause=FailureCause.INVALID_COMMAND,
        ) from error

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise AgentRunError(
            f"Agent command template cannot be parsed: {error}",
            transient=False,
            cause=FailureCause.INVALID_COMMAND,
        ) from error
    if not argv:
        raise AgentRunError(
            "Agent command template rendered empty command.",
            transient=False,
            cause=FailureCause.INVALID_COMMAND,
        )
    return argv, argv[0]


def _supervise_process(
    *,
    process: subprocess.Popen[bytes],
    request: AgentRunRequest,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> AgentRunResult:
    chunks: queue.Queue[_Chunk] = queue.Queue()
    readers = [
        threading.Thread(
            target=_pump_stream,
            args=("stdout", process.stdout, chunks),
            name=f"agent-stdout-{request.task_id}",
            daemon=True,
        ),
        threading.Thread(
            target=_pump_stream,
            args=("stderr", process.stderr, chunks),
            name=f"agent-stderr-{request.task_id}",
            daemon=True,
        ),
    ]
    writer = threading.Thread(
        target=_feed_stdin,
        args=(process.stdin, request.instruction),
        name=f"agent-stdin-{request.task_id}",
        daemon=True,
    )
    for thread in (*readers, writer):
        thread.start()

    scanner = ResultBlockScanner()
    open_streams = {"stdout", "stderr"}
    start_monotonic = time.monotonic()
    deadline = start_monotonic + request.timeout_seconds
    exited_at: float | None = None
    timed_out = False
    interrupted = False

    while True:
        now = time.monotonic()
        if process.poll() is not None:
            if not open_streams:
                break
            if exited_at is None:
                exited_at = now
            elif now - exited_at >= _DRAIN_GRACE_SECONDS:
                logger.warning("Agent for task %s exited but left its output pipes open", request.task_id)
                break
        elif now >= deadline:
            logger.warning(
                "Agent for task %s exceeded %.1fs deadline; terminating",
                request.task_id,
                request.timeout_seconds,
            )
            terminate_process(process)
            timed_out = True
            break
        elif request.shutdown_requested is not None and request.shutdown_requested():
            logger.warning("Shutdown requested; terminating agent for task %s", request.task_id)
            terminate_process(process)
            interrupted = True
            break

        try:
            stream_name, text = chunks.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            continue
        if text is None:
            open_streams.discard(stream_name)
            continue
        if stream_name == "stdout":
            stdout_handle.write(text)
            stdout_handle.flush()
            scanner.feed(text)
        else:
            stderr_handle.write(text)
            stderr_handle.flush()

    for thread in readers:
        thread.join(timeout=_POLL_SECONDS)
    _drain_remaining(chunks, scanner, stdout_handle, stderr_handle)

    return AgentRunResult(
        exit_code=process.poll(),
        timed_out=timed_out,
        interrupted=interrupted,
        result=scanner.result,
        parse_error=scanner.last_error,
        stdout_path=request.stdout_path,
        stderr_path=request.stderr_path,
        duration_seconds=time.monotonic() - start_monotonic,
    )


def _pump_stream(name: str, stream: IO[bytes] | None, chunks: queue.Queue[_Chunk]) -> None:
    if stream is None:
        chunks.put((name, None))
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            data = stream.read1(_READ_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            text = decoder.decode(data)
            if text:
                chunks.put((name, text))
        tail = decoder.decode(b"", final=True)
        if tail:
            chunks.put((name, tail))
    except (OSError, ValueError) as error:
        logger.debug("Agent %s reader stopped: %s", name, error)
    finally:
        chunks.put((name, None))


def _feed_stdin(stream: IO[bytes] | None, instruction: str) -> None:
    if stream is None:
        return
    try:
        stream.write(instruction.encode("utf-8"))
        stream.flush()
    except (BrokenPipeError, ValueError) as error:
        logger.debug("Agent closed stdin before the instruction was written: %s", error)
    finally:
        try:
            stream.close()
        except OSError as error:
            logger.debug("Agent stdin close failed: %s", error)


def _drain_remaining(
    chunks: queue.Queue[_Chunk],
    scanner: ResultBlockScanner,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> None:
    while True:
        try:
            stream_name, text = chunks.get_nowait()
        except queue.Empty:
            return
        if text is None:
            continue
        if stream_name == "stdout":
            stdout_handle.write(text)
            scanner.feed(text)
        else:
            stderr_handle.write(text)


def terminate_process(process: WorkerProcess, *, grace_seconds: float = 2.0) -> None:
    """SIGTERM, then SIGKILL if the process outlives ``grace_seconds``."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
