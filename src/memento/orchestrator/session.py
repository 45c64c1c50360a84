"""Interactive agent session supervised by the coordinator."""

from __future__ import annotations

import codecs
import logging
import os
import queue
import shlex
import subprocess
import threading
from pathlib import Path
from typing import IO, Protocol

from memento.orchestrator.backend import terminate_process

logger = logging.getLogger(__name__)

_READ_SIZE = 4096


class SessionStartError(RuntimeError):
    """Interactive session command could not be launched."""


class SessionHandle(Protocol):
    """What the coordinator needs from an interactive session."""

    @property
    def alive(self) -> bool: ...

    def drain_output(self) -> list[str]: ...

    def send(self, text: str) -> bool: ...

    def stop(self) -> None: ...


class InteractiveSession:
    """Long-running agent whose stdout is watched for task signals.

    Output is collected by a reader thread into a queue and drained by the
    coordinator's loop; nothing here calls back into the coordinator.
    """

    def __init__(self, command: str, *, cwd: Path) -> None:
        self.command = command
        self.cwd = cwd
        self._process: subprocess.Popen[bytes] | None = None
        self._output: queue.Queue[str] = queue.Queue()

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        argv = shlex.split(self.command)
        if not argv:
            raise SessionStartError("Session command is empty.")
        env = os.environ.copy()
        env["MEMENTO_MODE"] = "true"
        try:
            self._process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=self.cwd,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            raise SessionStartError(f"Cannot start session {argv[0]!r}: {error}") from error

        threading.Thread(
            target=self._pump_stdout,
            args=(self._process.stdout,),
            name="session-stdout",
            daemon=True,
        ).start()
        threading.Thread(
            target=self._pump_stderr,
            args=(self._process.stderr,),
            name="session-stderr",
            daemon=True,
        ).start()
        logger.info("Interactive session started (pid=%s): %s", self._process.pid, argv[0])

    def drain_output(self) -> list[str]:
        """Everything the session printed since the previous drain."""

        chunks: list[str] = []
        while True:
            try:
                chunks.append(self._output.get_nowait())
            except queue.Empty:
                return chunks

    def send(self, text: str) -> bool:
        """Write to the session's stdin; ``False`` when it is gone."""

        process = self._process
        if process is None or process.stdin is None or process.poll() is not None:
            return False
        try:
            process.stdin.write(text.encode("utf-8"))
            process.stdin.flush()
        except (BrokenPipeError, ValueError) as error:
            logger.warning("Session stdin closed: %s", error)
            return False
        return True

    def stop(self) -> None:
        process, self._process = self._process, None
        if process is None or process.poll() is not None:
            return
        if process.stdin is not None:
            try:
                process.stdin.close()
            except OSError as error:
                logger.debug("Session stdin close failed: %s", error)
        terminate_process(process)
        logger.info("Interactive session stopped (pid=%s)", process.pid)

    def _pump_stdout(self, stream: IO[bytes] | None) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while data := stream.read1(_READ_SIZE):  # type: ignore[attr-defined]
                text = decoder.decode(data)
                if text:
                    self._output.put(text)
        except (OSError, ValueError) as error:
            logger.debug("Session stdout reader stopped: %s", error)

    def _pump_stderr(self, stream: IO[bytes] | None) -> None:
        if stream is None:
            return
        try:
            for raw_line in iter(stream.readline, b""):
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.warning("Session stderr: %s", line)
        except (OSError, ValueError) as error:
            logger.debug("Session stderr reader stopped: %s", error)
