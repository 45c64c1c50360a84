"""Persisted supervisor status and the single-coordinator lock."""

from __future__ import annotations

import errno
import fcntl
import logging
import os
from pathlib import Path

from memento.orchestrator.contracts import (
    load_json,
    status_from_record,
    status_to_record,
    write_json_atomic,
)
from memento.orchestrator.models import SystemStatus

logger = logging.getLogger(__name__)


class LockHeldError(RuntimeError):
    """Another coordinator already holds the lock."""

    def __init__(self, path: Path, holder_pid: int | None) -> None:
        holder = f"pid {holder_pid}" if holder_pid is not None else "unknown process"
        super().__init__(f"Coordinator lock {path} is held by {holder}.")
        self.holder_pid = holder_pid


class StatusFile:
    """``status.json`` rewritten wholesale on every change."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, status: SystemStatus) -> None:
        write_json_atomic(self.path, status_to_record(status))

    def read(self) -> SystemStatus | None:
        """Missing, partial or malformed files read as "not running"."""

        try:
            raw = load_json(self.path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as error:
            logger.debug("Status file %s unreadable: %s", self.path, error)
            return None
        try:
            return status_from_record(raw)
        except (ValueError, TypeError) as error:
            logger.debug("Status file %s malformed: %s", self.path, error)
            return None


class SupervisorLock:
    """Exclusive non-blocking ``flock`` holding the owner's pid."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as error:
            os.close(fd)
            if error.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise LockHeldError(self.path, read_lock_pid(self.path)) from error
            raise
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        os.fsync(fd)
        self._fd = fd
        logger.debug("Coordinator lock acquired: %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def read_lock_pid(path: Path) -> int | None:
    try:
        text = path.read_text("utf-8").strip()
    except OSError:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def lock_is_held(path: Path) -> bool:
    """Test the lock without keeping it."""

    if not path.exists():
        return False
    fd = os.open(path, os.O_RDONLY)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return True
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
        return False
    finally:
        os.close(fd)


def pid_alive(pid: int | None) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True

