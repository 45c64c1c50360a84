"""Shared test fixtures."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
from pathlib import Path

import pytest

from memento.config import Settings
from memento.orchestrator.store import TaskStore

SRC_DIR = Path(__file__).resolve().parent.parent / "src"
ECHO_AGENT_COMMAND = f"{shlex.quote(sys.executable)} -m memento.orchestrator.backend.echo_agent"


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Drop MEMENTO_* overrides from the developer shell and reset log handlers.

    Spawned executors and agents import ``memento`` from the source tree.
    """

    for name in list(os.environ):
        if name.startswith("MEMENTO_"):
            monkeypatch.delenv(name, raising=False)
    python_path = [str(SRC_DIR), os.environ.get("PYTHONPATH", "")]
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(part for part in python_path if part))
    yield
    memento_logger = logging.getLogger("memento")
    for handler in list(memento_logger.handlers):
        memento_logger.removeHandler(handler)
        handler.close()
    memento_logger.propagate = True
    memento_logger.setLevel(logging.NOTSET)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    loaded = Settings.load(tmp_path)
    loaded.paths.ensure()
    loaded.executor.agent_command = ECHO_AGENT_COMMAND
    loaded.coordinator.session_command = ""
    return loaded


@pytest.fixture()
def store(settings: Settings) -> TaskStore:
    task_store = TaskStore(settings.paths.tasks_dir)
    task_store.ensure_layout()
    return task_store


@pytest.fixture()
def dead_pid() -> int:
    """Pid of a process that has already exited and been reaped."""

    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait(timeout=10)
    return process.pid


@pytest.fixture()
def echo_agent_command() -> str:
    return ECHO_AGENT_COMMAND
