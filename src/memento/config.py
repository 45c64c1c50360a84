"""Runtime configuration for the coordinator and task executors."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

MEMENTO_DIRNAME = ".memento"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "WARN", "ERROR", "FATAL", "CRITICAL")

DEFAULT_AGENT_COMMAND = "claude --dangerously-skip-permissions"
DEFAULT_SESSION_COMMAND = "claude"


class ConfigError(ValueError):
    """Configuration file or environment value is invalid."""


@dataclass(slots=True, frozen=True)
class MementoPaths:
    """On-disk layout rooted at ``<project>/.memento``."""

    project_root: Path

    @property
    def base_dir(self) -> Path:
        return self.project_root / MEMENTO_DIRNAME

    @property
    def memory_dir(self) -> Path:
        return self.base_dir / "memory"

    @property
    def tasks_dir(self) -> Path:
        return self.base_dir / "tasks"

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def system_dir(self) -> Path:
        return self.base_dir / "system"

    @property
    def config_path(self) -> Path:
        return self.system_dir / "config.json"

    @property
    def status_path(self) -> Path:
        return self.system_dir / "status.json"

    @property
    def lock_path(self) -> Path:
        return self.system_dir / "commander.lock"

    @property
    def commander_log_path(self) -> Path:
        return self.logs_dir / "commander.log"

    def worker_log_path(self, worker_id: str) -> Path:
        return self.logs_dir / f"{worker_id}.log"

    def ensure(self) -> None:
        """Create the top-level directory skeleton."""

        for directory in (self.memory_dir, self.tasks_dir, self.logs_dir, self.system_dir):
            directory.mkdir(parents=True, exist_ok=True)


@dataclass(slots=True)
class CoordinatorSettings:
    """Concurrency, sweep cadence and interactive session settings."""

    max_workers: int = 3
    worker_timeout_ms: int = 300_000
    retry_attempts: int = 3
    timeout_sweep_interval_ms: int = 10_000
    completion_sweep_interval_ms: int = 5_000
    session_restart_delay_ms: int = 5_000
    session_command: str = DEFAULT_SESSION_COMMAND

    @property
    def worker_timeout_seconds(self) -> float:
        return self.worker_timeout_ms / 1000


@dataclass(slots=True)
class ExecutorSettings:
    """Per-task agent invocation settings."""

    agent_command: str = DEFAULT_AGENT_COMMAND
    timeout_ms: int = 300_000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    paths: MementoPaths = field(default_factory=lambda: MementoPaths(Path.cwd()))
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    log_level: str = "INFO"
    auto_backup: bool = True
    backup_interval: str = "daily"

    @classmethod
    def load(cls, project_root: Path | None = None, *, create: bool = True) -> Settings:
        """Load ``system/config.json`` and apply ``MEMENTO_*`` environment overrides.

        A missing config file is created with defaults when ``create`` is set.
        An unreadable or malformed file raises :class:`ConfigError`; it is never
        silently replaced.
        """

        root = project_root or Path(os.getenv("MEMENTO_PROJECT_ROOT", str(Path.cwd())))
        paths = MementoPaths(root.resolve())
        raw = _read_config_file(paths.config_path)
        if raw is None:
            raw = default_config()
            if create:
                paths.system_dir.mkdir(parents=True, exist_ok=True)
                write_config_file(paths.config_path, raw)

        values = {**default_config(), **raw}
        worker_timeout_ms = _env_int("MEMENTO_WORKER_TIMEOUT", values["workerTimeout"])
        settings = cls(
            paths=paths,
            coordinator=CoordinatorSettings(
                max_workers=_env_int("MEMENTO_MAX_WORKERS", values["maxWorkers"]),
                worker_timeout_ms=worker_timeout_ms,
                retry_attempts=_env_int("MEMENTO_RETRY_ATTEMPTS", values["retryAttempts"]),
                timeout_sweep_interval_ms=_env_int(
                    "MEMENTO_TIMEOUT_SWEEP_INTERVAL",
                    values["timeoutSweepInterval"],
                ),
                completion_sweep_interval_ms=_env_int(
                    "MEMENTO_COMPLETION_SWEEP_INTERVAL",
                    values["completionSweepInterval"],
                ),
                session_restart_delay_ms=_env_int(
                    "MEMENTO_SESSION_RESTART_DELAY",
                    values["sessionRestartDelay"],
                ),
                session_command=_env_str("MEMENTO_SESSION_COMMAND", values["sessionCommand"]),
            ),
            executor=ExecutorSettings(
                agent_command=_env_str("MEMENTO_AGENT_COMMAND", values["agentCommand"]),
                timeout_ms=worker_timeout_ms,
            ),
            log_level=_env_str("MEMENTO_LOG_LEVEL", values["logLevel"]).upper(),
            auto_backup=_env_bool("MEMENTO_AUTO_BACKUP", default=_as_bool(values["autoBackup"])),
            backup_interval=_env_str("MEMENTO_BACKUP_INTERVAL", values["backupInterval"]),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise :class:`ConfigError` for values the runtime cannot honour."""

        if self.coordinator.max_workers < 1:
            raise ConfigError("maxWorkers must be >= 1.")
        if self.coordinator.worker_timeout_ms <= 0:
            raise ConfigError("workerTimeout must be > 0 milliseconds.")
        if self.executor.timeout_ms <= 0:
            raise ConfigError("Executor timeout must be > 0 milliseconds.")
        if self.coordinator.retry_attempts < 0:
            raise ConfigError("retryAttempts must be >= 0.")
        if self.coordinator.timeout_sweep_interval_ms <= 0:
            raise ConfigError("timeoutSweepInterval must be > 0 milliseconds.")
        if self.coordinator.completion_sweep_interval_ms <= 0:
            raise ConfigError("completionSweepInterval must be > 0 milliseconds.")
        if self.coordinator.session_restart_delay_ms < 0:
            raise ConfigError("sessionRestartDelay must be >= 0 milliseconds.")
        if not self.executor.agent_command.strip():
            raise ConfigError("agentCommand must not be empty.")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(
                f"Unsupported logLevel {self.log_level!r}; expected one of {', '.join(LOG_LEVELS)}.",
            )

    def to_config_dict(self) -> dict[str, Any]:
        """Serialize back to the ``config.json`` key space."""

        return {
            "maxWorkers": self.coordinator.max_workers,
            "workerTimeout": self.coordinator.worker_timeout_ms,
            "retryAttempts": self.coordinator.retry_attempts,
            "logLevel": self.log_level,
            "autoBackup": self.auto_backup,
            "backupInterval": self.backup_interval,
            "agentCommand": self.executor.agent_command,
            "sessionCommand": self.coordinator.session_command,
            "timeoutSweepInterval": self.coordinator.timeout_sweep_interval_ms,
            "completionSweepInterval": self.coordinator.completion_sweep_interval_ms,
            "sessionRestartDelay": self.coordinator.session_restart_delay_ms,
        }


def default_config() -> dict[str, Any]:
    """Default ``config.json`` payload."""

    return {
        "maxWorkers": 3,
        "workerTimeout": 300_000,
        "retryAttempts": 3,
        "logLevel": "INFO",
        "autoBackup": True,
        "backupInterval": "daily",
        "agentCommand": DEFAULT_AGENT_COMMAND,
        "sessionCommand": DEFAULT_SESSION_COMMAND,
        "timeoutSweepInterval": 10_000,
        "completionSweepInterval": 5_000,
        "sessionRestartDelay": 5_000,
    }


def write_config_file(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", "utf-8")


def _read_config_file(path: Path) -> dict[str, Any] | None:
    try:
        text = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    except OSError as error:
        raise ConfigError(f"Cannot read config file {path}: {error}") from error
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise ConfigError(f"Config file {path} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object.")
    return payload


def _env_str(name: str, default: object) -> str:
    value = os.getenv(name)
    if value is None:
        return str(default)
    return value


def _env_int(name: str, default: object) -> int:
    value = os.getenv(name)
    raw = default if value is None else value.strip()
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid integer value for {name}: {raw!r}")
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ConfigError(f"Invalid integer value for {name}: {raw!r}") from error


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _parse_bool("autoBackup", value)
    raise ConfigError(f"Invalid boolean value for autoBackup: {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return _parse_bool(name, value)


def _parse_bool(name: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")
