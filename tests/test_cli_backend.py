from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from memento.orchestrator.backend import AgentRunError, AgentRunRequest, CliAgentRunner
from memento.orchestrator.backend.cli_backend import _build_run_args
from memento.orchestrator.models import FailureCause

pytestmark = [
    allure.epic("Agent Protocol"),
    allure.feature("Agent Command Rendering"),
]


def _request(tmp_path: Path, command: str, *, timeout_seconds: float = 20.0) -> AgentRunRequest:
    return AgentRunRequest(
        task_id="task_1_abc",
        instruction="=== Task execution instructions ===\n[Task]\nSay hello\n",
        command_template=command,
        timeout_seconds=timeout_seconds,
        stdout_path=tmp_path / "logs" / "task_1_abc.stdout.log",
        stderr_path=tmp_path / "logs" / "task_1_abc.stderr.log",
        prompt_path=tmp_path / "logs" / "task_1_abc.prompt.txt",
    )


def test_build_run_args_quotes_placeholder_values() -> None:
    run_args, command_head = _build_run_args(
        command_template="agent --task {task_id} --prompt-file {prompt_file}",
        task_id="task_1_abc",
        prompt_file=Path("/tmp/my prompts/task.txt"),
    )

    assert command_head == "agent"
    assert run_args == ["agent", "--task", "task_1_abc", "--prompt-file", "/tmp/my prompts/task.txt"]


def test_build_run_args_without_placeholders() -> None:
    run_args, command_head = _build_run_args(
        command_template="claude --dangerously-skip-permissions",
        task_id="task_1_abc",
        prompt_file=Path("prompt.txt"),
    )

    assert run_args == ["claude", "--dangerously-skip-permissions"]
    assert command_head == "claude"


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent {model}", "Unsupported command template placeholder"),
        ("agent 'unterminated", "cannot be parsed"),
    ],
)
def test_build_run_args_rejects_invalid_templates(template: str, message: str) -> None:
    with pytest.raises(AgentRunError, match=message) as excinfo:
        _build_run_args(command_template=template, task_id="t", prompt_file=Path("p"))

    assert excinfo.value.transient is False
    assert excinfo.value.cause == FailureCause.INVALID_COMMAND


def test_runner_reports_missing_command_as_non_transient(tmp_path: Path) -> None:
    with pytest.raises(AgentRunError) as excinfo:
        CliAgentRunner().run(_request(tmp_path, "memento-agent-that-does-not-exist --flag"))

    assert excinfo.value.transient is False
    assert excinfo.value.cause == FailureCause.AGENT_NOT_FOUND


def test_runner_feeds_stdin_and_collects_result(tmp_path: Path, echo_agent_command: str) -> None:
    request = _request(tmp_path, f"{echo_agent_command} --split")

    run = CliAgentRunner().run(request)

    assert run.exit_code == 0
    assert run.timed_out is False
    assert run.succeeded
    assert run.result is not None
    assert run.result.summary == "Echo: Say hello"
    assert "echo agent received" in request.stdout_path.read_text("utf-8")
    assert request.prompt_path.read_text("utf-8") == request.instruction


def test_runner_times_out_and_kills_agent(tmp_path: Path, echo_agent_command: str) -> None:
    request = _request(tmp_path, f"{echo_agent_command} --sleep 30", timeout_seconds=1.0)

    run = CliAgentRunner().run(request)

    assert run.timed_out is True
    assert run.result is None
    assert run.exit_code is not None
    assert run.exit_code != 0
    assert run.duration_seconds < 10


def test_runner_stops_when_shutdown_is_requested(tmp_path: Path, echo_agent_command: str) -> None:
    request = _request(tmp_path, f"{echo_agent_command} --sleep 30")
    request.shutdown_requested = lambda: True

    run = CliAgentRunner().run(request)

    assert run.interrupted is True
    assert run.succeeded is False


def test_runner_captures_stderr_transcript(tmp_path: Path) -> None:
    script = tmp_path / "noisy_agent.py"
    script.write_text(
        "import sys\nsys.stdin.read()\nprint('agent exploded', file=sys.stderr)\nsys.exit(4)\n",
        "utf-8",
    )
    request = _request(tmp_path, f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}")

    run = CliAgentRunner().run(request)

    assert run.exit_code == 4
    assert run.result is None
    assert "agent exploded" in request.stderr_path.read_text("utf-8")
