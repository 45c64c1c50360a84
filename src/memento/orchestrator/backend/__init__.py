"""Agent runner implementations."""

from memento.orchestrator.backend.base import AgentRunner, AgentRunRequest, AgentRunResult
from memento.orchestrator.backend.cli_backend import (
    AgentRunError,
    CliAgentRunner,
    terminate_process,
)

__all__ = [
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "AgentRunner",
    "CliAgentRunner",
    "terminate_process",
]
