"""Agent backend implementations."""

from story_loop.loop.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from story_loop.loop.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
]
