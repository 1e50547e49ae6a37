"""Agent CLI backend: subprocess supervision and stream protocol parsing."""

from agent_pilot.pilot.backend.cli_backend import AgentRun, CursorAgentBackend, build_agent_args
from agent_pilot.pilot.backend.stream_protocol import (
    AgentEvent,
    AgentRunCompleted,
    AssistantText,
    AssistantTextAccumulator,
    ModelInfo,
    RunResult,
    SessionIdentified,
    StreamEventParser,
    ThinkingText,
    ToolCallCompleted,
    ToolCallStarted,
)

__all__ = [
    "AgentEvent",
    "AgentRun",
    "AgentRunCompleted",
    "AssistantText",
    "AssistantTextAccumulator",
    "CursorAgentBackend",
    "ModelInfo",
    "RunResult",
    "SessionIdentified",
    "StreamEventParser",
    "ThinkingText",
    "ToolCallCompleted",
    "ToolCallStarted",
    "build_agent_args",
]
