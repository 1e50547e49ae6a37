"""Error taxonomy of the orchestration core."""

from __future__ import annotations


class AgentPilotError(RuntimeError):
    """Base class for orchestration errors."""


class ProcessSpawnError(AgentPilotError):
    """Agent binary could not be started."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to start agent CLI {command!r}: {reason}")
        self.command = command


class ProcessExitError(AgentPilotError):
    """Agent process exited with a non-zero code."""

    def __init__(self, message: str, *, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ProtocolNoiseError(AgentPilotError):
    """Stream line that is not a JSON event object. Never surfaced to callers."""


class DecisionServiceError(AgentPilotError):
    """Decision service request failed."""


class EmptyInstructionError(AgentPilotError):
    """Decision reply reduced to nothing actionable after cleanup."""


class AbortRequested(AgentPilotError):
    """Caller asked to stop the conversation."""

    def __init__(self, conversation_id: str | None) -> None:
        super().__init__(f"Conversation aborted: {conversation_id or '<anonymous>'}")
        self.conversation_id = conversation_id
