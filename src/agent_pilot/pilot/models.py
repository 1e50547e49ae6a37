"""Domain models for agent calls, conversations and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_pilot.storage.common import utc_now


class CallStatus(str, Enum):
    """Lifecycle of one agent subprocess call."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageSource(str, Enum):
    """Who produced a transcript message."""

    USER = "user"
    AGENT = "agent"
    POLICY = "policy"
    DISPATCHER = "dispatcher"
    THINKING = "thinking"


class AgentState(str, Enum):
    """Heuristic classification of the agent's latest output."""

    WORKING = "WORKING"
    BLOCKED = "BLOCKED"
    ASKING = "ASKING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    UNKNOWN = "UNKNOWN"


class SessionStatus(str, Enum):
    """Durable chat session states."""

    IDLE = "idle"
    RUNNING = "running"
    WAITING_RESPONSE = "waiting_response"
    COMPLETED = "completed"
    ERROR = "error"


class ConversationOutcome(str, Enum):
    """Final disposition of one conversation driver run."""

    COMPLETED = "completed"
    TURN_BUDGET_EXHAUSTED = "turn_budget_exhausted"
    NO_INSTRUCTION = "no_instruction"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def session_status(self) -> SessionStatus:
        if self is ConversationOutcome.COMPLETED:
            return SessionStatus.COMPLETED
        if self is ConversationOutcome.FAILED:
            return SessionStatus.ERROR
        return SessionStatus.IDLE


class ProgressKind(str, Enum):
    """Typed events on the progress channel."""

    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    MODEL_INFO = "model_info"
    STATE_DETECTED = "state_detected"
    TASK_ARTIFACT_UPDATE = "task_artifact_update"
    AGENT_RESPONSE = "agent_response"
    INSTRUCTION = "instruction"
    STATUS_CHANGE = "status_change"
    MESSAGE = "message"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    CONVERSATION_CREATED = "conversation_created"
    CONVERSATION_UPDATE = "conversation_update"
    CONVERSATION_COMPLETE = "conversation_complete"


def new_id() -> str:
    return uuid4().hex


@dataclass(slots=True)
class Message:
    """One transcript entry."""

    role: MessageRole
    content: str
    source: MessageSource | None = None
    message_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    tool_calls: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ToolCallResult:
    """Structured outcome of a tool call reported by the agent."""

    tool_name: str
    success: bool
    path: str | None = None
    lines_created: int | None = None
    lines_read: int | None = None
    file_size: int | None = None

    def describe(self) -> str:
        status = "ok" if self.success else "failed"
        location = f" {self.path}" if self.path else ""
        if self.tool_name == "write" and self.lines_created is not None:
            return (
                f"[{status}] Created{location} "
                f"({self.lines_created} lines, {self.file_size} bytes)"
            )
        if self.tool_name == "read" and self.lines_read is not None:
            return f"[{status}] Read{location} ({self.lines_read} lines)"
        return f"[{status}] {self.tool_name}{location}"


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs for one agent subprocess invocation."""

    task: str
    workdir: str
    resume_session_id: str | None = None
    model: str | None = None
    conversation_id: str | None = None
    conversation_title: str | None = None


@dataclass(slots=True)
class AgentTurnResult:
    """Final disposition of one agent subprocess invocation."""

    success: bool
    content: str
    session_id: str | None = None
    model: str | None = None
    tool_calls: list[str] = field(default_factory=list)
    tool_call_results: list[ToolCallResult] = field(default_factory=list)
    error: str | None = None
    duration_ms: int | None = None
    exit_code: int | None = None


@dataclass(slots=True)
class ProgressEvent:
    """Single item on the progress channel."""

    kind: ProgressKind
    content: str = ""
    conversation_id: str | None = None
    status: SessionStatus | None = None
    turn: int | None = None
    state: AgentState | None = None
    task_md: str | None = None
    model: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Serialize into a JSON-friendly mapping."""

        payload: dict[str, Any] = {"type": self.kind.value, "content": self.content}
        if self.conversation_id is not None:
            payload["conversation_id"] = self.conversation_id
        if self.status is not None:
            payload["status"] = self.status.value
        if self.turn is not None:
            payload["turn"] = self.turn
        if self.state is not None:
            payload["state"] = self.state.value
        if self.task_md is not None:
            payload["task_md"] = self.task_md
        if self.model is not None:
            payload["model"] = self.model
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass(slots=True)
class ConversationResult:
    """What a conversation driver run hands back to its caller."""

    outcome: ConversationOutcome
    messages: list[Message]
    turns: int
    resume_session_id: str | None = None
    task_md: str = ""
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome is ConversationOutcome.COMPLETED


@dataclass(slots=True)
class SessionCreate:
    """Input payload for creating a chat session."""

    title: str
    session_id: str = field(default_factory=new_id)
    status: SessionStatus = SessionStatus.IDLE
    workdir: str | None = None
    task_md: str | None = None
    agent_session_id: str | None = None
    orchestrate_task_id: str | None = None
    is_orchestrator_managed: bool = False
    source: str = "cli"
    messages: list[Message] = field(default_factory=list)


@dataclass(slots=True)
class SessionUpdate:
    """Partial session update; ``None`` fields are left untouched."""

    session_id: str
    status: SessionStatus | None = None
    title: str | None = None
    task_md: str | None = None
    agent_session_id: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class SessionView:
    """Readable session metadata."""

    session_id: str
    title: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    workdir: str | None = None
    task_md: str | None = None
    agent_session_id: str | None = None
    orchestrate_task_id: str | None = None
    is_orchestrator_managed: bool = False
    source: str = "cli"
    error_message: str | None = None

    @property
    def session_type(self) -> str:
        """``orchestrator_main``, ``orchestrator_subtask`` or ``manual``."""

        if self.is_orchestrator_managed:
            return "orchestrator_main"
        if self.orchestrate_task_id:
            return "orchestrator_subtask"
        return "manual"
