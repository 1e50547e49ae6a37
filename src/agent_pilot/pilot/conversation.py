"""Turn-based conversation driver: agent turn, then decision, until done."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from agent_pilot.pilot.backend.cli_backend import CursorAgentBackend
from agent_pilot.pilot.backend.stream_protocol import (
    AgentEvent,
    ModelInfo,
    ThinkingText,
    ToolCallCompleted,
    ToolCallStarted,
)
from agent_pilot.pilot.decision import DecisionService
from agent_pilot.pilot.decision_parsing import (
    ManagerDecision,
    completion_notice,
    contains_completion_phrase,
    parse_decision,
    strip_status_prefix,
)
from agent_pilot.pilot.errors import AbortRequested, DecisionServiceError, EmptyInstructionError
from agent_pilot.pilot.models import (
    AgentRunRequest,
    AgentTurnResult,
    ConversationOutcome,
    ConversationResult,
    Message,
    MessageRole,
    MessageSource,
    ProgressEvent,
    ProgressKind,
    SessionStatus,
    SessionUpdate,
    new_id,
)
from agent_pilot.pilot.prompts import (
    build_agent_manager_prompt,
    build_decision_request,
    wrap_initial_task,
)
from agent_pilot.pilot.registry import AbortHandle, AbortRegistry
from agent_pilot.pilot.repository import SessionStore
from agent_pilot.pilot.state_detection import classify_agent_state

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 10
DEFAULT_DECISION_MAX_TOKENS = 1024
NO_INSTRUCTION_NOTICE = "Decision service returned no actionable instruction; conversation paused."
ABORTED_NOTICE = "Conversation aborted by user."
INSTRUCTION_PREFIX = "🤖 "

ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(slots=True)
class ConversationRequest:
    """Inputs of one conversation driver run."""

    task: str
    workdir: str
    conversation_id: str | None = None
    title: str | None = None
    resume_session_id: str | None = None
    task_md: str = ""
    model: str | None = None
    max_turns: int | None = None


class _Progress:
    """Best-effort progress fan-out bound to one conversation."""

    def __init__(self, conversation_id: str, callback: ProgressCallback | None) -> None:
        self.conversation_id = conversation_id
        self._callback = callback

    def emit(self, kind: ProgressKind, content: str = "", **fields: object) -> None:
        if self._callback is None:
            return
        event = ProgressEvent(kind=kind, content=content, conversation_id=self.conversation_id)
        for name, value in fields.items():
            setattr(event, name, value)
        try:
            self._callback(event)
        except Exception:  # noqa: BLE001
            logger.exception("Progress callback failed: kind=%s", kind.value)

    def forward_agent_event(self, event: AgentEvent) -> None:
        if isinstance(event, ThinkingText):
            self.emit(ProgressKind.THINKING, event.text)
        elif isinstance(event, ToolCallStarted):
            self.emit(ProgressKind.TOOL_CALL, event.name)
        elif isinstance(event, ToolCallCompleted):
            self.emit(ProgressKind.TOOL_RESULT, event.result.describe())
        elif isinstance(event, ModelInfo):
            self.emit(ProgressKind.MODEL_INFO, f"Model: {event.model}", model=event.model)


class ConversationDriver:
    """Alternate agent turns and decision calls until an outcome is reached.

    Agent invocations per run never exceed ``max_turns``.  An empty instruction
    is never sent to the agent: the run stops with ``no_instruction`` instead.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: CursorAgentBackend,
        decision_service: DecisionService | None,
        abort_registry: AbortRegistry,
        store: SessionStore | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        decision_max_tokens: int = DEFAULT_DECISION_MAX_TOKENS,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.backend = backend
        self.decision_service = decision_service
        self.abort_registry = abort_registry
        self.store = store
        self.max_turns = max_turns
        self.decision_max_tokens = decision_max_tokens

    def run(
        self,
        request: ConversationRequest,
        on_progress: ProgressCallback | None = None,
    ) -> ConversationResult:
        conversation_id = request.conversation_id or new_id()
        persist = self.store is not None and request.conversation_id is not None
        handle = AbortHandle()
        self.abort_registry.register(conversation_id, handle)
        progress = _Progress(conversation_id, on_progress)
        try:
            result = self._run(request, conversation_id, handle, progress, persist=persist)
        finally:
            self.abort_registry.unregister(conversation_id, handle)

        status = result.outcome.session_status
        progress.emit(ProgressKind.STATUS_CHANGE, status.value, status=status, turn=result.turns)
        if persist:
            self._update(
                SessionUpdate(
                    session_id=conversation_id,
                    status=status,
                    task_md=result.task_md or None,
                    agent_session_id=result.resume_session_id,
                    error_message=result.error,
                ),
            )
        logger.info(
            "Conversation finished: conversation_id=%s outcome=%s turns=%d",
            conversation_id,
            result.outcome.value,
            result.turns,
        )
        return result

    def _run(  # noqa: C901, PLR0912, PLR0915
        self,
        request: ConversationRequest,
        conversation_id: str,
        handle: AbortHandle,
        progress: _Progress,
        *,
        persist: bool,
    ) -> ConversationResult:
        max_turns = request.max_turns or self.max_turns
        messages = [
            Message(
                role=MessageRole.USER,
                content=wrap_initial_task(request.task),
                source=MessageSource.USER,
            ),
        ]
        pending = messages[0].content
        task_md = request.task_md
        resume_session_id = request.resume_session_id
        turns = 0
        outcome: ConversationOutcome | None = None
        error: str | None = None

        def append(message: Message) -> None:
            messages.append(message)
            if persist:
                self._add_message(conversation_id, message)

        progress.emit(ProgressKind.STATUS_CHANGE, "running", status=SessionStatus.RUNNING)
        if persist:
            self._update(SessionUpdate(session_id=conversation_id, status=SessionStatus.RUNNING))

        while turns < max_turns:
            try:
                _check_abort(handle, conversation_id)
            except AbortRequested as exc:
                logger.info("%s before turn %d", exc, turns + 1)
                append(_aborted_message())
                outcome = ConversationOutcome.ABORTED
                break
            if contains_completion_phrase(pending):
                outcome = ConversationOutcome.COMPLETED
                break

            turns += 1
            progress.emit(
                ProgressKind.STATUS_CHANGE,
                "running",
                status=SessionStatus.RUNNING,
                turn=turns,
            )
            agent_result = self.backend.run(
                AgentRunRequest(
                    task=strip_status_prefix(pending),
                    workdir=request.workdir,
                    resume_session_id=resume_session_id,
                    model=request.model,
                    conversation_id=conversation_id,
                    conversation_title=request.title,
                ),
                on_event=progress.forward_agent_event,
            )
            resume_session_id = agent_result.session_id or resume_session_id
            append(
                Message(
                    role=MessageRole.ASSISTANT,
                    content=agent_result.content,
                    source=MessageSource.AGENT,
                    tool_calls=list(agent_result.tool_calls),
                ),
            )
            progress.emit(ProgressKind.AGENT_RESPONSE, agent_result.content, turn=turns)

            if not agent_result.success:
                if handle.aborted:
                    append(_aborted_message())
                    outcome = ConversationOutcome.ABORTED
                    break
                error = agent_result.error or "Agent run failed"
                append(_error_message(error))
                outcome = ConversationOutcome.FAILED
                break

            try:
                decision = self._decide(request.task, messages, task_md=task_md, turn=turns)
            except DecisionServiceError as exc:
                error = str(exc)
                append(_error_message(error))
                outcome = ConversationOutcome.FAILED
                break

            if decision.task_md and decision.task_md != task_md:
                task_md = decision.task_md
                progress.emit(ProgressKind.TASK_ARTIFACT_UPDATE, "TODO list updated", task_md=task_md)
                if persist:
                    self._update(SessionUpdate(session_id=conversation_id, task_md=task_md))

            state = classify_agent_state(decision.raw, agent_result.content)
            progress.emit(ProgressKind.STATE_DETECTED, f"State: {state.value}", state=state)

            if decision.thinking:
                progress.emit(ProgressKind.THINKING, decision.thinking)

            if decision.is_complete:
                notice = completion_notice(decision.thinking)
                append(
                    Message(
                        role=MessageRole.SYSTEM,
                        content=notice,
                        source=MessageSource.POLICY,
                    ),
                )
                progress.emit(ProgressKind.INSTRUCTION, notice, turn=turns)
                outcome = ConversationOutcome.COMPLETED
                break

            if decision.thinking:
                append(
                    Message(
                        role=MessageRole.SYSTEM,
                        content=decision.thinking,
                        source=MessageSource.THINKING,
                    ),
                )

            try:
                instruction_text = _require_instruction(decision)
            except EmptyInstructionError as exc:
                logger.warning(
                    "%s: conversation_id=%s turn=%d raw=%.200r",
                    exc,
                    conversation_id,
                    turns,
                    decision.raw,
                )
                append(
                    Message(
                        role=MessageRole.SYSTEM,
                        content=NO_INSTRUCTION_NOTICE,
                        source=MessageSource.POLICY,
                    ),
                )
                progress.emit(ProgressKind.MESSAGE, NO_INSTRUCTION_NOTICE, turn=turns)
                outcome = ConversationOutcome.NO_INSTRUCTION
                break

            instruction = Message(
                role=MessageRole.SYSTEM,
                content=f"{INSTRUCTION_PREFIX}{instruction_text}",
                source=MessageSource.POLICY,
            )
            append(instruction)
            progress.emit(ProgressKind.INSTRUCTION, instruction_text, turn=turns)
            pending = instruction.content

        if outcome is None:
            outcome = ConversationOutcome.TURN_BUDGET_EXHAUSTED
            logger.info(
                "Turn budget exhausted: conversation_id=%s max_turns=%d",
                conversation_id,
                max_turns,
            )

        return ConversationResult(
            outcome=outcome,
            messages=messages,
            turns=turns,
            resume_session_id=resume_session_id,
            task_md=task_md,
            error=error,
        )

    def send_single(  # noqa: PLR0913
        self,
        message: str,
        workdir: str,
        *,
        conversation_id: str | None = None,
        resume_session_id: str | None = None,
        model: str | None = None,
        title: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentTurnResult:
        """One agent turn for ``message`` without consulting the decision service."""

        correlation_id = conversation_id or new_id()
        persist = self.store is not None and conversation_id is not None
        progress = _Progress(correlation_id, on_progress)
        handle = AbortHandle()
        self.abort_registry.register(correlation_id, handle)

        progress.emit(ProgressKind.STATUS_CHANGE, "running", status=SessionStatus.RUNNING)
        if persist:
            self._update(SessionUpdate(session_id=correlation_id, status=SessionStatus.RUNNING))
        try:
            result = self.backend.run(
                AgentRunRequest(
                    task=message,
                    workdir=workdir,
                    resume_session_id=resume_session_id,
                    model=model,
                    conversation_id=correlation_id,
                    conversation_title=title,
                ),
                on_event=progress.forward_agent_event,
            )
        finally:
            self.abort_registry.unregister(correlation_id, handle)

        progress.emit(ProgressKind.AGENT_RESPONSE, result.content, turn=1)
        if result.success or handle.aborted:
            status = SessionStatus.IDLE
        else:
            status = SessionStatus.ERROR
        if persist:
            self._add_message(
                correlation_id,
                Message(
                    role=MessageRole.ASSISTANT,
                    content=result.content,
                    source=MessageSource.AGENT,
                    tool_calls=list(result.tool_calls),
                ),
            )
            if status is SessionStatus.ERROR:
                self._add_message(correlation_id, _error_message(result.error or "Agent run failed"))
            self._update(
                SessionUpdate(
                    session_id=correlation_id,
                    status=status,
                    agent_session_id=result.session_id,
                    error_message=result.error if status is SessionStatus.ERROR else None,
                ),
            )
        progress.emit(ProgressKind.STATUS_CHANGE, status.value, status=status)
        return result

    def _decide(
        self,
        task: str,
        messages: list[Message],
        *,
        task_md: str,
        turn: int,
    ) -> ManagerDecision:
        if self.decision_service is None:
            raise DecisionServiceError("Decision service is not configured")
        transcript = [(message.role.value, message.content) for message in messages]
        reply = self.decision_service.complete(
            system=build_agent_manager_prompt(task),
            messages=[
                {
                    "role": "user",
                    "content": build_decision_request(transcript, task_md=task_md, turn=turn),
                },
            ],
            max_tokens=self.decision_max_tokens,
        )
        logger.debug("Decision reply (turn %d): %.200r", turn, reply.text)
        return parse_decision(reply.text)

    def _add_message(self, conversation_id: str, message: Message) -> None:
        try:
            self._require_store().add_message(conversation_id, message)
        except KeyError:
            logger.warning("Session %s no longer exists; message not stored", conversation_id)

    def _update(self, update: SessionUpdate) -> None:
        self._require_store().update_session(update)

    def _require_store(self) -> SessionStore:
        if self.store is None:
            raise RuntimeError("Conversation store is not configured")
        return self.store


def _check_abort(handle: AbortHandle, conversation_id: str) -> None:
    if handle.aborted:
        raise AbortRequested(conversation_id)


def _require_instruction(decision: ManagerDecision) -> str:
    if not decision.has_instruction:
        raise EmptyInstructionError("Decision reply has no actionable instruction")
    return decision.instruction


def _error_message(error: str) -> Message:
    return Message(role=MessageRole.SYSTEM, content=f"Error: {error}", source=MessageSource.POLICY)


def _aborted_message() -> Message:
    return Message(role=MessageRole.SYSTEM, content=ABORTED_NOTICE, source=MessageSource.POLICY)
