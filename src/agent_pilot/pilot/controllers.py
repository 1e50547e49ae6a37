"""Controllers for agent-pilot CLI commands."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from agent_pilot.config import Settings
from agent_pilot.pilot.backend import CursorAgentBackend
from agent_pilot.pilot.conversation import ConversationDriver, ConversationRequest
from agent_pilot.pilot.decision import AnthropicDecisionService, DecisionService
from agent_pilot.pilot.dispatch import DispatchOrchestrator, DispatchRequest
from agent_pilot.pilot.models import (
    ConversationResult,
    Message,
    MessageRole,
    MessageSource,
    ProgressEvent,
    ProgressKind,
    SessionCreate,
)
from agent_pilot.pilot.registry import AbortRegistry, ActiveCallRegistry
from agent_pilot.pilot.repository import SessionRepository
from agent_pilot.pilot.services import PilotService

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]
DecisionFactory = Callable[[Settings], DecisionService]

PROGRESS_PREVIEW_CHARS = 300
TITLE_CHARS = 60
JOIN_POLL_SECONDS = 0.2
ABORT_SETTLE_SECONDS = 10.0

T = TypeVar("T")


@dataclass(slots=True)
class ChatRunCommand:
    """CLI input for a full conversation loop."""

    db_path: Path | None
    task: str
    workdir: Path | None = None
    title: str | None = None
    session_id: str | None = None
    max_turns: int | None = None
    model: str | None = None


@dataclass(slots=True)
class ChatSendCommand:
    """CLI input for a single agent turn in an existing session."""

    db_path: Path | None
    session_id: str
    message: str


@dataclass(slots=True)
class OrchestrateCommand:
    """CLI input for the dispatch loop."""

    db_path: Path | None
    request: str
    workdir: Path | None = None
    session_id: str | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class SessionsListCommand:
    db_path: Path | None
    limit: int = 20


@dataclass(slots=True)
class SessionCommand:
    """CLI input addressing one stored session."""

    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class _Runtime:
    """Objects shared by every component for one CLI invocation."""

    settings: Settings
    repository: SessionRepository
    call_registry: ActiveCallRegistry
    abort_registry: AbortRegistry
    decision_service: DecisionService | None

    @property
    def service(self) -> PilotService:
        return PilotService(
            repository=self.repository,
            call_registry=self.call_registry,
            abort_registry=self.abort_registry,
        )

    def driver(self) -> ConversationDriver:
        backend = CursorAgentBackend(
            registry=self.call_registry,
            command=self.settings.agent.command,
            default_model=self.settings.agent.model,
        )
        return ConversationDriver(
            backend=backend,
            decision_service=self.decision_service,
            abort_registry=self.abort_registry,
            store=self.repository,
            max_turns=self.settings.conversation.max_turns,
            decision_max_tokens=self.settings.conversation.decision_max_tokens,
        )

    def require_decision_service(self) -> DecisionService:
        if self.decision_service is None:
            raise RuntimeError("Decision service is not configured")
        return self.decision_service


class PilotCliController:
    """Coordinates conversation, dispatch and session CLI operations."""

    def __init__(self, *, decision_factory: DecisionFactory | None = None) -> None:
        self.decision_factory = decision_factory or _anthropic_decision_service

    def run_chat(self, command: ChatRunCommand, on_line: LineSink | None = None) -> list[str]:
        """Run the conversation loop; Ctrl-C aborts the running conversation."""

        settings = Settings.from_env(db_path=command.db_path)
        if command.workdir is not None:
            settings.agent.workdir = command.workdir
        settings.validate_for_decision()

        with self._runtime(settings, with_decision=True) as runtime:
            repository = runtime.repository
            resume_session_id = None
            task_md = ""
            if command.session_id:
                meta = repository.get_session_meta(command.session_id)
                if meta is None:
                    return [f"Session not found: {command.session_id}"]
                session_id = meta.session_id
                title = meta.title
                resume_session_id = meta.agent_session_id
                task_md = meta.task_md or ""
                repository.add_message(
                    session_id,
                    Message(role=MessageRole.USER, content=command.task, source=MessageSource.USER),
                )
            else:
                title = command.title or _default_title(command.task)
                session = repository.create_session(
                    SessionCreate(
                        title=title,
                        workdir=str(settings.agent.workdir),
                        messages=[
                            Message(
                                role=MessageRole.USER,
                                content=command.task,
                                source=MessageSource.USER,
                            ),
                        ],
                    ),
                )
                session_id = session.session_id
            _emit(on_line, f"Session: {session_id} ({title})")

            request = ConversationRequest(
                task=command.task,
                workdir=str(settings.agent.workdir),
                conversation_id=session_id,
                title=title,
                resume_session_id=resume_session_id,
                task_md=task_md,
                model=command.model,
                max_turns=command.max_turns,
            )
            result = _run_abortable(
                lambda: runtime.driver().run(request, on_progress=_progress_printer(on_line)),
                on_interrupt=lambda: self._abort(runtime, session_id, on_line),
            )

        return _conversation_summary(session_id, result)

    def send_message(self, command: ChatSendCommand, on_line: LineSink | None = None) -> list[str]:
        """Send one message to the agent without the decision loop."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_agent()
        with self._runtime(settings, with_decision=False) as runtime:
            meta = runtime.repository.get_session_meta(command.session_id)
            if meta is None:
                return [f"Session not found: {command.session_id}"]
            runtime.repository.add_message(
                meta.session_id,
                Message(role=MessageRole.USER, content=command.message, source=MessageSource.USER),
            )
            result = runtime.driver().send_single(
                command.message,
                meta.workdir or str(settings.agent.workdir),
                conversation_id=meta.session_id,
                resume_session_id=meta.agent_session_id,
                title=meta.title,
                on_progress=_progress_printer(on_line),
            )

        lines = [f"Agent response ({'ok' if result.success else 'failed'}):", result.content]
        if result.error:
            lines.append(f"Error: {result.error}")
        return lines

    def orchestrate(self, command: OrchestrateCommand, on_line: LineSink | None = None) -> list[str]:
        """Dispatch a free-form request and wait for its conversations."""

        settings = Settings.from_env(db_path=command.db_path)
        if command.workdir is not None:
            settings.agent.workdir = command.workdir
        settings.validate_for_decision()

        with self._runtime(settings, with_decision=True) as runtime:
            decision_service = runtime.require_decision_service()
            history: list[Message] = []
            if command.session_id:
                history = runtime.repository.get_messages(command.session_id)
            dispatcher = DispatchOrchestrator(
                decision_service=decision_service,
                driver=runtime.driver(),
                store=runtime.repository,
                skills_path=str(settings.conversation.skills_path),
            )
            result = dispatcher.run(
                DispatchRequest(
                    request=command.request,
                    workdir=str(settings.agent.workdir),
                    current_session_id=command.session_id,
                    history=history,
                ),
                on_event=_progress_printer(on_line),
            )
            finished = _run_abortable(
                lambda: dispatcher.wait_for_background(command.timeout_seconds),
                on_interrupt=lambda: self._abort_all(runtime, on_line),
            )
            if not finished:
                # no session may stay running once the command exits
                _emit(on_line, "Timed out waiting for background conversations; aborting them.")
                self._abort_all(runtime, on_line)
                if not dispatcher.wait_for_background(ABORT_SETTLE_SECONDS):
                    logger.warning("Background conversations did not stop after abort")

        lines = [
            "Dispatch "
            f"{'succeeded' if result.success else 'failed'}: "
            f"tasks_executed={result.tasks_executed} "
            f"conversations={','.join(result.conversations_created) or '-'}",
        ]
        if result.content:
            lines.append(result.content)
        if result.error:
            lines.append(f"Error: {result.error}")
        if not finished:
            lines.append("Background conversations were aborted after the timeout.")
        return lines

    def list_sessions(self, command: SessionsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            sessions = repository.list_sessions(limit=command.limit)
        lines = [f"Sessions: {len(sessions)}"]
        for session in sessions:
            lines.append(
                f"  {session.session_id} status={session.status.value} "
                f"type={session.session_type} updated={session.updated_at.isoformat()} "
                f"title={session.title}",
            )
        return lines

    def show_session(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            meta = repository.get_session_meta(command.session_id)
            messages = repository.get_messages(command.session_id) if meta else []
        if meta is None:
            return [f"Session not found: {command.session_id}"]

        lines = [
            f"Session: {meta.session_id}",
            f"Title: {meta.title}",
            f"Status: {meta.status.value}",
            f"Type: {meta.session_type}",
            f"Workdir: {meta.workdir or '-'}",
            f"Agent session: {meta.agent_session_id or '-'}",
            f"Error: {meta.error_message or '-'}",
            f"Messages: {len(messages)}",
        ]
        for message in messages:
            source = message.source.value if message.source else "-"
            lines.append(
                f"  {message.created_at.isoformat()} {message.role.value}/{source}: "
                f"{_preview(message.content)}",
            )
        if meta.task_md:
            lines.extend(["Task:", meta.task_md])
        return lines

    def delete_session(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._runtime(settings, with_decision=False) as runtime:
            deleted = runtime.service.delete_session(command.session_id)
        if not deleted:
            return [f"Session not found: {command.session_id}"]
        return [f"Session deleted: {command.session_id}"]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._runtime(settings, with_decision=False) as runtime:
            snapshot = runtime.service.system_status()

        counts = " ".join(f"{name}={count}" for name, count in snapshot.session_counts.items())
        lines = [
            f"Database: {settings.db_path}",
            f"Sessions: total={snapshot.total_sessions} {counts}",
            f"Running sessions: {len(snapshot.running_sessions)}",
        ]
        for session in snapshot.running_sessions:
            lines.append(f"  {session.session_id} status={session.status.value} title={session.title}")
        lines.append(f"Active agent calls: {len(snapshot.active_calls)}")
        for call in snapshot.active_calls:
            lines.append(
                f"  {call.call_id} status={call.status.value} "
                f"conversation={call.conversation_id or '-'} task={_preview(call.task)}",
            )
        return lines

    @contextmanager
    def _runtime(self, settings: Settings, *, with_decision: bool) -> Iterator[_Runtime]:
        decision_service = self.decision_factory(settings) if with_decision else None
        try:
            with _repository(settings) as repository:
                yield _Runtime(
                    settings=settings,
                    repository=repository,
                    call_registry=ActiveCallRegistry(
                        grace_seconds=settings.agent.call_grace_seconds,
                    ),
                    abort_registry=AbortRegistry(),
                    decision_service=decision_service,
                )
        finally:
            if isinstance(decision_service, AnthropicDecisionService):
                decision_service.close()

    def _abort(self, runtime: _Runtime, session_id: str, on_line: LineSink | None) -> None:
        summary = runtime.service.abort_conversation(session_id)
        _emit(on_line, f"Abort requested: killed_calls={summary.killed_calls}")

    def _abort_all(self, runtime: _Runtime, on_line: LineSink | None) -> None:
        conversation_ids = set(runtime.abort_registry.ids())
        conversation_ids.update(
            call.conversation_id
            for call in runtime.call_registry.list_running()
            if call.conversation_id
        )
        for conversation_id in sorted(conversation_ids):
            self._abort(runtime, conversation_id, on_line)


@contextmanager
def _repository(settings: Settings) -> Iterator[SessionRepository]:
    repository = SessionRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _anthropic_decision_service(settings: Settings) -> DecisionService:
    api_key = settings.decision.api_key
    if not api_key:
        raise ValueError("ANTHROPIC_API_KEY is required for decision service calls.")
    return AnthropicDecisionService(
        api_key=api_key,
        base_url=settings.decision.base_url,
        model=settings.decision.model,
        timeout_seconds=settings.decision.timeout_seconds,
    )


def _run_abortable(work: Callable[[], T], *, on_interrupt: Callable[[], None]) -> T:
    """Run ``work`` on a worker thread so Ctrl-C can abort it cleanly."""

    outcome: dict[str, object] = {}

    def target() -> None:
        try:
            outcome["value"] = work()
        except Exception as error:  # noqa: BLE001
            outcome["error"] = error

    thread = threading.Thread(target=target, daemon=True, name="agent-pilot-cli")
    thread.start()
    try:
        while thread.is_alive():
            thread.join(JOIN_POLL_SECONDS)
    except KeyboardInterrupt:
        logger.info("Interrupted; aborting")
        on_interrupt()
        thread.join()
    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome["value"]  # type: ignore[return-value]


def _progress_printer(on_line: LineSink | None) -> Callable[[ProgressEvent], None]:
    def render(event: ProgressEvent) -> None:
        if on_line is None:
            return
        if event.kind is ProgressKind.TASK_ARTIFACT_UPDATE and event.task_md:
            on_line(f"[{event.kind.value}]\n{event.task_md}")
            return
        if not event.content:
            return
        prefix = f"[{event.kind.value}]"
        if event.conversation_id and event.kind in {
            ProgressKind.CONVERSATION_CREATED,
            ProgressKind.CONVERSATION_UPDATE,
            ProgressKind.CONVERSATION_COMPLETE,
        }:
            prefix = f"[{event.kind.value} {event.conversation_id[:8]}]"
        on_line(f"{prefix} {_preview(event.content)}")

    return render


def _conversation_summary(session_id: str, result: ConversationResult) -> list[str]:
    lines = [
        f"Conversation {session_id}: outcome={result.outcome.value} turns={result.turns}",
    ]
    if result.resume_session_id:
        lines.append(f"Agent session: {result.resume_session_id}")
    if result.error:
        lines.append(f"Error: {result.error}")
    if result.task_md:
        lines.extend(["Task:", result.task_md])
    return lines


def _default_title(task: str) -> str:
    first_line = task.strip().splitlines()[0] if task.strip() else "Untitled task"
    if len(first_line) <= TITLE_CHARS:
        return first_line
    return first_line[: TITLE_CHARS - 3] + "..."


def _preview(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) <= PROGRESS_PREVIEW_CHARS:
        return flat
    return flat[: PROGRESS_PREVIEW_CHARS - 3] + "..."


def _emit(on_line: LineSink | None, line: str) -> None:
    if on_line is not None:
        on_line(line)
