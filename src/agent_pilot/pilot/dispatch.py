"""Dispatch orchestrator: tool-use loop that turns a request into conversations."""

from __future__ import annotations

import json
import logging
import stat
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_pilot.pilot.conversation import (
    ConversationDriver,
    ConversationRequest,
    ProgressCallback,
)
from agent_pilot.pilot.decision import DecisionService, ToolInvocation
from agent_pilot.pilot.errors import DecisionServiceError
from agent_pilot.pilot.models import (
    Message,
    MessageRole,
    MessageSource,
    ProgressEvent,
    ProgressKind,
    SessionCreate,
    SessionStatus,
    SessionUpdate,
    SessionView,
    new_id,
)
from agent_pilot.pilot.prompts import DISPATCH_TOOLS, build_orchestrator_prompt, generate_task_md
from agent_pilot.pilot.repository import SessionStore

logger = logging.getLogger(__name__)

MAIN_SESSION_ID = "web_orchestrator_main"
DEFAULT_MAX_TOOL_ROUNDS = 8
DISPATCH_MAX_TOKENS = 4096
HISTORY_MESSAGES = 10
HISTORY_MESSAGE_CHARS = 500
TOOL_END_PREVIEW_CHARS = 200
READ_FILE_MAX_CHARS = 100_000

REUSE_INSTRUCTION = (
    "\n\nIMPORTANT: You are continuing in an existing chat session. Do NOT create a new "
    "chat - execute the task directly in the current conversation using the coding agent."
)


@dataclass(slots=True)
class DispatchRequest:
    """One free-form user request for the dispatcher."""

    request: str
    workdir: str
    current_session_id: str | None = None
    history: Sequence[Message] = ()


@dataclass(slots=True)
class DispatchResult:
    success: bool
    content: str
    tasks_executed: int = 0
    conversations_created: list[str] = field(default_factory=list)
    error: str | None = None


class _DispatchRun:
    """Mutable state of one ``DispatchOrchestrator.run`` call."""

    def __init__(self, request: DispatchRequest, on_event: ProgressCallback | None) -> None:
        self.request = request
        self.on_event = on_event
        self.created: list[str] = []
        self.chat_started = False
        self.background = 0

    def emit(self, kind: ProgressKind, content: str = "", **fields: Any) -> None:
        if self.on_event is None:
            return
        event = ProgressEvent(kind=kind, content=content)
        for name, value in fields.items():
            setattr(event, name, value)
        try:
            self.on_event(event)
        except Exception:  # noqa: BLE001
            logger.exception("Dispatch event callback failed: kind=%s", kind.value)


class DispatchOrchestrator:
    """Ask the decision service which tools to run and execute them.

    ``create_chat`` starts a conversation driver on a daemon thread and returns
    right away; ``wait_for_background`` joins those threads.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        decision_service: DecisionService,
        driver: ConversationDriver,
        store: SessionStore,
        skills_path: str,
        main_session_id: str = MAIN_SESSION_ID,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    ) -> None:
        self.decision_service = decision_service
        self.driver = driver
        self.store = store
        self.skills_path = skills_path
        self.main_session_id = main_session_id
        self.max_tool_rounds = max_tool_rounds
        self._threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()

    def run(
        self,
        request: DispatchRequest,
        on_event: ProgressCallback | None = None,
    ) -> DispatchResult:
        state = _DispatchRun(request, on_event)
        messages: list[dict[str, Any]] = [
            {"role": "user", "content": self._user_message(request)},
        ]
        content = ""
        tasks_executed = 0
        round_number = 0

        try:
            for round_number in range(1, self.max_tool_rounds + 1):
                reply = self.decision_service.complete(
                    system=build_orchestrator_prompt(self.skills_path),
                    messages=messages,
                    tools=DISPATCH_TOOLS,
                    max_tokens=DISPATCH_MAX_TOKENS,
                )
                for text in reply.text_blocks:
                    content += text
                    state.emit(ProgressKind.MESSAGE, text)
                if not reply.tool_uses:
                    break

                messages.append({"role": "assistant", "content": reply.content})
                tool_results: list[dict[str, Any]] = []
                for tool_use in reply.tool_uses:
                    state.emit(ProgressKind.TOOL_START, tool_use.name)
                    started = state.chat_started
                    output = self.execute_tool(tool_use, state)
                    if tool_use.name == "create_chat" and state.chat_started and not started:
                        tasks_executed += 1
                    state.emit(
                        ProgressKind.TOOL_END,
                        f"{tool_use.name}: {output[:TOOL_END_PREVIEW_CHARS]}",
                    )
                    tool_results.append(
                        {"type": "tool_result", "tool_use_id": tool_use.id, "content": output},
                    )
                messages.append({"role": "user", "content": tool_results})
            else:
                logger.warning(
                    "Dispatch stopped after %d tool rounds without a final reply",
                    self.max_tool_rounds,
                )
        except DecisionServiceError as error:
            logger.warning("Dispatch failed: %s", error)
            return _failed(state, content, tasks_executed, str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("Dispatch failed unexpectedly")
            return _failed(state, content, tasks_executed, f"Dispatch failed: {error}")

        if state.background:
            state.emit(
                ProgressKind.MESSAGE,
                f"{state.background} task(s) dispatched and running in background.",
            )
        logger.info(
            "Dispatch finished: rounds=%d tasks=%d created=%s",
            round_number,
            tasks_executed,
            state.created,
        )
        return DispatchResult(
            success=True,
            content=content,
            tasks_executed=tasks_executed,
            conversations_created=state.created,
        )

    def wait_for_background(
self, timeout: float | None = None) -> bool:
        """Join background conversations; ``True`` when all of them finished."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        with self._threads_lock:
            self._threads = [thread for thread in self._threads if thread.is_alive()]
            return not self._threads

    def execute_tool(self, tool_use: ToolInvocation, state: _DispatchRun) -> str:
        """Run one tool side effect and render its result as text for the model."""

        arguments = tool_use.input
        workdir = state.request.workdir
        if tool_use.name == "create_chat":
            return self._create_chat(
                task=str(arguments.get("task", "")),
                title=str(arguments.get("title", "")) or "Untitled task",
                state=state,
            )
        if tool_use.name == "check_chat_status":
            return self._check_chat_status(str(arguments.get("chat_id", "")))
        if tool_use.name == "send_message_to_chat":
            return self._send_message_to_chat(
                str(arguments.get("chat_id", "")),
                str(arguments.get("message", "")),
                workdir=workdir,
                state=state,
            )
        if tool_use.name == "list_files":
            return _list_files(_resolve(workdir, str(arguments.get("path", "."))))
        if tool_use.name == "read_file":
            return _read_file(_resolve(workdir, str(arguments.get("path", ""))))
        return _json({"error": f"Unknown tool: {tool_use.name}"})

    def _user_message(self, request: DispatchRequest) -> str:
        context = ""
        if request.history:
            context = "\n\n## Previous Conversation Context:\n"
            for message in list(request.history)[-HISTORY_MESSAGES:]:
                label = {
                    MessageRole.USER: "User",
                    MessageRole.ASSISTANT: "Assistant",
                }.get(message.role, "System")
                text = message.content[:HISTORY_MESSAGE_CHARS]
                if len(message.content) > HISTORY_MESSAGE_CHARS:
                    text += "..."
                context += f"{label}: {text}\n\n"
        reuse = REUSE_INSTRUCTION if self._reusable_session(request.current_session_id) else ""
        return (
            f"Working directory: {request.workdir}{context}{reuse}"
            f"\n\nCurrent Request: {request.request}"
        )

    def _reusable_session(self, session_id: str | None) -> SessionView | None:
        if not session_id or session_id == self.main_session_id:
            return None
        meta = self.store.get_session_meta(session_id)
        if meta is None or meta.is_orchestrator_managed:
            return None
        return meta

    def _create_chat(self, *, task: str, title: str, state: _DispatchRun) -> str:
        if state.chat_started:
            return _json(
                {
                    "success": False,
                    "error": "A chat was already created for this request; "
                    "only one create_chat call is allowed per request.",
                },
            )
        if not task.strip():
            return _json({"success": False, "error": "Task must not be empty."})

        workdir = state.request.workdir
        existing = self._reusable_session(state.request.current_session_id)
        if existing is not None:
            if existing.status is SessionStatus.RUNNING:
                return _json(
                    {
                        "success": False,
                        "error": "Current chat is busy with a running conversation.",
                        "chatId": existing.session_id,
                    },
                )
            state.chat_started = True
            self.store.add_message(
                existing.session_id,
                Message(role=MessageRole.USER, content=task, source=MessageSource.DISPATCHER),
            )
            self.store.update_session(
                SessionUpdate(session_id=existing.session_id, status=SessionStatus.RUNNING),
            )
            state.emit(
                ProgressKind.CONVERSATION_UPDATE,
                f"Executing task: {title}",
                conversation_id=existing.session_id,
                status=SessionStatus.RUNNING,
            )
            self._start_background(
                existing.session_id,
                ConversationRequest(
                    task=task,
                    workdir=existing.workdir or workdir,
                    conversation_id=existing.session_id,
                    title=existing.title,
                    resume_session_id=existing.agent_session_id,
                    task_md=existing.task_md or "",
                ),
                state,
            )
            return _json(
                {
                    "success": True,
                    "chatId": existing.session_id,
                    "status": SessionStatus.RUNNING.value,
                    "message": "Task dispatched in current chat session.",
                },
            )

        session_id = new_id()
        task_md = generate_task_md(title, task, workdir)
        initial = Message(role=MessageRole.USER, content=task, source=MessageSource.DISPATCHER)
        self.store.create_session(
            SessionCreate(
                title=title,
                session_id=session_id,
                status=SessionStatus.RUNNING,
                workdir=workdir,
                task_md=task_md,
                orchestrate_task_id=session_id,
                messages=[initial],
            ),
        )
        state.chat_started = True
        state.created.append(session_id)
        state.emit(
            ProgressKind.CONVERSATION_CREATED,
            _json({"chatId": session_id, "title": title, "task": task, "taskMd": task_md}),
            conversation_id=session_id,
            status=SessionStatus.RUNNING,
            task_md=task_md,
        )
        self._start_background(
            session_id,
            ConversationRequest(
                task=task,
                workdir=workdir,
                conversation_id=session_id,
                title=title,
                task_md=task_md,
            ),
            state,
        )
        return _json(
            {
                "success": True,
                "chatId": session_id,
                "status": SessionStatus.RUNNING.value,
                "message": "Chat session created and task dispatched.",
            },
        )

    def _check_chat_status(self, chat_id: str) -> str:
        meta = self.store.get_session_meta(chat_id)
        if meta is None:
            return _json({"error": "Chat not found", "chatId": chat_id})
        last = self.store.get_last_message(chat_id)
        return _json(
            {
                "chatId": chat_id,
                "title": meta.title,
                "status": meta.status.value,
                "messageCount": self.store.count_messages(chat_id),
                "lastMessage": last.content[:TOOL_END_PREVIEW_CHARS] if last else None,
            },
        )

    def _send_message_to_chat(
        self,
        chat_id: str,
        message: str,
        *,
        workdir: str,
        state: _DispatchRun,
    ) -> str:
        meta = self.store.get_session_meta(chat_id)
        if meta is None:
            return _json({"error": "Chat not found", "chatId": chat_id})
        if meta.status is SessionStatus.RUNNING:
            return _json({"error": "Chat is busy with a running conversation", "chatId": chat_id})

        self.store.add_message(
            chat_id,
            Message(role=MessageRole.USER, content=message, source=MessageSource.USER),
        )
        result = self.driver.send_single(
            message,
            meta.workdir or workdir,
            conversation_id=chat_id,
            resume_session_id=meta.agent_session_id,
            title=meta.title,
        )
        refreshed = self.store.get_session_meta(chat_id)
        status = refreshed.status if refreshed is not None else meta.status
        state.emit(
            ProgressKind.CONVERSATION_UPDATE,
            _json({"chatId": chat_id, "response": result.content[:TOOL_END_PREVIEW_CHARS]}),
            conversation_id=chat_id,
            status=status,
        )
        return _json({"success": result.success, "response": result.content, "status": status.value})

    def _start_background(
        self,
        conversation_id: str,
        request: ConversationRequest,
        state: _DispatchRun,
    ) -> None:
        def forward(event: ProgressEvent) -> None:
            if event.kind is ProgressKind.TASK_ARTIFACT_UPDATE:
                state.emit(
                    ProgressKind.CONVERSATION_UPDATE,
                    "TODO list updated",
                    conversation_id=conversation_id,
                    task_md=event.task_md,
                )
            state.emit(
                ProgressKind.CONVERSATION_UPDATE,
                event.content,
                conversation_id=conversation_id,
                status=event.status,
                details=event.to_payload(),
            )

        def target() -> None:
            try:
                result = self.driver.run(request, on_progress=forward)
            except Exception as error:
                logger.exception("Background conversation crashed: conversation_id=%s", conversation_id)
                self.store.update_session(
                    SessionUpdate(
                        session_id=conversation_id,
                        status=SessionStatus.ERROR,
                        error_message=str(error),
                    ),
                )
                state.emit(
                    ProgressKind.CONVERSATION_COMPLETE,
                    f"error: {error}",
                    conversation_id=conversation_id,
                    status=SessionStatus.ERROR,
                )
                return
            state.emit(
                ProgressKind.CONVERSATION_COMPLETE,
                result.outcome.value,
                conversation_id=conversation_id,
                status=result.outcome.session_status,
                turn=result.turns,
                task_md=result.task_md,
            )

        thread = threading.Thread(
            target=target,
            daemon=True,
            name=f"conversation-{conversation_id[:12]}",
        )
        with self._threads_lock:
            self._threads.append(thread)
        state.background += 1
        thread.start()
        logger.info("Started background conversation: conversation_id=%s", conversation_id)


def _failed(state: _DispatchRun, content: str, tasks_executed: int, error: str) -> DispatchResult:
    return DispatchResult(
        success=False,
        content=content,
        tasks_executed=tasks_executed,
        conversations_created=state.created,
        error=error,
    )


def _resolve(
workdir: str, path: str) -> Path:
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = Path(workdir) / candidate
    return candidate


def _list_files(path: Path) -> str:
    try:
        children = sorted(path.iterdir(), key=lambda item: item.name)
    except OSError as error:
        return _json({"error": str(error)})
    return json.dumps([_describe_entry(entry) for entry in children], indent=2)


def _describe_entry(entry: Path) -> dict[str, Any]:
    try:
        info = entry.stat()
    except OSError as error:
        logger.debug("Cannot stat %s: %s", entry, error)
        kind = "symlink" if entry.is_symlink() else "file"
        return {"name": entry.name, "type": kind, "size": None}
    kind = "directory" if stat.S_ISDIR(info.st_mode) else "file"
    return {"name": entry.name, "type": kind, "size": info.st_size}


def _read_file(path: Path) -> str:
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        return _json({"error": str(error)})
    if len(content) > READ_FILE_MAX_CHARS:
        return content[:READ_FILE_MAX_CHARS] + "\n... [truncated]"
    return content


def _json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)
