"""Subprocess supervisor for the streaming coding-agent CLI."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from typing import IO

from agent_pilot.pilot.backend.stream_protocol import (
    AgentEvent,
    AgentRunCompleted,
    AssistantText,
    AssistantTextAccumulator,
    ModelInfo,
    RunResult,
    SessionIdentified,
    StreamEventParser,
    ToolCallCompleted,
    ToolCallStarted,
)
from agent_pilot.pilot.errors import ProcessExitError, ProcessSpawnError
from agent_pilot.pilot.failure_classifier import describe_exit_failure
from agent_pilot.pilot.models import AgentRunRequest, AgentTurnResult
from agent_pilot.pilot.registry import ActiveCallRegistry, kill_quietly

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = ("agent",)
STREAM_ARGS = ("-p", "--output-format=stream-json", "--stream-partial-output", "--force")
READ_CHUNK_BYTES = 4096


def build_agent_args(
    command: tuple[str, ...],
    *,
    resume_session_id: str | None,
    model: str | None,
) -> list[str]:
    """Render argv for one non-interactive streaming invocation."""

    args = [*command, *STREAM_ARGS]
    if resume_session_id:
        args.extend(["--resume", resume_session_id])
    if model:
        args.extend(["--model", model])
    return args


class AgentRun:
    """One agent invocation, consumed as an ordered finite stream of events.

    Iterating drives the process to completion.  The last event is always
    ``AgentRunCompleted``; afterwards ``result`` holds the same outcome.
    """

    def __init__(
        self,
        *,
        request: AgentRunRequest,
        args: list[str],
        registry: ActiveCallRegistry,
    ) -> None:
        self.request = request
        self.args = args
        self._registry = registry
        self.call_id = registry.register(
            request.task,
            request.workdir,
            conversation_id=request.conversation_id,
            conversation_title=request.conversation_title,
            model=request.model,
        )
        self._result: AgentTurnResult | None = None
        self._started = False

    @property
    def result(self) -> AgentTurnResult:
        if self._result is None:
            raise RuntimeError("Agent run has not completed yet.")
        return self._result

    def __iter__(self) -> Iterator[AgentEvent]:
        if self._started:
            raise RuntimeError("Agent run can only be consumed once.")
        self._started = True
        return self._events()

    def _events(self) -> Iterator[AgentEvent]:
        parser = StreamEventParser()
        text = AssistantTextAccumulator()
        state = _RunState()

        try:
            process = subprocess.Popen(  # noqa: S603
                self.args,
                cwd=self.request.workdir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            spawn_error = ProcessSpawnError(self.args[0], str(error))
            logger.warning("Agent spawn failed: call_id=%s %s", self.call_id, spawn_error)
            yield self._finish(state, text, parser, success=False, error=str(spawn_error))
            return

        stderr_chunks: list[bytes] = []
        stderr_thread: threading.Thread | None = None
        stream_error: Exception | None = None
        try:
            self._registry.attach_process(self.call_id, process)
            stderr_thread = threading.Thread(
                target=_drain,
                args=(process.stderr, stderr_chunks),
                daemon=True,
                name=f"agent-stderr-{self.call_id}",
            )
            stderr_thread.start()
            _write_task(process, self.request.task)
            for event in _read_events(process, parser):
                state.apply(event, text)
                yield event
        except GeneratorExit:
            kill_quietly(process)
            self._finish(state, text, parser, success=False, error="Agent run was abandoned")
            raise
        except Exception as error:  # noqa: BLE001
            logger.exception("Agent stream handling failed: call_id=%s", self.call_id)
            stream_error = error
            kill_quietly(process)
        finally:
            exit_code = process.wait()
            if stderr_thread is not None:
                stderr_thread.join(timeout=5)
            stdout_handle = process.stdout
            if stdout_handle is not None:
                stdout_handle.close()

        if stream_error is not None:
            yield self._finish(
                state,
                text,
                parser,
                success=False,
                error=f"Agent output could not be processed: {stream_error}",
                exit_code=exit_code,
            )
            return

        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        if exit_code == 0:
            yield self._finish(state, text, parser, success=True, exit_code=0)
            return

        exit_error = _exit_error(exit_code, stderr)
        if stderr.strip():
            logger.warning("Agent stderr (call_id=%s): %.500s", self.call_id, stderr.strip())
        yield self._finish(
            state,
            text,
            parser,
            success=False,
            error=str(exit_error),
            exit_code=exit_code,
        )

    def _finish(  # noqa: PLR0913
        self,
        state: _RunState,
        text: AssistantTextAccumulator,
        parser: StreamEventParser,
        *,
        success: bool,
        error: str | None = None,
        exit_code: int | None = None,
    ) -> AgentRunCompleted:
        if self._result is not None:
            raise RuntimeError("Agent run already completed.")
        self._result = AgentTurnResult(
            success=success,
            content=text.text,
            session_id=parser.session_id,
            model=state.model,
            tool_calls=state.tool_calls,
            tool_call_results=state.tool_call_results,
            error=error,
            duration_ms=state.duration_ms,
            exit_code=exit_code,
        )
        self._registry.complete(self.call_id, success)
        logger.info(
            "Agent run finished: call_id=%s success=%s exit_code=%s chars=%d",
            self.call_id,
            success,
            exit_code,
            len(text.text),
        )
        return AgentRunCompleted(self._result)


class _RunState:
    def __init__(self) -> None:
        self.model: str | None = None
        self.tool_calls: list[str] = []
        self.tool_call_results = []
        self.duration_ms: int | None = None

    def apply(self, event: AgentEvent, text: AssistantTextAccumulator) -> None:
        if isinstance(event, AssistantText):
            text.add(event.text)
        elif isinstance(event, ModelInfo):
            self.model = event.model
        elif isinstance(event, ToolCallStarted):
            self.tool_calls.append(event.name)
        elif isinstance(event, ToolCallCompleted):
            self.tool_call_results.append(event.result)
        elif isinstance(event, RunResult):
            self.duration_ms = event.duration_ms
        elif isinstance(event, SessionIdentified):
            logger.debug("Agent session identified: %s", event.session_id)


class CursorAgentBackend:
    """Launch the agent CLI once per turn and stream its events."""

    def __init__(
        self,
        *,
        registry: ActiveCallRegistry,
        command: tuple[str, ...] = DEFAULT_AGENT_COMMAND,
        default_model: str | None = "auto",
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty.")
        self.registry = registry
        self.command = command
        self.default_model = default_model

    def start(self, request: AgentRunRequest) -> AgentRun:
        args = build_agent_args(
            self.command,
            resume_session_id=request.resume_session_id,
            model=request.model or self.default_model,
        )
        return AgentRun(request=request, args=args, registry=self.registry)

    def run(
        self,
        request: AgentRunRequest,
        on_event: Callable[[AgentEvent], None] | None = None,
    ) -> AgentTurnResult:
        """Drive one invocation to completion, forwarding events in order."""

        started = time.monotonic()
        agent_run = self.start(request)
        for event in agent_run:
            if on_event is not None:
                on_event(event)
        logger.debug(
            "Agent call %s took %.1fs",
            agent_run.call_id,
            time.monotonic() - started,
        )
        return agent_run.result


def _write_task(process: subprocess.Popen[bytes], task: str) -> None:
    stdin = process.stdin
    if stdin is None:
        return
    try:
        stdin.write(task.encode("utf-8"))
        stdin.close()
    except (BrokenPipeError, OSError) as error:
        # exit handling reports the real cause
        logger.debug("Agent stdin closed early: %s", error)


def _drain(stream: IO[bytes] | None, sink: list[bytes]) -> None:
    if stream is None:
        return
    try:
        for chunk in iter(lambda: stream.read(READ_CHUNK_BYTES), b""):
            sink.append(chunk)
    finally:
        stream.close()


def _exit_error(exit_code: int, stderr: str) -> ProcessExitError:
    if exit_code < 0:
        return ProcessExitError(
            f"Agent process was terminated (signal {-exit_code})",
            exit_code=exit_code,
        )
    description = describe_exit_failure(exit_code=exit_code, stderr=stderr)
    return ProcessExitError(description.message, exit_code=exit_code)


def _read_events(process: subprocess.Popen[bytes], parser: StreamEventParser) -> Iterator[AgentEvent]:
    stdout = process.stdout
    if stdout is None:
        raise RuntimeError("Agent stdout is not piped")
    while True:
        chunk = stdout.read1(READ_CHUNK_BYTES)  # type: ignore[attr-defined]
        if not chunk:
            break
        yield from parser.feed(chunk)
    yield from parser.close()

