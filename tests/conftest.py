"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_pilot.pilot.decision import DecisionReply
from agent_pilot.pilot.models import AgentRunRequest, AgentTurnResult
from agent_pilot.pilot.registry import AbortRegistry, ActiveCallRegistry
from agent_pilot.pilot.repository import SessionRepository

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_COMMAND = (sys.executable, "-m", "agent_pilot.pilot.backend.echo_agent")


class FakeTimer:
    """Stand-in for ``threading.Timer`` that fires only when told to."""

    def __init__(self, interval: float, function: Callable[[], None]) -> None:
        self.interval = interval
        self.function = function
        self.started = False

    def start(self) -> None:
        self.started = True

    def fire(self) -> None:
        self.function()


class TimerRecorder:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer


class FakeProcess:
    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.killed = False

    def kill(self) -> None:
        self.killed = True


class ScriptedDecisionService:
    """Decision service answering from a fixed script of replies.

    A script item may be a text, a ``DecisionReply`` or an exception to raise.
    """

    def __init__(self, replies: list[object], *, default: object | None = None) -> None:
        self.replies = list(replies)
        self.default = default
        self.calls: list[dict[str, object]] = []

    def complete(self, **kwargs: object) -> DecisionReply:
        self.calls.append(kwargs)
        if self.replies:
            item = self.replies.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            raise AssertionError("Decision script exhausted")
        if isinstance(item, Exception):
            raise item
        if isinstance(item, DecisionReply):
            return item
        return DecisionReply(text_blocks=[str(item)], stop_reason="end_turn")


class FakeBackend:
    """Agent backend returning scripted turn results without spawning processes."""

    def __init__(
        self,
        results: list[AgentTurnResult] | None = None,
        *,
        on_run: Callable[[AgentRunRequest], None] | None = None,
    ) -> None:
        self.results = list(results or [])
        self.requests: list[AgentRunRequest] = []
        self.on_run = on_run

    def run(self, request: AgentRunRequest, on_event=None) -> AgentTurnResult:
        self.requests.append(request)
        if self.on_run is not None:
            self.on_run(request)
        if self.results:
            return self.results.pop(0)
        return AgentTurnResult(
            success=True,
            content=f"Done: {request.task.strip().splitlines()[-1]}",
            session_id=request.resume_session_id or "fake-session",
        )


@pytest.fixture()
def echo_agent_command(monkeypatch: pytest.MonkeyPatch) -> tuple[str, ...]:
    """Command prefix running the bundled echo agent in a child interpreter."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(SRC_DIR), existing]) if existing else str(SRC_DIR),
    )
    return ECHO_AGENT_COMMAND


@pytest.fixture()
def timers() -> TimerRecorder:
    return TimerRecorder()


@pytest.fixture()
def call_registry(timers: TimerRecorder) -> ActiveCallRegistry:
    return ActiveCallRegistry(grace_seconds=5.0, timer_factory=timers)


@pytest.fixture()
def abort_registry() -> AbortRegistry:
    return AbortRegistry()


@pytest.fixture()
def repository(tmp_path_factory: pytest.TempPathFactory):
    repo = SessionRepository(tmp_path_factory.mktemp("db") / "pilot.db")
    repo.init_schema()
    yield repo
    repo.close()
