from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_pilot.pilot.backend import CursorAgentBackend
from agent_pilot.pilot.conversation import (
    ABORTED_NOTICE,
    NO_INSTRUCTION_NOTICE,
    ConversationDriver,
    ConversationRequest,
)
from agent_pilot.pilot.decision_parsing import COMPLETION_NOTICE
from agent_pilot.pilot.errors import DecisionServiceError
from agent_pilot.pilot.models import (
    AgentTurnResult,
    ConversationOutcome,
    MessageRole,
    MessageSource,
    ProgressEvent,
    ProgressKind,
    SessionCreate,
    SessionStatus,
)
from agent_pilot.pilot.prompts import WORKING_RULES
from agent_pilot.pilot.registry import AbortRegistry, ActiveCallRegistry
from agent_pilot.pilot.repository import SessionRepository
from conftest import FakeBackend, ScriptedDecisionService

pytestmark = [
    allure.epic("Conversations"),
    allure.feature("Conversation Driver"),
]

CHECKLIST_REPLY = """<think>The file exists now.</think>
```task.md
- [x] create hello.txt
- [ ] confirm content
```
Please continue."""

COMPLETE_REPLY = """```task.md
- [x] create hello.txt
- [ ] confirm content
```
Mission Complete"""

PLAN_REPLY = """```task.md
- [ ] create hello.txt
- [ ] confirm content
```
Please create file hello.txt"""

PROGRESS_REPLY = """```task.md
- [x] create hello.txt
- [ ] confirm content
```
Confirm the content of hello.txt"""

DONE_REPLY = """```task.md
- [x] create hello.txt
- [x] confirm content
```
Mission Complete"""


class RecordingBackend(CursorAgentBackend):
    """Real agent backend that also keeps every request it ran."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.requests = []

    def run(self, request, on_event=None):
        self.requests.append(request)
        return super().run(request, on_event)


def _driver(
    backend,
    decisions,
    abort_registry: AbortRegistry,
    *,
    store=None,
    max_turns: int = 10,
) -> ConversationDriver:
    return ConversationDriver(
        backend=backend,
        decision_service=decisions,
        abort_registry=abort_registry,
        store=store,
        max_turns=max_turns,
    )


def test_echo_agent_conversation_reaches_mission_complete(
    tmp_path: Path,
    call_registry: ActiveCallRegistry,
    abort_registry: AbortRegistry,
    echo_agent_command: tuple[str, ...],
) -> None:
    backend = CursorAgentBackend(registry=call_registry, command=echo_agent_command)
    decisions = ScriptedDecisionService([CHECKLIST_REPLY, COMPLETE_REPLY])
    events: list[ProgressEvent] = []

    result = _driver(backend, decisions, abort_registry).run(
        ConversationRequest(task="create file hello.txt", workdir=str(tmp_path)),
        on_progress=events.append,
    )

    assert result.outcome is ConversationOutcome.COMPLETED
    assert result.success
    assert result.turns == 2
    assert (tmp_path / "hello.txt").exists()
    assert result.task_md == "- [x] create hello.txt\n- [ ] confirm content"
    assert result.resume_session_id is not None
    assert result.resume_session_id.startswith("echo-")

    assert [(message.role, message.source) for message in result.messages] == [
        (MessageRole.USER, MessageSource.USER),
        (MessageRole.ASSISTANT, MessageSource.AGENT),
        (MessageRole.SYSTEM, MessageSource.THINKING),
        (MessageRole.SYSTEM, MessageSource.POLICY),
        (MessageRole.ASSISTANT, MessageSource.AGENT),
        (MessageRole.SYSTEM, MessageSource.POLICY),
    ]
    assert result.messages[1].content == "Created hello.txt."
    assert result.messages[1].tool_calls == ["write"]
    assert result.messages[3].content == "🤖 Please continue."
    assert result.messages[4].content == "Done: Please continue."
    assert result.messages[-1].content == COMPLETION_NOTICE

    kinds = [event.kind for event in events]
    assert kinds.count(ProgressKind.TASK_ARTIFACT_UPDATE) == 1
    assert ProgressKind.TOOL_CALL in kinds
    assert ProgressKind.TOOL_RESULT in kinds
    assert ProgressKind.MODEL_INFO in kinds
    assert events[-1].kind is ProgressKind.STATUS_CHANGE
    assert events[-1].status is SessionStatus.COMPLETED
    assert all(event.conversation_id == events[0].conversation_id for event in events)

    assert len(call_registry.list_all()) == 2
    assert not abort_registry.ids()


def test_checklist_is_worked_off_over_three_turns(
    tmp_path: Path,
    call_registry: ActiveCallRegistry,
    abort_registry: AbortRegistry,
    echo_agent_command: tuple[str, ...],
) -> None:
    backend = RecordingBackend(registry=call_registry, command=echo_agent_command)
    decisions = ScriptedDecisionService([PLAN_REPLY, PROGRESS_REPLY, DONE_REPLY])
    events: list[ProgressEvent] = []

    result = _driver(backend, decisions, abort_registry).run(
        ConversationRequest(task="Plan a hello file", workdir=str(tmp_path)),
        on_progress=events.append,
    )

    assert result.outcome is ConversationOutcome.COMPLETED
    assert result.turns == 3
    assert result.turns == len(backend.requests)
    assert [request.task for request in backend.requests[1:]] == [
        "Please create file hello.txt",
        "Confirm the content of hello.txt",
    ]
    assert (tmp_path / "hello.txt").exists()
    assert [
        event.task_md for event in events if event.kind is ProgressKind.TASK_ARTIFACT_UPDATE
    ] == [
        "- [ ] create hello.txt\n- [ ] confirm content",
        "- [x] create hello.txt\n- [ ] confirm content",
        "- [x] create hello.txt\n- [x] confirm content",
    ]
    assert result.task_md == "- [x] create hello.txt\n- [x] confirm content"
    assert result.messages[-1].content == COMPLETION_NOTICE
    assert len(call_registry.list_all()) == 3


def test_completion_notice_carries_decision_thinking(abort_registry: AbortRegistry) -> None:
    decisions = ScriptedDecisionService(["<think>All items are checked.</think>\nMission Complete"])

    result = _driver(FakeBackend(), decisions, abort_registry).run(
        ConversationRequest(task="Do it", workdir="/work"),
    )

    assert result.outcome is ConversationOutcome.COMPLETED
    assert result.messages[-1].content == f"All items are checked.\n\n{COMPLETION_NOTICE}"
    assert MessageSource.THINKING not in [message.source for message in result.messages]


def test_instruction_is_sent_without_marker_and_session_is_resumed(
    abort_registry: AbortRegistry,
) -> None:
    backend = FakeBackend()
    decisions = ScriptedDecisionService(["Use pytest for the tests.", "Mission Complete"])

    result = _driver(backend, decisions, abort_registry).run(
        ConversationRequest(task="Add tests", workdir="/work", model="gpt-x"),
    )

    assert result.outcome is ConversationOutcome.COMPLETED
    first, second = backend.requests
    assert first.task == f"{WORKING_RULES}Add tests"
    assert first.resume_session_id is None
    assert first.model == "gpt-x"
    assert second.task == "Use pytest for the tests."
    assert second.resume_session_id == "fake-session"
    assert first.conversation_id == second.conversation_id


def test_decision_request_carries_transcript_and_checklist(
    abort_registry: AbortRegistry,
) -> None:
    decisions = ScriptedDecisionService([CHECKLIST_REPLY, "Mission Complete"])

    _driver(FakeBackend(), decisions, abort_registry).run(
        ConversationRequest(task="Add tests", workdir="/work"),
    )

    first, second = decisions.calls
    assert "Add tests" in first["system"]
    assert first["max_tokens"] == 1024
    assert "tools" not in first
    first_body = first["messages"][0]["content"]
    assert "[ASSISTANT]: Done: Add tests" in first_body
    assert "No TODO list yet." in first_body
    second_body = second["messages"][0]["content"]
    assert "## Current TODO List" in second_body
    assert "- [ ] confirm content" in second_body


def test_turn_budget_is_never_exceeded(abort_registry: AbortRegistry) -> None:
    backend = FakeBackend()
    decisions = ScriptedDecisionService([], default="Please continue.")

    result = _driver(backend, decisions, abort_registry, max_turns=3).run(
        ConversationRequest(task="Loop forever", workdir="/work"),
    )

    assert result.outcome is ConversationOutcome.TURN_BUDGET_EXHAUSTED
    assert result.turns == 3
    assert len(backend.requests) == 3
    assert result.outcome.session_status is SessionStatus.IDLE


def test_request_max_turns_overrides_driver_default(abort_registry: AbortRegistry) -> None:
    backend = FakeBackend()
    decisions = ScriptedDecisionService([], default="Please continue.")

    result = _driver(backend, decisions, abort_registry, max_turns=5).run(
        ConversationRequest(task="Loop", workdir="/work", max_turns=1),
    )

    assert result.turns == 1
    assert len(backend.requests) == 1


def test_empty_instruction_pauses_instead_of_sending(abort_registry: AbortRegistry) -> None:
    backend = FakeBackend()
    decisions = ScriptedDecisionService(["<think>Not sure.</think>\n```task.md\n- [ ] a\n```"])
    events: list[ProgressEvent] = []

    result = _driver(backend, decisions, abort_registry).run(
        ConversationRequest(task="Do it", workdir="/work"),
        on_progress=events.append,
    )

    assert result.outcome is ConversationOutcome.NO_INSTRUCTION
    assert len(backend.requests) == 1
    assert result.messages[-1].content == NO_INSTRUCTION_NOTICE
    assert result.task_md == "- [ ] a"
    assert events[-1].status is SessionStatus.IDLE


def test_agent_failure_ends_conversation_without_decision(abort_registry: AbortRegistry) -> None:
    backend = FakeBackend([AgentTurnResult(success=False, content="", error="Rate limit exceeded")])
    decisions = ScriptedDecisionService([])

    result = _driver(backend, decisions, abort_registry).run(
        ConversationRequest(task="Do it", workdir="/work"),
    )

    assert result.outcome is ConversationOutcome.FAILED
    assert result.error == "Rate limit exceeded"
    assert result.messages[-1].content == "Error: Rate limit exceeded"
    assert decisions.calls == []
    assert result.outcome.session_status is SessionStatus.ERROR


def test_decision_service_error_fails_conversation(abort_registry: AbortRegistry) -> None:
    decisions = ScriptedDecisionService([DecisionServiceError("Decision service returned HTTP 500")])

    result = _driver(FakeBackend(), decisions, abort_registry).run(
        ConversationRequest(task="Do it", workdir="/work"),
    )

    assert result.outcome is ConversationOutcome.FAILED
    assert result.error == "Decision service returned HTTP 500"


def test_missing_decision_service_fails_after_first_turn(abort_registry: AbortRegistry) -> None:
    backend = FakeBackend()

    result = _driver(backend, None, abort_registry).run(
        ConversationRequest(task="Do it", workdir="/work"),
    )

    assert result.outcome is ConversationOutcome.FAILED
    assert result.error == "Decision service is not configured"
    assert len(backend.requests) == 1


def test_abort_during_agent_run(abort_registry: AbortRegistry) -> None:
    def abort_now(request) -> None:
        abort_registry.abort(request.conversation_id)

    backend = FakeBackend(
        [AgentTurnResult(success=False, content="partial", error="Agent process was terminated (signal 9)")],
        on_run=abort_now,
    )
    decisions = ScriptedDecisionService([])
    events: list[ProgressEvent] = []

    result = _driver(backend, decisions, abort_registry).run(
        ConversationRequest(task="Do it", workdir="/work", conversation_id="conv-a"),
        on_progress=events.append,
    )

    assert result.outcome is ConversationOutcome.ABORTED
    assert result.error is None
    assert decisions.calls == []
    assert [(message.role, message.source, message.content) for message in result.messages[1:]] == [
        (MessageRole.ASSISTANT, MessageSource.AGENT, "partial"),
        (MessageRole.SYSTEM, MessageSource.POLICY, ABORTED_NOTICE),
    ]
    assert events[-1].status is SessionStatus.IDLE
    assert not abort_registry.has("conv-a")


def test_abort_during_decision_stops_before_next_turn(abort_registry: AbortRegistry) -> None:
    backend = FakeBackend()

    class AbortingDecisions(ScriptedDecisionService):
        def complete(self, **kwargs):
            abort_registry.abort("conv-b")
            return super().complete(**kwargs)

    result = _driver(backend, AbortingDecisions(["Please continue."]), abort_registry).run(
        ConversationRequest(task="Do it", workdir="/work", conversation_id="conv-b"),
    )

    assert result.outcome is ConversationOutcome.ABORTED
    assert result.turns == 1
    assert len(backend.requests) == 1
    assert result.messages[-1].content == ABORTED_NOTICE


def test_pending_completion_phrase_completes_without_agent_call(
    abort_registry: AbortRegistry,
) -> None:
    backend = FakeBackend()

    result = _driver(backend, ScriptedDecisionService([]), abort_registry).run(
        ConversationRequest(task="Say Mission Complete", workdir="/work"),
    )

    assert result.outcome is ConversationOutcome.COMPLETED
    assert result.turns == 0
    assert backend.requests == []


def test_failing_progress_callback_does_not_break_the_run(abort_registry: AbortRegistry) -> None:
    def explode(event: ProgressEvent) -> None:
        raise RuntimeError("subscriber gone")

    result = _driver(FakeBackend(), ScriptedDecisionService(["Mission Complete"]), abort_registry).run(
        ConversationRequest(task="Do it", workdir="/work"),
        on_progress=explode,
    )

    assert result.outcome is ConversationOutcome.COMPLETED


def test_max_turns_must_be_positive(abort_registry: AbortRegistry) -> None:
    with pytest.raises(ValueError, match="max_turns"):
        _driver(FakeBackend(), None, abort_registry, max_turns=0)


def test_run_persists_transcript_and_final_state(
    abort_registry: AbortRegistry,
    repository: SessionRepository,
) -> None:
    session = repository.create_session(SessionCreate(title="Tests", workdir="/work"))
    decisions = ScriptedDecisionService([CHECKLIST_REPLY, COMPLETE_REPLY])

    result = _driver(FakeBackend(), decisions, abort_registry, store=repository).run(
        ConversationRequest(task="Add tests", workdir="/work", conversation_id=session.session_id),
    )

    stored = repository.get_messages(session.session_id)
    assert [message.content for message in stored] == [
        message.content for message in result.messages[1:]
    ]
    meta = repository.get_session_meta(session.session_id)
    assert meta is not None
    assert meta.status is SessionStatus.COMPLETED
    assert meta.agent_session_id == "fake-session"
    assert meta.task_md == "- [x] create hello.txt\n- [ ] confirm content"
    assert meta.error_message is None


def test_failed_run_records_error_on_session(
    abort_registry: AbortRegistry,
    repository: SessionRepository,
) -> None:
    session = repository.create_session(SessionCreate(title="Broken"))
    backend = FakeBackend([AgentTurnResult(success=False, content="", error="Network error.")])

    _driver(backend, ScriptedDecisionService([]), abort_registry, store=repository).run(
        ConversationRequest(task="Do it", workdir="/work", conversation_id=session.session_id),
    )

    meta = repository.get_session_meta(session.session_id)
    assert meta.status is SessionStatus.ERROR
    assert meta.error_message == "Network error."
    assert repository.get_last_message(session.session_id).content == "Error: Network error."


def test_send_single_runs_one_turn_without_decisions(
    abort_registry: AbortRegistry,
    repository: SessionRepository,
) -> None:
    session = repository.create_session(SessionCreate(title="Manual"))
    backend = FakeBackend()
    driver = _driver(backend, None, abort_registry, store=repository)

    result = driver.send_single(
        "Explain the layout",
        "/work",
        conversation_id=session.session_id,
        resume_session_id="agent-7",
    )

    assert result.success
    assert result.content == "Done: Explain the layout"
    assert backend.requests[0].task == "Explain the layout"
    assert backend.requests[0].resume_session_id == "agent-7"
    meta = repository.get_session_meta(session.session_id)
    assert meta.status is SessionStatus.IDLE
    assert meta.agent_session_id == "agent-7"
    stored = repository.get_messages(session.session_id)
    assert [(message.role, message.content) for message in stored] == [
        (MessageRole.ASSISTANT, "Done: Explain the layout"),
    ]


def test_send_single_failure_marks_session_error(
    abort_registry: AbortRegistry,
    repository: SessionRepository,
) -> None:
    session = repository.create_session(SessionCreate(title="Manual"))
    backend = FakeBackend([AgentTurnResult(success=False, content="", error="Authentication error.")])

    result = _driver(backend, None, abort_registry, store=repository).send_single(
        "hi",
        "/work",
        conversation_id=session.session_id,
    )

    assert not result.success
    meta = repository.get_session_meta(session.session_id)
    assert meta.status is SessionStatus.ERROR
    assert meta.error_message == "Authentication error."
    assert repository.count_messages(session.session_id) == 2


def test_aborted_run_stores_abort_notice(
    abort_registry: AbortRegistry,
    repository: SessionRepository,
) -> None:
    session = repository.create_session(SessionCreate(title="Stop me"))

    def abort_now(request) -> None:
        abort_registry.abort(request.conversation_id)

    backend = FakeBackend(
        [AgentTurnResult(success=False, content="", error="Agent process was terminated (signal 9)")],
        on_run=abort_now,
    )

    _driver(backend, ScriptedDecisionService([]), abort_registry, store=repository).run(
        ConversationRequest(task="Do it", workdir="/work", conversation_id=session.session_id),
    )

    meta = repository.get_session_meta(session.session_id)
    assert meta.status is SessionStatus.IDLE
    assert meta.error_message is None
    assert repository.get_last_message(session.session_id).content == ABORTED_NOTICE


def test_messages_for_a_deleted_session_are_skipped(
    abort_registry: AbortRegistry,
    repository: SessionRepository,
) -> None:
    session = repository.create_session(SessionCreate(title="Gone"))
    backend = FakeBackend(on_run=lambda request: repository.delete_session(session.session_id))

    driver = _driver(
        backend,
        ScriptedDecisionService(["Mission Complete"]),
        abort_registry,
        store=repository,
    )
    result = driver.run(
        ConversationRequest(task="Do it", workdir="/work", conversation_id=session.session_id),
    )

    assert result.outcome is ConversationOutcome.COMPLETED
    assert repository.get_session_meta(session.session_id) is None
