"""Use-case services on top of the registries and the session store."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from agent_pilot.pilot.models import SessionStatus, SessionUpdate, SessionView
from agent_pilot.pilot.registry import AbortRegistry, ActiveCallRegistry, CallRecord
from agent_pilot.pilot.repository import SessionRepository

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (SessionStatus.RUNNING, SessionStatus.WAITING_RESPONSE)


@dataclass(slots=True)
class AbortSummary:
    """What an abort request actually stopped."""

    conversation_id: str
    signalled: bool
    killed_calls: int

    @property
    def stopped_anything(self) -> bool:
        return self.signalled or self.killed_calls > 0


@dataclass(slots=True)
class SystemStatus:
    """Snapshot of stored sessions and in-flight agent calls."""

    session_counts: dict[str, int]
    running_sessions: list[SessionView] = field(default_factory=list)
    active_calls: list[CallRecord] = field(default_factory=list)

    @property
    def total_sessions(self) -> int:
        return sum(self.session_counts.values())


class PilotService:
    """Cross-cutting operations: abort, delete, status."""

    def __init__(
        self,
        *,
        repository: SessionRepository,
        call_registry: ActiveCallRegistry,
        abort_registry: AbortRegistry,
    ) -> None:
        self.repository = repository
        self.call_registry = call_registry
        self.abort_registry = abort_registry

    def abort_conversation(self, conversation_id: str) -> AbortSummary:
        """Signal the conversation loop and kill its running agent calls."""

        signalled = self.abort_registry.abort(conversation_id)
        killed = self.call_registry.kill_by_correlation(conversation_id)
        meta = self.repository.get_session_meta(conversation_id)
        if meta is not None and meta.status in _ACTIVE_STATUSES:
            self.repository.update_session(
                SessionUpdate(session_id=conversation_id, status=SessionStatus.IDLE),
            )
        logger.info(
            "Abort requested: conversation_id=%s signalled=%s killed=%d",
            conversation_id,
            signalled,
            killed,
        )
        return AbortSummary(conversation_id=conversation_id, signalled=signalled, killed_calls=killed)

    def delete_session(self, session_id: str) -> bool:
        """Stop whatever still runs for the session, then delete it with its messages."""

        self.abort_registry.abort(session_id)
        self.call_registry.kill_by_correlation(session_id)
        deleted = self.repository.delete_session(session_id)
        if deleted:
            logger.info("Deleted chat session: session_id=%s", session_id)
        return deleted

    def system_status(self) -> SystemStatus:
        sessions = self.repository.list_sessions()
        counts = Counter(session.status.value for session in sessions)
        return SystemStatus(
            session_counts={status.value: counts.get(status.value, 0) for status in SessionStatus},
            running_sessions=[session for session in sessions if session.status in _ACTIVE_STATUSES],
            active_calls=self.call_registry.list_all(),
        )
