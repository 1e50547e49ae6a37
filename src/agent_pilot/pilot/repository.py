"""Durable chat session store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

from sqlalchemy import literal_column
from sqlmodel import Session, col, func, select

from agent_pilot.pilot.models import (
    Message,
    MessageRole,
    MessageSource,
    SessionCreate,
    SessionStatus,
    SessionUpdate,
    SessionView,
)
from agent_pilot.storage.alembic_runner import upgrade_head
from agent_pilot.storage.common import as_utc, build_sqlite_engine, utc_now
from agent_pilot.storage.sqlmodel_models import ChatMessageRow, ChatSessionRow

_INSERT_ORDER = literal_column("chat_messages.rowid")


class SessionStore(Protocol):
    """Operations the orchestration core needs from session storage."""

    def create_session(self, payload: SessionCreate) -> SessionView: ...

    def add_message(self, session_id: str, message: Message) -> None: ...

    def update_session(self, update: SessionUpdate) -> None: ...

    def get_session_meta(self, session_id: str) -> SessionView | None: ...

    def get_messages(self, session_id: str) -> list[Message]: ...

    def get_last_message(self, session_id: str) -> Message | None: ...

    def count_messages(self, session_id: str) -> int: ...


class SessionRepository:
    """Session persistence facade; every call opens its own short session."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def create_session(self, payload: SessionCreate) -> SessionView:
        now = utc_now()
        row = ChatSessionRow(
            session_id=payload.session_id,
            title=payload.title,
            status=payload.status.value,
            agent_session_id=payload.agent_session_id,
            orchestrate_task_id=payload.orchestrate_task_id,
            is_orchestrator_managed=payload.is_orchestrator_managed,
            source=payload.source,
            workdir=payload.workdir,
            task_md=payload.task_md,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.flush()
            for message in payload.messages:
                session.add(_message_row(payload.session_id, message))
            session.commit()
            session.refresh(row)
            return _session_view(row)

    def add_message(self, session_id: str, message: Message) -> None:
        with Session(self.engine) as session:
            row = session.get(ChatSessionRow, session_id)
            if row is None:
                raise KeyError(f"Chat session not found: {session_id}")
            session.add(_message_row(session_id, message))
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def update_session(self, update: SessionUpdate) -> None:
        with Session(self.engine) as session:
            row = session.get(ChatSessionRow, update.session_id)
            if row is None:
                return
            if update.status is not None:
                row.status = update.status.value
                if update.status is not SessionStatus.ERROR and update.error_message is None:
                    row.error_message = None
            if update.title is not None:
                row.title = update.title
            if update.task_md is not None:
                row.task_md = update.task_md
            if update.agent_session_id is not None:
                row.agent_session_id = update.agent_session_id
            if update.error_message is not None:
                row.error_message = update.error_message
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def get_session_meta(self, session_id: str) -> SessionView | None:
        with Session(self.engine) as session:
            row = session.get(ChatSessionRow, session_id)
            return _session_view(row) if row is not None else None

    def list_sessions(self, *, limit: int | None = None) -> list[SessionView]:
        statement = select(ChatSessionRow).order_by(col(ChatSessionRow.updated_at).desc())
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            return [_session_view(row) for row in session.exec(statement).all()]

    def delete_session(self, session_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(ChatSessionRow, session_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def get_messages(self, session_id: str) -> list[Message]:
        statement = (
            select(ChatMessageRow)
            .where(ChatMessageRow.session_id == session_id)
            .order_by(_INSERT_ORDER)
        )
        with Session(self.engine) as session:
            return [_message_view(row) for row in session.exec(statement).all()]

    def get_last_message(self, session_id: str) -> Message | None:
        statement = (
            select(ChatMessageRow)
            .where(ChatMessageRow.session_id == session_id)
            .order_by(_INSERT_ORDER.desc())
            .limit(1)
        )
        with Session(self.engine) as session:
            row = session.exec(statement).first()
            return _message_view(row) if row is not None else None

    def count_messages(self, session_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(ChatMessageRow)
            .where(ChatMessageRow.session_id == session_id)
        )
        with Session(self.engine) as session:
            return int(session.exec(statement).one())


def _message_row(session_id: str, message: Message) -> ChatMessageRow:
    return ChatMessageRow(
        message_id=message.message_id,
        session_id=session_id,
        role=message.role.value,
        content=message.content,
        source=message.source.value if message.source is not None else None,
        tool_calls_json=json.dumps(message.tool_calls) if message.tool_calls else None,
        created_at=message.created_at,
    )


def _message_view(row: ChatMessageRow) -> Message:
    return Message(
        message_id=row.message_id,
        role=MessageRole(row.role),
        content=row.content,
        source=MessageSource(row.source) if row.source else None,
        created_at=as_utc(row.created_at),
        tool_calls=json.loads(row.tool_calls_json) if row.tool_calls_json else [],
    )


def _session_view(row: ChatSessionRow) -> SessionView:
    return SessionView(
        session_id=row.session_id,
        title=row.title,
        status=SessionStatus(row.status),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        workdir=row.workdir,
        task_md=row.task_md,
        agent_session_id=row.agent_session_id,
        orchestrate_task_id=row.orchestrate_task_id,
        is_orchestrator_managed=row.is_orchestrator_managed,
        source=row.source,
        error_message=row.error_message,
    )
