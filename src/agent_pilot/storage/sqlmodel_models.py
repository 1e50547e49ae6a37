"""SQLModel ORM tables for chat session storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ChatSessionRow(SQLModel, table=True):
    __tablename__ = "chat_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    title: str
    status: str = Field(default="idle", index=True)
    agent_session_id: str | None = None
    orchestrate_task_id: str | None = None
    is_orchestrator_managed: bool = False
    source: str = "cli"
    workdir: str | None = None
    task_md: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChatMessageRow(SQLModel, table=True):
    __tablename__ = "chat_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_chat_messages_session_created", "session_id", "created_at"),)

    message_id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("chat_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    source: str | None = None
    tool_calls_json: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
