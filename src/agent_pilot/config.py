"""Runtime configuration for the agent orchestrator."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_DECISION_MODEL = "claude-sonnet-4-20250514"
DEFAULT_DECISION_BASE_URL = "https://api.anthropic.com"


def log_level_from_env() -> str:
    return os.getenv("AGENT_PILOT_LOG_LEVEL", "INFO").strip().upper() or "INFO"


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI invocation settings."""

    command: tuple[str, ...] = ("agent",)
    model: str | None = "auto"
    workdir: Path = field(default_factory=Path.cwd)
    call_grace_seconds: float = 5.0


@dataclass(slots=True)
class ConversationSettings:
    """Conversation loop limits."""

    max_turns: int = 10
    decision_max_tokens: int = 1024
    skills_path: Path = field(default_factory=lambda: Path.home() / ".cursor" / "skills")


@dataclass(slots=True)
class DecisionSettings:
    """Decision service (LLM messages endpoint) settings."""

    api_key: str | None = None
    base_url: str = DEFAULT_DECISION_BASE_URL
    model: str = DEFAULT_DECISION_MODEL
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_pilot.db")
    sqlite_busy_timeout_ms: int = 5_000
    agent: AgentSettings = field(default_factory=AgentSettings)
    conversation: ConversationSettings = field(default_factory=ConversationSettings)
    decision: DecisionSettings = field(default_factory=DecisionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        model = os.getenv("AGENT_PILOT_AGENT_MODEL", "auto").strip()
        workdir = os.getenv("AGENT_PILOT_WORKDIR", "").strip()
        skills_path = os.getenv("AGENT_PILOT_SKILLS_PATH", os.getenv("SKILLS_PATH", "")).strip()
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_PILOT_DB_PATH", ".agent_pilot.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_PILOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            agent=AgentSettings(
                command=tuple(shlex.split(os.getenv("AGENT_PILOT_AGENT_COMMAND", "agent"))),
                model=model or None,
                workdir=Path(workdir).expanduser() if workdir else Path.cwd(),
                call_grace_seconds=float(os.getenv("AGENT_PILOT_CALL_GRACE_SECONDS", "5")),
            ),
            conversation=ConversationSettings(
                max_turns=int(os.getenv("AGENT_PILOT_MAX_TURNS", "10")),
                skills_path=(
                    Path(skills_path).expanduser()
                    if skills_path
                    else Path.home() / ".cursor" / "skills"
                ),
            ),
            decision=DecisionSettings(
                api_key=os.getenv("ANTHROPIC_API_KEY") or None,
                base_url=(
                    os.getenv("ANTHROPIC_BASE_URL")
                    or os.getenv("ANTHROPIC_API_BASE")
                    or DEFAULT_DECISION_BASE_URL
                ),
                model=os.getenv("ANTHROPIC_MODEL") or DEFAULT_DECISION_MODEL,
                timeout_seconds=float(os.getenv("AGENT_PILOT_DECISION_TIMEOUT_SECONDS", "120")),
            ),
        )

    def validate_for_agent(self) -> None:
        """Raise configuration error if the agent CLI settings are unusable."""

        if not self.agent.command:
            raise ValueError("AGENT_PILOT_AGENT_COMMAND must not be empty.")
        if self.agent.call_grace_seconds < 0:
            raise ValueError("AGENT_PILOT_CALL_GRACE_SECONDS must be >= 0.")
        if self.conversation.max_turns <= 0:
            raise ValueError("AGENT_PILOT_MAX_TURNS must be a positive integer.")
        if not self.agent.workdir.is_dir():
            raise ValueError(f"Working directory does not exist: {self.agent.workdir}")

    def validate_for_decision(self) -> None:
        """Raise configuration error if decision calls cannot be made."""

        self.validate_for_agent()
        if not self.decision.api_key:
            raise ValueError("ANTHROPIC_API_KEY is required for decision service calls.")
        parsed = urlparse(self.decision.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid ANTHROPIC_BASE_URL: "
                f"{self.decision.base_url!r}. Expected an absolute http(s) URL.",
            )
        if self.decision.timeout_seconds <= 0:
            raise ValueError("AGENT_PILOT_DECISION_TIMEOUT_SECONDS must be > 0.")

