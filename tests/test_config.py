from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_pilot.config import (
    DEFAULT_DECISION_BASE_URL,
    AgentSettings,
    ConversationSettings,
    DecisionSettings,
    Settings,
    log_level_from_env,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]

_ENV_VARS = (
    "AGENT_PILOT_DB_PATH",
    "AGENT_PILOT_LOG_LEVEL",
    "AGENT_PILOT_SQLITE_BUSY_TIMEOUT_MS",
    "AGENT_PILOT_AGENT_COMMAND",
    "AGENT_PILOT_AGENT_MODEL",
    "AGENT_PILOT_WORKDIR",
    "AGENT_PILOT_CALL_GRACE_SECONDS",
    "AGENT_PILOT_MAX_TURNS",
    "AGENT_PILOT_SKILLS_PATH",
    "SKILLS_PATH",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_API_BASE",
    "ANTHROPIC_MODEL",
    "AGENT_PILOT_DECISION_TIMEOUT_SECONDS",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _valid(tmp_path: Path) -> Settings:
    return Settings(
        agent=AgentSettings(workdir=tmp_path),
        decision=DecisionSettings(api_key="key"),
    )


def test_from_env_defaults(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_pilot.db")
    assert log_level_from_env() == "INFO"
    assert settings.agent.command == ("agent",)
    assert settings.agent.model == "auto"
    assert settings.conversation.max_turns == 10
    assert settings.decision.api_key is None
    assert settings.decision.base_url == DEFAULT_DECISION_BASE_URL


def test_from_env_reads_overrides(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("AGENT_PILOT_AGENT_COMMAND", "npx cursor-agent --verbose")
    clean_env.setenv("AGENT_PILOT_AGENT_MODEL", "  ")
    clean_env.setenv("AGENT_PILOT_WORKDIR", str(tmp_path))
    clean_env.setenv("AGENT_PILOT_MAX_TURNS", "4")
    clean_env.setenv("AGENT_PILOT_LOG_LEVEL", "debug")
    clean_env.setenv("SKILLS_PATH", str(tmp_path / "skills"))
    clean_env.setenv("ANTHROPIC_API_KEY", "secret")
    clean_env.setenv("ANTHROPIC_API_BASE", "http://proxy.local:8080")

    settings = Settings.from_env(db_path=tmp_path / "pilot.db")

    assert settings.db_path == tmp_path / "pilot.db"
    assert settings.agent.command == ("npx", "cursor-agent", "--verbose")
    assert settings.agent.model is None
    assert settings.agent.workdir == tmp_path
    assert settings.conversation.max_turns == 4
    assert settings.conversation.skills_path == tmp_path / "skills"
    assert log_level_from_env() == "DEBUG"
    assert settings.decision.api_key == "secret"
    assert settings.decision.base_url == "http://proxy.local:8080"


def test_validate_for_decision_accepts_complete_settings(tmp_path: Path) -> None:
    _valid(tmp_path).validate_for_decision()


def test_validate_for_decision_requires_api_key(tmp_path: Path) -> None:
    settings = _valid(tmp_path)
    settings.decision.api_key = None

    with pytest.raises(ValueError, match="ANTHROPIC_API_KEY is required"):
        settings.validate_for_decision()


def test_validate_for_decision_rejects_relative_base_url(tmp_path: Path) -> None:
    settings = _valid(tmp_path)
    settings.decision.base_url = "api.anthropic.com"

    with pytest.raises(ValueError, match="Invalid ANTHROPIC_BASE_URL"):
        settings.validate_for_decision()


def test_validate_for_agent_does_not_need_api_key(tmp_path: Path) -> None:
    Settings(agent=AgentSettings(workdir=tmp_path)).validate_for_agent()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(agent=AgentSettings(command=())), "must not be empty"),
        (Settings(agent=AgentSettings(call_grace_seconds=-1)), "CALL_GRACE_SECONDS"),
        (Settings(conversation=ConversationSettings(max_turns=0)), "MAX_TURNS"),
        (
            Settings(agent=AgentSettings(workdir=Path("/definitely/not/here"))),
            "Working directory does not exist",
        ),
    ],
)
def test_validate_for_agent_rejects_bad_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_agent()
