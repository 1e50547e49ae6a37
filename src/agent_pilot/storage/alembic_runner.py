"""Programmatic Alembic entry points for the session database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

ROOT_DIR = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Alembic config bound to the repository scripts and one SQLite file."""

    config = Config(str(ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the session schema of ``db_path`` up to the latest revision."""

    command.upgrade(alembic_config(db_path), "head")


def head_revision() -> str | None:
    return ScriptDirectory(str(ROOT_DIR / "alembic")).get_current_head()
