"""CLI entrypoint for agent-pilot."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_pilot import __version__
from agent_pilot.config import log_level_from_env
from agent_pilot.pilot.controllers import (
    ChatRunCommand,
    ChatSendCommand,
    OrchestrateCommand,
    PilotCliController,
    SessionCommand,
    SessionsListCommand,
    StatusCommand,
)

click.rich_click.USE_MARKDOWN = True
PILOT_CONTROLLER = PilotCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-pilot")
def agent_pilot() -> None:
    """Drive a coding-agent CLI through multi-turn conversations."""

    logging.basicConfig(
        level=log_level_from_env(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_pilot.group()
def chat() -> None:
    """Conversation commands."""


@chat.command("run")
@click.argument("task")
@DB_PATH_OPTION
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Directory the agent works in. Defaults to AGENT_PILOT_WORKDIR or the current one.",
)
@click.option("--title", default=None, help="Session title.")
@click.option("--session-id", default=None, help="Continue an existing session.")
@click.option(
    "--max-turns",
    type=click.IntRange(min=1),
    default=None,
    help="Agent invocation budget for this run.",
)
@click.option("--model", default=None, help="Agent model override.")
def chat_run(  # noqa: PLR0913
    task: str,
    db_path: Path | None,
    workdir: Path | None,
    title: str | None,
    session_id: str | None,
    max_turns: int | None,
    model: str | None,
) -> None:
    """Run the agent/decision loop for TASK until it completes. Ctrl-C aborts."""

    _emit_lines(
        _guarded(
            lambda: PILOT_CONTROLLER.run_chat(
                ChatRunCommand(
                    db_path=db_path,
                    task=task,
                    workdir=workdir,
                    title=title,
                    session_id=session_id,
                    max_turns=max_turns,
                    model=model,
                ),
                on_line=click.echo,
            ),
        ),
    )


@chat.command("send")
@click.argument("message")
@click.option("--session-id", required=True, help="Session to send the message to.")
@DB_PATH_OPTION
def chat_send(message: str, session_id: str, db_path: Path | None) -> None:
    """Send MESSAGE to the agent as one turn, without the decision loop."""

    _emit_lines(
        _guarded(
            lambda: PILOT_CONTROLLER.send_message(
                ChatSendCommand(db_path=db_path, session_id=session_id, message=message),
                on_line=click.echo,
            ),
        ),
    )


@agent_pilot.command("orchestrate")
@click.argument("request")
@DB_PATH_OPTION
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Directory the agent works in.",
)
@click.option("--session-id", default=None, help="Current session; reused when it is a plain chat.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Max seconds to wait for dispatched conversations before aborting them.",
)
def orchestrate(
    request: str,
    db_path: Path | None,
    workdir: Path | None,
    session_id: str | None,
    timeout_seconds: float | None,
) -> None:
    """Let the dispatcher turn REQUEST into background conversations."""

    _emit_lines(
        _guarded(
            lambda: PILOT_CONTROLLER.orchestrate(
                OrchestrateCommand(
                    db_path=db_path,
                    request=request,
                    workdir=workdir,
                    session_id=session_id,
                    timeout_seconds=timeout_seconds,
                ),
                on_line=click.echo,
            ),
        ),
    )


@agent_pilot.group()
def sessions() -> None:
    """Stored session commands."""


@sessions.command("list")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of sessions to print.",
)
def sessions_list(db_path: Path | None, limit: int) -> None:
    """List sessions, most recently updated first."""

    _emit_lines(PILOT_CONTROLLER.list_sessions(SessionsListCommand(db_path=db_path, limit=limit)))


@sessions.command("show")
@click.argument("session_id")
@DB_PATH_OPTION
def sessions_show(session_id: str, db_path: Path | None) -> None:
    """Show one session with its transcript."""

    _emit_lines(
        PILOT_CONTROLLER.show_session(SessionCommand(db_path=db_path, session_id=session_id)),
    )


@sessions.command("delete")
@click.argument("session_id")
@DB_PATH_OPTION
def sessions_delete(session_id: str, db_path: Path | None) -> None:
    """Abort whatever runs for a session and delete it."""

    _emit_lines(
        PILOT_CONTROLLER.delete_session(SessionCommand(db_path=db_path, session_id=session_id)),
    )


@agent_pilot.command("status")
@DB_PATH_OPTION
def status(db_path: Path | None) -> None:
    """Show session counts and in-flight agent calls."""

    _emit_lines(PILOT_CONTROLLER.status(StatusCommand(db_path=db_path)))


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_pilot()
