"""Local stand-in for the agent CLI used by supervisor integration tests.

Reads the task from stdin and answers with a deterministic ``stream-json``
event stream.  A task containing ``create file <name>`` writes that file into
the working directory and reports a ``writeToolCall``.
"""

from __future__ import annotations

import argparse
import json
import re
import sys
import time
from pathlib import Path
from uuid import uuid4

_CREATE_FILE_RE = re.compile(r"create file\s+([\w.\-/]+)", re.IGNORECASE)


def main(argv: list[str] | None = None) -> int:
    """Emit one scripted agent turn."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", dest="print_mode", action="store_true")
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--stream-partial-output", action="store_true")
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--resume")
    parser.add_argument("--model", default="echo")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--reply")
    parser.add_argument("--duration-ms", type=float, default=42)
    args = parser.parse_args(argv)

    task = sys.stdin.read()
    session_id = args.resume or f"echo-{uuid4().hex[:8]}"

    _emit({"type": "system", "subtype": "init", "model": args.model, "session_id": session_id})
    print("echo-agent: warming up", flush=True)
    _emit({"type": "thinking", "text": "Reading the task.", "session_id": session_id})

    if args.sleep:
        time.sleep(args.sleep)

    if args.exit_code:
        if args.stderr:
            sys.stderr.write(args.stderr + "\n")
            sys.stderr.flush()
        return args.exit_code

    reply = args.reply or _reply_for(task, session_id)
    head, tail = reply[: len(reply) // 2], reply[len(reply) // 2 :]
    _emit(_assistant(head, session_id))
    _emit(_assistant(tail, session_id))
    # cumulative snapshot of the same text, as the real CLI sends at the end
    _emit(_assistant(reply, session_id))
    _emit(
        {
            "type": "result",
            "subtype": "success",
            "duration_ms": args.duration_ms,
            "session_id": session_id,
        },
    )
    return 0


def _reply_for(task: str, session_id: str) -> str:
    match = _CREATE_FILE_RE.search(task)
    if match is None:
        return f"Done: {task.strip().splitlines()[-1] if task.strip() else 'nothing to do'}"

    name = match.group(1)
    target = Path.cwd() / name
    content = f"created by echo agent\n{name}\n"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    _emit(
        {
            "type": "tool_call",
            "subtype": "started",
            "tool_call": {"name": "write"},
            "session_id": session_id,
        },
    )
    _emit(
        {
            "type": "tool_call",
            "subtype": "completed",
            "tool_call": {
                "writeToolCall": {
                    "args": {"path": name},
                    "result": {
                        "success": {
                            "linesCreated": content.count("\n"),
                            "fileSize": len(content.encode("utf-8")),
                        },
                    },
                },
            },
            "session_id": session_id,
        },
    )
    return f"Created {name}."


def _assistant(text: str, session_id: str) -> dict[str, object]:
    return {
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        "session_id": session_id,
    }


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
