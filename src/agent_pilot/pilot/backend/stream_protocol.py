"""Parser for the agent CLI ``stream-json`` output protocol.

The agent writes one JSON object per line on stdout.  Lines are independent;
anything that does not parse as a JSON object is protocol noise and is dropped.
"""

from __future__ import annotations

import codecs
import json
import logging
import math
from dataclasses import dataclass
from typing import Any

from agent_pilot.pilot.errors import ProtocolNoiseError
from agent_pilot.pilot.models import AgentTurnResult, ToolCallResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionIdentified:
    session_id: str


@dataclass(frozen=True, slots=True)
class ModelInfo:
    model: str


@dataclass(frozen=True, slots=True)
class AssistantText:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingText:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallStarted:
    name: str


@dataclass(frozen=True, slots=True)
class ToolCallCompleted:
    result: ToolCallResult


@dataclass(frozen=True, slots=True)
class RunResult:
    duration_ms: int


@dataclass(frozen=True, slots=True)
class AgentRunCompleted:
    """Terminal event of every agent run, emitted exactly once."""

    result: AgentTurnResult


AgentEvent = (
    SessionIdentified
    | ModelInfo
    | AssistantText
    | ThinkingText
    | ToolCallStarted
    | ToolCallCompleted
    | RunResult
    | AgentRunCompleted
)


class LineSplitter:
    """Turn arbitrary byte chunks into complete text lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return lines

    def close(self) -> list[str]:
        self._pending += self._decoder.decode(b"", final=True)
        tail, self._pending = self._pending, ""
        return [tail] if tail.strip() else []


def decode_event_line(line: str) -> dict[str, Any]:
    """Parse one protocol line into a JSON object or raise ``ProtocolNoiseError``."""

    stripped = line.strip()
    if not stripped:
        raise ProtocolNoiseError("blank line")
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError as error:
        raise ProtocolNoiseError(f"not JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ProtocolNoiseError("JSON value is not an object")
    return payload


class StreamEventParser:
    """Stateful parser from raw stdout chunks to classified agent events."""

    def __init__(self) -> None:
        self._splitter = LineSplitter()
        self.session_id: str | None = None

    def feed(self, chunk: bytes) -> list[AgentEvent]:
        return self._parse_lines(self._splitter.feed(chunk))

    def close(self) -> list[AgentEvent]:
        return self._parse_lines(self._splitter.close())

    def _parse_lines(self, lines: list[str]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for line in lines:
            try:
                payload = decode_event_line(line)
            except ProtocolNoiseError as error:
                if line.strip():
                    logger.debug("Dropping agent stream noise (%s): %.120s", error, line)
                continue
            events.extend(self.classify(payload))
        return events

    def classify(self, payload: dict[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        session_id = payload.get("session_id")
        if isinstance(session_id, str) and session_id and self.session_id is None:
            self.session_id = session_id
            events.append(SessionIdentified(session_id))

        event = _classify_payload(payload)
        if event is not None:
            events.append(event)
        return events


def _classify_payload(payload: dict[str, Any]) -> AgentEvent | None:  # noqa: PLR0911
    kind = payload.get("type")
    subtype = payload.get("subtype")

    if kind == "system":
        model = payload.get("model")
        if subtype == "init" and isinstance(model, str) and model:
            return ModelInfo(model)
        return None

    if kind == "assistant":
        text = _assistant_text(payload.get("message"))
        return AssistantText(text) if text else None

    if kind == "thinking":
        text = payload.get("text")
        return ThinkingText(text) if isinstance(text, str) and text else None

    if kind == "tool_call":
        tool_call = payload.get("tool_call")
        if not isinstance(tool_call, dict):
            return None
        if subtype == "started":
            name = tool_call.get("name")
            return ToolCallStarted(name) if isinstance(name, str) and name else None
        if subtype == "completed":
            result = extract_tool_result(tool_call)
            return ToolCallCompleted(result) if result is not None else None
        return None

    if kind == "result":
        duration = _int_or_none(payload.get("duration_ms"))
        return RunResult(duration) if duration else None

    return None


def _assistant_text(message: object) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if not isinstance(content, list):
        return ""
    return "".join(
        part["text"]
        for part in content
        if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
    )


def extract_tool_result(tool_call: dict[str, Any]) -> ToolCallResult | None:
    """Map a completed ``tool_call`` payload onto a ``ToolCallResult``."""

    write = tool_call.get("writeToolCall")
    if isinstance(write, dict):
        success = _success_block(write)
        return ToolCallResult(
            tool_name="write",
            path=_args_path(write),
            success=success is not None,
            lines_created=_int_or_none((success or {}).get("linesCreated")),
            file_size=_int_or_none((success or {}).get("fileSize")),
        )

    read = tool_call.get("readToolCall")
    if isinstance(read, dict):
        success = _success_block(read)
        return ToolCallResult(
            tool_name="read",
            path=_args_path(read),
            success=success is not None,
            lines_read=_int_or_none((success or {}).get("totalLines")),
        )

    name = tool_call.get("name")
    if isinstance(name, str) and name:
        return ToolCallResult(tool_name=name, success=True)
    return None


def _success_block(call: dict[str, Any]) -> dict[str, Any] | None:
    result = call.get("result")
    if not isinstance(result, dict):
        return None
    success = result.get("success")
    if success is None or success is False:
        return None
    return success if isinstance(success, dict) else {}


def _args_path(call: dict[str, Any]) -> str | None:
    args = call.get("args")
    if isinstance(args, dict) and isinstance(args.get("path"), str):
        return args["path"]
    return None


def _int_or_none(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None


class AssistantTextAccumulator:
    """Merge assistant fragments that may be incremental or cumulative.

    A fragment equal to the text so far is a replay.  A longer fragment that
    starts with the text so far is a cumulative snapshot and replaces it.
    Everything else is an incremental delta.
    """

    def __init__(self) -> None:
        self.text = ""

    def add(self, fragment: str) -> str:
        if not fragment or fragment == self.text:
            return self.text
        if self.text and len(fragment) > len(self.text) and fragment.startswith(self.text):
            self.text = fragment
        else:
            self.text += fragment
        return self.text
