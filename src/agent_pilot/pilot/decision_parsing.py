"""Extraction of checklist, thinking and instruction from a decision reply."""

from __future__ import annotations

import re
from dataclasses import dataclass

MIN_INSTRUCTION_CHARS = 3
COMPLETION_NOTICE = "✅ Mission Complete"

_COMPLETION_RE = re.compile(r"mission\s*complete", re.IGNORECASE)
_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)
_TASK_MD_RE = re.compile(r"```task\.md\s*(.*?)```", re.DOTALL)
_UPDATE_TASK_RE = re.compile(r"\[UPDATE_TASK:[^\]]+\]")
_STATUS_PREFIXES = ("🤖 ", "✅ ")


@dataclass(slots=True)
class ManagerDecision:
    """Structured view of one decision reply."""

    raw: str
    thinking: str | None
    task_md: str | None
    instruction: str
    is_complete: bool

    @property
    def has_instruction(self) -> bool:
        return len(self.instruction) >= MIN_INSTRUCTION_CHARS


def contains_completion_phrase(text: str) -> bool:
    """True for ``mission complete`` in any case, with any whitespace between."""

    return bool(_COMPLETION_RE.search(text))


def extract_task_md(text: str) -> str | None:
    """Content of the first non-empty ```` ```task.md ```` block."""

    match = _TASK_MD_RE.search(text)
    if match is None:
        return None
    content = match.group(1).strip()
    return content or None


def parse_decision(text: str) -> ManagerDecision:
    """Split a raw decision reply into its parts.

    The instruction is what remains after removing the thinking block, the
    checklist block, ``[UPDATE_TASK:...]`` markers and the completion phrase.
    """

    raw = text.strip()
    thinking = None
    think_match = _THINK_RE.search(raw)
    if think_match is not None:
        thinking = think_match.group(1).strip() or None

    cleaned = _THINK_RE.sub("", raw, count=1)
    cleaned = _TASK_MD_RE.sub("", cleaned)
    cleaned = _UPDATE_TASK_RE.sub("", cleaned)
    cleaned = _COMPLETION_RE.sub("", cleaned).strip()

    return ManagerDecision(
        raw=raw,
        thinking=thinking,
        task_md=extract_task_md(raw),
        instruction=cleaned,
        is_complete=contains_completion_phrase(raw),
    )


def completion_notice(thinking: str | None) -> str:
    if thinking:
        return f"{thinking}\n\n{COMPLETION_NOTICE}"
    return COMPLETION_NOTICE


def strip_status_prefix(text: str) -> str:
    """Drop the marker prefix added to policy messages before they reach the agent."""

    for prefix in _STATUS_PREFIXES:
        if text.startswith(prefix):
            return text[len(prefix) :]
    return text
