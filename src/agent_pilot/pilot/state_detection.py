"""Heuristic classification of the agent's progress after a decision."""

from __future__ import annotations

import re

from agent_pilot.pilot.decision_parsing import contains_completion_phrase
from agent_pilot.pilot.models import AgentState

_BLOCKED_MARKERS = ("error", "failed", "cannot", "unable", "错误")
_ASKING_MARKERS = ("?", "请确认", "是否", "选择")
_ASKING_RE = re.compile(r"[①②③④⑤]|[1-5]\.|option|choose", re.IGNORECASE)
_DONE_MARKERS = ("已完成", "完成了", "已创建", "successfully")
_PARTIAL_MARKERS = ("first", "next step", "接下来", "remaining")


def classify_agent_state(decision_text: str, last_agent_text: str) -> AgentState:
    """Classify from the decision reply and the agent's latest message.

    Rules apply in order; the first match wins.
    """

    if contains_completion_phrase(decision_text):
        return AgentState.COMPLETED

    agent_text = last_agent_text.lower()
    if not agent_text.strip():
        return AgentState.UNKNOWN
    if any(marker in agent_text for marker in _BLOCKED_MARKERS):
        return AgentState.BLOCKED
    if any(marker in agent_text for marker in _ASKING_MARKERS) or _ASKING_RE.search(agent_text):
        return AgentState.ASKING
    if any(marker in agent_text for marker in _DONE_MARKERS) or (
        "completed" in agent_text and "not completed" not in agent_text
    ):
        return AgentState.COMPLETED
    if any(marker in agent_text for marker in _PARTIAL_MARKERS):
        return AgentState.PARTIAL
    return AgentState.WORKING
