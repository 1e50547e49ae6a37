"""Decision service: LLM messages endpoint used to steer conversations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from agent_pilot.pilot.errors import DecisionServiceError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_MODEL = "claude-sonnet-4-20250514"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TIMEOUT_SECONDS = 120.0


@dataclass(slots=True)
class ToolInvocation:
    """One ``tool_use`` block of a decision reply."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass(slots=True)
class DecisionReply:
    """Parsed reply of one decision call."""

    text_blocks: list[str] = field(default_factory=list)
    tool_uses: list[ToolInvocation] = field(default_factory=list)
    stop_reason: str | None = None
    content: list[dict[str, Any]] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.text_blocks).strip()


class DecisionService(Protocol):
    """Anything that answers a system prompt plus messages, optionally with tools."""

    def complete(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int,
    ) -> DecisionReply: ...


class AnthropicDecisionService:
    """Messages API client over ``httpx``; a single attempt per call."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def complete(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int,
    ) -> DecisionReply:
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": messages,
        }
        if tools:
            body["tools"] = tools

        try:
            response = self._client.post("/v1/messages", json=body)
        except httpx.HTTPError as error:
            logger.warning("Decision request failed: %s", error)
            raise DecisionServiceError(f"Decision service request failed: {error}") from error

        if not response.is_success:
            logger.warning(
                "Decision service returned HTTP %s: %.300s",
                response.status_code,
                response.text,
            )
            raise DecisionServiceError(
                f"Decision service returned HTTP {response.status_code}: {_error_message(response)}",
            )

        try:
            payload = response.json()
        except ValueError as error:
            raise DecisionServiceError("Decision service returned invalid JSON") from error
        return parse_reply(payload)


def parse_reply(payload: Any) -> DecisionReply:
    """Map a Messages API response body onto ``DecisionReply``."""

    if not isinstance(payload, dict) or not isinstance(payload.get("content"), list):
        raise DecisionServiceError("Decision service response has no content blocks")

    reply = DecisionReply(stop_reason=payload.get("stop_reason"))
    for block in payload["content"]:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            reply.text_blocks.append(block["text"])
            reply.content.append({"type": "text", "text": block["text"]})
        elif block.get("type") == "tool_use":
            tool_input = block.get("input")
            invocation = ToolInvocation(
                id=str(block.get("id", "")),
                name=str(block.get("name", "")),
                input=tool_input if isinstance(tool_input, dict) else {},
            )
            reply.tool_uses.append(invocation)
            reply.content.append(
                {
                    "type": "tool_use",
                    "id": invocation.id,
                    "name": invocation.name,
                    "input": invocation.input,
                },
            )
    return reply


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return response.text[:200]
