"""Deterministic classification of agent process failures from stderr."""

from __future__ import annotations

import re
from dataclasses import dataclass

MAX_STDERR_LINE_CHARS = 200

_POOL_ERROR_RE = re.compile(r"Slow Pool Error[^.]*\.", re.IGNORECASE)

_POOL_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "slow pool error",
    "quota",
    "resource_exhausted",
    "usage limit",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "authentication",
    "unauthorized",
    "not logged in",
    "invalid api key",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "econnrefused",
    "econnreset",
    "could not resolve host",
    "connection refused",
)

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a moment and try again."
AUTH_MESSAGE = "Authentication error. Please check your agent CLI login status."
NETWORK_MESSAGE = "Network error. Please check your internet connection."
QUOTA_MESSAGE = "Model pool or quota exhausted. Please check your subscription settings."


@dataclass(slots=True)
class ExitFailureDescription:
    """Human-readable cause of a non-zero agent exit."""

    reason_code: str
    message: str
    matched_pattern: str | None


def describe_exit_failure(*, exit_code: int, stderr: str) -> ExitFailureDescription:
    """Map a non-zero exit and its stderr onto a canned, readable message."""

    haystack = stderr.lower()

    pattern = _first_match(haystack, _POOL_OR_QUOTA_PATTERNS)
    if pattern is not None:
        match = _POOL_ERROR_RE.search(stderr)
        message = (
            f"{match.group(0)} Please check your subscription settings."
            if match
            else QUOTA_MESSAGE
        )
        return ExitFailureDescription("pool_or_quota", message, pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return ExitFailureDescription("rate_limit", RATE_LIMIT_MESSAGE, pattern)

    pattern = _first_match(haystack, _AUTH_PATTERNS)
    if pattern is not None:
        return ExitFailureDescription("access_or_auth", AUTH_MESSAGE, pattern)

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None:
        return ExitFailureDescription("network", NETWORK_MESSAGE, pattern)

    first_line = next((line.strip() for line in stderr.splitlines() if line.strip()), "")
    if first_line:
        return ExitFailureDescription(
            "stderr_first_line",
            _truncate(first_line, MAX_STDERR_LINE_CHARS),
            None,
        )

    return ExitFailureDescription("exit_code", f"Agent exited with code {exit_code}", None)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."
