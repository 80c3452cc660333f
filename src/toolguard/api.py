"""
Main entry points: tool definitions and structured call results.

A transport (MCP server, agent framework, HTTP endpoint) hands the raw tool-call
arguments to ``call_exec_tool`` / ``call_fetch_tool`` and renders the returned
ToolResult. These functions never raise for a failed call; every failure is
classified into a stable error code.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from toolguard._types import ErrorCode
from toolguard.errors import ToolError
from toolguard.fetch import GuardedFetcher
from toolguard.inputs import ExecCommand, FetchRequest, parse_exec_request, parse_fetch_request
from toolguard.sandbox.local import ProcessRunner
from toolguard.security.policy import CommandPolicy

logger = logging.getLogger(__name__)

EXEC_TOOL_NAME = "exec"
FETCH_TOOL_NAME = "fetch"


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Structured outcome of one tool call."""

    ok: bool
    payload: dict[str, Any]

    @property
    def is_error(self) -> bool:
        return not self.ok

    @classmethod
    def success(cls, value: dict[str, Any]) -> ToolResult:
        return cls(ok=True, payload=value)

    @classmethod
    def failure(cls, code: ErrorCode | str, message: str, details: Any = None) -> ToolResult:
        return cls.from_error(ToolError(ErrorCode(code), message, details))

    @classmethod
    def from_error(cls, error: ToolError) -> ToolResult:
        return cls(ok=False, payload=error.to_payload())

    def to_dict(self) -> dict[str, Any]:
        """``{"ok": true, ...}`` on success, ``{"ok": false, "error": {...}}`` on failure."""
        if self.ok:
            return {"ok": True, **self.payload}
        return {"ok": False, "error": self.payload}

    def to_text(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)


def exec_tool_definition() -> dict[str, Any]:
    """Name, description and JSON input schema of the exec tool."""
    return {
        "name": EXEC_TOOL_NAME,
        "description": (
            "Run an allowlisted command (git/npm/node) with a fixed working directory, "
            "timeout, and output caps."
        ),
        "inputSchema": ExecCommand.model_json_schema(by_alias=True),
    }


def fetch_tool_definition() -> dict[str, Any]:
    """Name, description and JSON input schema of the fetch tool."""
    return {
        "name": FETCH_TOOL_NAME,
        "description": "HTTP(S) GET-only fetch with SSRF protections and strict caps.",
        "inputSchema": FetchRequest.model_json_schema(by_alias=True),
    }


async def call_exec_tool(
    arguments: Any,
    *,
    cancel: asyncio.Event | None = None,
    runner: ProcessRunner | None = None,
    policy: CommandPolicy | None = None,
) -> ToolResult:
    """
    Validate and run one exec tool call.

    Args:
        arguments: Raw, untrusted tool-call arguments.
        cancel: Optional event; setting it aborts the call.
        runner: Process runner to use. Defaults to one rooted at the
            configured workspace.
        policy: Command policy. Defaults to git/npm/node. A supplied
            runner also enforces its own policy before spawning.

    Returns:
        ToolResult with the exec payload or a classified error.

    Example:
        >>> result = await call_exec_tool({"command": "git", "args": ["status"]})
        >>> print(result.to_text())
    """
    try:
        command = parse_exec_request(arguments, policy=policy)
        outcome = await (runner or ProcessRunner(policy=policy)).run(command, cancel=cancel)
        return ToolResult.success(outcome.to_payload())
    except ToolError as exc:
        return ToolResult.from_error(exc)
    except Exception as exc:
        logger.exception("exec tool failed unexpectedly")
        return ToolResult.failure(ErrorCode.INTERNAL_ERROR, str(exc) or type(exc).__name__)


async def call_fetch_tool(
    arguments: Any,
    *,
    cancel: asyncio.Event | None = None,
    fetcher: GuardedFetcher | None = None,
) -> ToolResult:
    """
    Validate and run one fetch tool call.

    Args:
        arguments: Raw, untrusted tool-call arguments.
        cancel: Optional event; setting it aborts the call.
        fetcher: Fetcher to use. Defaults to a fresh GuardedFetcher.

    Returns:
        ToolResult with the fetch payload or a classified error.
    """
    try:
        request = parse_fetch_request(arguments)
        outcome = await (fetcher or GuardedFetcher()).fetch(request, cancel=cancel)
        return ToolResult.success(outcome.to_payload())
    except ToolError as exc:
        return ToolResult.from_error(exc)
    except Exception as exc:
        logger.exception("fetch tool failed unexpectedly")
        return ToolResult.failure(ErrorCode.INTERNAL_ERROR, str(exc) or type(exc).__name__)
