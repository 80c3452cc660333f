"""
PydanticAI integration for toolguard.

Provides helpers to create PydanticAI-compatible tools.
"""

from __future__ import annotations

try:
    from pydantic_ai import Tool
except ImportError:
    raise ImportError(
        "PydanticAI integration requires 'pydantic-ai'. "
        "Install with `pip install toolguard[pydantic-ai]`"
    )

from toolguard.api import (
    EXEC_TOOL_NAME,
    FETCH_TOOL_NAME,
    call_exec_tool,
    call_fetch_tool,
    exec_tool_definition,
    fetch_tool_definition,
)
from toolguard.fetch import GuardedFetcher
from toolguard.sandbox.local import ProcessRunner
from toolguard.security.policy import CommandPolicy


def create_pydantic_ai_tools(
    *,
    runner: ProcessRunner | None = None,
    policy: CommandPolicy | None = None,
    fetcher: GuardedFetcher | None = None,
) -> list[Tool]:
    """
    Create PydanticAI tools for exec and fetch.

    The tools return ToolResult JSON text; a blocked or failed call is data for
    the model, not an exception.

    Example:
        >>> from pydantic_ai import Agent
        >>> agent = Agent("openai:gpt-4o", tools=create_pydantic_ai_tools())
    """

    async def exec_command(
        command: str,
        args: list[str] | None = None,
        stdin: str | None = None,
        timeoutMs: int | None = None,
        maxOutputBytes: int | None = None,
    ) -> str:
        """
        Run git, npm or node in the workspace.
        Disallowed commands and arguments are rejected.
        """
        arguments = {"command": command, "args": args, "stdin": stdin,
                     "timeoutMs": timeoutMs, "maxOutputBytes": maxOutputBytes}
        result = await call_exec_tool(
            {key: value for key, value in arguments.items() if value is not None},
            runner=runner,
            policy=policy,
        )
        return result.to_text()

    async def fetch_url(
        url: str,
        timeoutMs: int | None = None,
        maxBytes: int | None = None,
        maxRedirects: int | None = None,
    ) -> str:
        """Fetch a public HTTP(S) URL with GET."""
        arguments = {"url": url, "timeoutMs": timeoutMs, "maxBytes": maxBytes, "maxRedirects": maxRedirects}
        result = await call_fetch_tool(
            {key: value for key, value in arguments.items() if value is not None},
            fetcher=fetcher,
        )
        return result.to_text()

    return [
        Tool(
            exec_command,
            takes_ctx=False,
            name=EXEC_TOOL_NAME,
            description=exec_tool_definition()["description"],
        ),
        Tool(
            fetch_url,
            takes_ctx=False,
            name=FETCH_TOOL_NAME,
            description=fetch_tool_definition()["description"],
        ),
    ]
