"""LangChain integration for toolguard."""

from __future__ import annotations

from typing import Any

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

HAS_LANGCHAIN = False
_StructuredTool: Any = None

try:
    import langchain_core.tools

    _StructuredTool = langchain_core.tools.StructuredTool
    HAS_LANGCHAIN = True
except ImportError:
    pass


def create_langchain_tools(
    *,
    runner: ProcessRunner | None = None,
    policy: CommandPolicy | None = None,
    fetcher: GuardedFetcher | None = None,
) -> dict[str, Any]:
    """
    Create LangChain tools for exec and fetch.

    Each tool returns the JSON text of its ToolResult, so failures reach the
    model as ``{"ok": false, "error": {...}}`` instead of raising.

    Args:
        runner: Process runner for exec. Defaults to the configured workspace.
        policy: Command policy for exec. Defaults to git/npm/node.
        fetcher: Fetcher for fetch. Defaults to a fresh GuardedFetcher.

    Returns:
        Dictionary of LangChain StructuredTool instances keyed by tool name.

    Raises:
        ImportError: If langchain-core is not installed.

    Example:
        >>> tools = create_langchain_tools()
        >>> agent = create_react_agent(llm, list(tools.values()))
    """
    if not HAS_LANGCHAIN:
        raise ImportError(
            "LangChain integration requires langchain-core. "
            "Install with: pip install toolguard[langchain]"
        )

    async def run_exec(
        command: str,
        args: list[str] | None = None,
        stdin: str | None = None,
        timeoutMs: int | None = None,
        maxOutputBytes: int | None = None,
    ) -> str:
        """Run an allowlisted command."""
        arguments = _present(
            command=command,
            args=args,
            stdin=stdin,
            timeoutMs=timeoutMs,
            maxOutputBytes=maxOutputBytes,
        )
        result = await call_exec_tool(arguments, runner=runner, policy=policy)
        return result.to_text()

    async def run_fetch(
        url: str,
        timeoutMs: int | None = None,
        maxBytes: int | None = None,
        maxRedirects: int | None = None,
    ) -> str:
        """Fetch a public HTTP(S) URL."""
        arguments = _present(url=url, timeoutMs=timeoutMs, maxBytes=maxBytes, maxRedirects=maxRedirects)
        result = await call_fetch_tool(arguments, fetcher=fetcher)
        return result.to_text()

    exec_tool = _StructuredTool.from_function(
        coroutine=run_exec,
        name=EXEC_TOOL_NAME,
        description=exec_tool_definition()["description"],
    )

    fetch_tool = _StructuredTool.from_function(
        coroutine=run_fetch,
        name=FETCH_TOOL_NAME,
        description=fetch_tool_definition()["description"],
    )

    return {
        EXEC_TOOL_NAME: exec_tool,
        FETCH_TOOL_NAME: fetch_tool,
    }


def _present(**arguments: Any) -> dict[str, Any]:
    # Omitted optionals must stay absent so the defaults apply
    return {key: value for key, value in arguments.items() if value is not None}
