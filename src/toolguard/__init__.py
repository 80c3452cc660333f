"""
Top-level facade for toolguard.

Two guarded tools for agent runtimes: ``exec`` runs allowlisted commands
(git/npm/node) in a fixed working directory, ``fetch`` performs SSRF-hardened
HTTP(S) GETs.
"""

from toolguard._types import ErrorCode, ExecOutcome, FetchOutcome, RedirectHop
from toolguard.api import (
    EXEC_TOOL_NAME,
    FETCH_TOOL_NAME,
    ToolResult,
    call_exec_tool,
    call_fetch_tool,
    exec_tool_definition,
    fetch_tool_definition,
)
from toolguard.config import ExecSettings, FetchSettings
from toolguard.errors import ExecutionError, FetchError, InputError, PolicyViolation, ToolError
from toolguard.fetch import GuardedFetcher
from toolguard.inputs import ExecCommand, FetchRequest, parse_exec_request, parse_fetch_request
from toolguard.networking import NetworkPolicy, is_private_ip
from toolguard.sandbox.local import ProcessRunner
from toolguard.security.policy import CommandPolicy, SecurityViolation

__version__ = "0.1.0"

__all__ = [
    # Tool surface
    "EXEC_TOOL_NAME",
    "FETCH_TOOL_NAME",
    "ToolResult",
    "call_exec_tool",
    "call_fetch_tool",
    "exec_tool_definition",
    "fetch_tool_definition",
    # Engines
    "ProcessRunner",
    "GuardedFetcher",
    # Policies
    "CommandPolicy",
    "NetworkPolicy",
    "is_private_ip",
    # Requests
    "ExecCommand",
    "FetchRequest",
    "parse_exec_request",
    "parse_fetch_request",
    # Outcomes
    "ExecOutcome",
    "FetchOutcome",
    "RedirectHop",
    # Settings
    "ExecSettings",
    "FetchSettings",
    # Errors
    "ErrorCode",
    "ToolError",
    "InputError",
    "PolicyViolation",
    "SecurityViolation",
    "ExecutionError",
    "FetchError",
]
