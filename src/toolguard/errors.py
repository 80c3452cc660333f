"""
Exception hierarchy for toolguard.

Every failure carries a stable ErrorCode, a human-readable message and an
optional structured details payload.

Exception hierarchy:
    ToolError
    +-- InputError        (INVALID_INPUT)
    +-- PolicyViolation   (COMMAND_NOT_ALLOWED, DISALLOWED_ARGUMENT, INVALID_URL, SSRF_BLOCKED)
    +-- ExecutionError    (SPAWN_FAILED, EXEC_FAILED, TIMEOUT, NON_ZERO_EXIT, ABORTED)
    +-- FetchError        (DNS_FAILED, FETCH_FAILED, TOO_MANY_REDIRECTS, ABORTED)
"""

from __future__ import annotations

from typing import Any

from toolguard._types import ErrorCode


class ToolError(Exception):
    """Base exception for all classified tool failures."""

    def __init__(self, code: ErrorCode, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        """Render as ``{code, message, details?}``."""
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details is not None:
            payload["details"] = _render(self.details)
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value}, {self.message!r})"


class InputError(ToolError):
    """Raised when a request fails schema validation."""

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(ErrorCode.INVALID_INPUT, message, details)


class PolicyViolation(ToolError):
    """
    Raised when a request is well-formed but forbidden by policy.

    No process is spawned and no network call is made for these.
    """


class ExecutionError(ToolError):
    """Raised when a spawned process fails, times out or is aborted."""


class FetchError(ToolError):
    """Raised when a guarded fetch fails after passing validation."""


def _render(details: Any) -> Any:
    to_payload = getattr(details, "to_payload", None)
    if callable(to_payload):
        return to_payload()
    if isinstance(details, dict):
        return {key: _render(value) for key, value in details.items()}
    if isinstance(details, (list, tuple)):
        return [_render(value) for value in details]
    return details
