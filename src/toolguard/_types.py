"""
Core type definitions for toolguard.

Uses dataclasses for the immutable outcomes produced by the exec and fetch engines.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable, machine-readable failure kinds surfaced to the caller."""

    INVALID_INPUT = "INVALID_INPUT"
    COMMAND_NOT_ALLOWED = "COMMAND_NOT_ALLOWED"
    DISALLOWED_ARGUMENT = "DISALLOWED_ARGUMENT"
    SPAWN_FAILED = "SPAWN_FAILED"
    EXEC_FAILED = "EXEC_FAILED"
    TIMEOUT = "TIMEOUT"
    NON_ZERO_EXIT = "NON_ZERO_EXIT"
    ABORTED = "ABORTED"
    INVALID_URL = "INVALID_URL"
    SSRF_BLOCKED = "SSRF_BLOCKED"
    DNS_FAILED = "DNS_FAILED"
    FETCH_FAILED = "FETCH_FAILED"
    TOO_MANY_REDIRECTS = "TOO_MANY_REDIRECTS"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True, slots=True)
class ExecOutcome:
    """Immutable result of one process run, produced even on failure."""

    cwd: str
    command: str
    args: tuple[str, ...]
    exit_code: int | None
    signal: str | None
    timed_out: bool
    duration_ms: int
    stdout: str
    stderr: str
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def success(self) -> bool:
        """Return True if the process exited with code 0 before the deadline."""
        return self.exit_code == 0 and not self.timed_out

    def to_payload(self) -> dict[str, Any]:
        return {
            "cwd": self.cwd,
            "command": self.command,
            "args": list(self.args),
            "exitCode": self.exit_code,
            "signal": self.signal,
            "timedOut": self.timed_out,
            "durationMs": self.duration_ms,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "stdoutTruncated": self.stdout_truncated,
            "stderrTruncated": self.stderr_truncated,
        }


@dataclass(frozen=True, slots=True)
class RedirectHop:
    """One redirect response that was followed."""

    status: int
    location: str

    def to_payload(self) -> dict[str, Any]:
        return {"status": self.status, "location": self.location}


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    """Immutable result of a guarded GET, after all redirects were followed."""

    url: str
    status: int
    status_text: str
    ok: bool
    headers: dict[str, str]
    body: str
    truncated: bool
    bytes_read: int
    redirects: tuple[RedirectHop, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status,
            "statusText": self.status_text,
            "ok": self.ok,
            "headers": dict(self.headers),
            "body": self.body,
            "truncated": self.truncated,
            "bytesRead": self.bytes_read,
            "redirects": [hop.to_payload() for hop in self.redirects],
        }
