"""
Hard limits and settings for the exec and fetch engines.

Bounds are enforced regardless of caller input; settings are fixed by the host.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Bound:
    """Inclusive integer range with a default."""

    minimum: int
    maximum: int
    default: int

    def clamp(self, value: int) -> int:
        return max(self.minimum, min(self.maximum, value))


WORKSPACE_CWD = "/workspace"
ALLOWED_COMMANDS: frozenset[str] = frozenset({"git", "npm", "node"})

# exec
EXEC_TIMEOUT_MS = Bound(1, 120_000, 60_000)
EXEC_MAX_OUTPUT_BYTES = Bound(1024, 1_000_000, 200_000)
MAX_ARGS = 64
MAX_ARG_LENGTH = 8192
MAX_STDIN_BYTES = 200_000

# fetch
FETCH_TIMEOUT_MS = Bound(1, 30_000, 15_000)
FETCH_MAX_BYTES = Bound(1024, 1_000_000, 500_000)
FETCH_MAX_REDIRECTS = Bound(0, 5, 3)

USER_AGENT = "toolguard-fetch/0.1"
BLOCKED_HOSTNAMES: frozenset[str] = frozenset({"localhost"})
BLOCKED_SUFFIXES: tuple[str, ...] = (".local", ".internal", ".localhost")


@dataclass(frozen=True)
class ExecSettings:
    """Where and how allowlisted commands run."""

    cwd: str = WORKSPACE_CWD
    env: dict[str, str] | None = None
    """Child environment. None inherits the host environment."""

    @classmethod
    def from_env(cls) -> ExecSettings:
        """Build settings from ``TOOLGUARD_WORKSPACE`` (defaults to /workspace)."""
        return cls(cwd=os.environ.get("TOOLGUARD_WORKSPACE", WORKSPACE_CWD))


@dataclass(frozen=True)
class FetchSettings:
    """Transport settings for the guarded fetcher."""

    user_agent: str = USER_AGENT
    pin_dns: bool = True
    """Connect to the validated address instead of letting the transport re-resolve."""
    blocked_hostnames: frozenset[str] = BLOCKED_HOSTNAMES
    blocked_suffixes: tuple[str, ...] = field(default=BLOCKED_SUFFIXES)
