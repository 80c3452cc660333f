"""
Command policy with an executable allowlist and per-command argument rules.

This is the core security layer of the exec tool: it decides which commands may
run and rejects any argument that would let a command leave its fixed working
directory or widen its scope.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from toolguard._types import ErrorCode
from toolguard.config import ALLOWED_COMMANDS
from toolguard.errors import PolicyViolation

logger = logging.getLogger(__name__)

CWD_OVERRIDE = "cwd override"
GLOBAL_LOCATION = "global location"


class SecurityViolation(PolicyViolation):
    """
    Raised when a command or one of its arguments is blocked.

    Attributes:
        command: The command that was checked.
        reason: Why it was blocked.
    """

    def __init__(self, code: ErrorCode, message: str, *, command: str, reason: str, details: dict) -> None:
        super().__init__(code, message, details)
        self.command = command
        self.reason = reason


@dataclass(frozen=True, slots=True)
class ArgumentRule:
    """
    A single flag of a command's CLI that must not be passed.

    Matches the bare flag and its ``flag=value`` form. With ``attached`` the
    value may also be glued to a short flag (``-C/tmp``). With ``value`` the
    rule only fires when the flag is given that value, either ``flag=value``
    or as the next token.
    """

    flag: str
    reason: str
    attached: bool = False
    value: str | None = None

    def match(self, args: Sequence[str], index: int) -> str | None:
        """Return the offending text if ``args[index]`` trips this rule."""
        arg = args[index]
        if self.value is not None:
            if arg == f"{self.flag}={self.value}":
                return arg
            if arg == self.flag and index + 1 < len(args) and args[index + 1] == self.value:
                return f"{arg} {self.value}"
            return None
        if arg == self.flag or arg.startswith(f"{self.flag}="):
            return arg
        if self.attached and arg.startswith(self.flag) and len(arg) > len(self.flag):
            return arg
        return None


# Flags that redirect the target directory or scope, per allowlisted command
ARGUMENT_RULES: dict[str, tuple[ArgumentRule, ...]] = {
    "git": (
        ArgumentRule("-C", CWD_OVERRIDE, attached=True),
        ArgumentRule("--git-dir", CWD_OVERRIDE),
        ArgumentRule("--work-tree", CWD_OVERRIDE),
    ),
    "npm": (
        ArgumentRule("--prefix", CWD_OVERRIDE),
        ArgumentRule("-C", CWD_OVERRIDE, attached=True),  # alias of --prefix
        ArgumentRule("-g", GLOBAL_LOCATION),
        ArgumentRule("--global", GLOBAL_LOCATION),
        ArgumentRule("--location", GLOBAL_LOCATION, value="global"),
    ),
    "node": (),
}


@dataclass
class CommandPolicy:
    """
    Allowlist-only policy for the exec tool.

    Anything not explicitly allowed is denied. Commands without an entry in
    ``argument_rules`` run with unrestricted arguments.
    """

    allowed_commands: frozenset[str] = ALLOWED_COMMANDS
    argument_rules: dict[str, tuple[ArgumentRule, ...]] = field(
        default_factory=lambda: dict(ARGUMENT_RULES)
    )

    @classmethod
    def default(cls) -> CommandPolicy:
        """The git/npm/node policy used by the exec tool."""
        return cls()

    @classmethod
    def paranoid(cls, allowed: set[str]) -> CommandPolicy:
        """
        Create a policy that only allows the given commands.

        Known argument rules are kept for any of them that have one.

        Args:
            allowed: Command names to allow (e.g., {"git"}).
        """
        return cls(
            allowed_commands=frozenset(allowed),
            argument_rules={name: rules for name, rules in ARGUMENT_RULES.items() if name in allowed},
        )

    def is_allowed(self, command: object) -> bool:
        return isinstance(command, str) and command in self.allowed_commands

    def check_command(self, command: object) -> str:
        """
        Validate the executable name against the allowlist.

        Returns:
            The command name.

        Raises:
            SecurityViolation: COMMAND_NOT_ALLOWED if it is not allowlisted.
        """
        if not self.is_allowed(command):
            allowed = sorted(self.allowed_commands)
            logger.warning(f"Blocking command {command!r}")
            raise SecurityViolation(
                ErrorCode.COMMAND_NOT_ALLOWED,
                f"command must be one of: {', '.join(allowed)}",
                command=str(command),
                reason="not in allowlist",
                details={"allowed": allowed},
            )
        return command  # type: ignore[return-value]

    def check_arguments(self, command: str, args: Sequence[str]) -> None:
        """
        Reject any argument that would move the command out of its working directory.

        Raises:
            SecurityViolation: DISALLOWED_ARGUMENT on the first offending argument.
        """
        rules = self.argument_rules.get(command, ())
        for index in range(len(args)):
            for rule in rules:
                offending = rule.match(args, index)
                if offending is not None:
                    logger.warning(f"Blocking {command} argument {offending!r}: {rule.reason}")
                    raise SecurityViolation(
                        ErrorCode.DISALLOWED_ARGUMENT,
                        f"Disallowed argument: {offending}",
                        command=command,
                        reason=rule.reason,
                        details={"argument": offending, "reason": rule.reason},
                    )

    def check(self, command: object, args: Sequence[str]) -> str:
        """Run both checks; returns the validated command name."""
        name = self.check_command(command)
        self.check_arguments(name, args)
        return name

    def add_allowed_command(self, command: str) -> None:
        """Add a command to the allowlist."""
        self.allowed_commands = self.allowed_commands | {command}

    def add_argument_rule(self, command: str, rule: ArgumentRule) -> None:
        """Add a blocked flag for one command."""
        self.argument_rules[command] = (*self.argument_rules.get(command, ()), rule)
