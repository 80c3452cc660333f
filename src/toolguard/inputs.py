"""
Validating decoders for untrusted tool-call arguments.

Each request is decoded into a frozen pydantic model. Unknown fields are
rejected rather than ignored, integers must be real integers inside their
bounds, and every failure is reported as an InputError naming the field.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from toolguard.config import (
    ALLOWED_COMMANDS,
    EXEC_MAX_OUTPUT_BYTES,
    EXEC_TIMEOUT_MS,
    FETCH_MAX_BYTES,
    FETCH_MAX_REDIRECTS,
    FETCH_TIMEOUT_MS,
    MAX_ARG_LENGTH,
    MAX_ARGS,
    MAX_STDIN_BYTES,
    Bound,
)
from toolguard.errors import InputError
from toolguard.security.policy import CommandPolicy

Argument = Annotated[StrictStr, Field(max_length=MAX_ARG_LENGTH)]


class ExecCommand(BaseModel):
    """A validated, immutable exec request."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    command: StrictStr = Field(json_schema_extra={"enum": sorted(ALLOWED_COMMANDS)})
    args: tuple[Argument, ...] = Field(default=(), max_length=MAX_ARGS)
    stdin: StrictStr | None = None
    timeout_ms: StrictInt = Field(
        default=EXEC_TIMEOUT_MS.default,
        ge=EXEC_TIMEOUT_MS.minimum,
        le=EXEC_TIMEOUT_MS.maximum,
        alias="timeoutMs",
    )
    max_output_bytes: StrictInt = Field(
        default=EXEC_MAX_OUTPUT_BYTES.default,
        ge=EXEC_MAX_OUTPUT_BYTES.minimum,
        le=EXEC_MAX_OUTPUT_BYTES.maximum,
        alias="maxOutputBytes",
    )

    @field_validator("args")
    @classmethod
    def _no_nul_bytes(cls, args: tuple[str, ...]) -> tuple[str, ...]:
        for arg in args:
            if "\x00" in arg:
                raise PydanticCustomError("nul_byte", "args must not contain NUL bytes")
        return args

    @field_validator("stdin")
    @classmethod
    def _bounded_stdin(cls, stdin: str | None) -> str | None:
        if stdin is not None and len(stdin.encode("utf-8")) > MAX_STDIN_BYTES:
            raise PydanticCustomError(
                "stdin_too_large",
                "stdin too large (>{max_stdin_bytes} bytes)",
                {"max_stdin_bytes": MAX_STDIN_BYTES},
            )
        return stdin

    @property
    def timeout_seconds(self) -> float:
        return EXEC_TIMEOUT_MS.clamp(self.timeout_ms) / 1000


class FetchRequest(BaseModel):
    """A validated, immutable fetch request."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: StrictStr = Field(min_length=1)
    timeout_ms: StrictInt = Field(
        default=FETCH_TIMEOUT_MS.default,
        ge=FETCH_TIMEOUT_MS.minimum,
        le=FETCH_TIMEOUT_MS.maximum,
        alias="timeoutMs",
    )
    max_bytes: StrictInt = Field(
        default=FETCH_MAX_BYTES.default,
        ge=FETCH_MAX_BYTES.minimum,
        le=FETCH_MAX_BYTES.maximum,
        alias="maxBytes",
    )
    max_redirects: StrictInt = Field(
        default=FETCH_MAX_REDIRECTS.default,
        ge=FETCH_MAX_REDIRECTS.minimum,
        le=FETCH_MAX_REDIRECTS.maximum,
        alias="maxRedirects",
    )

    @property
    def timeout_seconds(self) -> float:
        return FETCH_TIMEOUT_MS.clamp(self.timeout_ms) / 1000


_EXEC_BOUNDS: dict[str, Bound] = {
    "timeoutMs": EXEC_TIMEOUT_MS,
    "maxOutputBytes": EXEC_MAX_OUTPUT_BYTES,
}

_FETCH_BOUNDS: dict[str, Bound] = {
    "timeoutMs": FETCH_TIMEOUT_MS,
    "maxBytes": FETCH_MAX_BYTES,
    "maxRedirects": FETCH_MAX_REDIRECTS,
}


def parse_exec_request(raw: Any, *, policy: CommandPolicy | None = None) -> ExecCommand:
    """
    Decode raw exec arguments into an ExecCommand.

    The command name is checked against the allowlist first, then the rest of
    the request is validated, then the arguments are checked by the policy.

    Raises:
        InputError: Malformed request.
        SecurityViolation: COMMAND_NOT_ALLOWED or DISALLOWED_ARGUMENT.
    """
    policy = policy or CommandPolicy.default()
    payload = _require_object(raw)
    policy.check_command(payload.get("command"))

    try:
        command = ExecCommand.model_validate(payload)
    except ValidationError as exc:
        raise _input_error(exc, _EXEC_BOUNDS) from exc

    policy.check_arguments(command.command, command.args)
    return command


def parse_fetch_request(raw: Any) -> FetchRequest:
    """
    Decode raw fetch arguments into a FetchRequest.

    Raises:
        InputError: Malformed request.
    """
    payload = _require_object(raw)
    try:
        return FetchRequest.model_validate(payload)
    except ValidationError as exc:
        raise _input_error(exc, _FETCH_BOUNDS) from exc


def _require_object(raw: Any) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise InputError("arguments must be an object")
    return raw


def _input_error(exc: ValidationError, bounds: dict[str, Bound]) -> InputError:
    """Translate the first pydantic error into a classified InputError."""
    error = exc.errors()[0]
    loc = error.get("loc") or ()
    field = str(loc[0]) if loc else "arguments"
    kind = error["type"]
    ctx = error.get("ctx") or {}

    if kind == "extra_forbidden":
        return InputError(f"Unknown field: {field}", {"field": field})
    if kind == "missing":
        return InputError(f"{field} is required", {"field": field})
    if kind in ("greater_than_equal", "less_than_equal") and field in bounds:
        bound = bounds[field]
        return InputError(
            f"{field} must be between {bound.minimum} and {bound.maximum}",
            {"field": field, "min": bound.minimum, "max": bound.maximum},
        )
    if kind.startswith("int"):
        return InputError(f"{field} must be an integer", {"field": field})
    if field == "args":
        if kind == "too_long":
            return InputError(f"args length must be <= {MAX_ARGS}", {"field": field, "maxArgs": MAX_ARGS})
        if kind == "string_too_long":
            return InputError(
                f"arg too long (>{MAX_ARG_LENGTH})",
                {"field": field, "index": loc[1], "maxArgLength": MAX_ARG_LENGTH},
            )
        if kind == "nul_byte":
            return InputError(error["msg"], {"field": field})
        return InputError("args must be an array of strings", {"field": field})
    if kind == "stdin_too_large":
        return InputError(error["msg"], {"field": field, "maxStdinBytes": ctx.get("max_stdin_bytes")})
    if kind == "string_too_short":
        return InputError(f"{field} must be a non-empty string", {"field": field})
    if kind == "string_type":
        return InputError(f"{field} must be a string", {"field": field})
    return InputError(f"{field}: {error['msg']}", {"field": field})
