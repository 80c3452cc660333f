"""Security module for toolguard."""

from toolguard.security.policy import (
    ARGUMENT_RULES,
    ArgumentRule,
    CommandPolicy,
    SecurityViolation,
)

__all__ = ["ARGUMENT_RULES", "ArgumentRule", "CommandPolicy", "SecurityViolation"]
