"""Shared type definitions for rstack_build.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum

from rstack_build.errors import UnsupportedPlatformError


class Stack(str, Enum):
    """Supported base OS image families."""

    HEROKU_18 = "18"
    HEROKU_20 = "20"
    HEROKU_22 = "22"


# Runtime version installed when no explicit override is configured
DEFAULT_RUNTIME_VERSIONS: dict[Stack, str] = {
    Stack.HEROKU_18: "4.0.5",
    Stack.HEROKU_20: "4.2.3",
    Stack.HEROKU_22: "4.3.2",
}

STACK_PREFIX = "heroku-"


def parse_stack(value: str) -> Stack:
    """Validate a stack identifier against the supported set.

    Accepts both the short form (``22``) and the prefixed platform form
    (``heroku-22``).

    Args:
        value: Stack identifier.

    Returns:
        The matching Stack.

    Raises:
        UnsupportedPlatformError: If the stack is not supported.
    """
    normalized = value.strip().lower()
    if normalized.startswith(STACK_PREFIX):
        normalized = normalized[len(STACK_PREFIX) :]
    try:
        return Stack(normalized)
    except ValueError:
        raise UnsupportedPlatformError(value) from None


class StrategyKind(str, Enum):
    """Kinds of dependency bootstrap strategy."""

    PLAIN_INIT = "plain-init"
    PACKRAT = "packrat"
    RENV = "renv"


@dataclass
class ExecResult:
    """Result of a command executed inside the sandbox.

    Attributes:
        exit_code: Process exit status.
        output: Combined stdout and stderr.
        command: The full host-side command line that was run.
        privileged: Whether the command ran in privileged mode.
    """

    exit_code: int
    output: str
    command: str
    privileged: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0


__all__ = [
    "DEFAULT_RUNTIME_VERSIONS",
    "ExecResult",
    "Stack",
    "StrategyKind",
    "parse_stack",
]
