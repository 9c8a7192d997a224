"""Core utilities and shared components for runbookctl."""

# Note: Import context lazily to avoid circular imports
# Use: from runbookctl.core.context import RunbookctlContext, pass_context
from runbookctl.core.exceptions import (
    RunbookctlError,
    ConfigError,
    ParseError,
    ValidationError,
    StepExecutionError,
    RunAborted,
)
from runbookctl.core.output import OutputFormatter, console

__all__ = [
    "RunbookctlError",
    "ConfigError",
    "ParseError",
    "ValidationError",
    "StepExecutionError",
    "RunAborted",
    "OutputFormatter",
    "console",
]
