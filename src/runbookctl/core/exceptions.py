"""Custom exceptions for runbookctl."""

from typing import Any


class RunbookctlError(Exception):
    """Base exception for all runbookctl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(RunbookctlError):
    """Configuration-related errors."""

    pass


class ParseError(RunbookctlError):
    """Malformed runbook source."""

    def __init__(
        self,
        message: str,
        step_index: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.step_index = step_index


class ValidationError(RunbookctlError):
    """Runbook cannot be executed as given."""

    def __init__(
        self,
        message: str,
        issues: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.issues = issues or []


class StepExecutionError(RunbookctlError):
    """A step exited non-zero (or timed out) in execute mode."""

    def __init__(
        self,
        message: str,
        step_index: int,
        exit_code: int | None = None,
        stderr: str = "",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.step_index = step_index
        self.exit_code = exit_code
        self.stderr = stderr
        # Partial RunbookResult, attached by the engine
        self.result: Any = None


class RunAborted(RunbookctlError):
    """The user declined to continue a run."""

    def __init__(
        self,
        message: str,
        step_index: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.step_index = step_index
        self.result: Any = None
