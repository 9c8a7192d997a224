"""Runbook loading, presentation and execution."""

from runbookctl.runbooks.schema import (
    Runbook,
    Step,
    StepKind,
    RunMode,
    StepStatus,
    RunbookResult,
    StepResult,
)
from runbookctl.runbooks.presenter import Presentation, StepDescription, present
from runbookctl.runbooks.engine import RunbookEngine

__all__ = [
    "Runbook",
    "Step",
    "StepKind",
    "RunMode",
    "StepStatus",
    "RunbookResult",
    "StepResult",
    "Presentation",
    "StepDescription",
    "present",
    "RunbookEngine",
]
