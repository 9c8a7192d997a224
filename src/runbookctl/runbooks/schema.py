"""Runbook data models and schemas."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

EDIT_LANGUAGES = ("diff", "patch")


class StepKind(str, Enum):
    """Types of runbook steps."""

    COMMAND = "command"  # Shell command(s)
    EDIT = "edit"  # File edit instruction, applied by a human


class RunMode(str, Enum):
    """How a runbook is run."""

    DRY_RUN = "dry-run"
    EXECUTE = "execute"


class StepStatus(str, Enum):
    """Step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    MANUAL = "manual"


@dataclass(frozen=True)
class Step:
    """A single step in a runbook."""

    title: str
    body: str
    kind: StepKind = StepKind.COMMAND
    precondition: str | None = None
    description: str = ""

    # Edit steps
    target: str | None = None

    # Command steps
    language: str = "bash"
    shell: str | None = None  # None means the configured default shell
    timeout: int | None = None

    @property
    def is_conditional(self) -> bool:
        return bool(self.precondition)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data: dict[str, Any] = {
            "title": self.title,
            "kind": self.kind.value,
            "body": self.body,
        }
        if self.precondition:
            data["precondition"] = self.precondition
        if self.description:
            data["description"] = self.description
        if self.target:
            data["target"] = self.target
        if self.kind == StepKind.COMMAND:
            data["language"] = self.language
            if self.shell:
                data["shell"] = self.shell
            if self.timeout:
                data["timeout"] = self.timeout
        return data


@dataclass(frozen=True)
class Runbook:
    """A runbook definition. Never mutated once loaded."""

    name: str
    steps: tuple[Step, ...] = ()
    description: str = ""

    # Read-only views, left out of the hash
    variables: Mapping[str, Any] = field(default_factory=dict, hash=False)
    environment: Mapping[str, str] = field(default_factory=dict, hash=False)
    prelude: str = ""

    tags: tuple[str, ...] = ()
    source_file: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "tags", tuple(self.tags))

    def __len__(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "variables": dict(self.variables),
            "environment": dict(self.environment),
            "prelude": self.prelude,
            "tags": list(self.tags),
            "source_file": self.source_file,
        }


@dataclass
class StepResult:
    """Result of running a step."""

    index: int
    title: str
    status: StepStatus
    started_at: datetime
    ended_at: datetime | None = None
    command: str = ""
    output: str = ""
    error: str = ""
    return_code: int | None = None
    skipped_reason: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Get step duration in seconds."""
        if self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "index": self.index,
            "title": self.title,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "command": self.command,
            "output": self.output,
            "error": self.error,
            "return_code": self.return_code,
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class RunbookResult:
    """Result of running a runbook."""

    runbook_name: str
    mode: RunMode
    status: StepStatus
    started_at: datetime
    ended_at: datetime | None = None
    step_results: list[StepResult] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    failed_step: int | None = None

    @property
    def dry_run(self) -> bool:
        return self.mode == RunMode.DRY_RUN

    @property
    def duration_seconds(self) -> float:
        """Get total duration in seconds."""
        if self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return 0.0

    def _count(self, status: StepStatus) -> int:
        return sum(1 for r in self.step_results if r.status == status)

    @property
    def successful_steps(self) -> int:
        """Count successful steps."""
        return self._count(StepStatus.SUCCESS)

    @property
    def failed_steps(self) -> int:
        """Count failed steps."""
        return self._count(StepStatus.FAILED)

    @property
    def skipped_steps(self) -> int:
        """Count skipped steps."""
        return self._count(StepStatus.SKIPPED)

    @property
    def manual_steps(self) -> int:
        """Count steps left to a human."""
        return self._count(StepStatus.MANUAL)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "runbook_name": self.runbook_name,
            "mode": self.mode.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "dry_run": self.dry_run,
            "summary": {
                "total": len(self.step_results),
                "successful": self.successful_steps,
                "failed": self.failed_steps,
                "skipped": self.skipped_steps,
                "manual": self.manual_steps,
            },
            "step_results": [r.to_dict() for r in self.step_results],
            "variables": self.variables,
            "error": self.error,
            "failed_step": self.failed_step,
        }


def substitute_variables(text: str, variables: dict[str, Any]) -> str:
    """Substitute {{ var }} placeholders; unknown names are left as written."""

    def replace(match: re.Match) -> str:
        var_name = match.group(1)
        if var_name not in variables or variables[var_name] is None:
            return match.group(0)
        return str(variables[var_name])

    return PLACEHOLDER_PATTERN.sub(replace, text)


def unresolved_placeholders(text: str, variables: dict[str, Any]) -> list[str]:
    """Names referenced in text that have no value in variables."""
    missing: list[str] = []
    for name in PLACEHOLDER_PATTERN.findall(text):
        if variables.get(name) is None and name not in missing:
            missing.append(name)
    return missing
