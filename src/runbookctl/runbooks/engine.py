"""Runbook execution engine."""

import os
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml

from runbookctl.core.exceptions import ParseError, RunAborted, StepExecutionError, ValidationError
from runbookctl.core.logging import StructuredLogger
from runbookctl.library import BUILTIN_PREFIX, resolve_builtin
from runbookctl.runbooks.markdown_parser import MarkdownRunbookParser
from runbookctl.runbooks.presenter import Presentation, present
from runbookctl.runbooks.schema import (
    RunMode,
    Runbook,
    RunbookResult,
    Step,
    StepKind,
    StepResult,
    StepStatus,
    substitute_variables,
    unresolved_placeholders,
)
from runbookctl.runbooks.yaml_schema import parse_yaml_runbook

logger = StructuredLogger(__name__)

MARKDOWN_SUFFIXES = (".md", ".markdown")
YAML_SUFFIXES = (".yaml", ".yml")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunbookEngine:
    """Load, present and run runbooks one step at a time."""

    def __init__(
        self,
        confirm_handler: Callable[[str], bool] | None = None,
        step_handler: Callable[[int, Step], None] | None = None,
        output_handler: Callable[[StepResult], None] | None = None,
        shell: str = "/bin/bash",
        timeout: int | None = None,
        variables: dict[str, Any] | None = None,
        environment: dict[str, str] | None = None,
        capture_output: bool = True,
    ):
        """Initialize runbook engine.

        Args:
            confirm_handler: Asks the user a yes/no question (conditional and edit steps)
            step_handler: Called with (index, step) before each step
            output_handler: Called with each finished StepResult
            shell: Default shell for command steps
            timeout: Default per-step timeout in seconds
            variables: Lowest-priority variables (from the active profile)
            environment: Extra environment for every executed step
            capture_output: Capture stdout/stderr instead of passing the terminal through
        """
        self._confirm_handler = confirm_handler
        self._step_handler = step_handler
        self._output_handler = output_handler
        self._shell = shell
        self._timeout = timeout
        self._variables = dict(variables or {})
        self._environment = dict(environment or {})
        self._capture_output = capture_output
        self._markdown_parser = MarkdownRunbookParser()

    def load(self, source: str | Path) -> Runbook:
        """Load a runbook.

        Args:
            source: Path to a .md/.yaml/.yml file, ``builtin:NAME``, or Markdown text

        Returns:
            Loaded Runbook

        Raises:
            ParseError: If the source is missing or malformed
        """
        if isinstance(source, str):
            if source.startswith(BUILTIN_PREFIX):
                return self.load(resolve_builtin(source[len(BUILTIN_PREFIX) :]))
            if "\n" in source:
                return self._markdown_parser.parse(source)

        path = Path(source)

        if not path.exists():
            raise ParseError(f"Runbook file not found: {path}")

        if path.suffix in YAML_SUFFIXES:
            return self._load_yaml(path)
        elif path.suffix in MARKDOWN_SUFFIXES:
            return self._markdown_parser.parse_file(path)
        else:
            raise ParseError(f"Unsupported runbook format: {path.suffix or path.name}")

    def _load_yaml(self, path: Path) -> Runbook:
        """Load YAML runbook."""
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ParseError(f"Invalid YAML in {path}: {e}")
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"Cannot read {path}: {e}")

        if not data:
            raise ParseError(f"Empty runbook file: {path}")

        if isinstance(data, dict) and "name" not in data and "title" not in data:
            data["name"] = path.stem
        return parse_yaml_runbook(data, source_file=str(path))

    def resolve_variables(
        self,
        runbook: Runbook,
        overrides: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Merge profile variables, runbook defaults and overrides, in that order."""
        merged = dict(self._variables)
        for key, value in runbook.variables.items():
            if value is not None or key not in merged:
                merged[key] = value
        if overrides:
            merged.update(overrides)
        return merged

    def present(
        self,
        runbook: Runbook,
        variables: dict[str, Any] | None = None,
    ) -> Presentation:
        """Describe a runbook's steps for display, substituting known variables."""
        return present(runbook, self.resolve_variables(runbook, variables))

    def validate(
        self,
        runbook: Runbook,
        variables: dict[str, Any] | None = None,
        start: int = 1,
    ) -> list[str]:
        """Validate a runbook and return list of issues.

        Placeholders are only checked in steps from start onwards.
        """
        issues: list[str] = []
        run_vars = self.resolve_variables(runbook, variables)

        if not runbook.name:
            issues.append("Runbook must have a name")

        if not runbook.steps:
            issues.append("Runbook must have at least one step")

        missing = unresolved_placeholders(runbook.prelude, run_vars)
        if missing:
            issues.append(f"Prelude references undefined variable(s): {', '.join(missing)}")

        for index, step in enumerate(runbook.steps, start=1):
            if not step.title.strip():
                issues.append(f"Step {index} must have a title")

            if not step.body.strip():
                issues.append(f"Step {index} must have a body")

            if step.kind == StepKind.EDIT and not step.target:
                issues.append(f"Edit step {index} must name a target file")

            if step.kind == StepKind.COMMAND and index >= start:
                missing = unresolved_placeholders(step.body, run_vars)
                if missing:
                    issues.append(
                        f"Step {index} references undefined variable(s): {', '.join(missing)}"
                    )

        return issues

    def run(
        self,
        runbook: Runbook,
        mode: RunMode = RunMode.DRY_RUN,
        variables: dict[str, Any] | None = None,
        start: int = 1,
    ) -> RunbookResult:
        """Run a runbook.

        In dry-run mode no external process is started. In execute mode
        each command step runs in its own shell, strictly in order, and the
        first non-zero exit stops the run.

        Args:
            runbook: Runbook to run
            mode: RunMode.DRY_RUN or RunMode.EXECUTE
            variables: Variables to override
            start: 1-based index of the first step to run

        Returns:
            RunbookResult with execution details

        Raises:
            ValidationError: If the runbook cannot be executed as given
            StepExecutionError: On the first failing step in execute mode
            RunAborted: If the user declines to continue
        """
        mode = RunMode(mode)
        run_vars = self.resolve_variables(runbook, variables)

        if start < 1 or (runbook.steps and start > len(runbook.steps)):
            raise ValidationError(f"Start step {start} out of range 1..{len(runbook.steps)}")

        if mode == RunMode.EXECUTE:
            issues = self.validate(runbook, variables, start=start)
            if issues:
                raise ValidationError(
                    f"Runbook '{runbook.name}' cannot be executed", issues=issues
                )

        result = RunbookResult(
            runbook_name=runbook.name,
            mode=mode,
            status=StepStatus.RUNNING,
            started_at=_now(),
            variables=run_vars,
        )

        log = logger.bind(runbook=runbook.name, mode=mode.value)
        log.info("Starting runbook", steps=len(runbook.steps), start=start)

        try:
            for index in range(start, len(runbook.steps) + 1):
                step = runbook.steps[index - 1]
                if self._step_handler:
                    self._step_handler(index, step)

                step_result = StepResult(
                    index=index,
                    title=step.title,
                    status=StepStatus.RUNNING,
                    started_at=_now(),
                    command=substitute_variables(step.body, run_vars),
                )
                result.step_results.append(step_result)

                try:
                    self._run_step(runbook, index, step, step_result, run_vars, mode)
                finally:
                    if step_result.ended_at is None:
                        step_result.ended_at = _now()
                    if self._output_handler and step_result.status != StepStatus.RUNNING:
                        self._output_handler(step_result)

        except (StepExecutionError, RunAborted) as e:
            result.status = StepStatus.FAILED
            result.error = str(e)
            result.failed_step = e.step_index
            result.ended_at = _now()
            e.result = result
            log.error("Runbook stopped", step=e.step_index, error=e.message)
            raise

        except KeyboardInterrupt:
            if result.step_results and result.step_results[-1].status == StepStatus.RUNNING:
                result.step_results[-1].status = StepStatus.FAILED
                result.step_results[-1].error = "Interrupted"
            result.status = StepStatus.FAILED
            result.error = "Interrupted"
            result.ended_at = _now()
            log.warning("Runbook interrupted", completed=len(result.step_results) - 1)
            raise

        result.status = StepStatus.SUCCESS
        result.ended_at = _now()

        log.info(
            "Runbook completed",
            status=result.status.value,
            duration=f"{result.duration_seconds:.1f}s",
        )

        return result

    def _run_step(
        self,
        runbook: Runbook,
        index: int,
        step: Step,
        result: StepResult,
        variables: dict[str, Any],
        mode: RunMode,
    ) -> None:
        """Run a single step, recording the outcome in result."""
        logger.info("Running step", index=index, title=step.title, kind=step.kind.value)

        if step.precondition and mode == RunMode.EXECUTE:
            question = f"Precondition: {step.precondition}. Run step {index} '{step.title}'?"
            if not (self._confirm_handler and self._confirm_handler(question)):
                result.status = StepStatus.SKIPPED
                result.skipped_reason = f"Precondition not confirmed: {step.precondition}"
                logger.info("Step skipped", index=index, reason=result.skipped_reason)
                return

        if step.kind == StepKind.EDIT:
            self._run_edit_step(index, step, result, variables, mode)
        else:
            self._run_command_step(runbook, index, step, result, variables, mode)

    def _run_edit_step(
        self,
        index: int,
        step: Step,
        result: StepResult,
        variables: dict[str, Any],
        mode: RunMode,
    ) -> None:
        """Edit steps are carried out by a human, never applied automatically."""
        target = substitute_variables(step.target or "", variables) or "(unspecified file)"

        if mode == RunMode.DRY_RUN:
            result.status = StepStatus.MANUAL
            result.output = f"[DRY RUN] Would ask for an edit of {target}:\n{result.command}"
            return

        if self._confirm_handler is None:
            result.status = StepStatus.MANUAL
            result.skipped_reason = "Edit left to the operator"
            result.output = f"Edit {target}:\n{result.command}"
            return

        if not self._confirm_handler(f"Apply the edit to {target} by hand. Done?"):
            result.status = StepStatus.FAILED
            result.error = "Edit not confirmed"
            raise RunAborted(f"Edit of {target} at step {index} was not confirmed", step_index=index)

        result.status = StepStatus.MANUAL
        result.output = f"Edit of {target} confirmed"

    def _run_command_step(
        self,
        runbook: Runbook,
        index: int,
        step: Step,
        result: StepResult,
        variables: dict[str, Any],
        mode: RunMode,
    ) -> None:
        """Run a command step in a fresh shell."""
        if mode == RunMode.DRY_RUN:
            result.status = StepStatus.SUCCESS
            result.output = f"[DRY RUN] Would execute:\n{result.command}"
            return

        command = result.command
        prelude = substitute_variables(runbook.prelude, variables)
        if prelude:
            command = f"{prelude}\n{command}"

        env = os.environ.copy()
        env.update(self._environment)
        for key, value in runbook.environment.items():
            env[key] = substitute_variables(str(value), variables)

        # Add variables to environment
        for key, value in variables.items():
            if value is not None:
                env[f"RUNBOOK_{key.upper()}"] = str(value)

        timeout = step.timeout or self._timeout
        shell = step.shell or self._shell

        try:
            proc = subprocess.run(
                command,
                shell=True,
                executable=shell,
                capture_output=self._capture_output,
                text=True,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            result.status = StepStatus.FAILED
            result.error = f"Command timed out after {timeout}s"
            raise StepExecutionError(
                f"Step {index} '{step.title}' timed out after {timeout}s",
                step_index=index,
                stderr=result.error,
            )
        except OSError as e:
            result.status = StepStatus.FAILED
            result.error = str(e)
            raise StepExecutionError(
                f"Step {index} '{step.title}' could not start: {e}",
                step_index=index,
                stderr=result.error,
            )

        result.return_code = proc.returncode
        result.output = proc.stdout or ""
        result.error = proc.stderr or ""

        if proc.returncode != 0:
            result.status = StepStatus.FAILED
            raise StepExecutionError(
                f"Step {index} '{step.title}' failed with exit code {proc.returncode}",
                step_index=index,
                exit_code=proc.returncode,
                stderr=result.error,
            )

        result.status = StepStatus.SUCCESS

    def list_runbooks(self, directory: str | Path) -> list[dict[str, Any]]:
        """List available runbooks in a directory."""
        directory = Path(directory)
        runbooks: list[dict[str, Any]] = []

        if not directory.is_dir():
            return runbooks

        paths = sorted(
            p for p in directory.iterdir() if p.suffix in YAML_SUFFIXES + MARKDOWN_SUFFIXES
        )
        for path in paths:
            try:
                rb = self.load(path)
            except ParseError as e:
                logger.warning("Skipping runbook", file=str(path), error=e.message)
                continue
            runbooks.append({
                "name": rb.name,
                "description": rb.description,
                "file": str(path),
                "steps": len(rb.steps),
                "tags": list(rb.tags),
            })

        return runbooks
