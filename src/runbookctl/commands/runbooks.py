"""Runbook commands: show, run, validate, list, history."""

from pathlib import Path
from typing import Any

import click

from runbookctl.core.context import pass_context, RunbookctlContext
from runbookctl.core.exceptions import (
    ParseError,
    RunAborted,
    RunbookctlError,
    StepExecutionError,
    ValidationError,
)
from runbookctl.core.output import OutputFormat, format_duration
from runbookctl.library import BUILTIN_PREFIX, builtin_names
from runbookctl.runbooks import RunbookEngine, RunMode, Step, StepKind, StepResult, StepStatus
from runbookctl.runbooks.schema import substitute_variables


def parse_vars(ctx: click.Context, param: click.Parameter, value: tuple[str, ...]) -> dict[str, str]:
    """Turn repeated key=value options into a dict."""
    variables: dict[str, str] = {}
    for item in value:
        key, sep, val = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got '{item}'", ctx=ctx, param=param)
        variables[key.strip()] = val
    return variables


var_option = click.option(
    "--var",
    "-v",
    "variables",
    multiple=True,
    callback=parse_vars,
    metavar="KEY=VALUE",
    help="Variable (key=value), repeatable",
)


def make_engine(ctx: RunbookctlContext, **handlers: Any) -> RunbookEngine:
    """Build an engine from the active configuration and profile."""
    settings = ctx.config.global_settings
    return RunbookEngine(
        shell=settings.shell,
        timeout=settings.timeout,
        variables=ctx.profile.variables,
        environment=ctx.profile.environment,
        **handlers,
    )


@click.command("show")
@click.argument("source")
@var_option
@pass_context
def show(ctx: RunbookctlContext, source: str, variables: dict[str, str]) -> None:
    """Print a runbook's steps for copying by hand.

    SOURCE is a .md/.yaml file or builtin:NAME.

    \b
    Examples:
        runbookctl show builtin:hpc-cluster-access --var user=alice
        runbookctl -o json show setup.yaml
    """
    try:
        engine = make_engine(ctx)
        rb = engine.load(source)
        presentation = engine.present(rb, variables)

        if ctx.output_format in (OutputFormat.JSON, OutputFormat.YAML):
            ctx.output.print_data({
                "name": rb.name,
                "description": rb.description,
                "steps": [d.to_dict() for d in presentation],
            })
            return

        if ctx.output_format == OutputFormat.RAW:
            ctx.output.print_verbatim(presentation.render())
            return

        ctx.output.print_header(rb.name)
        if rb.description:
            ctx.output.print_verbatim(rb.description)
        for description in presentation:
            ctx.output.print("")
            ctx.output.print_verbatim(description.heading)
            if description.precondition:
                ctx.output.print_warning(f"Precondition: {description.precondition}")
            if description.description:
                ctx.output.print_verbatim(description.description)
            if description.kind == StepKind.EDIT:
                ctx.output.print_info(f"Edit {description.target or '(unspecified file)'}:")
            ctx.output.print_code(description.body, description.language)

    except RunbookctlError as e:
        ctx.output.print_error(str(e))
        raise click.Abort()


@click.command("run")
@click.argument("source")
@var_option
@click.option("-y", "--yes", is_flag=True, help="Answer yes to every confirmation")
@click.option("--start", type=click.IntRange(min=1), default=1, show_default=True, help="Start from step N")
@click.option("--no-capture", is_flag=True, help="Attach steps to the terminal (interactive commands)")
@click.option("--no-audit", is_flag=True, help="Do not record this run in the history")
@pass_context
def run(
    ctx: RunbookctlContext,
    source: str,
    variables: dict[str, str],
    yes: bool,
    start: int,
    no_capture: bool,
    no_audit: bool,
) -> None:
    """Run a runbook, stopping at the first failing step.

    With the global --dry-run flag nothing is executed.

    \b
    Examples:
        runbookctl --dry-run run builtin:conda-robotics-env
        runbookctl run setup.md --var env_name=sim -y
        runbookctl run setup.md --start 3
    """
    mode = RunMode.DRY_RUN if ctx.dry_run else RunMode.EXECUTE
    run_vars: dict[str, Any] = {}

    def confirm_handler(message: str) -> bool:
        if yes:
            return True
        return ctx.confirm(message)

    def step_handler(index: int, step: Step) -> None:
        ctx.output.print("")
        ctx.output.print_verbatim(f"Step {index}/{len(rb.steps)}: {step.title}")
        if step.precondition:
            ctx.output.print_warning(f"Precondition: {step.precondition}")
        if mode == RunMode.EXECUTE:
            if step.kind == StepKind.EDIT:
                ctx.output.print_info(f"Edit {substitute_variables(step.target or '', run_vars)}:")
            ctx.output.print_code(substitute_variables(step.body, run_vars), step.language)

    def output_handler(step_result: StepResult) -> None:
        if step_result.status == StepStatus.SKIPPED:
            ctx.output.print_info(f"Skipped: {step_result.skipped_reason}")
            return
        if step_result.output:
            ctx.output.print_verbatim(step_result.output.rstrip("\n"))

    try:
        engine = make_engine(
            ctx,
            confirm_handler=confirm_handler,
            step_handler=step_handler,
            output_handler=output_handler,
            capture_output=not no_capture,
        )
        rb = engine.load(source)
        run_vars = engine.resolve_variables(rb, variables)

        ctx.output.print_header(f"{'Dry run' if mode == RunMode.DRY_RUN else 'Running'}: {rb.name}")
        ctx.output.print(f"Steps: {len(rb.steps)}")

        result = engine.run(rb, mode=mode, variables=variables, start=start)

    except StepExecutionError as e:
        _record(ctx, e.result, source, no_audit)
        ctx.output.print_error(e.message)
        if e.stderr:
            click.echo(e.stderr.rstrip("\n"), err=True)
        ctx.output.print_info(
            f"Fix the problem by hand, then resume with --start {e.step_index}"
        )
        raise click.Abort()

    except RunAborted as e:
        _record(ctx, e.result, source, no_audit)
        ctx.output.print_error(e.message)
        raise click.Abort()

    except ValidationError as e:
        ctx.output.print_error(e.message)
        for issue in e.issues:
            ctx.output.print_verbatim(f"  - {issue}")
        raise click.Abort()

    except RunbookctlError as e:
        ctx.output.print_error(str(e))
        raise click.Abort()

    except KeyboardInterrupt:
        ctx.output.print_warning("Interrupted, remaining steps were not run")
        click.get_current_context().exit(130)

    _record(ctx, result, source, no_audit)

    ctx.output.print("")
    ctx.output.print_success(
        f"Runbook completed in {format_duration(result.duration_seconds)}"
    )
    ctx.output.print(
        f"Steps: {result.successful_steps} succeeded, {result.skipped_steps} skipped, "
        f"{result.manual_steps} manual"
    )
    if mode == RunMode.DRY_RUN:
        issues = engine.validate(rb, variables, start=start)
        missing = [issue for issue in issues if "undefined" in issue]
        for issue in missing:
            ctx.output.print_warning(issue)


def _record(ctx: RunbookctlContext, result: Any, source: str, no_audit: bool) -> None:
    if no_audit or result is None:
        return
    try:
        ctx.audit.log_execution(result, metadata={"source": source})
    except OSError as e:
        ctx.logger.warning("Could not write run history", error=str(e))


@click.command("validate")
@click.argument("source")
@var_option
@pass_context
def validate(ctx: RunbookctlContext, source: str, variables: dict[str, str]) -> None:
    """Check that a runbook parses and can be executed.

    \b
    Examples:
        runbookctl validate setup.md
        runbookctl validate builtin:gcc-module-workaround --var gcc_version=11.2.0
    """
    try:
        engine = make_engine(ctx)
        rb = engine.load(source)
        issues = engine.validate(rb, variables)
    except ParseError as e:
        ctx.output.print_error(f"Validation failed: {e}")
        raise click.Abort()

    ctx.output.print_header(f"Validating: {rb.name}")
    ctx.output.print(f"Steps: {len(rb.steps)}")

    if issues:
        ctx.output.print_error(f"Found {len(issues)} issue(s):")
        for issue in issues:
            ctx.output.print_verbatim(f"  - {issue}")
        raise click.Abort()

    ctx.output.print_success("Runbook is valid")


@click.command("list")
@click.option("-d", "--dir", "directories", multiple=True, help="Runbooks directory (repeatable)")
@click.option("--builtin", is_flag=True, help="Include bundled runbooks")
@click.option("--tag", default=None, help="Only runbooks with this tag")
@pass_context
def list_runbooks(
    ctx: RunbookctlContext,
    directories: tuple[str, ...],
    builtin: bool,
    tag: str | None,
) -> None:
    """List available runbooks.

    \b
    Examples:
        runbookctl list
        runbookctl list -d ./runbooks --tag hpc
        runbookctl list --builtin
    """
    engine = make_engine(ctx)
    runbooks: list[dict[str, Any]] = []

    for directory in directories or ctx.config.global_settings.runbook_dirs:
        runbooks.extend(engine.list_runbooks(Path(directory).expanduser()))

    if builtin:
        for name in builtin_names():
            rb = engine.load(f"{BUILTIN_PREFIX}{name}")
            runbooks.append({
                "name": rb.name,
                "description": rb.description,
                "file": f"{BUILTIN_PREFIX}{name}",
                "steps": len(rb.steps),
                "tags": list(rb.tags),
            })

    if tag:
        runbooks = [r for r in runbooks if tag in r.get("tags", [])]

    if not runbooks:
        ctx.output.print_info("No runbooks found")
        return

    rows = [
        {
            "name": rb["name"],
            "steps": rb["steps"],
            "tags": ", ".join(rb["tags"]),
            "file": rb["file"] if rb["file"].startswith(BUILTIN_PREFIX) else Path(rb["file"]).name,
        }
        for rb in runbooks
    ]

    if ctx.output_format in (OutputFormat.JSON, OutputFormat.YAML):
        ctx.output.print_data(runbooks)
    else:
        ctx.output.print_data(rows, headers=["name", "steps", "tags", "file"], title="Runbooks")


@click.command("history")
@click.option("--limit", default=20, show_default=True, help="Max entries")
@click.option("--runbook", "runbook_name", default=None, help="Filter by runbook name")
@click.option("--id", "audit_id", default=None, help="Show one run in full")
@pass_context
def history(
    ctx: RunbookctlContext,
    limit: int,
    runbook_name: str | None,
    audit_id: str | None,
) -> None:
    """Show recorded runbook runs.

    \b
    Examples:
        runbookctl history
        runbookctl history --runbook "HPC cluster access"
        runbookctl history --id 20261017_101500_123456
    """
    if audit_id:
        detail = ctx.audit.get_execution(audit_id)
        if detail is None:
            ctx.output.print_error(f"No run recorded with id {audit_id}")
            raise click.Abort()
        ctx.output.print_data(detail if ctx.output_format != OutputFormat.TABLE else _flatten(detail))
        return

    entries = ctx.audit.get_history(runbook_name=runbook_name, limit=limit)

    if not entries:
        ctx.output.print_info("No history found")
        return

    if ctx.output_format in (OutputFormat.JSON, OutputFormat.YAML):
        ctx.output.print_data(entries)
        return

    rows = []
    for entry in entries:
        rows.append({
            "id": entry.get("audit_id", ""),
            "runbook": entry.get("runbook_name", ""),
            "mode": entry.get("mode", ""),
            "status": entry.get("status", ""),
            "failed step": entry.get("failed_step") or "",
            "duration": format_duration(entry.get("duration_seconds", 0)),
            "user": entry.get("user", ""),
        })

    ctx.output.print_data(
        rows,
        headers=["id", "runbook", "mode", "status", "failed step", "duration", "user"],
        title="History",
    )


def _flatten(detail: dict[str, Any]) -> dict[str, Any]:
    """One row per field for the table view of a single run."""
    flat = {k: v for k, v in detail.items() if k not in ("step_results", "variables", "summary")}
    for step in detail.get("step_results", []):
        flat[f"step {step['index']}"] = f"{step['status']}: {step['title']}"
    return flat
