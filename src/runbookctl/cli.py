"""Main CLI entry point for runbookctl."""

import sys
from typing import Any

import click
from rich.console import Console
from rich.markup import escape

from runbookctl import __version__
from runbookctl.config import load_config
from runbookctl.core.context import RunbookctlContext, resolve_color
from runbookctl.core.output import OutputFormat
from runbookctl.core.exceptions import RunbookctlError, ConfigError


CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"runbookctl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-p",
    "--profile",
    metavar="NAME",
    envvar="RUNBOOKCTL_PROFILE",
    help="Configuration profile to use",
)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vvv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would run without running anything",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="RUNBOOKCTL_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    profile: str | None,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """runbookctl - print or execute setup runbooks step by step.

    A runbook is an ordered list of titled steps, each a shell command or a
    file edit to make by hand. Steps run strictly in order and the first
    failure stops the run.

    \b
    Examples:
        runbookctl list --builtin
        runbookctl show builtin:hpc-cluster-access --var user=alice
        runbookctl --dry-run run setup.md
        runbookctl run setup.md --var env_name=sim

    \b
    Configuration:
        ~/.runbookctl/config.yaml    User configuration
        ./runbookctl.yaml            Project configuration
        RUNBOOKCTL_*                 Environment variables
    """
    try:
        config = load_config(config_file, profile)

        ctx.obj = RunbookctlContext(
            config=config,
            profile=profile,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            dry_run=dry_run,
            color=resolve_color(config.global_settings.color, no_color),
        )

        if ctx.obj.dry_run and not quiet:
            ctx.obj.output.print_warning("Dry-run mode enabled - nothing will be executed")

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}", highlight=False)
        sys.exit(1)


def register_commands() -> None:
    """Register all commands."""
    from runbookctl.commands.runbooks import show, run, validate, list_runbooks, history

    cli.add_command(show)
    cli.add_command(run)
    cli.add_command(validate)
    cli.add_command(list_runbooks)
    cli.add_command(history)


register_commands()


@cli.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Show current configuration."""
    runbookctl_ctx: RunbookctlContext = ctx.obj
    settings = runbookctl_ctx.config.global_settings
    config_data = {
        "profile": runbookctl_ctx.profile_name,
        "output_format": runbookctl_ctx.output_format.value,
        "dry_run": runbookctl_ctx.dry_run,
        "verbose": runbookctl_ctx.verbose,
        "shell": settings.shell,
        "timeout": settings.timeout,
        "runbook_dirs": settings.runbook_dirs,
        "audit_dir": str(settings.get_audit_dir()),
        "variables": runbookctl_ctx.profile.variables,
    }
    runbookctl_ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except RunbookctlError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False)
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
