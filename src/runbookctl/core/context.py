"""Click context object for sharing state across commands."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import click

from runbookctl.config import RunbookctlConfig, ProfileConfig, get_default_config
from runbookctl.core.output import OutputFormat, OutputFormatter
from runbookctl.core.logging import level_for, setup_logging, StructuredLogger

if TYPE_CHECKING:
    from runbookctl.runbooks.audit import RunbookAuditLogger

def resolve_color(setting: str, no_color: bool) -> bool:
    """Combine the configured color mode with the --no-color flag."""
    if no_color or setting == "never":
        return False
    if setting == "always":
        return True
    return sys.stdout.isatty()

class RunbookctlContext:
    """Shared context object for runbookctl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, output and the audit trail.
    """

    def __init__(
        self,
        config: RunbookctlConfig | None = None,
        profile: str | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool = True,
    ):
        # Load or use provided config
        self._config = config or get_default_config()
        self._profile_name = profile or "default"

        # Output settings (CLI overrides config)
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run or self._config.global_settings.dry_run
        self._color = color

        log_level = level_for(verbose, quiet, self._config.global_settings.verbosity)
        setup_logging(log_level, rich_output=color)
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=color,
            quiet=quiet,
        )

        self._audit: RunbookAuditLogger | None = None

    @property
    def config(self) -> RunbookctlConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def profile(self) -> ProfileConfig:
        """Get the current profile configuration."""
        return self._config.get_profile(self._profile_name)

    @property
    def profile_name(self) -> str:
        """Get the current profile name."""
        return self._profile_name

    @property
    def output(self) -> OutputFormatter:
        """Get the output formatter."""
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        """Get the output format."""
        return self._output_format

    @property
    def dry_run(self) -> bool:
        """Check if dry-run mode is enabled."""
        return self._dry_run

    @property
    def verbose(self) -> int:
        """Get verbosity level."""
        return self._verbose

    @property
    def quiet(self) -> bool:
        """Check if quiet mode is enabled."""
        return self._quiet

    @property
    def color(self) -> bool:
        """Check if color output is enabled."""
        return self._color

    @property
    def logger(self) -> StructuredLogger:
        """Get the context logger."""
        return self._logger

    @property
    def audit(self) -> "RunbookAuditLogger":
        """Get or create the run audit logger."""
        if self._audit is None:
            from runbookctl.runbooks.audit import RunbookAuditLogger

            settings = self._config.global_settings
            self._audit = RunbookAuditLogger(
                log_dir=settings.get_audit_dir(),
                max_logs=settings.max_audit_logs,
            )
        return self._audit

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for user confirmation."""
        return self._output.confirm(message, default)


# Click decorator for passing context
pass_context = click.make_pass_decorator(RunbookctlContext, ensure=True)
