"""Click context object for sharing state across commands."""

from __future__ import annotations

import sys
from typing import Any

import click
from rich.markup import escape

from deployctl.config import DeployCtlConfig, get_default_config
from deployctl.core.output import OutputFormat, OutputFormatter
from deployctl.core.logging import LogLevel, setup_logging, StructuredLogger
from deployctl.deploy.resolver import EnvironmentResolver
from deployctl.deploy.state import DeploymentStateStore


class DeployCtlContext:
    """Shared context object for deployctl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, the resolver, the state store and output.
    """

    def __init__(
        self,
        config: DeployCtlConfig | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool | None = None,
    ):
        self._config = config or get_default_config()
        settings = self._config.global_settings

        # CLI overrides config
        self._output_format = output_format or settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run or settings.dry_run
        if color is None:
            color = {"always": True, "never": False}.get(settings.color, sys.stdout.isatty())
        self._color = color

        if verbose >= 2:
            log_level = LogLevel.DEBUG
        elif verbose == 1:
            log_level = LogLevel.INFO
        elif quiet:
            log_level = LogLevel.ERROR
        else:
            log_level = settings.verbosity

        setup_logging(log_level, rich_output=color)
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=color,
            quiet=quiet,
        )

        # Lazy-loaded collaborators
        self._resolver: EnvironmentResolver | None = None
        self._store: DeploymentStateStore | None = None

    @property
    def config(self) -> DeployCtlConfig:
        """Get the loaded configuration."""
        return self._config

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
    def resolver(self) -> EnvironmentResolver:
        """Get or create the environment resolver."""
        if self._resolver is None:
            self._resolver = EnvironmentResolver.from_config(self._config)
        return self._resolver

    @property
    def store(self) -> DeploymentStateStore:
        """Get or create the deployment state store."""
        if self._store is None:
            self._store = DeploymentStateStore(self._config.global_settings.get_state_dir())
        return self._store

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for user confirmation.

        In dry-run mode, always returns True without prompting.
        """
        if self._dry_run:
            self._output.print(f"[dim]{escape(f'[dry-run] Would prompt: {message}')}[/dim]")
            return True
        return self._output.confirm(message, default)

    def log_dry_run(self, action: str, details: dict[str, Any] | None = None) -> None:
        """Log a dry-run action."""
        if self._dry_run:
            msg = f"[dry-run] {action}"
            if details:
                detail_str = ", ".join(f"{k}={v}" for k, v in details.items())
                msg = f"{msg} ({detail_str})"
            self._output.print(f"[dim]{escape(msg)}[/dim]")


# Click decorator for passing context
pass_context = click.make_pass_decorator(DeployCtlContext, ensure=True)
