"""Main CLI entry point for deployctl."""

import sys
from typing import Any

import click
from rich.console import Console

from deployctl import __version__
from deployctl.config import load_config
from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.output import OutputFormat
from deployctl.core.exceptions import DeployCtlError, ConfigError


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
    console = Console()
    console.print(f"deployctl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
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
    help="Increase verbosity (-v for info, -vv for debug)",
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
    envvar="DEPLOYCTL_DRY_RUN",
    help="Show what would happen without making changes",
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
    type=click.Path(exists=True, dir_okay=False),
    metavar="FILE",
    envvar="DEPLOYCTL_CONFIG",
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
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """DeployCtl - environment-aware deployment orchestrator.

    Resolves a branch to a deployment target, syncs the tree to the
    remote host, activates the target's settings, restarts the service,
    verifies health and rolls back to the last good release on failure.

    \b
    Examples:
        deployctl deploy main
        deployctl deploy --target staging --revision abc1234
        deployctl deploy --target production --rollback-only
        deployctl resolve refs/heads/develop
        deployctl history --target production

    \b
    Configuration:
        ~/.deployctl/config.yaml    User configuration
        ./deployctl.yaml            Project configuration
        DEPLOYCTL_*                 Environment variables

    \b
    Exit codes:
        0  deployment succeeded
        1  deployment failed (fatal)
        3  deployment failed, rollback succeeded
    """
    try:
        config = load_config(config_file)

        ctx.obj = DeployCtlContext(
            config=config,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            dry_run=dry_run,
            color=False if no_color else None,
        )

        if ctx.obj.dry_run and not quiet:
            ctx.obj.output.print_warning("Dry-run mode enabled - no changes will be made")

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def register_commands() -> None:
    """Register all commands."""
    from deployctl.commands.deploy import deploy
    from deployctl.commands.targets import history, prune, release, resolve, targets

    cli.add_command(deploy)
    cli.add_command(resolve)
    cli.add_command(targets)
    cli.add_command(release)
    cli.add_command(history)
    cli.add_command(prune)


register_commands()


@cli.command()
@pass_context
def config(ctx: DeployCtlContext) -> None:
    """Show current configuration."""
    settings = ctx.config.global_settings
    config_data = {
        "output_format": ctx.output_format.value,
        "dry_run": ctx.dry_run,
        "verbose": ctx.verbose,
        "state_dir": str(settings.get_state_dir()),
        "refs": ctx.config.refs,
        "targets": sorted(ctx.config.targets),
        "restart_command": ctx.config.defaults.restart_command,
        "retry": ctx.config.defaults.retry.model_dump(),
        "health": ctx.config.defaults.health.model_dump(),
        "has_alert_webhook": bool(ctx.config.alerts.get_webhook_url()),
    }
    ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except DeployCtlError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
