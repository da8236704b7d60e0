"""Deploy command."""

import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager

import click
from click.core import ParameterSource

from deployctl.core.context import pass_context, DeployCtlContext
from deployctl.core.exceptions import NotConfiguredError
from deployctl.core.output import OutputFormat, format_duration
from deployctl.core.utils import get_git_revision
from deployctl.deploy.coordinator import DeploymentCoordinator, format_outcome_line, format_step_line
from deployctl.deploy.models import AttemptOutcome, DeploymentAttempt, StepResult

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_ROLLED_BACK = 3


def exit_code_for(attempt: DeploymentAttempt) -> int:
    """Map an attempt outcome to a process exit code."""
    if attempt.outcome == AttemptOutcome.SUCCEEDED:
        return EXIT_SUCCESS
    if attempt.outcome == AttemptOutcome.ROLLED_BACK:
        # A requested rollback that completed is a success
        return EXIT_SUCCESS if attempt.rollback_only else EXIT_ROLLED_BACK
    return EXIT_FAILED


def combined_exit_code(attempts: list[DeploymentAttempt]) -> int:
    """Most severe exit code across attempts: fatal beats rolled back beats success."""
    codes = {exit_code_for(a) for a in attempts}
    for code in (EXIT_FAILED, EXIT_ROLLED_BACK):
        if code in codes:
            return code
    return EXIT_SUCCESS


@contextmanager
def cancel_on_signals(cancel: threading.Event, ctx: DeployCtlContext) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request honoured between steps."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, frame: object) -> None:
        if cancel.is_set():
            return
        cancel.set()
        ctx.output.print_warning("Cancellation requested, stopping after the current step")

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@click.command("deploy")
@click.argument("refs", nargs=-1, envvar="GITHUB_REF_NAME")
@click.option("-t", "--target", "target_name", metavar="NAME", help="Deploy to a target by name instead of resolving a ref")
@click.option("-r", "--revision", envvar="GITHUB_SHA", help="Revision being deployed (default: git HEAD)")
@click.option(
    "-s",
    "--source",
    type=click.Path(exists=True, file_okay=False),
    help="Local directory to sync (default: target source_dir)",
)
@click.option("--rollback-only", is_flag=True, help="Skip deploying and restore the last good release")
@click.option("--concurrency", type=click.IntRange(min=1), default=4, show_default=True, help="Targets deployed at once")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def deploy(
    ctx: DeployCtlContext,
    refs: tuple[str, ...],
    target_name: str | None,
    revision: str | None,
    source: str | None,
    rollback_only: bool,
    concurrency: int,
    yes: bool,
) -> None:
    """Deploy one or more refs to their configured targets.

    REF is a branch name or git ref (refs/heads/main), resolved through the
    `refs` mapping in the config file. Defaults to $GITHUB_REF_NAME.

    \b
    Examples:
        deployctl deploy main
        deployctl deploy main develop --revision abc1234
        deployctl deploy --target staging
        deployctl deploy --target production --rollback-only
    """
    # $GITHUB_REF_NAME is always set in CI; an explicit --target wins over it
    source_of_refs = click.get_current_context().get_parameter_source("refs")
    if target_name and source_of_refs == ParameterSource.ENVIRONMENT:
        refs = ()

    if refs and target_name:
        raise click.UsageError("Pass either REF arguments or --target, not both")
    if not refs and not target_name:
        raise click.UsageError("Pass a REF argument or --target")

    if not rollback_only:
        revision = revision or get_git_revision(source or ctx.config.defaults.source_dir)
        if not revision:
            raise click.UsageError("Cannot determine the revision, pass --revision")

    action = "roll back" if rollback_only else "deploy"
    subjects = target_name or ", ".join(refs)
    ctx.log_dry_run(action, {"refs": subjects, "revision": revision or "last release"})

    if ctx.config.global_settings.confirm_destructive and not yes:
        if not ctx.confirm(f"{action.capitalize()} {subjects}?"):
            ctx.output.print_info("Cancelled")
            return

    def on_step(attempt: DeploymentAttempt, result: StepResult) -> None:
        ctx.output.emit(format_step_line(attempt, result))

    cancel = threading.Event()
    coordinator = DeploymentCoordinator.from_config(
        ctx.config,
        dry_run=ctx.dry_run,
        on_step=on_step,
        cancel_event=cancel,
    )

    with cancel_on_signals(cancel, ctx):
        if rollback_only:
            attempts = [coordinator.rollback(name) for name in _rollback_targets(ctx, refs, target_name)]
        elif target_name:
            attempts = [coordinator.deploy(None, revision, target_name=target_name, source=source)]
        else:
            attempts = coordinator.deploy_many(refs, revision, source=source, concurrency=concurrency)

    for attempt in attempts:
        ctx.output.emit(format_outcome_line(attempt))

    _print_summary(ctx, attempts)
    sys.exit(combined_exit_code(attempts))


def _rollback_targets(ctx: DeployCtlContext, refs: tuple[str, ...], target_name: str | None) -> list[str]:
    if target_name:
        return [target_name]

    names: list[str] = []
    for ref in refs:
        try:
            name = ctx.resolver.resolve(ref).name
        except NotConfiguredError as e:
            ctx.output.print_error(e.message)
            sys.exit(EXIT_FAILED)
        if name not in names:
            names.append(name)
    return names


def _print_summary(ctx: DeployCtlContext, attempts: list[DeploymentAttempt]) -> None:
    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data([a.to_dict() for a in attempts])
        return

    for attempt in attempts:
        if attempt.outcome == AttemptOutcome.SUCCEEDED:
            ctx.output.print_success(f"{attempt.target}: {attempt.message}")
        elif attempt.outcome == AttemptOutcome.ROLLED_BACK:
            ctx.output.print_warning(f"{attempt.target}: {attempt.message}")
        else:
            ctx.output.print_error(f"{attempt.target}: {attempt.message}")

    rows = [
        {
            "target": a.target,
            "attempt": a.id,
            "outcome": a.outcome.value,
            "revision": a.revision or "-",
            "steps": len(a.steps),
            "duration": format_duration(a.duration_seconds),
        }
        for a in attempts
    ]
    if not ctx.quiet:
        ctx.output.print_data(rows, title="Deployments")
