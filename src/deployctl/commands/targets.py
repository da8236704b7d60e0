"""Commands for inspecting targets, releases and deployment history."""

import sys

import click

from deployctl.core.context import pass_context, DeployCtlContext
from deployctl.core.exceptions import NotConfiguredError, StateError
from deployctl.core.output import OutputFormat, format_duration
from deployctl.deploy.models import AttemptOutcome


@click.command("resolve")
@click.argument("ref")
@pass_context
def resolve(ctx: DeployCtlContext, ref: str) -> None:
    """Show which target a ref deploys to.

    Exits 1 when the ref is not mapped to any target.

    \b
    Examples:
        deployctl resolve main
        deployctl resolve refs/heads/develop
    """
    try:
        target = ctx.resolver.resolve(ref)
    except NotConfiguredError as e:
        ctx.output.print_error(e.message)
        sys.exit(1)

    if ctx.output_format == OutputFormat.RAW:
        ctx.output.emit(target.name)
        return

    ctx.output.print_data({"ref": ref, **target.to_dict()}, title=f"Target for {ref}")


@click.command("targets")
@pass_context
def targets(ctx: DeployCtlContext) -> None:
    """List configured deployment targets.

    \b
    Examples:
        deployctl targets
        deployctl -o json targets
    """
    resolver = ctx.resolver
    items = resolver.targets()
    if not items:
        ctx.output.print_info("No targets configured")
        return

    rows = []
    for target in items:
        rows.append({
            "name": target.name,
            "refs": ", ".join(resolver.refs_for(target.name)) or "-",
            "host": target.ssh_destination,
            "path": target.path,
            "port": target.port,
            "health_url": target.health_url,
        })

    ctx.output.print_data(rows, title="Targets")


@click.command("release")
@click.argument("target_name", metavar="TARGET")
@pass_context
def release(ctx: DeployCtlContext, target_name: str) -> None:
    """Show the last known-good release of a target.

    \b
    Examples:
        deployctl release production
    """
    try:
        ctx.resolver.get(target_name)
        record = ctx.store.load_release(target_name)
    except (NotConfiguredError, StateError) as e:
        ctx.output.print_error(e.message)
        sys.exit(1)

    if record is None:
        ctx.output.print_info(f"No release recorded for {target_name}")
        return

    ctx.output.print_data(record.to_dict(), title=f"Release: {target_name}")


@click.command("history")
@click.option("-t", "--target", "target_name", help="Filter by target")
@click.option(
    "--outcome",
    type=click.Choice([o.value for o in AttemptOutcome if o != AttemptOutcome.PENDING]),
    help="Filter by outcome",
)
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True, help="Max results")
@click.option("--steps", "attempt_id", metavar="ATTEMPT", help="Show the step log of one attempt")
@pass_context
def history(
    ctx: DeployCtlContext,
    target_name: str | None,
    outcome: str | None,
    limit: int,
    attempt_id: str | None,
) -> None:
    """List archived deployment attempts, newest first.

    \b
    Examples:
        deployctl history
        deployctl history --target production --outcome rolled_back
        deployctl history --steps 1a2b3c4d
    """
    store = ctx.store

    if attempt_id:
        try:
            attempt = store.load_attempt(attempt_id)
        except StateError as e:
            ctx.output.print_error(e.message)
            sys.exit(1)

        if ctx.output_format != OutputFormat.TABLE:
            ctx.output.print_data(attempt.to_dict())
            return

        rows = [
            {
                "step": s.name,
                "status": s.status.value,
                "duration": f"{s.duration:.2f}s",
                "message": s.message,
            }
            for s in attempt.steps
        ]
        ctx.output.print_data(rows, title=f"Attempt {attempt.id} ({attempt.target}, {attempt.outcome.value})")
        return

    attempts = store.list_attempts(
        target=target_name,
        outcome=AttemptOutcome(outcome) if outcome else None,
        limit=limit,
    )
    if not attempts:
        ctx.output.print_info("No deployments found")
        return

    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data([a.to_dict() for a in attempts])
        return

    rows = []
    for attempt in attempts:
        rows.append({
            "id": attempt.id,
            "target": attempt.target,
            "revision": attempt.revision or "-",
            "outcome": attempt.outcome.value,
            "rollback_to": attempt.rollback_revision or "-",
            "duration": format_duration(attempt.duration_seconds),
            "started": attempt.started_at.strftime("%Y-%m-%d %H:%M"),
        })

    ctx.output.print_data(rows, title="Deployments")


@click.command("prune")
@click.option("--days", type=click.IntRange(min=0), default=30, show_default=True, help="Keep attempts newer than this")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def prune(ctx: DeployCtlContext, days: int, yes: bool) -> None:
    """Delete archived attempts older than --days.

    Release records are never pruned.

    \b
    Examples:
        deployctl prune --days 90
    """
    if ctx.dry_run:
        ctx.log_dry_run("prune attempts", {"days": days})
        return

    if not yes and not ctx.confirm(f"Delete attempts older than {days} days?"):
        ctx.output.print_info("Cancelled")
        return

    removed = ctx.store.cleanup_old(days)
    ctx.output.print_success(f"Removed {removed} attempt(s)")
