"""Deployment coordinator: the state machine driving one attempt."""

from __future__ import annotations

import hashlib
import json
import re
import shlex
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, StrictUndefined, TemplateError

from deployctl.config import DefaultsConfig
from deployctl.core.async_utils import map_in_threads, run_sync
from deployctl.core.exceptions import (
    CommandFailure,
    DeploymentCancelled,
    HealthCheckTimeout,
    NotConfiguredError,
    RollbackFailure,
    StateError,
)
from deployctl.core.logging import get_logger
from deployctl.deploy.alerts import WebhookAlerter
from deployctl.deploy.executor import RemoteExecutor
from deployctl.deploy.health import HealthVerifier
from deployctl.deploy.models import (
    AttemptOutcome,
    DeploymentAttempt,
    DeploymentPhase,
    DeploymentTarget,
    ReleaseRecord,
    StepResult,
    StepStatus,
)
from deployctl.deploy.resolver import EnvironmentResolver
from deployctl.deploy.state import DeploymentStateStore

if TYPE_CHECKING:
    from deployctl.config import DeployCtlConfig

logger = get_logger(__name__)

StepCallback = Callable[[DeploymentAttempt, StepResult], None]
AlertCallback = Callable[[DeploymentAttempt], Any]

_template_env = Environment(undefined=StrictUndefined, autoescape=False)


def release_dirname(revision: str) -> str:
    """Filesystem-safe directory name for a revision.

    Revisions that had to be rewritten get a short hash suffix so that
    e.g. ``feature/x`` and ``feature_x`` never share a snapshot.
    """
    name = re.sub(r"[^A-Za-z0-9._-]", "_", revision).strip(".") or "unknown"
    if name != revision:
        name = f"{name}-{hashlib.sha1(revision.encode()).hexdigest()[:8]}"
    return name


def format_step_line(attempt: DeploymentAttempt, result: StepResult) -> str:
    """One structured log line per step, for CI systems to parse."""
    return (
        f"step target={attempt.target} attempt={attempt.id} name={result.name} "
        f"status={result.status.value} duration={result.duration:.2f}s "
        f"message={json.dumps(result.message)}"
    )


def format_outcome_line(attempt: DeploymentAttempt) -> str:
    """The single line summarizing a terminal attempt."""
    line = (
        f"outcome target={attempt.target} attempt={attempt.id} "
        f"result={attempt.outcome.value} revision={attempt.revision or '-'}"
    )
    if attempt.rollback_revision:
        line += f" rollback_revision={attempt.rollback_revision}"
    if attempt.alert_raised:
        line += " alert=raised"
    return f"{line} message={json.dumps(attempt.message)}"


class TargetLocks:
    """Per-target mutual exclusion for deployment attempts."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        """Block until no other attempt holds ``name``."""
        lock = self.get(name)
        if lock.locked():
            logger.info("Waiting for in-flight deployment to finish", target=name)
        with lock:
            yield


# Shared by every coordinator in the process
_target_locks = TargetLocks()


class DeploymentCoordinator:
    """Drive a deployment attempt through its states.

    resolving -> syncing -> configuring -> restarting -> health_checking
    -> succeeded, or rolling_back -> rolled_back, or failed. The coordinator
    is the only place that decides between rolling back and failing.
    """

    def __init__(
        self,
        resolver: EnvironmentResolver,
        executor: RemoteExecutor,
        verifier: HealthVerifier,
        store: DeploymentStateStore | None = None,
        defaults: DefaultsConfig | None = None,
        alert: AlertCallback | None = None,
        on_step: StepCallback | None = None,
        cancel_event: threading.Event | None = None,
        locks: TargetLocks | None = None,
    ):
        self._resolver = resolver
        self._executor = executor
        self._verifier = verifier
        self._store = store
        self._defaults = defaults or DefaultsConfig()
        self._alert = alert
        self._on_step = on_step
        self._cancel = cancel_event or threading.Event()
        self._locks = locks or _target_locks

    @classmethod
    def from_config(
        cls,
        config: DeployCtlConfig,
        dry_run: bool = False,
        on_step: StepCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DeploymentCoordinator:
        """Wire up a coordinator from loaded configuration."""
        defaults = config.defaults
        return cls(
            resolver=EnvironmentResolver.from_config(config),
            executor=RemoteExecutor(retry=defaults.retry, dry_run=dry_run),
            verifier=HealthVerifier(defaults.health),
            store=DeploymentStateStore(config.global_settings.get_state_dir()),
            defaults=defaults,
            alert=WebhookAlerter(config.alerts),
            on_step=on_step,
            cancel_event=cancel_event,
        )

    @property
    def dry_run(self) -> bool:
        return self._executor.dry_run

    def cancel(self) -> None:
        """Request cancellation. Honoured between steps, never mid-step."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # Public operations

    def deploy(
        self,
        ref: str | None,
        revision: str,
        target_name: str | None = None,
        source: str | Path | None = None,
    ) -> DeploymentAttempt:
        """Run one deployment attempt to a terminal state.

        Args:
            ref: Branch or ref to resolve, ignored when target_name is given
            revision: Source revision being deployed
            target_name: Deploy to this target directly instead of resolving a ref
            source: Local directory to sync, defaults to the target's source_dir

        Returns:
            The terminal DeploymentAttempt
        """
        attempt = DeploymentAttempt(
            target=target_name or ref or "",
            revision=revision,
            ref=ref,
            dry_run=self.dry_run,
        )
        target = self._resolve(attempt, ref, target_name)
        if target is None:
            return attempt

        with self._locks.hold(target.name):
            attempt.started_at = datetime.now(timezone.utc)
            self._run_deploy(attempt, target, source)

        return attempt

    def rollback(self, target_name: str) -> DeploymentAttempt:
        """Restore the target's last known-good release without deploying.

        Args:
            target_name: Target to roll back

        Returns:
            The terminal DeploymentAttempt
        """
        attempt = DeploymentAttempt(
            target=target_name,
            revision="",
            dry_run=self.dry_run,
            rollback_only=True,
        )
        target = self._resolve(attempt, None, target_name)
        if target is None:
            return attempt

        with self._locks.hold(target.name):
            attempt.started_at = datetime.now(timezone.utc)
            self._roll_back(attempt, target, "forced rollback requested")
            self._finish(attempt)

        return attempt

    def deploy_many(
        self,
        refs: Iterable[str],
        revision: str,
        source: str | Path | None = None,
        concurrency: int = 4,
    ) -> list[DeploymentAttempt]:
        """Deploy several refs concurrently.

        Attempts for different targets overlap; attempts that resolve to
        the same target are serialized by the per-target lock.
        """
        return run_sync(
            map_in_threads(
                lambda ref: self.deploy(ref, revision, source=source),
                list(refs),
                concurrency=max(1, concurrency),
            )
        )

    # State machine

    def _resolve(
        self,
        attempt: DeploymentAttempt,
        ref: str | None,
        target_name: str | None,
    ) -> DeploymentTarget | None:
        attempt.transition(DeploymentPhase.RESOLVING)
        try:
            if target_name:
                target = self._resolver.get(target_name)
            elif ref:
                target = self._resolver.resolve(ref)
            else:
                raise NotConfiguredError("No ref or target given")
        except NotConfiguredError as e:
            self._step(attempt, StepResult(name="resolve", status=StepStatus.FATAL_ERROR, message=e.message))
            self._fail(attempt, e.message)
            self._finish(attempt)
            return None

        attempt.target = target.name
        via = f"ref {ref}" if ref and not target_name else "target name"
        self._step(
            attempt,
            StepResult(name="resolve", status=StepStatus.OK, message=f"{via} -> {target.name}"),
        )
        return target

    def _run_deploy(
        self,
        attempt: DeploymentAttempt,
        target: DeploymentTarget,
        source: str | Path | None,
    ) -> None:
        log = logger.bind(target=target.name, attempt=attempt.id)
        log.info("Deployment started", revision=attempt.revision, dry_run=attempt.dry_run)

        # Failures before the restart leave the running service untouched
        try:
            self._check_cancelled()
            attempt.transition(DeploymentPhase.SYNCING)
            self._sync(attempt, target, source)

            self._check_cancelled()
            attempt.transition(DeploymentPhase.CONFIGURING)
            self._configure(attempt, target)

            self._check_cancelled()
        except (CommandFailure, DeploymentCancelled) as e:
            self._fail(attempt, e.message)
            self._finish(attempt)
            return

        # From here on the service may be running new code
        try:
            attempt.transition(DeploymentPhase.RESTARTING)
            self._restart(attempt, target, "restart")

            self._check_cancelled()
            attempt.transition(DeploymentPhase.HEALTH_CHECKING)
            self._health_check(attempt, target, "health_check")
        except (CommandFailure, HealthCheckTimeout, DeploymentCancelled) as e:
            self._roll_back(attempt, target, e.message)
            self._finish(attempt)
            return

        attempt.transition(DeploymentPhase.SUCCEEDED)
        attempt.outcome = AttemptOutcome.SUCCEEDED
        attempt.message = f"deployed {attempt.revision} to {target.name}"
        if not attempt.dry_run:
            self._record_release(attempt, target)
        self._finish(attempt)

    def _roll_back(self, attempt: DeploymentAttempt, target: DeploymentTarget, reason: str) -> None:
        attempt.transition(DeploymentPhase.ROLLING_BACK)
        log = logger.bind(target=target.name, attempt=attempt.id)
        log.warning("Rolling back", reason=reason)

        try:
            release = self._load_release(target)
            attempt.rollback_revision = release.revision
            if attempt.rollback_only:
                attempt.revision = release.revision

            result = self._step(
                attempt,
                self._executor.run_command(
                    target,
                    self._restore_command(target, release),
                    timeout=self._defaults.sync_timeout,
                    name="restore",
                    on_retry=self._retry_recorder(attempt),
                ),
            )
            if not result.ok:
                raise RollbackFailure(f"restore of {release.revision} failed: {result.message}", target=target.name)

            self._restart(attempt, target, "rollback_restart", revision=release.revision)
            self._health_check(attempt, target, "rollback_health_check")
        except (CommandFailure, HealthCheckTimeout, RollbackFailure) as e:
            message = f"rollback failed: {e.message}"
            if not attempt.rollback_only:
                message = f"{reason}; {message}"
            self._fail(attempt, message, alert=True)
            return

        attempt.transition(DeploymentPhase.ROLLED_BACK)
        attempt.outcome = AttemptOutcome.ROLLED_BACK
        if attempt.rollback_only:
            attempt.message = f"rolled back to {release.revision}"
        else:
            attempt.message = f"{reason}; rolled back to {release.revision}"
        log.info("Rollback completed", revision=release.revision)

    # Steps

    def _sync(self, attempt: DeploymentAttempt, target: DeploymentTarget, source: str | Path | None) -> None:
        result = self._step(
            attempt,
            self._executor.sync_files(
                target,
                source,
                timeout=self._defaults.sync_timeout,
                on_retry=self._retry_recorder(attempt),
            ),
        )
        if not result.ok:
            raise CommandFailure(f"sync failed: {result.message}", step="sync", returncode=result.returncode)

    def _configure(self, attempt: DeploymentAttempt, target: DeploymentTarget) -> None:
        settings = shlex.quote(target.settings_file)
        command = (
            f"cd {shlex.quote(target.remote_path)} && "
            f"if [ ! -f {settings} ]; then echo \"settings bundle {target.settings_file} not found\" >&2; exit 1; fi && "
            f"cp {settings} .env"
        )
        result = self._step(
            attempt,
            self._executor.run_command(
                target,
                command,
                timeout=self._defaults.command_timeout,
                name="configure",
                on_retry=self._retry_recorder(attempt),
            ),
        )
        if not result.ok:
            raise CommandFailure(f"configure failed: {result.message}", step="configure", returncode=result.returncode)

    def _restart(
        self,
        attempt: DeploymentAttempt,
        target: DeploymentTarget,
        name: str,
        revision: str | None = None,
    ) -> None:
        try:
            rendered = self._render(target.restart_command, target, attempt, revision or attempt.revision)
        except TemplateError as e:
            self._step(attempt, StepResult(name=name, status=StepStatus.FATAL_ERROR, message=f"invalid restart command: {e}"))
            raise CommandFailure(f"{name} failed: invalid restart command: {e}", step=name)

        result = self._step(
            attempt,
            self._executor.run_command(
                target,
                f"cd {shlex.quote(target.remote_path)} && {rendered}",
                timeout=self._defaults.command_timeout,
                name=name,
                on_retry=self._retry_recorder(attempt),
            ),
        )
        if not result.ok:
            raise CommandFailure(
                f"{name} failed: {result.message}",
                step=name,
                returncode=result.returncode,
                stderr=result.stderr,
            )

    def _health_check(self, attempt: DeploymentAttempt, target: DeploymentTarget, name: str) -> None:
        if attempt.dry_run:
            self._step(
                attempt,
                StepResult(name=name, status=StepStatus.OK, message=f"dry-run, would poll {target.health_url}"),
            )
            return

        report = self._verifier.check(target)
        self._step(
            attempt,
            StepResult(
                name=name,
                status=StepStatus.OK if report.healthy else StepStatus.FATAL_ERROR,
                duration=report.duration,
                message=f"{report.status.value} after {report.attempts} attempt(s): {report.detail}",
                attempts=report.attempts,
            ),
        )
        if not report.healthy:
            raise HealthCheckTimeout(
                f"{name} failed: {target.health_url} not healthy after {report.attempts} attempt(s) ({report.detail})",
                url=target.health_url,
                attempts=report.attempts,
            )

    def _record_release(self, attempt: DeploymentAttempt, target: DeploymentTarget) -> None:
        """Snapshot the live tree and point the release record at it."""
        artifact = f"{target.releases_path}/{release_dirname(attempt.revision)}"
        quoted = shlex.quote(artifact)
        snapshot = self._step(
            attempt,
            self._executor.run_command(
                target,
                f"mkdir -p {quoted} && rsync -a --delete {shlex.quote(target.remote_path)}/ {quoted}/ && touch {quoted}",
                timeout=self._defaults.sync_timeout,
                name="snapshot",
                on_retry=self._retry_recorder(attempt),
            ),
        )
        if not snapshot.ok:
            logger.warning("Snapshot failed, release record left unchanged", target=target.name)
            attempt.message += "; snapshot failed, release record not updated"
            return

        record = ReleaseRecord(
            target=target.name,
            revision=attempt.revision,
            artifact=artifact,
            attempt_id=attempt.id,
        )
        if self._store:
            try:
                self._store.save_release(record)
            except StateError as e:
                logger.error("Could not save release record", target=target.name, error=e.message)
                attempt.message += "; release record not saved"
                return

        pruned = self._step(attempt, self._prune_releases(attempt, target))
        if not pruned.ok:
            logger.warning("Pruning old releases failed", target=target.name, error=pruned.message)

    def _prune_releases(self, attempt: DeploymentAttempt, target: DeploymentTarget) -> StepResult:
        keep = self._defaults.keep_releases
        current = shlex.quote(release_dirname(attempt.revision))
        command = (
            f"cd {shlex.quote(target.releases_path)} && "
            f"ls -1t | grep -vxF {current} | tail -n +{keep} | xargs -r rm -rf --"
        )
        return self._executor.run_command(
            target,
            command,
            timeout=self._defaults.command_timeout,
            name="prune_releases",
            on_retry=self._retry_recorder(attempt),
        )

    # Helpers

    def _load_release(self, target: DeploymentTarget) -> ReleaseRecord:
        if self._store is None:
            raise RollbackFailure("no release store configured", target=target.name)
        try:
            release = self._store.load_release(target.name)
        except StateError as e:
            raise RollbackFailure(f"cannot read release record: {e.message}", target=target.name)
        if release is None:
            raise RollbackFailure(f"no previous release recorded for {target.name}", target=target.name)
        return release

    def _restore_command(self, target: DeploymentTarget, release: ReleaseRecord) -> str:
        artifact = shlex.quote(release.artifact)
        return (
            f"if [ ! -d {artifact} ]; then echo \"release artifact {release.artifact} missing\" >&2; exit 1; fi && "
            f"rsync -a --delete {artifact}/ {shlex.quote(target.remote_path)}/"
        )

    def _render(
        self,
        template: str,
        target: DeploymentTarget,
        attempt: DeploymentAttempt,
        revision: str,
    ) -> str:
        return _template_env.from_string(template).render(
            target=target,
            revision=revision,
            attempt=attempt,
        )

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise DeploymentCancelled("deployment cancelled by operator")

    def _retry_recorder(self, attempt: DeploymentAttempt) -> Callable[[StepResult], None]:
        return lambda result: self._step(attempt, result)

    def _step(self, attempt: DeploymentAttempt, result: StepResult) -> StepResult:
        attempt.record(result)
        logger.debug(format_step_line(attempt, result))
        if self._on_step:
            self._on_step(attempt, result)
        return result

    def _fail(self, attempt: DeploymentAttempt, message: str, alert: bool = False) -> None:
        attempt.transition(DeploymentPhase.FAILED)
        attempt.outcome = AttemptOutcome.FAILED
        attempt.message = message

        if not alert:
            return

        if attempt.dry_run:
            logger.warning("Dry-run, would raise alert", target=attempt.target, attempt=attempt.id, reason=message)
            return

        attempt.alert_raised = True
        logger.critical(
            "Rollback failed, manual intervention required",
            target=attempt.target,
            attempt=attempt.id,
            reason=message,
        )
        if self._alert:
            try:
                self._alert(attempt)
            except Exception as e:
                logger.warning(f"Alert callback failed: {e}")

    def _finish(self, attempt: DeploymentAttempt) -> None:
        attempt.completed_at = datetime.now(timezone.utc)
        if self._store:
            try:
                self._store.save_attempt(attempt)
            except StateError as e:
                logger.error("Could not archive attempt", attempt=attempt.id, error=e.message)
        logger.debug(format_outcome_line(attempt))
