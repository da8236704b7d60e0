"""Remote command execution and file sync over ssh/rsync."""

import shlex
import subprocess
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from deployctl.config import RetryConfig
from deployctl.core.exceptions import TransientTransportError
from deployctl.core.logging import get_logger
from deployctl.core.utils import backoff_delay, truncate_string
from deployctl.deploy.models import DeploymentTarget, StepResult, StepStatus

logger = get_logger(__name__)

RetryCallback = Callable[[StepResult], None]

# ssh reports its own connection failures as 255
SSH_TRANSIENT_EXITS = frozenset({255})

# rsync: 5 protocol startup, 10 socket I/O, 12 stream error,
# 30 data timeout, 35 connect timeout, 255 ssh transport
RSYNC_TRANSIENT_EXITS = frozenset({5, 10, 12, 30, 35, 255})


class RemoteExecutor:
    """Run commands on and sync files to a target host.

    Transient transport failures are retried with exponential backoff up
    to ``retry.max_attempts``. Non-zero command exits are returned as
    fatal StepResults with the captured output and are never retried.
    """

    def __init__(
        self,
        retry: RetryConfig | None = None,
        dry_run: bool = False,
        connect_timeout: int = 10,
    ):
        self._retry = retry or RetryConfig()
        self._dry_run = dry_run
        self._connect_timeout = connect_timeout

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def _ssh_options(self, target: DeploymentTarget) -> list[str]:
        options = [
            "-p",
            str(target.ssh_port),
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self._connect_timeout}",
            "-o",
            "StrictHostKeyChecking=accept-new",
        ]
        if target.identity_file:
            options.extend(["-i", str(Path(target.identity_file).expanduser())])
        return options

    def ssh_command(self, target: DeploymentTarget, command: str) -> list[str]:
        """Build the argv that runs ``command`` on the target host."""
        return ["ssh", *self._ssh_options(target), target.ssh_destination, command]

    def rsync_command(
        self,
        target: DeploymentTarget,
        source: str | Path,
        exclude: Iterable[str] = (),
    ) -> list[str]:
        """Build the argv that mirrors ``source`` into the target path."""
        remote_path = target.remote_path
        argv = ["rsync", "-az", "--delete"]
        for pattern in exclude:
            argv.append(f"--exclude={pattern}")
        argv.extend(
            [
                "-e",
                shlex.join(["ssh", *self._ssh_options(target)]),
                f"--rsync-path=mkdir -p {shlex.quote(remote_path)} && rsync",
                f"{str(source).rstrip('/')}/",
                f"{target.ssh_destination}:{remote_path}/",
            ]
        )
        return argv

    def run_command(
        self,
        target: DeploymentTarget,
        command: str,
        timeout: float = 600,
        name: str = "command",
        on_retry: RetryCallback | None = None,
    ) -> StepResult:
        """Run a shell command on the target host.

        Args:
            target: Target whose host runs the command
            command: Shell command line, executed by the remote login shell
            timeout: Seconds before the attempt is treated as a transport error
            name: Step name recorded on the result
            on_retry: Called with each retryable failure before backing off

        Returns:
            StepResult with captured output
        """
        argv = self.ssh_command(target, command)
        return self._execute(name, argv, timeout, target.hostname, SSH_TRANSIENT_EXITS, on_retry)

    def sync_files(
        self,
        target: DeploymentTarget,
        source: str | Path | None = None,
        exclude: Iterable[str] | None = None,
        timeout: float = 300,
        name: str = "sync",
        on_retry: RetryCallback | None = None,
    ) -> StepResult:
        """Mirror a local directory into the target path.

        Re-running with the same source converges to the same remote tree;
        files removed locally are removed remotely, excluded paths are left
        untouched.

        Args:
            target: Target to sync to
            source: Local directory, defaults to the target's source_dir
            exclude: rsync exclude patterns, defaults to the target's exclude list
            timeout: Seconds before the attempt is treated as a transport error
            name: Step name recorded on the result
            on_retry: Called with each retryable failure before backing off

        Returns:
            StepResult for the sync
        """
        source_path = Path(source if source is not None else target.source_dir)
        patterns = list(exclude if exclude is not None else target.exclude)

        if not self._dry_run and not source_path.is_dir():
            return StepResult(
                name=name,
                status=StepStatus.FATAL_ERROR,
                message=f"Source directory not found: {source_path}",
            )

        argv = self.rsync_command(target, source_path, patterns)
        return self._execute(name, argv, timeout, target.hostname, RSYNC_TRANSIENT_EXITS, on_retry)

    def _execute(
        self,
        name: str,
        argv: list[str],
        timeout: float,
        host: str,
        transient_exits: frozenset[int],
        on_retry: RetryCallback | None,
    ) -> StepResult:
        """Run ``argv`` with the retry policy applied."""
        if self._dry_run:
            return StepResult(
                name=name,
                status=StepStatus.OK,
                message=f"dry-run, would run: {shlex.join(argv)}",
            )

        started = time.monotonic()
        max_attempts = self._retry.max_attempts

        for attempt in range(1, max_attempts + 1):
            attempt_started = time.monotonic()
            try:
                proc = self._run_once(argv, timeout, host, transient_exits)
            except TransientTransportError as e:
                if attempt >= max_attempts:
                    logger.error("Giving up after transport errors", step=name, host=host, attempts=attempt)
                    return StepResult(
                        name=name,
                        status=StepStatus.FATAL_ERROR,
                        duration=time.monotonic() - started,
                        message=f"{e.message} (gave up after {attempt} attempts)",
                        stdout=e.details.get("stdout"),
                        stderr=e.details.get("stderr"),
                        returncode=e.returncode,
                        attempts=attempt,
                    )

                delay = backoff_delay(
                    attempt - 1,
                    self._retry.initial_delay,
                    self._retry.backoff_factor,
                    self._retry.max_delay,
                )
                retry_result = StepResult(
                    name=name,
                    status=StepStatus.RETRYABLE_ERROR,
                    duration=time.monotonic() - attempt_started,
                    message=f"{e.message}, retrying in {delay:.1f}s",
                    stderr=e.details.get("stderr"),
                    returncode=e.returncode,
                    attempts=attempt,
                )
                logger.warning("Transport error, retrying", step=name, host=host, attempt=attempt, delay=delay)
                if on_retry:
                    on_retry(retry_result)
                time.sleep(delay)
                continue
            except OSError as e:
                # ssh/rsync missing or not executable
                return StepResult(
                    name=name,
                    status=StepStatus.FATAL_ERROR,
                    duration=time.monotonic() - started,
                    message=f"Cannot run {argv[0]}: {e}",
                    attempts=attempt,
                )

            duration = time.monotonic() - started
            if proc.returncode == 0:
                return StepResult(
                    name=name,
                    status=StepStatus.OK,
                    duration=duration,
                    message="completed",
                    stdout=proc.stdout,
                    stderr=proc.stderr,
                    returncode=0,
                    attempts=attempt,
                )

            detail = (proc.stderr or proc.stdout or "").strip().splitlines()
            summary = truncate_string(detail[-1], 200) if detail else "no output"
            return StepResult(
                name=name,
                status=StepStatus.FATAL_ERROR,
                duration=duration,
                message=f"exit code {proc.returncode}: {summary}",
                stdout=proc.stdout,
                stderr=proc.stderr,
                returncode=proc.returncode,
                attempts=attempt,
            )

        raise AssertionError("retry loop exited without a result")

    def _run_once(
        self,
        argv: list[str],
        timeout: float,
        host: str,
        transient_exits: frozenset[int],
    ) -> subprocess.CompletedProcess:
        """Run ``argv`` once, raising TransientTransportError for network failures."""
        logger.debug("Executing", host=host, argv=shlex.join(argv))

        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientTransportError(
                f"Timed out after {timeout}s",
                host=host,
                details={"stdout": _decode(e.stdout), "stderr": _decode(e.stderr)},
            )

        if proc.returncode in transient_exits:
            raise TransientTransportError(
                f"Transport error talking to {host} (exit {proc.returncode})",
                host=host,
                returncode=proc.returncode,
                details={"stdout": proc.stdout, "stderr": proc.stderr},
            )

        return proc


def _decode(output: str | bytes | None) -> str | None:
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output
