"""Deployment state persistence: release records and archived attempts."""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from deployctl.core.exceptions import StateError
from deployctl.core.logging import get_logger
from deployctl.core.utils import get_state_dir
from deployctl.deploy.models import AttemptOutcome, DeploymentAttempt, ReleaseRecord

logger = get_logger(__name__)


class DeploymentStateStore:
    """Store release pointers and finished attempts as JSON files."""

    def __init__(self, state_dir: str | Path | None = None):
        """Initialize the state store.

        Args:
            state_dir: Root directory for state, defaults to ~/.deployctl
        """
        root = get_state_dir(state_dir)
        self._releases_dir = root / "releases"
        self._attempts_dir = root / "attempts"
        self._releases_dir.mkdir(parents=True, exist_ok=True)
        self._attempts_dir.mkdir(parents=True, exist_ok=True)

    def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        # Write-then-rename so readers never see a partial file
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def save_release(self, record: ReleaseRecord) -> None:
        """Persist the release pointer for a target.

        Args:
            record: Release to store as the target's known-good revision
        """
        path = self._releases_dir / f"{record.target}.json"
        try:
            self._write_json(path, record.to_dict())
        except OSError as e:
            raise StateError(f"Failed to save release record: {e}", details={"target": record.target})

        logger.debug("Saved release record", target=record.target, revision=record.revision)

    def load_release(self, target: str) -> ReleaseRecord | None:
        """Load the release pointer for a target.

        Args:
            target: Target name

        Returns:
            The last successful release, or None if the target never succeeded
        """
        path = self._releases_dir / f"{target}.json"
        if not path.exists():
            return None

        try:
            with open(path) as f:
                return ReleaseRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise StateError(f"Failed to load release record: {e}", details={"target": target})

    def save_attempt(self, attempt: DeploymentAttempt) -> None:
        """Archive an attempt."""
        path = self._attempts_dir / f"{attempt.id}.json"
        try:
            self._write_json(path, attempt.to_dict())
        except OSError as e:
            raise StateError(f"Failed to save attempt: {e}", details={"attempt": attempt.id})

        logger.debug("Archived attempt", id=attempt.id, outcome=attempt.outcome.value)

    def load_attempt(self, attempt_id: str) -> DeploymentAttempt:
        """Load an archived attempt by ID."""
        path = self._attempts_dir / f"{attempt_id}.json"
        if not path.exists():
            raise StateError(f"Attempt not found: {attempt_id}")

        try:
            with open(path) as f:
                return DeploymentAttempt.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise StateError(f"Failed to load attempt {attempt_id}: {e}")

    def list_attempts(
        self,
        target: str | None = None,
        outcome: AttemptOutcome | None = None,
        limit: int = 50,
    ) -> list[DeploymentAttempt]:
        """List archived attempts, newest first.

        Args:
            target: Filter by target name
            outcome: Filter by outcome
            limit: Maximum attempts to return

        Returns:
            List of DeploymentAttempts
        """
        attempts: list[DeploymentAttempt] = []

        for path in self._attempts_dir.glob("*.json"):
            try:
                with open(path) as f:
                    attempt = DeploymentAttempt.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable attempt {path.name}: {e}")
                continue

            if target and attempt.target != target:
                continue
            if outcome and attempt.outcome != outcome:
                continue

            attempts.append(attempt)

        attempts.sort(key=lambda a: a.started_at, reverse=True)
        return attempts[:limit]

    def cleanup_old(self, days: int = 30) -> int:
        """Remove archived attempts older than ``days``.

        Returns:
            Number of attempts removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        removed = 0

        for attempt in self.list_attempts(limit=10_000):
            if attempt.started_at < cutoff:
                (self._attempts_dir / f"{attempt.id}.json").unlink(missing_ok=True)
                removed += 1

        if removed > 0:
            logger.info(f"Cleaned up {removed} old attempts")

        return removed
