"""Map git refs to deployment targets."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

from deployctl.core.exceptions import NotConfiguredError
from deployctl.core.utils import normalize_ref
from deployctl.deploy.models import DeploymentTarget

if TYPE_CHECKING:
    from deployctl.config import DeployCtlConfig


class EnvironmentResolver:
    """Resolve refs against a static ref -> target mapping.

    Unknown refs raise NotConfiguredError instead of falling back to a
    default target, so an arbitrary branch can never trigger a deploy.
    """

    def __init__(
        self,
        refs: Mapping[str, str],
        targets: Mapping[str, DeploymentTarget],
    ):
        self._refs = {normalize_ref(ref): name for ref, name in refs.items()}
        self._targets = dict(targets)

    @classmethod
    def from_config(cls, config: DeployCtlConfig) -> EnvironmentResolver:
        """Build a resolver from loaded configuration."""
        return cls(config.refs, config.build_targets())

    def resolve(self, ref: str) -> DeploymentTarget:
        """Resolve a branch or ref to its deployment target.

        Args:
            ref: Branch name or fully-qualified ref (refs/heads/main)

        Returns:
            The mapped DeploymentTarget

        Raises:
            NotConfiguredError: If no target is mapped to the ref
        """
        branch = normalize_ref(ref)
        name = self._refs.get(branch)
        if name is None:
            raise NotConfiguredError(f"No deployment target configured for ref '{branch}'", ref=branch)
        return self.get(name)

    def get(self, name: str) -> DeploymentTarget:
        """Look up a target by name."""
        try:
            return self._targets[name]
        except KeyError:
            raise NotConfiguredError(f"Target '{name}' is not configured", ref=name) from None

    def targets(self) -> list[DeploymentTarget]:
        return list(self._targets.values())

    def refs_for(self, name: str) -> list[str]:
        return sorted(ref for ref, target in self._refs.items() if target == name)
