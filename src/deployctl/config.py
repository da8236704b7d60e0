"""Configuration management for deployctl using Pydantic."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployctl.core.exceptions import ConfigError, NotConfiguredError
from deployctl.core.logging import LogLevel, get_logger
from deployctl.core.output import OutputFormat
from deployctl.core.utils import get_state_dir, merge_dicts
from deployctl.deploy.models import DeploymentTarget

logger = get_logger(__name__)


class RuntimeSettings(BaseSettings):
    """Overrides read from DEPLOYCTL_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="DEPLOYCTL_", extra="ignore")

    state_dir: str | None = None
    alert_webhook: str | None = None
    ssh_identity: str | None = None


class RetryConfig(BaseModel):
    """Retry policy for transient transport failures."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=2.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)


class HealthConfig(BaseModel):
    """Health check polling policy."""

    attempts: int = Field(default=10, ge=1)
    interval: float = Field(default=3.0, ge=0)
    timeout: float = Field(default=5.0, gt=0)
    initial_delay: float = Field(default=0.0, ge=0)
    backoff_factor: float = Field(default=1.5, ge=1)
    max_interval: float = Field(default=30.0, ge=0)
    expect_status: str | None = None


class DefaultsConfig(BaseModel):
    """Settings shared by every target unless the target overrides them."""

    source_dir: str = "."
    exclude: list[str] = Field(default_factory=lambda: [".git", ".github", "node_modules", ".env"])
    restart_command: str = "docker compose up -d --build"
    command_timeout: int = Field(default=600, gt=0)
    sync_timeout: int = Field(default=300, gt=0)
    keep_releases: int = Field(default=5, ge=1)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)


class TargetConfig(BaseModel):
    """A deployment target as written in the config file."""

    host: str
    path: str
    port: int = Field(ge=1, le=65535)
    health_url: str
    user: str | None = None
    ssh_port: int = Field(default=22, ge=1, le=65535)
    identity_file: str | None = None
    env_file: str | None = None
    restart_command: str | None = None
    source_dir: str | None = None
    exclude: list[str] | None = None

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("path must be absolute")
        if v.rstrip("/") == "":
            raise ValueError("path must not be the filesystem root")
        return v

    @field_validator("health_url")
    @classmethod
    def validate_health_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("health_url must be an http(s) URL")
        return v

    def get_identity_file(self) -> str | None:
        """Get SSH identity file from environment or config."""
        return RuntimeSettings().ssh_identity or self.identity_file


class AlertConfig(BaseModel):
    """Alerting for deployments that need manual intervention."""

    webhook_url: str | None = None
    timeout: int = 10

    def get_webhook_url(self) -> str | None:
        """Get webhook URL from environment or config."""
        url = self.webhook_url
        if url == "from_env" or url is None:
            url = RuntimeSettings().alert_webhook
        return url


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.INFO
    dry_run: bool = False
    confirm_destructive: bool = False
    state_dir: str | None = None

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v

    def get_state_dir(self) -> Path:
        """Get state directory from environment or config."""
        return get_state_dir(RuntimeSettings().state_dir or self.state_dir)


class DeployCtlConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    refs: dict[str, str] = Field(default_factory=dict)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    targets: dict[str, TargetConfig] = Field(default_factory=dict)
    alerts: AlertConfig = Field(default_factory=AlertConfig)

    @model_validator(mode="after")
    def validate_targets(self) -> "DeployCtlConfig":
        for ref, target in self.refs.items():
            if target not in self.targets:
                raise ValueError(f"ref '{ref}' maps to unknown target '{target}'")

        seen_paths: dict[tuple[str, str], str] = {}
        seen_ports: dict[tuple[str, int], str] = {}
        for name, target in self.targets.items():
            host = target.host.split("@", 1)[-1]
            key = (host, target.path.rstrip("/"))
            if key in seen_paths:
                raise ValueError(
                    f"targets '{seen_paths[key]}' and '{name}' share path {target.path} on {host}"
                )
            seen_paths[key] = name

            port_key = (host, target.port)
            if port_key in seen_ports:
                logger.warning(
                    "Targets share a port on the same host",
                    host=host,
                    port=target.port,
                    targets=f"{seen_ports[port_key]},{name}",
                )
            seen_ports[port_key] = name

        return self

    def build_target(self, name: str) -> DeploymentTarget:
        """Build the immutable runtime target for ``name``."""
        if name not in self.targets:
            raise NotConfiguredError(f"Target '{name}' is not configured", ref=name)

        cfg = self.targets[name]
        defaults = self.defaults
        exclude = cfg.exclude if cfg.exclude is not None else defaults.exclude

        return DeploymentTarget(
            name=name,
            host=cfg.host,
            path=cfg.path,
            port=cfg.port,
            health_url=cfg.health_url,
            user=cfg.user,
            ssh_port=cfg.ssh_port,
            identity_file=cfg.get_identity_file(),
            env_file=cfg.env_file,
            restart_command=cfg.restart_command or defaults.restart_command,
            source_dir=cfg.source_dir or defaults.source_dir,
            exclude=tuple(exclude),
        )

    def build_targets(self) -> dict[str, DeploymentTarget]:
        """Build every configured target."""
        return {name: self.build_target(name) for name in self.targets}


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["deployctl.yaml", "deployctl.yml", ".deployctl.yaml", ".deployctl.yml"]

    def __init__(self):
        self._config: DeployCtlConfig | None = None

    def load(self, config_file: str | Path | None = None) -> DeployCtlConfig:
        """Load configuration from files.

        Priority (highest to lowest):
        1. Explicitly specified config file
        2. Project config (./deployctl.yaml, searched upwards)
        3. User config (~/.deployctl/config.yaml)

        Args:
            config_file: Optional explicit config file path

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        user_config_path = Path.home() / ".deployctl" / "config.yaml"
        if user_config_path.exists():
            configs.append(self._load_yaml_file(user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        merged: dict[str, Any] = {}
        for config in configs:
            merged = merge_dicts(merged, config)

        try:
            self._config = DeployCtlConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")
        return self._config

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content


# Global config loader instance
_config_loader = ConfigLoader()


def load_config(config_file: str | Path | None = None) -> DeployCtlConfig:
    """Load deployctl configuration.

    Args:
        config_file: Optional explicit config file path

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file)


def get_default_config() -> DeployCtlConfig:
    """Get default configuration without loading from files."""
    return DeployCtlConfig()
