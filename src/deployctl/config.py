"""Configuration management for deployctl using Pydantic."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from deployctl.core.exceptions import ConfigError
from deployctl.core.logging import LogLevel
from deployctl.core.output import OutputFormat
from deployctl.deploy.models import HostDescriptor, project_name_from_url


class HostConfig(BaseModel):
    """A single deployment target."""

    address: str
    user: str = "root"
    port: int = 22
    key_path: str | None = None
    password: str | None = None
    app_port: int = 8000
    remote_dir: str | None = None
    name: str | None = None
    transport: Literal["ssh", "local"] = "ssh"
    public_url: str | None = None

    @field_validator("app_port", "port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v

    def get_key_path(self) -> str | None:
        """Get SSH key path from config or environment."""
        path = self.key_path or os.environ.get("DEPLOYCTL_SSH_KEY")
        return os.path.expanduser(path) if path else None

    def get_password(self) -> str | None:
        """Get SSH password from config or environment."""
        password = self.password
        if password == "from_env":
            password = os.environ.get("DEPLOYCTL_SSH_PASSWORD")
        return password

    def to_descriptor(self, project: str) -> HostDescriptor:
        """Freeze this entry into the immutable descriptor used during a run."""
        return HostDescriptor(
            address=self.address,
            user=self.user,
            port=self.port,
            key_path=self.get_key_path(),
            password=self.get_password(),
            app_port=self.app_port,
            remote_dir=self.remote_dir or f"/home/{self.user}/{project}",
            name=self.name or self.address,
            transport=self.transport,
            public_url=self.public_url,
        )


class RetryConfig(BaseModel):
    """Default retry policy applied to every step."""

    max_attempts: int = Field(default=3, ge=1)
    backoff: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff: float = 30.0
    attempt_timeout: float | None = 600.0


class HealthCheckConfig(BaseModel):
    """Health gate configuration."""

    path: str = "/"
    scheme: str = "http"
    interval: float = Field(default=2.0, gt=0)
    timeout: float = Field(default=60.0, gt=0)
    max_polls: int | None = None
    request_timeout: float = 5.0
    success_statuses: list[int] = Field(default_factory=lambda: [200])

    @field_validator("success_statuses")
    @classmethod
    def validate_statuses(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("success_statuses must not be empty")
        return v


class ProxyConfig(BaseModel):
    """Nginx reverse proxy configuration."""

    enabled: bool = True
    sites_dir: str = "/etc/nginx/sites-available"
    enabled_dir: str | None = "/etc/nginx/sites-enabled"
    listen_port: int = 80
    server_name: str = "_"
    sudo: bool = True


class RuntimeConfig(BaseModel):
    """Container runtime configuration."""

    install_missing: bool = False
    sudo: bool = False


class RunConfig(BaseModel):
    """Everything one deployment run needs."""

    repo_url: str | None = None
    branch: str = "main"
    targets: list[HostConfig] = Field(default_factory=list)
    concurrency: int = Field(default=4, ge=1)
    fail_fast: bool = False
    sync_mode: Literal["local", "remote"] = "local"
    workspace_dir: str = "."
    run_timeout: float | None = None
    retry: RetryConfig = Field(default_factory=RetryConfig)
    health: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @model_validator(mode="after")
    def validate_unique_targets(self) -> "RunConfig":
        names = [t.name or t.address for t in self.targets]
        if len(names) != len(set(names)):
            raise ValueError("target names must be unique")
        return self

    def get_repo_url(self) -> str | None:
        """Get repository URL from environment or config."""
        return os.environ.get("DEPLOYCTL_REPO_URL") or self.repo_url

    def get_branch(self) -> str:
        """Get branch from environment or config."""
        return os.environ.get("DEPLOYCTL_BRANCH") or self.branch

    @property
    def project_name(self) -> str:
        url = self.get_repo_url()
        if not url:
            raise ConfigError("Repository URL not configured")
        return project_name_from_url(url)

    def descriptors(self) -> tuple[HostDescriptor, ...]:
        """Freeze all targets for a run."""
        project = self.project_name
        return tuple(t.to_descriptor(project) for t in self.targets)


class ProfileConfig(BaseModel):
    """Profile configuration grouping run settings."""

    run: RunConfig = Field(default_factory=RunConfig)


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.INFO
    dry_run: bool = False
    confirm_destructive: bool = True
    state_dir: str | None = None
    log_dir: str | None = None

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v

    def get_state_dir(self) -> Path:
        """Directory for persisted deployment states."""
        path = os.environ.get("DEPLOYCTL_STATE_DIR") or self.state_dir
        return Path(path).expanduser() if path else Path.home() / ".deployctl" / "deployments"

    def get_log_dir(self) -> Path:
        """Directory for run logs."""
        path = os.environ.get("DEPLOYCTL_LOG_DIR") or self.log_dir
        return Path(path).expanduser() if path else Path.home() / ".deployctl" / "runs"


class DeployCtlConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    profiles: dict[str, ProfileConfig] = Field(default_factory=lambda: {"default": ProfileConfig()})

    def get_profile(self, name: str | None = None) -> ProfileConfig:
        """Get a profile by name, defaulting to 'default'."""
        profile_name = name or "default"
        if profile_name not in self.profiles:
            raise ConfigError(f"Profile '{profile_name}' not found")
        return self.profiles[profile_name]


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["deployctl.yaml", "deployctl.yml", ".deployctl.yaml", ".deployctl.yml"]

    def __init__(self):
        self._config: DeployCtlConfig | None = None

    def load(
        self,
        config_file: str | Path | None = None,
        profile: str | None = None,
    ) -> DeployCtlConfig:
        """Load configuration from files and environment.

        Priority (highest to lowest):
        1. Explicitly specified config file
        2. Project config (./deployctl.yaml)
        3. User config (~/.deployctl/config.yaml)

        Args:
            config_file: Optional explicit config file path
            profile: Profile name to use

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

        merged = self._merge_configs(configs)

        try:
            self._config = DeployCtlConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")

        if profile:
            self._config.get_profile(profile)
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
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

    def _merge_configs(self, configs: list[dict[str, Any]]) -> dict[str, Any]:
        """Deep merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = self._deep_merge(result, config)
        return result

    def _deep_merge(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result


_config_loader = ConfigLoader()


def load_config(
    config_file: str | Path | None = None,
    profile: str | None = None,
) -> DeployCtlConfig:
    """Load deployctl configuration.

    Args:
        config_file: Optional explicit config file path
        profile: Profile name to use

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file, profile)


def get_default_config() -> DeployCtlConfig:
    """Get default configuration without loading from files."""
    return DeployCtlConfig()
