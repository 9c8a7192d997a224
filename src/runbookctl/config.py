"""Configuration management for runbookctl using Pydantic."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from runbookctl.core.exceptions import ConfigError
from runbookctl.core.output import OutputFormat
from runbookctl.core.logging import LogLevel

DEFAULT_HOME = Path.home() / ".runbookctl"


class ProfileConfig(BaseModel):
    """Per-profile settings.

    Profile variables are the lowest-priority runbook variables, so a profile
    can hold the cluster account and login host once for every runbook.
    """

    variables: dict[str, Any] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.WARNING
    dry_run: bool = False
    shell: str = "/bin/bash"
    timeout: int | None = None  # default per-step timeout in seconds
    runbook_dirs: list[str] = Field(default_factory=lambda: ["./runbooks"])
    audit_dir: str = str(DEFAULT_HOME / "runs")
    max_audit_logs: int = 500

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        return v

    def get_audit_dir(self) -> Path:
        """Audit directory with ~ expanded."""
        return Path(self.audit_dir).expanduser()


class RunbookctlConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    profiles: dict[str, ProfileConfig] = Field(default_factory=lambda: {"default": ProfileConfig()})

    def get_profile(self, name: str | None = None) -> ProfileConfig:
        """Get a profile by name, defaulting to 'default'."""
        profile_name = name or "default"
        if profile_name not in self.profiles:
            if profile_name == "default":
                return ProfileConfig()
            raise ConfigError(f"Profile '{profile_name}' not found")
        return self.profiles[profile_name]


class EnvironmentSettings(BaseSettings):
    """RUNBOOKCTL_* environment overrides for global settings."""

    model_config = SettingsConfigDict(env_prefix="RUNBOOKCTL_", extra="ignore")

    output_format: OutputFormat | None = None
    color: str | None = None
    verbosity: LogLevel | None = None
    dry_run: bool | None = None
    shell: str | None = None
    timeout: int | None = None
    audit_dir: str | None = None

    def overrides(self) -> dict[str, Any]:
        """Return only the settings actually present in the environment."""
        return self.model_dump(mode="json", exclude_none=True)


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["runbookctl.yaml", "runbookctl.yml", ".runbookctl.yaml", ".runbookctl.yml"]

    def __init__(self, user_config_path: Path | None = None):
        self._user_config_path = user_config_path or DEFAULT_HOME / "config.yaml"
        self._config: RunbookctlConfig | None = None

    def load(
        self,
        config_file: str | Path | None = None,
        profile: str | None = None,
    ) -> RunbookctlConfig:
        """Load configuration from files and environment.

        Priority (highest to lowest):
        1. RUNBOOKCTL_* environment variables
        2. Explicitly specified config file
        3. Project config (./runbookctl.yaml)
        4. User config (~/.runbookctl/config.yaml)

        Args:
            config_file: Optional explicit config file path
            profile: Profile name to use; checked for existence

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        if self._user_config_path.exists():
            configs.append(self._load_yaml_file(self._user_config_path))

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
            env_overrides = EnvironmentSettings().overrides()
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid RUNBOOKCTL_* environment variable: {e}")
        if env_overrides:
            merged = self._deep_merge(merged, {"global": env_overrides})

        try:
            self._config = RunbookctlConfig(**merged)
        except PydanticValidationError as e:
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
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content

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


# Global config loader instance
_config_loader = ConfigLoader()


def load_config(
    config_file: str | Path | None = None,
    profile: str | None = None,
) -> RunbookctlConfig:
    """Load runbookctl configuration.

    Args:
        config_file: Optional explicit config file path
        profile: Profile name to use

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file, profile)


def get_default_config() -> RunbookctlConfig:
    """Get default configuration without loading from files."""
    return RunbookctlConfig()
