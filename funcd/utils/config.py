"""
Configuration management for funcd.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

ENV_PREFIX = "FUNCD_"


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "funcd"
    version: str = "0.1.0"
    log_level: str = "INFO"
    log_json: bool = True
    log_to_file: bool = False
    logs_dir: str = "logs"


class GatewayConfig(BaseModel):
    """HTTP listener and upstream transport configuration."""

    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=0, le=65535)
    max_body_bytes: int = Field(default=100 * 1024**2, gt=0)

    # Connection reuse towards the backend socket
    max_idle_connections: int = Field(default=100, ge=0)
    idle_timeout_seconds: float = Field(default=90.0, gt=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)

    # Upper bound for draining in-flight requests on shutdown
    shutdown_timeout_seconds: float = Field(default=10.0, ge=0)


class BackendConfig(BaseModel):
    """Backend process launch configuration."""

    model_config = ConfigDict(extra="forbid")

    command: str = "bun"
    args: list[str] = Field(default_factory=lambda: ["run", "js/serve.js"])
    env: dict[str, str] = Field(default_factory=dict)
    inherit_env: bool = True
    socket_path: str = "/tmp/funcd.sock"
    socket_env_var: str = "FUNCD_SOCKET_PATH"
    stop_timeout_seconds: float = Field(default=5.0, gt=0)


class ReadinessConfig(BaseModel):
    """Socket readiness polling configuration.

    Both values are environment-sensitive (slow filesystems, loaded hosts),
    so they are kept configurable rather than fixed.
    """

    model_config = ConfigDict(extra="forbid")

    timeout_seconds: float = Field(default=1.0, gt=0)
    poll_interval_seconds: float = Field(default=0.005, gt=0)

    @model_validator(mode="after")
    def _check_interval(self) -> "ReadinessConfig":
        if self.poll_interval_seconds >= self.timeout_seconds:
            raise ValueError("poll_interval_seconds must be smaller than timeout_seconds")
        return self


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_local_overrides(config_dir: Path) -> dict[str, Any]:
    """Load local.yaml overrides.

    Top-level keys correspond to config file names (without .yaml extension).

    Example local.yaml:
        settings:
          readiness:
            timeout_seconds: 5

    Args:
        config_dir: Configuration directory path.

    Returns:
        Local overrides dictionary.
    """
    local_path = config_dir / "local.yaml"
    if not local_path.exists():
        return {}
    with open(local_path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _load_yaml_config(config_dir: Path) -> dict[str, Any]:
    """Load settings.yaml with local.yaml overrides (settings section).

    Args:
        config_dir: Configuration directory path.

    Returns:
        Merged configuration dictionary.
    """
    config: dict[str, Any] = {}

    base_path = config_dir / "settings.yaml"
    if base_path.exists():
        with open(base_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

    local_overrides = _load_local_overrides(config_dir)
    if "settings" in local_overrides:
        config = _deep_merge(config, local_overrides["settings"])

    return config


def _apply_env_overrides(
    config: dict[str, Any],
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with FUNCD_ and use
    double underscores for nested keys.

    Example:
        FUNCD_GATEWAY__PORT=9000

    Only variables naming a known section are applied, so the backend's own
    FUNCD_SOCKET_PATH does not leak into the settings tree.

    Args:
        config: Configuration dictionary.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        Configuration with environment overrides.
    """
    if environ is None:
        environ = dict(os.environ)

    sections = set(Settings.model_fields)

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        key_path = key[len(ENV_PREFIX) :].lower().split("__")
        if len(key_path) < 2 or key_path[0] not in sections:
            continue

        current = config
        for part in key_path[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        # Set the value (attempt to parse as appropriate type)
        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


def get_config_dir() -> Path:
    """Get the configuration directory (FUNCD_CONFIG_DIR, default ./config)."""
    return Path(os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", "config"))


def load_settings(config_dir: Path | None = None) -> Settings:
    """Load settings without caching.

    Settings are loaded from:
    1. Default values
    2. YAML configuration files
    3. Environment variables (highest priority)

    Args:
        config_dir: Configuration directory. Uses FUNCD_CONFIG_DIR if None.

    Returns:
        Settings instance.
    """
    if config_dir is None:
        config_dir = get_config_dir()

    config = _load_yaml_config(config_dir)
    config = _apply_env_overrides(config)

    return Settings(**config)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings (cached for the process lifetime).

    Returns:
        Settings instance.
    """
    return load_settings()


def get_project_root() -> Path:
    """Get the project root directory.

    Returns:
        Project root path.
    """
    # Assuming this file is at funcd/utils/config.py
    return Path(__file__).parent.parent.parent
