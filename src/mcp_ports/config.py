"""
Configuration management for the MCP port registry.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/mcp-ports/config.yml or --config path)
3. Environment variables (MCP_PORTS_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)

The supervisor's services file is a separate YAML document loaded with
load_services_config().
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = Path("/etc/mcp-ports/config.yml")
DEFAULT_ENV_PREFIX = "MCP_PORTS_"

TRANSPORTS = ("stdio", "sse", "streamable-http")


def _normalize_transport(value: str) -> str:
    """Validate and normalize a transport name."""
    normalized = value.lower().replace("_", "-")
    if normalized not in TRANSPORTS:
        raise ValueError(
            f"Invalid transport: {value}. Must be one of: {', '.join(TRANSPORTS)}"
        )
    return normalized


# =============================================================================
# Ledger / Allocation / Registration
# =============================================================================


class LedgerConfig(BaseModel):
    """Port ledger file settings.

    Attributes:
        path: Ledger file path. The default sits in the shared directory one
            level above the individual server project directories.
        lock_enabled: Guard registration with an advisory file lock.
        lock_timeout_seconds: Maximum wait for the ledger lock.
    """

    path: str = Field(
        default="../port_registry.txt",
        description="Path to the shared name:port ledger file",
    )
    lock_enabled: bool = Field(
        default=True,
        description="Serialize read-allocate-append with an advisory file lock",
    )
    lock_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Maximum time to wait for the ledger lock",
    )


class AllocationConfig(BaseModel):
    """Port allocation settings.

    Attributes:
        range_low: Inclusive lower bound of the allocation range.
        range_high: Exclusive upper bound of the allocation range.
        max_attempts: Number of random probes before giving up.
    """

    range_low: int = Field(default=8000, ge=1, le=65535)
    range_high: int = Field(default=9000, ge=2, le=65536)
    max_attempts: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def validate_range(self) -> AllocationConfig:
        """Ensure the range is non-empty."""
        if self.range_low >= self.range_high:
            raise ValueError(
                f"Invalid port range: range_low ({self.range_low}) must be "
                f"lower than range_high ({self.range_high})"
            )
        return self


class RegistrationConfig(BaseModel):
    """Registration settings.

    Attributes:
        timeout_seconds: Budget for the whole registration sequence.
    """

    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound for read-allocate-append, lock wait included",
    )


# =============================================================================
# Server / Supervisor
# =============================================================================


class ServerConfig(BaseModel):
    """Settings of one MCP server process.

    Attributes:
        service_name: Name recorded in the ledger.
        transport: One of 'stdio', 'sse', 'streamable-http'.
        host: Bind host.
        port: Explicit bind port; None means allocate through the ledger.
    """

    service_name: str | None = Field(
        default=None,
        description="Service name recorded in the ledger",
    )
    transport: str = Field(
        default="sse",
        description="Transport: 'stdio', 'sse' or 'streamable-http'",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Bind host",
    )
    port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Explicit bind port (skips allocation)",
    )

    @field_validator("transport")
    @classmethod
    def validate_transport(cls, v: str) -> str:
        """Validate and normalize the transport name."""
        return _normalize_transport(v)


class SupervisorConfig(BaseModel):
    """Process supervisor settings.

    Attributes:
        services_file: YAML file describing the services to launch.
        transport: Transport passed to every launched service.
        max_restarts: Restarts allowed per service after non-zero exits.
        restart_delay_seconds: Fixed delay before a restart.
        shutdown_timeout_seconds: Grace period between terminate and kill.
    """

    services_file: str = Field(
        default="mcp_services.yml",
        description="Services file consumed by the supervisor",
    )
    transport: str = Field(default="sse")
    max_restarts: int = Field(default=5, ge=0)
    restart_delay_seconds: float = Field(default=2.0, ge=0)
    shutdown_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("transport")
    @classmethod
    def validate_transport(cls, v: str) -> str:
        """Validate and normalize the transport name."""
        return _normalize_transport(v)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to emit logs to the console stream.
        json_format: JSON records (True) or plain text.
        debug_mode: Force DEBUG level.
    """

    level: str = Field(default="info", description="Log level")
    log_to_stdout: bool = Field(default=True)
    json_format: bool = Field(default=True)
    debug_mode: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        ledger: Ledger file settings.
        allocation: Port range and probe settings.
        registration: Registration time budget.
        server: Settings for a server process using the startup helpers.
        supervisor: Process supervisor settings.
        logging: Logging configuration.
    """

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    allocation: AllocationConfig = Field(default_factory=AllocationConfig)
    registration: RegistrationConfig = Field(default_factory=RegistrationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Services File (supervisor input)
# =============================================================================


def _default_command() -> list[str]:
    """Return the default launch command for a service project."""
    return ["uv", "run", "python", "server.py"]


class ServiceConfig(BaseModel):
    """One entry of the services file.

    Attributes:
        enabled: Whether the supervisor launches this service.
        port: Fixed port; None lets the service register through the ledger.
        host: Bind host passed to the service.
        project_dir: Working directory of the service.
        description: Free-form description.
        command: Launch command, run inside project_dir.
    """

    enabled: bool = Field(default=True)
    port: int | None = Field(default=None, ge=1, le=65535)
    host: str = Field(default="0.0.0.0")
    project_dir: str = Field(default=".")
    description: str = Field(default="")
    command: list[str] = Field(default_factory=_default_command)

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Reject empty commands."""
        if not v:
            raise ValueError("Service command must not be empty")
        return v


class ServicesFile(BaseModel):
    """Parsed services file.

    Attributes:
        services: Mapping of service name to its settings, in file order.
    """

    services: dict[str, ServiceConfig] = Field(default_factory=dict)

    def enabled_services(self) -> dict[str, ServiceConfig]:
        """Return the enabled services, preserving file order."""
        return {name: svc for name, svc in self.services.items() if svc.enabled}


def load_services_config(path: Path | str) -> ServicesFile:
    """
    Load the supervisor services file.

    Relative project directories are resolved against the directory of the
    services file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
        ValidationError: If an entry is invalid.
    """
    path = Path(path)
    data = _load_yaml_config(path)
    services = ServicesFile(**data)
    for svc in services.services.values():
        project_dir = Path(svc.project_dir)
        if not project_dir.is_absolute():
            svc.project_dir = str((path.parent / project_dir).resolve())
    return services


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, e.g.
    MCP_PORTS_ALLOCATION__RANGE_LOW=8500.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Nested dictionary of command-line overrides.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"allocation": {"range_low": 8500}})
        >>> config.allocation.range_low
        8500
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
