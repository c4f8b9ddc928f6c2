"""Configuration management for pgsandbox."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from pgsandbox.errors import ConfigError
from pgsandbox.naming import MAX_PREFIX_LENGTH


DEFAULT_CONFIG_FILE = Path("pgsandbox.yaml")

# Environment variable -> (field name, converter)
ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "PGSANDBOX_SOURCE_DSN": ("source_dsn", str),
    "PGSANDBOX_TEMPLATE_DB": ("template_database_name", str),
    "PGSANDBOX_PREFIX": ("ephemeral_name_prefix", str),
    "PGSANDBOX_MAX_CONNECTIONS": ("max_pool_connections", int),
    "PGSANDBOX_CONN_MAX_LIFETIME": ("connection_max_lifetime", float),
}

# Field name -> type YAML values are converted to
FIELD_TYPES: dict[str, type] = {
    "source_dsn": str,
    "template_database_name": str,
    "ephemeral_name_prefix": str,
    "admin_database": str,
    "fallback_source_name": str,
    "max_pool_connections": int,
    "connection_max_lifetime": float,
}


@dataclass(frozen=True)
class SandboxConfig:
    """Sandbox configuration settings."""

    # Source database the template is cloned from
    source_dsn: str = ""

    # Databases
    template_database_name: str = "template_test"
    ephemeral_name_prefix: str = "test_db_"
    admin_database: str = "postgres"
    fallback_source_name: str = "main_db"

    # Ephemeral pool
    max_pool_connections: int = 10
    connection_max_lifetime: float = 30.0  # seconds

    def __post_init__(self) -> None:
        """Validate settings."""
        if not self.template_database_name:
            raise ConfigError(
                code="INVALID_CONFIG",
                message="template_database_name must not be empty",
            )
        if not self.ephemeral_name_prefix:
            raise ConfigError(
                code="INVALID_CONFIG",
                message="ephemeral_name_prefix must not be empty",
            )
        if len(self.ephemeral_name_prefix.encode()) > MAX_PREFIX_LENGTH:
            raise ConfigError(
                code="INVALID_CONFIG",
                message=(
                    f"ephemeral_name_prefix must be at most {MAX_PREFIX_LENGTH} bytes, "
                    f"got {self.ephemeral_name_prefix!r}"
                ),
                suggestion="Generated names must fit PostgreSQL's 63-byte identifier limit",
            )
        if self.max_pool_connections < 1:
            raise ConfigError(
                code="INVALID_CONFIG",
                message=f"max_pool_connections must be at least 1, got {self.max_pool_connections}",
            )
        if self.connection_max_lifetime <= 0:
            raise ConfigError(
                code="INVALID_CONFIG",
                message=(
                    "connection_max_lifetime must be positive, "
                    f"got {self.connection_max_lifetime}"
                ),
            )

    @classmethod
    def load(cls, config_path: Path | None = None) -> "SandboxConfig":
        """Load configuration from a YAML file, then apply environment overrides."""
        if config_path is None:
            config_path = Path(os.environ.get("PGSANDBOX_CONFIG", DEFAULT_CONFIG_FILE))

        data: dict[str, Any] = {}
        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
            except (yaml.YAMLError, OSError) as e:
                raise ConfigError(
                    code="CONFIG_UNREADABLE",
                    message=f"Failed to read config file {config_path}: {e}",
                    suggestion="Check the file is valid YAML",
                ) from e
            if not isinstance(data, dict):
                raise ConfigError(
                    code="CONFIG_UNREADABLE",
                    message=f"Config file {config_path} must contain a mapping",
                )

        return cls._from_dict({**data, **cls._from_env()})

    @staticmethod
    def _from_env() -> dict[str, Any]:
        """Collect overrides from the environment."""
        overrides: dict[str, Any] = {}

        source_dsn = os.environ.get("POSTGRES_URL")
        if source_dsn:
            overrides["source_dsn"] = source_dsn

        for env_var, (field_name, convert) in ENV_OVERRIDES.items():
            value = os.environ.get(env_var)
            if not value:
                continue
            try:
                overrides[field_name] = convert(value)
            except ValueError as e:
                raise ConfigError(
                    code="INVALID_CONFIG",
                    message=f"Invalid value for {env_var}: {value!r}",
                ) from e

        return overrides

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "SandboxConfig":
        """Create config from a dictionary, ignoring unknown keys."""
        kwargs: dict[str, Any] = {}
        for field_name, convert in FIELD_TYPES.items():
            value = data.get(field_name)
            if value is None:
                continue
            # int(True) and str([...]) would otherwise slip through
            if isinstance(value, (bool, dict, list)):
                raise ConfigError(
                    code="INVALID_CONFIG",
                    message=f"Invalid value for {field_name}: {value!r}",
                )
            try:
                kwargs[field_name] = convert(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(
                    code="INVALID_CONFIG",
                    message=f"Invalid value for {field_name}: {value!r}",
                    suggestion=f"Expected {convert.__name__}",
                ) from e
        return cls(**kwargs)
