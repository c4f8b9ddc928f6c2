"""pgsandbox - disposable PostgreSQL databases for integration tests."""

import logging
from importlib.metadata import PackageNotFoundError, version

from pgsandbox.config import SandboxConfig
from pgsandbox.dsn import extract_database_name, replace_database_name
from pgsandbox.errors import (
    BinaryNotFound,
    ConfigError,
    ConnectionFailure,
    EphemeralCreationFailed,
    MalformedDescriptor,
    MigrationApplyFailed,
    MigrationError,
    MigrationsDirectoryMissing,
    SandboxError,
    TeardownError,
    TemplateCreationFailed,
)
from pgsandbox.migrations import (
    BasicMigrationVerifier,
    BinaryMigrationVerifier,
    CallbackMigrationVerifier,
    FileMigrationVerifier,
    MigrationVerifier,
)
from pgsandbox.naming import generate_database_name
from pgsandbox.pool import SandboxPool
from pgsandbox.sandbox import Sandbox, create_sandbox, drop_stale_databases
from pgsandbox.template import ensure_template

try:
    __version__ = version("pgsandbox")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

# Silent unless the application configures logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "BasicMigrationVerifier",
    "BinaryMigrationVerifier",
    "BinaryNotFound",
    "CallbackMigrationVerifier",
    "ConfigError",
    "ConnectionFailure",
    "EphemeralCreationFailed",
    "FileMigrationVerifier",
    "MalformedDescriptor",
    "MigrationApplyFailed",
    "MigrationError",
    "MigrationVerifier",
    "MigrationsDirectoryMissing",
    "Sandbox",
    "SandboxConfig",
    "SandboxError",
    "SandboxPool",
    "TeardownError",
    "TemplateCreationFailed",
    "create_sandbox",
    "drop_stale_databases",
    "ensure_template",
    "extract_database_name",
    "generate_database_name",
    "replace_database_name",
]
