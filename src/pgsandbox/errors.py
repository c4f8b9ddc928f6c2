"""Error taxonomy for pgsandbox."""


class SandboxError(Exception):
    """Base exception for sandbox errors."""

    def __init__(self, code: str, message: str, suggestion: str | None = None):
        self.code = code
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ConfigError(SandboxError):
    """Invalid or unreadable sandbox configuration."""


class MalformedDescriptor(SandboxError, TypeError):
    """A connection descriptor that is not a string."""


class ConnectionFailure(SandboxError):
    """A required connection (source, admin or ephemeral) could not be opened."""


class MigrationError(SandboxError):
    """Base exception for migration verification failures."""


class MigrationsDirectoryMissing(MigrationError):
    """The configured migrations directory does not exist."""


class BinaryNotFound(MigrationError):
    """The external migration runner is not on PATH."""


class MigrationApplyFailed(MigrationError):
    """Pending migrations could not be applied."""


class TemplateCreationFailed(SandboxError):
    """The template database could not be created."""


class EphemeralCreationFailed(SandboxError):
    """The per-sandbox database could not be created or opened."""


class TeardownError(SandboxError):
    """One or more teardown steps failed.

    When ``database_dropped`` is False the ephemeral database still exists
    on the server and has to be removed by hand (or with
    :func:`pgsandbox.sandbox.drop_stale_databases`).
    """

    def __init__(self, database_name: str, errors: list[str], database_dropped: bool):
        self.database_name = database_name
        self.errors = list(errors)
        self.database_dropped = database_dropped
        suggestion = None
        if not database_dropped:
            suggestion = f"Database '{database_name}' may still exist; drop it manually"
        super().__init__(
            code="TEARDOWN_FAILED",
            message=f"errors during cleanup: {'; '.join(self.errors)}",
            suggestion=suggestion,
        )
