"""
Plugin runtime error taxonomy.

Load and compile errors block a single artifact. Execution errors are contained
by whichever dispatcher triggered the call. Tenant isolation errors are raised
before any plugin code runs.
"""

from typing import Optional


class PluginRuntimeError(Exception):
    """Base class for every error raised by the plugin runtime."""
    pass


class ArtifactNotFound(PluginRuntimeError):
    """Raised when a plugin slug or one of its artifacts cannot be resolved."""
    pass


class CompileError(PluginRuntimeError):
    """Raised when artifact source fails validation or byte-compilation."""

    def __init__(self, message: str, artifact_id: Optional[str] = None):
        super().__init__(message)
        self.artifact_id = artifact_id


class EntryPointNotFound(CompileError):
    """Raised when no entry-point function can be located in artifact source."""
    pass


class ExecutionTimeout(PluginRuntimeError):
    """Raised when an invocation exceeds its time budget. The sandbox worker is killed."""

    def __init__(self, message: str, timeout: float = 0.0):
        super().__init__(message)
        self.timeout = timeout


class PluginExecutionError(PluginRuntimeError):
    """Raised when plugin code throws inside the sandbox."""

    def __init__(self, message: str, error_type: str = "Exception"):
        super().__init__(message)
        self.error_type = error_type


class HookContractViolation(PluginRuntimeError):
    """Raised (and recorded) when a hook handler returns an unusable value."""
    pass


class TenantIsolationError(PluginRuntimeError):
    """Raised when an operation cannot resolve a valid store identifier."""
    pass


class CapabilityDenied(PluginRuntimeError):
    """Raised when plugin code calls a capability its permissions do not grant."""
    pass


class MigrationFailed(PluginRuntimeError):
    """Raised when a migration fails, or when a failed migration is re-applied."""

    def __init__(self, message: str, migration_id: Optional[str] = None):
        super().__init__(message)
        self.migration_id = migration_id


class PluginInUse(PluginRuntimeError):
    """Raised when deleting a plugin that is still installed in at least one store."""
    pass
