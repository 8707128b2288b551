"""Custom exception hierarchy for the migrator."""

from typing import Any, Optional


class MigratorError(Exception):
    """Base exception for all migrator errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize migrator error.

        Args:
            message: Error message
            correlation_id: Optional correlation ID for tracing
            context: Optional context dictionary with additional details
        """
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message."""
        parts = [self.message]
        if self.correlation_id:
            parts.append(f"[correlation_id={self.correlation_id}]")
        if self.context:
            parts.append(f"[context={self.context}]")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary suitable for structured results."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(MigratorError):
    """Missing or invalid configuration. Fatal, never retried."""

    pass


class StoreError(MigratorError):
    """Local key-value store read/write failure."""

    pass


class RemoteStoreError(MigratorError):
    """Remote relational store failure."""

    pass


class ValidationError(MigratorError):
    """Dataset failed validation checks."""

    pass


class TransferError(MigratorError):
    """A single record or user failed to transfer to the remote store."""

    pass


class IntegrityError(MigratorError):
    """Post-migration consistency check found orphans or mismatches."""

    pass


class BackupError(MigratorError):
    """Backup creation, lookup or checksum verification failure."""

    pass


class ConflictError(MigratorError):
    """A rollback conflict could not be resolved non-interactively."""

    pass


class LockError(MigratorError):
    """A per-user migration is already in progress."""

    pass


class SyncError(MigratorError):
    """A deferred remote operation could not be replayed."""

    pass
