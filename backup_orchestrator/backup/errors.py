"""
Error taxonomy for the backup engine.

Handler, transport, pipeline and catalog failures are converted into
failed BackupRecords at the manager boundary. Only configuration problems,
conflicts and shutdown rejections are raised to callers.
"""

from typing import Optional, Dict, Any


class BackupSystemError(Exception):
    """Base exception for all backup engine errors."""

    code = 'backup_system_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(BackupSystemError):
    """Raised when a schedule, policy or configuration value is invalid."""
    code = 'config_error'


class HookError(BackupSystemError):
    """Raised when a pre-backup hook vetoes a run."""
    code = 'hook_error'


class BackupTimeoutError(BackupSystemError, TimeoutError):
    """Raised when a run exceeds its timeout."""
    code = 'timeout_error'


class BackupError(BackupSystemError):
    """Raised by storage handlers when a backup cannot be produced."""
    code = 'backup_error'


class RestoreError(BackupSystemError):
    """Raised when a restore fails."""
    code = 'restore_error'


class VerificationError(BackupSystemError):
    """Raised when a written artifact fails verification."""
    code = 'verification_error'


class ConflictError(BackupSystemError):
    """Raised when a run is requested for a backend that is already running."""
    code = 'conflict_error'


class ShutdownError(BackupSystemError):
    """Raised when a run is cancelled or rejected by graceful shutdown."""
    code = 'shutdown_error'


class StorageError(BackupSystemError):
    """Raised when a destination sink operation fails."""
    code = 'storage_error'


class CatalogError(BackupSystemError):
    """Raised when the record catalog cannot store a record."""
    code = 'catalog_error'


class CompressionError(BackupSystemError):
    """Raised when compressing or decompressing an artifact fails."""
    code = 'compression_error'


class EncryptionError(BackupSystemError):
    """Raised when encrypting or decrypting an artifact fails."""
    code = 'encryption_error'


def error_code(exc: BaseException) -> str:
    """Stable code for an exception, used on failed records."""
    return getattr(exc, 'code', None) or 'unexpected_error'
