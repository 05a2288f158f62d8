"""
Backup engine.

This package handles the core backup functionality including:
- Configuration model and loading
- Storage handlers (filesystem, SQLite)
- Compression and encryption of artifacts
- Destinations (local, S3, SFTP)
- Run execution, verification and the record catalog
- Retention policy enforcement
"""

from .errors import (
    BackupSystemError, ConfigError, HookError, BackupTimeoutError, BackupError,
    RestoreError, VerificationError, ConflictError, ShutdownError, StorageError,
)
from .config import BackupConfig, load_backup_config, default_backup_config, config_from_template
from .models import BackupRecord, BackupStatistics
from .catalog import RecordCatalog
from .handlers import StorageBackupHandler, HandlerRegistry, FileSystemBackupHandler, SQLiteBackupHandler
from .storage import DestinationSink, DestinationRegistry, LocalDestination, S3Destination, SFTPDestination
from .manager import BackupManager

__all__ = [
    'BackupSystemError',
    'ConfigError',
    'HookError',
    'BackupTimeoutError',
    'BackupError',
    'RestoreError',
    'VerificationError',
    'ConflictError',
    'ShutdownError',
    'StorageError',
    'BackupConfig',
    'load_backup_config',
    'default_backup_config',
    'config_from_template',
    'BackupRecord',
    'BackupStatistics',
    'RecordCatalog',
    'StorageBackupHandler',
    'HandlerRegistry',
    'FileSystemBackupHandler',
    'SQLiteBackupHandler',
    'DestinationSink',
    'DestinationRegistry',
    'LocalDestination',
    'S3Destination',
    'SFTPDestination',
    'BackupManager',
]
