"""
Value types shared by the backup engine.

BackupRecord is immutable once built: the manager assembles one per
completed run and hands it to the catalog.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Dict, Any, Tuple


def new_record_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Artifact:
    """A file produced by a storage handler (or a processed copy of it)."""
    id: str
    path: str
    size: int
    checksum: str
    storage_type: str
    backup_type: str = 'full'
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ArtifactRef:
    """A stored artifact as reported by a destination listing."""
    location: str
    size: int
    modified_at: Optional[datetime] = None
    checksum: Optional[str] = None


@dataclass(frozen=True)
class WriteResult:
    """Outcome of writing one artifact to one destination."""
    destination_type: str
    destination_path: str
    location: str
    size: int
    checksum: str


@dataclass(frozen=True)
class VerificationResult:
    type: str
    passed: bool
    details: str = ''
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'passed': self.passed,
            'details': self.details,
            'errors': list(self.errors),
        }


@dataclass(frozen=True)
class BackupRecord:
    id: str
    storage_type: str
    backup_type: str
    started_at: datetime
    completed_at: datetime
    success: bool
    size: int = 0
    checksum: Optional[str] = None
    source_checksum: Optional[str] = None
    compression: str = 'none'
    encrypted: bool = False
    destinations: Tuple[WriteResult, ...] = ()
    verification: Tuple[VerificationResult, ...] = ()
    warnings: Tuple[str, ...] = ()
    error: Optional[str] = None
    error_code: Optional[str] = None
    logs: str = ''

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def locations(self) -> Tuple[str, ...]:
        return tuple(d.location for d in self.destinations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'storageType': self.storage_type,
            'backupType': self.backup_type,
            'startedAt': self.started_at.isoformat(),
            'completedAt': self.completed_at.isoformat(),
            'durationSeconds': self.duration_seconds,
            'success': self.success,
            'size': self.size,
            'checksum': self.checksum,
            'sourceChecksum': self.source_checksum,
            'compression': self.compression,
            'encrypted': self.encrypted,
            'destinations': [asdict(d) for d in self.destinations],
            'verification': [v.to_dict() for v in self.verification],
            'warnings': list(self.warnings),
            'error': self.error,
            'errorCode': self.error_code,
        }


@dataclass(frozen=True)
class BackupStatistics:
    total_backups: int = 0
    successful_backups: int = 0
    failed_backups: int = 0
    total_size: int = 0
    last_backup_time: Optional[datetime] = None
    by_storage_type: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        """Percentage of successful backups, 0 when nothing has run."""
        if self.total_backups == 0:
            return 0.0
        return self.successful_backups / self.total_backups * 100

    @property
    def average_size(self) -> float:
        if self.total_backups == 0:
            return 0.0
        return self.total_size / self.total_backups

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalBackups': self.total_backups,
            'successfulBackups': self.successful_backups,
            'failedBackups': self.failed_backups,
            'successRate': self.success_rate,
            'totalSize': self.total_size,
            'averageSize': self.average_size,
            'lastBackupTime': self.last_backup_time.isoformat() if self.last_backup_time else None,
            'byStorageType': {
                key: {
                    'count': value['count'],
                    'size': value['size'],
                    'lastBackup': value['lastBackup'].isoformat() if value['lastBackup'] else None,
                }
                for key, value in self.by_storage_type.items()
            },
        }
