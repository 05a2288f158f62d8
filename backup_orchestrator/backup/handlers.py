"""
Storage backup handlers.

A handler knows how to back up, restore and verify one kind of backend.
Handlers are looked up by their storage type tag in a HandlerRegistry;
the engine never inspects what a handler does internally.
"""

import logging
import os
import sqlite3
import tarfile
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, List, Optional, Iterable

from .compression import file_checksum
from .config import StorageBackupConfig
from .errors import BackupError, RestoreError
from .models import Artifact, VerificationResult, new_record_id


logger = logging.getLogger(__name__)


def artifact_filename(storage_type: str, backup_type: str, extension: str) -> str:
    """
    Generate a standardized artifact filename.

    Format: {storage_type}-{backup_type}-{YYYYMMDD_HHMMSS}.{ext}
    """
    timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
    safe_type = "".join(c if c.isalnum() or c in ('-', '_') else '_' for c in storage_type)
    return f"{safe_type}-{backup_type}-{timestamp}.{extension}"


def build_artifact(path: str, config: StorageBackupConfig, **metadata) -> Artifact:
    return Artifact(
        id=new_record_id(),
        path=path,
        size=os.path.getsize(path),
        checksum=file_checksum(path),
        storage_type=config.type,
        backup_type=config.backup_type,
        metadata=metadata,
    )


class StorageBackupHandler(ABC):
    """Capability interface implemented once per backend type."""

    storage_type: str = ''

    def is_available(self) -> bool:
        return True

    @abstractmethod
    def backup(self, config: StorageBackupConfig, work_dir: str) -> Artifact:
        """
        Produce one backup artifact inside ``work_dir``.

        Raises:
            BackupError: If the backup cannot be produced
        """

    @abstractmethod
    def restore(self, artifact: Artifact, target: Optional[str] = None):
        """
        Raises:
            RestoreError: If the artifact cannot be restored
        """

    def verify(self, artifact: Artifact, types: Iterable[str]) -> VerificationResult:
        """Backend-specific verification. The default only checks the file exists."""
        types = list(types)
        if not os.path.isfile(artifact.path):
            return VerificationResult(
                type=','.join(types), passed=False, errors=(f"Artifact not found: {artifact.path}",)
            )
        return VerificationResult(type=','.join(types), passed=True, details='Artifact present')

    def cleanup(self):
        """Release any resources held by the handler."""


class HandlerRegistry:
    """Lookup table of storage handlers keyed by storage type."""

    def __init__(self, handlers: Optional[Iterable[StorageBackupHandler]] = None):
        self._handlers: Dict[str, StorageBackupHandler] = {}
        for handler in handlers or ():
            self.register(handler)

    def register(self, handler: StorageBackupHandler, storage_type: Optional[str] = None):
        storage_type = storage_type or handler.storage_type
        if not storage_type:
            raise ValueError("Handler has no storage type")
        self._handlers[storage_type] = handler

    def unregister(self, storage_type: str):
        self._handlers.pop(storage_type, None)

    def get(self, storage_type: str) -> StorageBackupHandler:
        """
        Raises:
            BackupError: If no handler is registered for the type
        """
        handler = self._handlers.get(storage_type)
        if handler is None:
            raise BackupError(f"No backup handler registered for storage type: {storage_type}")
        return handler

    def __contains__(self, storage_type: str) -> bool:
        return storage_type in self._handlers

    def items(self):
        return list(self._handlers.items())

    def types(self) -> List[str]:
        return sorted(self._handlers)


class FileSystemBackupHandler(StorageBackupHandler):
    """
    Backs up files and directories into a tar archive.

    Options:
        paths: List of file/directory paths to include
        exclude_patterns: Glob patterns to skip (e.g. *.log, __pycache__)
        restore_path: Default directory restores extract into
    """

    storage_type = 'file-system'

    def __init__(self, storage_type: Optional[str] = None):
        if storage_type:
            self.storage_type = storage_type

    @staticmethod
    def _should_exclude(path: Path, exclude_patterns: List[str]) -> bool:
        path_str = str(path)
        for pattern in exclude_patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path.name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(path.name, pattern[3:]):
                return True
        return False

    def backup(self, config, work_dir):
        paths = config.options.get('paths') or []
        exclude_patterns = config.options.get('exclude_patterns') or []
        if not paths:
            raise BackupError(f"No paths configured for {config.type} backup")

        archive_path = os.path.join(
            work_dir, artifact_filename(config.type, config.backup_type, 'tar')
        )

        def exclude_filter(tarinfo):
            if self._should_exclude(Path(tarinfo.name), exclude_patterns):
                return None
            return tarinfo

        try:
            with tarfile.open(archive_path, 'w') as tar:
                for path in paths:
                    source = Path(path).expanduser().resolve()
                    if not source.exists():
                        raise BackupError(f"Path does not exist: {path}")
                    tar.add(source, arcname=source.name, recursive=True, filter=exclude_filter)
        except BackupError:
            raise
        except (OSError, tarfile.TarError) as e:
            raise BackupError(f"Failed to archive {config.type}: {e}")

        logger.info(f"Archived {len(paths)} path(s) for {config.type}")
        return build_artifact(archive_path, config, paths=list(paths), format='tar')

    @staticmethod
    def _safe_members(tar: tarfile.TarFile) -> List[tarfile.TarInfo]:
        members = tar.getmembers()
        for member in members:
            name = member.name
            if name.startswith('/') or '..' in Path(name).parts:
                raise RestoreError(f"Unsafe path in archive: {name}")
            if member.issym() or member.islnk():
                raise RestoreError(f"Links are not restored: {name}")
        return members

    def restore(self, artifact, target=None):
        target = target or artifact.metadata.get('restore_path')
        if not target:
            raise RestoreError("No restore target given")
        try:
            os.makedirs(target, exist_ok=True)
            with tarfile.open(artifact.path, 'r') as tar:
                tar.extractall(target, members=self._safe_members(tar))
        except RestoreError:
            raise
        except (OSError, tarfile.TarError) as e:
            raise RestoreError(f"Failed to extract {os.path.basename(artifact.path)}: {e}")
        logger.info(f"Restored {artifact.id} into {target}")

    def verify(self, artifact, types):
        types = list(types)
        errors = []
        members = 0
        try:
            with tarfile.open(artifact.path, 'r') as tar:
                for member in tar:
                    members += 1
                    if member.isfile():
                        extracted = tar.extractfile(member)
                        if extracted is not None:
                            while extracted.read(1024 * 1024):
                                pass
        except (OSError, tarfile.TarError) as e:
            errors.append(f"Archive unreadable: {e}")

        if not errors and 'restore-test' in types:
            with tempfile.TemporaryDirectory(prefix='restore_test_') as scratch:
                try:
                    self.restore(artifact, scratch)
                except RestoreError as e:
                    errors.append(str(e))

        return VerificationResult(
            type=','.join(types),
            passed=not errors,
            details=f"{members} archive members readable" if not errors else '',
            errors=tuple(errors),
        )


class SQLiteBackupHandler(StorageBackupHandler):
    """
    Backs up a SQLite database with the online backup API.

    Options:
        database: Path of the database file
    """

    storage_type = 'sqlite'

    def __init__(self, storage_type: Optional[str] = None, database: Optional[str] = None):
        if storage_type:
            self.storage_type = storage_type
        self.database = database

    def _database(self, options) -> str:
        database = options.get('database') or self.database
        if not database:
            raise BackupError("No SQLite database configured")
        return database

    def is_available(self) -> bool:
        return self.database is None or os.path.exists(self.database)

    def backup(self, config, work_dir):
        database = self._database(config.options)
        if not os.path.exists(database):
            raise BackupError(f"Database not found: {database}")

        output_path = os.path.join(work_dir, artifact_filename(config.type, config.backup_type, 'sqlite'))
        try:
            source = sqlite3.connect(database)
            try:
                target = sqlite3.connect(output_path)
                try:
                    source.backup(target)
                finally:
                    target.close()
            finally:
                source.close()
        except sqlite3.Error as e:
            raise BackupError(f"SQLite backup failed: {e}")

        return build_artifact(output_path, config, database=database)

    @staticmethod
    def _integrity_check(path: str) -> List[str]:
        connection = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        try:
            rows = connection.execute('PRAGMA integrity_check').fetchall()
        finally:
            connection.close()
        return [row[0] for row in rows if row[0] != 'ok']

    def restore(self, artifact, target=None):
        target = target or artifact.metadata.get('database') or self.database
        if not target:
            raise RestoreError("No restore target given")
        try:
            problems = self._integrity_check(artifact.path)
            if problems:
                raise RestoreError(f"Backup failed integrity check: {problems[0]}")
            source = sqlite3.connect(artifact.path)
            try:
                destination = sqlite3.connect(target)
                try:
                    source.backup(destination)
                finally:
                    destination.close()
            finally:
                source.close()
        except sqlite3.Error as e:
            raise RestoreError(f"SQLite restore failed: {e}")
        logger.info(f"Restored {artifact.id} into {target}")

    def verify(self, artifact, types):
        types = list(types)
        try:
            problems = self._integrity_check(artifact.path)
        except sqlite3.Error as e:
            problems = [str(e)]
        return VerificationResult(
            type=','.join(types),
            passed=not problems,
            details='PRAGMA integrity_check ok' if not problems else '',
            errors=tuple(problems),
        )

