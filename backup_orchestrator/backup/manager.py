"""
Backup manager - executes backup cycles and owns the record catalog.

The manager is safe to call from several worker threads at once. Runs for
different storage configs proceed in parallel; a second run for a storage
config that is already running is rejected with ConflictError.
"""

import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from .catalog import RecordCatalog
from .config import (
    BackupConfig, StorageBackupConfig, DEFAULT_STORAGE_TYPE, get_storage_config,
)
from .crypto import ArtifactCipher, resolve_encryption_key
from .errors import (
    BackupSystemError, CatalogError, ConfigError, ConflictError, RestoreError, ShutdownError, StorageError,
)
from .executor import BackupRun, make_decoder, find_destination, utcnow
from .handlers import HandlerRegistry, StorageBackupHandler
from .models import Artifact, BackupRecord, BackupStatistics, VerificationResult, WriteResult
from .notifications import Notifier
from .retention import RetentionReport, select_for_deletion
from .storage import DestinationRegistry, default_destination_registry
from .verification import run_verifications


logger = logging.getLogger(__name__)

# Extra time given to cancelled runs to record their failure
CANCEL_DRAIN_SECONDS = 10


class BackupManager:
    """
    Runs backup cycles against registered handlers and destinations.

    Args:
        config: Backup configuration
        handlers: HandlerRegistry or iterable of handlers
        destinations: DestinationRegistry (default: local, aws-s3 and sftp sinks)
        catalog: RecordCatalog (default: in-memory SQLite)
        temp_dir: Directory for per-run work directories
        notifier: Notifier for run outcomes
    """

    def __init__(
        self,
        config: BackupConfig,
        handlers: Optional[Union[HandlerRegistry, Iterable[StorageBackupHandler]]] = None,
        destinations: Optional[DestinationRegistry] = None,
        catalog: Optional[RecordCatalog] = None,
        temp_dir: Optional[str] = None,
        notifier: Optional[Notifier] = None,
        clock=utcnow,
    ):
        self._config = config.copy()
        if isinstance(handlers, HandlerRegistry):
            self.handlers = handlers
        else:
            self.handlers = HandlerRegistry(handlers)
        self.destinations = destinations or default_destination_registry()
        self.catalog = catalog or RecordCatalog()
        self.temp_dir = temp_dir or os.path.join(tempfile.gettempdir(), 'backup_orchestrator')
        self.notifier = notifier or Notifier()
        self.clock = clock

        self._config_lock = threading.Lock()
        self._run_locks: Dict[str, threading.Lock] = {}
        self._active = threading.Condition()
        self._active_runs: Dict[str, threading.Event] = {}
        self._initialized = False
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self):
        """Validate configuration and prepare the temp area. Idempotent."""
        if self._initialized:
            return

        config = self.get_config()
        config.validate()
        os.makedirs(self.temp_dir, exist_ok=True)

        for storage_config in config.storage_configs:
            if not storage_config.enabled:
                continue
            if storage_config.type not in self.handlers:
                logger.warning(f"No backup handler registered for storage type: {storage_config.type}")
                continue
            handler = self.handlers.get(storage_config.type)
            try:
                available = handler.is_available()
            except Exception as e:
                logger.warning(f"Availability check failed for {storage_config.type}: {e}")
                available = False
            if not available:
                logger.warning(f"Backup handler for {storage_config.type} reports unavailable")

        for destination in config.destinations:
            if destination.type not in self.destinations:
                logger.warning(f"Destination type {destination.type} has no registered sink")

        self._initialized = True
        logger.info(
            f"Backup manager initialized ({len(config.storage_configs)} storage configs, "
            f"{len(config.destinations)} destinations)"
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def accepting_runs(self) -> bool:
        return not self._shutting_down

    def shutdown(self, grace_period: float = 30):
        """
        Stop accepting runs, wait for in-flight runs and release resources.

        Runs still going after ``grace_period`` seconds are cancelled and
        recorded as failed with ShutdownError.
        """
        self._shutting_down = True
        logger.info("Shutting down backup manager")

        if not self._wait_for_active(grace_period):
            remaining = self.active_runs()
            logger.warning(f"Cancelling {len(remaining)} run(s) still active after grace period: {remaining}")
            self.cancel_active_runs()
            if not self._wait_for_active(CANCEL_DRAIN_SECONDS):
                logger.error(f"Runs did not stop after cancellation: {self.active_runs()}")

        for storage_type, handler in self.handlers.items():
            try:
                handler.cleanup()
            except Exception as e:
                logger.error(f"Handler cleanup failed for {storage_type}: {e}")

        self.catalog.close()
        logger.info("Backup manager shut down")

    def _wait_for_active(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        with self._active:
            while self._active_runs:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._active.wait(remaining)
        return True

    def cancel_active_runs(self) -> int:
        """Signal cancellation to every in-flight run. Returns how many were signalled."""
        with self._active:
            events = list(self._active_runs.values())
        for event in events:
            event.set()
        return len(events)

    def active_runs(self) -> List[str]:
        with self._active:
            return sorted(self._active_runs)

    def is_running(self, storage_type: str) -> bool:
        with self._active:
            return storage_type in self._active_runs

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> BackupConfig:
        with self._config_lock:
            return self._config.copy()

    def update_config(self, config: BackupConfig):
        """
        Replace the configuration.

        Raises:
            ConfigError: If the new config is invalid
        """
        config.validate()
        with self._config_lock:
            self._config = config.copy()
        logger.info("Backup configuration updated")

    def default_storage_config(self) -> StorageBackupConfig:
        """Storage config used when no storage config is enabled."""
        return StorageBackupConfig(type=DEFAULT_STORAGE_TYPE)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def run_backup(self, storage_config: StorageBackupConfig,
                   timeout_seconds: Optional[float] = None) -> BackupRecord:
        """
        Execute one backup cycle for a storage config.

        Handler, transport, verification and catalog failures are returned as
        a failed record, never raised. A record the catalog rejects comes back
        with error code catalog_error after its stored copies are removed.

        Args:
            storage_config: Backend to back up
            timeout_seconds: Time limit for the whole run (default: the backend's schedule, else the default schedule)

        Returns:
            The catalogued BackupRecord

        Raises:
            ShutdownError: If the manager is shutting down
            ConflictError: If a run for the same storage type is in progress
        """
        if self._shutting_down:
            raise ShutdownError("Backup manager is shutting down", {'storage_type': storage_config.type})

        with self._active:
            run_lock = self._run_locks.setdefault(storage_config.type, threading.Lock())
        if not run_lock.acquire(blocking=False):
            raise ConflictError(
                f"A backup of {storage_config.type} is already running",
                {'storage_type': storage_config.type}
            )

        cancel_event = threading.Event()
        with self._active:
            self._active_runs[storage_config.type] = cancel_event

        try:
            config = self.get_config()
            if timeout_seconds is None:
                schedule = storage_config.schedule or config.default_schedule
                timeout_seconds = schedule.timeout_seconds

            run = BackupRun(
                config=config,
                storage_config=storage_config,
                handlers=self.handlers,
                destinations=self.destinations,
                temp_dir=self.temp_dir,
                timeout_seconds=timeout_seconds,
                cancel_event=cancel_event,
                clock=self.clock,
            )
            record = run.execute()
            try:
                self.catalog.add(record)
            except (CatalogError, SQLAlchemyError, ValueError) as e:
                record = self._discard_uncatalogued(record, config, e)

            if record.success:
                logger.info(
                    f"Backup {record.id} of {record.storage_type} succeeded "
                    f"({record.size} bytes, {len(record.destinations)} destination(s))"
                )
            else:
                logger.error(f"Backup {record.id} of {record.storage_type} failed: {record.error}")

            self.notifier.notify(record, config.global_settings.notifications)
            return record
        finally:
            with self._active:
                self._active_runs.pop(storage_config.type, None)
                self._active.notify_all()
            run_lock.release()

    def _discard_uncatalogued(self, record: BackupRecord, config: BackupConfig,
                              error: Exception) -> BackupRecord:
        """
        Remove the stored copies of a run whose record could not be catalogued.

        Retention only sees catalogued records, so copies left behind here
        could never be pruned.

        Returns:
            A failed record listing the copies that could not be removed
        """
        logger.error(f"Backup record {record.id} of {record.storage_type} could not be catalogued: {error}")
        remaining = []
        warnings = list(record.warnings)
        for write in record.destinations:
            destination = find_destination(config.destinations, write)
            try:
                self.destinations.get(destination.type).delete(write.location, destination)
            except StorageError as e:
                logger.error(f"Uncatalogued copy {write.location} left at {destination.type}:{destination.path}: {e}")
                warnings.append(f"Uncatalogued copy not removed from {destination.type}:{destination.path}: {e}")
                remaining.append(write)

        return replace(
            record,
            success=False,
            destinations=tuple(remaining),
            warnings=tuple(warnings),
            error=f"Backup record could not be catalogued: {error}",
            error_code=CatalogError.code,
        )

    def start_backup(self, storage_type: str, timeout_seconds: Optional[float] = None) -> BackupRecord:
        """
        Run a backup for an enabled storage config by type.

        Raises:
            ConfigError: If the type is unknown or disabled
        """
        config = self.get_config()
        storage_config = get_storage_config(config, storage_type)
        if storage_config is None:
            if storage_type == DEFAULT_STORAGE_TYPE and not any(s.enabled for s in config.storage_configs):
                storage_config = self.default_storage_config()
            else:
                raise ConfigError(f"Unknown storage type: {storage_type}")
        if not storage_config.enabled:
            raise ConfigError(f"Storage type is disabled: {storage_type}")
        return self.run_backup(storage_config, timeout_seconds)

    def start_full_backup(self) -> List[BackupRecord]:
        """Back up every enabled storage config, one after another."""
        records = []
        for storage_config in self.get_config().storage_configs:
            if storage_config.enabled:
                records.append(self.run_backup(storage_config))
        return records

    # ------------------------------------------------------------------
    # Catalog operations
    # ------------------------------------------------------------------

    def get_statistics(self) -> BackupStatistics:
        return self.catalog.statistics()

    def get_backup(self, record_id: str) -> Optional[BackupRecord]:
        return self.catalog.get(record_id)

    def search_backups(self, storage_type: Optional[str] = None, success: Optional[bool] = None,
                       since: Optional[datetime] = None, until: Optional[datetime] = None,
                       limit: Optional[int] = None, offset: int = 0,
                       newest_first: bool = True) -> List[BackupRecord]:
        return self.catalog.list(
            storage_type=storage_type, success=success, since=since, until=until,
            limit=limit, offset=offset, newest_first=newest_first,
        )

    def _cipher_for(self, record: BackupRecord, config: BackupConfig) -> Optional[ArtifactCipher]:
        if not record.encrypted:
            return None
        return ArtifactCipher(resolve_encryption_key(config.destinations))

    def _fetch(self, record: BackupRecord, config: BackupConfig, work_dir: str) -> str:
        """Download the artifact from the first destination that has it."""
        errors = []
        for write in record.destinations:
            destination = find_destination(config.destinations, write)
            local_path = os.path.join(work_dir, os.path.basename(write.location))
            try:
                return self.destinations.get(destination.type).fetch(write.location, destination, local_path)
            except (StorageError, OSError) as e:
                errors.append(f"{destination.type}:{destination.path}: {e}")
        raise StorageError(f"Artifact for {record.id} unavailable at every destination", {'errors': errors})

    def _stored_artifact(self, record: BackupRecord, path: str, options: dict) -> Artifact:
        return Artifact(
            id=record.id,
            path=path,
            size=record.size,
            checksum=record.checksum or '',
            storage_type=record.storage_type,
            backup_type=record.backup_type,
            metadata=dict(options),
        )

    def restore_backup(self, record_id: str, target: Optional[str] = None):
        """
        Restore a successful backup through its handler.

        Raises:
            RestoreError: If the record is unknown, failed or cannot be restored
        """
        record = self.catalog.get(record_id)
        if record is None:
            raise RestoreError(f"Backup not found: {record_id}")
        if not record.success:
            raise RestoreError(f"Backup {record_id} did not complete successfully")

        config = self.get_config()
        storage_config = get_storage_config(config, record.storage_type)
        options = storage_config.options if storage_config else {}

        os.makedirs(self.temp_dir, exist_ok=True)
        work_dir = tempfile.mkdtemp(prefix=f'restore_{record.storage_type}_', dir=self.temp_dir)
        try:
            handler = self.handlers.get(record.storage_type)
            stored_path = self._fetch(record, config, work_dir)
            decode = make_decoder(record.compression, self._cipher_for(record, config))
            decoded_path = decode(stored_path, os.path.join(work_dir, 'restore.data'))
            artifact = self._stored_artifact(record, decoded_path, options)
            handler.restore(artifact, target)
        except RestoreError:
            raise
        except BackupSystemError as e:
            raise RestoreError(f"Failed to restore {record_id}: {e}")
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"Restored backup {record_id} of {record.storage_type}")

    def verify_backup(self, record_id: str, types: Optional[List[str]] = None) -> List[VerificationResult]:
        """
        Re-run verification against the stored copies of a backup.

        Raises:
            StorageError: If the record is unknown or no copy can be fetched
        """
        record = self.catalog.get(record_id)
        if record is None:
            raise StorageError(f"Backup not found: {record_id}")

        config = self.get_config()
        types = types or config.global_settings.verification_types
        storage_config = get_storage_config(config, record.storage_type)
        options = storage_config.options if storage_config else {}

        writes = []
        for write in record.destinations:
            destination = find_destination(config.destinations, write)
            try:
                size, checksum = self.destinations.get(destination.type).describe(write.location, destination)
            except StorageError as e:
                logger.warning(f"Stored copy unavailable at {destination.type}:{destination.path}: {e}")
                size, checksum = 0, ''
            writes.append(WriteResult(
                destination_type=write.destination_type,
                destination_path=write.destination_path,
                location=write.location,
                size=size,
                checksum=checksum,
            ))

        os.makedirs(self.temp_dir, exist_ok=True)
        work_dir = tempfile.mkdtemp(prefix=f'verify_{record.storage_type}_', dir=self.temp_dir)
        try:
            stored_path = self._fetch(record, config, work_dir)
            return run_verifications(
                types,
                self._stored_artifact(record, stored_path, options),
                writes,
                self.handlers.get(record.storage_type),
                make_decoder(record.compression, self._cipher_for(record, config)),
                work_dir,
                source_checksum=record.source_checksum,
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def delete_backup(self, record_id: str) -> bool:
        """
        Delete a backup's stored copies and its record.

        Returns:
            False if the record does not exist

        Raises:
            StorageError: If any stored copy could not be deleted (the record is kept)
        """
        record = self.catalog.get(record_id)
        if record is None:
            return False

        config = self.get_config()
        errors = []
        for write in record.destinations:
            destination = find_destination(config.destinations, write)
            try:
                self.destinations.get(destination.type).delete(write.location, destination)
            except StorageError as e:
                errors.append(f"{destination.type}:{destination.path}: {e}")

        if errors:
            raise StorageError(f"Failed to delete backup {record_id}", {'errors': errors})

        self.catalog.remove([record_id])
        logger.info(f"Deleted backup {record_id}")
        return True

    def cleanup_old_backups(self, now: Optional[datetime] = None) -> RetentionReport:
        """
        Apply the retention policy.

        Candidates are always computed; they are deleted only when
        ``autoCleanup`` is enabled.
        """
        now = now or self.clock()
        policy = self.get_config().retention_policy
        records = self.catalog.list(newest_first=False)

        report = RetentionReport(candidates=select_for_deletion(records, policy, now))
        if not policy.auto_cleanup:
            logger.info(f"Retention report only: {len(report.candidates)} backup(s) eligible for deletion")
            return report

        for record_id in report.candidates:
            try:
                if self.delete_backup(record_id):
                    report.deleted.append(record_id)
            except StorageError as e:
                logger.error(f"Failed to delete backup {record_id}: {e}")
                report.errors.append(f"{record_id}: {e}")
        report.executed = True

        logger.info(
            f"Cleanup completed. Deleted {len(report.deleted)} of {len(report.candidates)} "
            f"candidate(s), errors: {len(report.errors)}"
        )
        return report
