"""
Backup executor - runs one backup cycle for one storage config.

Workflow:
1. Create a temporary work directory
2. Run pre-backup hooks (any failure aborts the run)
3. Invoke the storage handler under the run's timeout
4. Compress the artifact
5. Encrypt it if any destination requires encryption
6. Write to each destination in order
7. Verify the written artifact
8. Write the metadata sidecar next to each stored copy
9. Run post-backup hooks (best effort)
10. Cleanup temporary files and build the BackupRecord

Every failure is converted into a failed BackupRecord; nothing raises past
``execute()``.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import yaml

from .compression import compress_file, decompress_file, file_checksum
from .config import BackupConfig, BackupDestination, StorageBackupConfig
from .crypto import ArtifactCipher, resolve_encryption_key
from .errors import (
    BackupSystemError, BackupTimeoutError, ShutdownError, StorageError, VerificationError, error_code,
)
from .handlers import HandlerRegistry, StorageBackupHandler
from .hooks import run_pre_hooks, run_post_hooks
from .models import Artifact, BackupRecord, VerificationResult, WriteResult, new_record_id
from .storage import DestinationRegistry
from .verification import run_verifications


logger = logging.getLogger(__name__)

# How often a waiting run checks for timeout and cancellation
POLL_INTERVAL = 0.1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_decoder(compression: str, cipher: Optional[ArtifactCipher]) -> Callable[[str, str], str]:
    """Build a function that reverses encryption and compression of a stored artifact."""

    def decode(source_path: str, output_path: str) -> str:
        if cipher is not None:
            decrypted_path = output_path + '.dec'
            cipher.decrypt_file(source_path, decrypted_path)
            try:
                return decompress_file(decrypted_path, compression, output_path)
            finally:
                if os.path.exists(decrypted_path):
                    os.remove(decrypted_path)
        return decompress_file(source_path, compression, output_path)

    return decode


def find_destination(destinations: List[BackupDestination], write: WriteResult) -> BackupDestination:
    """Destination config a write went to, or a bare one if it is no longer configured."""
    for destination in destinations:
        if destination.type == write.destination_type and destination.path == write.destination_path:
            return destination
    return BackupDestination(type=write.destination_type, path=write.destination_path)


class BackupRun:
    """
    Executes one backup cycle.

    A run is used once. ``cancel_event`` is checked between stages and while
    the handler is working; when set, the run fails with ShutdownError.
    """

    def __init__(
        self,
        config: BackupConfig,
        storage_config: StorageBackupConfig,
        handlers: HandlerRegistry,
        destinations: DestinationRegistry,
        temp_dir: str,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.storage_config = storage_config
        self.handlers = handlers
        self.destinations = destinations
        self.temp_dir = temp_dir
        self.timeout_seconds = timeout_seconds
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock

        self.record_id = new_record_id()
        self.work_dir = None
        self.started_at = None
        self.deadline = None
        self.logs = []

        self.raw_artifact: Optional[Artifact] = None
        self.artifact: Optional[Artifact] = None
        self.encrypted = False
        self.writes: List[WriteResult] = []
        self.verification: List[VerificationResult] = []
        self.warnings: List[str] = []

    def execute(self) -> BackupRecord:
        """
        Run the cycle.

        Returns:
            BackupRecord describing the outcome
        """
        self.started_at = self.clock()
        if self.timeout_seconds:
            self.deadline = self.started_at.timestamp() + self.timeout_seconds

        self._log(
            f"Starting {self.storage_config.backup_type} backup of {self.storage_config.type}"
        )

        error: Optional[BaseException] = None
        try:
            self._execute_workflow()
            self._log("Backup completed successfully")
        except BackupSystemError as e:
            error = e
            self._log(f"Backup failed: {e}")
        except Exception as e:
            error = e
            logger.exception(f"Unexpected error during {self.storage_config.type} backup")
            self._log(f"Backup failed with unexpected error: {e}")
        finally:
            self._cleanup()

        return self._build_record(error)

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Create temporary directory
        os.makedirs(self.temp_dir, exist_ok=True)
        self.work_dir = tempfile.mkdtemp(prefix=f'backup_{self.storage_config.type}_', dir=self.temp_dir)
        self._log(f"Temporary directory: {self.work_dir}")

        # Step 2: Pre-backup hooks
        if self.storage_config.pre_backup_hooks:
            run_pre_hooks(self.storage_config.pre_backup_hooks, self._log)
        self._checkpoint()

        # Step 3: Handler backup
        handler = self.handlers.get(self.storage_config.type)
        self.raw_artifact = self._run_handler(handler)
        self._log(
            f"Handler produced {os.path.basename(self.raw_artifact.path)} "
            f"({self.raw_artifact.size / 1024 / 1024:.2f} MB)"
        )
        self._checkpoint()

        # Step 4: Compression
        self.artifact = self._compress(self.raw_artifact)
        self._checkpoint()

        # Step 5: Encryption
        cipher = self._cipher()
        if cipher is not None:
            self._log("Encrypting artifact")
            encrypted_path = cipher.encrypt_file(self.artifact.path)
            self.artifact = self._derived_artifact(encrypted_path)
            self.encrypted = True
        self._checkpoint()

        # Step 6: Destinations
        self._write_destinations()

        # Step 7: Verification
        if self.config.global_settings.enable_verification:
            self._verify(handler, cipher)

        # Step 8: Metadata sidecar
        self._write_sidecars()

        # Step 9: Post-backup hooks
        if self.storage_config.post_backup_hooks:
            self.warnings.extend(run_post_hooks(self.storage_config.post_backup_hooks, self._log))

    def _checkpoint(self):
        """Raise if the run was cancelled or ran out of time."""
        if self.cancel_event.is_set():
            raise ShutdownError("Backup cancelled by shutdown")
        if self.deadline is not None and self.clock().timestamp() > self.deadline:
            raise BackupTimeoutError(f"Backup exceeded timeout of {self.timeout_seconds}s")

    def _run_handler(self, handler: StorageBackupHandler) -> Artifact:
        """Run handler.backup on a worker thread so timeout and cancellation can interrupt the wait."""
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f'handler-{self.storage_config.type}')
        try:
            future = pool.submit(handler.backup, self.storage_config, self.work_dir)
            while not future.done():
                self._checkpoint()
                wait([future], timeout=POLL_INTERVAL)
            return future.result()
        finally:
            pool.shutdown(wait=False)

    def _derived_artifact(self, path: str) -> Artifact:
        return Artifact(
            id=self.raw_artifact.id,
            path=path,
            size=os.path.getsize(path),
            checksum=file_checksum(path),
            storage_type=self.raw_artifact.storage_type,
            backup_type=self.raw_artifact.backup_type,
            metadata=dict(self.raw_artifact.metadata),
        )

    def _compress(self, artifact: Artifact) -> Artifact:
        compression = self.storage_config.compression
        if compression == 'none':
            return artifact
        self._log(f"Compressing artifact ({compression})")
        compressed_path = compress_file(artifact.path, compression)
        compressed = self._derived_artifact(compressed_path)
        self._log(f"Compressed {artifact.size} -> {compressed.size} bytes")
        return compressed

    def _cipher(self) -> Optional[ArtifactCipher]:
        if not any(d.encryption for d in self.config.destinations):
            return None
        return ArtifactCipher(resolve_encryption_key(self.config.destinations))

    def _write_destinations(self):
        destinations = self.config.destinations
        if not destinations:
            raise StorageError("No backup destinations configured")

        failures: List[Tuple[BackupDestination, Exception]] = []
        for destination in destinations:
            self._checkpoint()
            self._log(f"Writing to {destination.type} destination {destination.path}")
            try:
                sink = self.destinations.get(destination.type)
                write = sink.write(
                    self.artifact, destination, cancellation_check=self._checkpoint, record_id=self.record_id
                )
            except (StorageError, OSError) as e:
                self._log(f"Destination {destination.type}:{destination.path} failed: {e}")
                failures.append((destination, e))
                continue
            self.writes.append(write)
            self._log(f"Stored at {destination.type}:{write.location}")

        if not failures:
            return
        if len(destinations) == 1:
            raise failures[0][1] if isinstance(failures[0][1], StorageError) else StorageError(str(failures[0][1]))
        if not self.writes:
            raise StorageError(
                f"All {len(destinations)} destinations failed",
                {f"{d.type}:{d.path}": str(e) for d, e in failures}
            )
        for destination, e in failures:
            self.warnings.append(f"Destination {destination.type}:{destination.path} failed: {e}")

    def _verify(self, handler: StorageBackupHandler, cipher: Optional[ArtifactCipher]):
        types = self.config.global_settings.verification_types
        if not types:
            return
        self._log(f"Verifying artifact ({', '.join(types)})")
        self.verification = run_verifications(
            types,
            self.artifact,
            self.writes,
            handler,
            make_decoder(self.storage_config.compression, cipher),
            self.work_dir,
            source_checksum=self.raw_artifact.checksum,
        )
        failed = [result for result in self.verification if not result.passed]
        if failed:
            raise VerificationError(
                f"Verification failed: {', '.join(result.type for result in failed)}",
                {result.type: list(result.errors) for result in failed}
            )
        self._log("Verification passed")

    def _metadata_document(self) -> dict:
        return {
            'id': self.record_id,
            'storageType': self.storage_config.type,
            'backupType': self.storage_config.backup_type,
            'startedAt': self.started_at.isoformat(),
            'size': self.artifact.size,
            'checksum': self.artifact.checksum,
            'sourceChecksum': self.raw_artifact.checksum,
            'compression': self.storage_config.compression,
            'encrypted': self.encrypted,
            'verification': [result.to_dict() for result in self.verification],
            'handlerMetadata': self.raw_artifact.metadata,
        }

    def _write_sidecars(self):
        metadata_format = self.config.global_settings.metadata_format
        suffix = '.meta.yaml' if metadata_format == 'yaml' else '.meta.json'
        sidecar_path = os.path.join(self.work_dir, os.path.basename(self.artifact.path) + suffix)

        document = self._metadata_document()
        try:
            with open(sidecar_path, 'w', encoding='utf-8') as f:
                if metadata_format == 'yaml':
                    yaml.safe_dump(document, f, sort_keys=False)
                else:
                    json.dump(document, f, indent=2, default=str)
        except (OSError, yaml.YAMLError, TypeError) as e:
            self.warnings.append(f"Metadata sidecar could not be rendered: {e}")
            return

        for write in self.writes:
            destination = find_destination(self.config.destinations, write)
            try:
                self.destinations.get(destination.type).put_file(
                    sidecar_path, write.location + suffix, destination
                )
            except (StorageError, OSError) as e:
                self.warnings.append(f"Metadata sidecar not written to {destination.type}:{destination.path}: {e}")

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.work_dir and os.path.exists(self.work_dir):
            try:
                shutil.rmtree(self.work_dir)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _build_record(self, error: Optional[BaseException]) -> BackupRecord:
        artifact = self.artifact or self.raw_artifact
        return BackupRecord(
            id=self.record_id,
            storage_type=self.storage_config.type,
            backup_type=self.storage_config.backup_type,
            started_at=self.started_at,
            completed_at=self.clock(),
            success=error is None,
            size=artifact.size if artifact else 0,
            checksum=artifact.checksum if artifact else None,
            source_checksum=self.raw_artifact.checksum if self.raw_artifact else None,
            compression=self.storage_config.compression,
            encrypted=self.encrypted,
            destinations=tuple(self.writes),
            verification=tuple(self.verification),
            warnings=tuple(self.warnings),
            error=str(error) if error else None,
            error_code=error_code(error) if error else None,
            logs='\n'.join(self.logs),
        )

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{self.storage_config.type}] {message}")
