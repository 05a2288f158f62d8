"""
Shared pytest fixtures for backup orchestrator tests.

This module provides fixtures for:
- Backup configurations with local destinations
- A scripted storage handler with controllable outcomes
- Record factories and an in-memory record catalog
- Manager and scheduler instances
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import os
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backup_orchestrator.backup.catalog import RecordCatalog
from backup_orchestrator.backup.config import BackupConfig
from backup_orchestrator.backup.handlers import StorageBackupHandler, artifact_filename, build_artifact
from backup_orchestrator.backup.manager import BackupManager
from backup_orchestrator.backup.models import BackupRecord, WriteResult, new_record_id


class ScriptedHandler(StorageBackupHandler):
    """
    Storage handler whose outcomes are scripted by the test.

    Each call to backup() pops the next outcome: an exception instance is
    raised, anything else produces an artifact holding ``payload``. Tracks
    how many backups run at the same time.
    """

    def __init__(self, storage_type='scripted', outcomes=None, delay=0.0,
                 payload=b'scripted backup payload\n' * 64):
        self.storage_type = storage_type
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.payload = payload
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.restored = []
        self.cleaned_up = False
        self._lock = threading.Lock()

    def backup(self, config, work_dir):
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        try:
            if self.delay:
                time.sleep(self.delay)
            if isinstance(outcome, BaseException):
                raise outcome
            path = os.path.join(work_dir, artifact_filename(config.type, config.backup_type, 'bin'))
            with open(path, 'wb') as f:
                f.write(self.payload)
            return build_artifact(path, config)
        finally:
            with self._lock:
                self.active -= 1

    def restore(self, artifact, target=None):
        with open(artifact.path, 'rb') as f:
            self.restored.append((f.read(), target))

    def cleanup(self):
        self.cleaned_up = True


class FakeClock:
    """Settable clock for scheduler tests."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


def wait_until(condition, timeout=5.0, interval=0.01):
    """Poll until condition() is true. Returns the final value."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def scripted_handler_class():
    """The ScriptedHandler class, for tests that need several instances."""
    return ScriptedHandler


@pytest.fixture
def scripted_handler():
    """Scripted handler for storage type 'scripted' that always succeeds."""
    return ScriptedHandler()


@pytest.fixture
def fake_clock():
    """Clock frozen at 2024-01-01 00:00:30 UTC, advanced explicitly by tests."""
    return FakeClock(datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc))


@pytest.fixture
def waiter():
    return wait_until


@pytest.fixture
def destination_dir(tmp_path):
    path = tmp_path / 'destination'
    path.mkdir()
    return path


@pytest.fixture
def config_document(destination_dir):
    """
    Configuration document with one local destination and one 'scripted' backend.

    Verification runs checksum, size-validation and integrity-check.
    """
    return {
        'enabled': True,
        'defaultSchedule': {
            'cron': '0 2 * * *',
            'timezone': 'UTC',
            'timeout': 5,
            'retries': 2,
        },
        'destinations': [
            {'type': 'local', 'path': str(destination_dir), 'encryption': False},
        ],
        'retentionPolicy': {
            'dailyRetentionDays': 7,
            'weeklyRetentionWeeks': 4,
            'monthlyRetentionMonths': 12,
            'maxBackups': 100,
            'autoCleanup': True,
        },
        'storageConfigs': [
            {'type': 'scripted', 'enabled': True, 'backupType': 'full', 'compression': 'gzip'},
        ],
        'global': {
            'maxParallelJobs': 2,
            'enableVerification': True,
            'verificationTypes': ['checksum', 'size-validation', 'integrity-check'],
            'metadataFormat': 'json',
            'notifications': {'onSuccess': False, 'onFailure': True, 'channels': []},
        },
    }


@pytest.fixture
def backup_config(config_document):
    return BackupConfig.from_dict(config_document)


@pytest.fixture
def catalog():
    """In-memory record catalog."""
    catalog = RecordCatalog()
    yield catalog
    catalog.close()


@pytest.fixture
def manager(backup_config, scripted_handler, tmp_path):
    """
    Initialized BackupManager with the scripted handler and an in-memory catalog.
    """
    manager = BackupManager(
        backup_config,
        handlers=[scripted_handler],
        temp_dir=str(tmp_path / 'work'),
    )
    manager.initialize()
    yield manager
    manager.shutdown(grace_period=1)


@pytest.fixture
def make_record():
    """
    Factory for BackupRecords.

    Defaults to a successful 'sqlite' full backup that started one hour ago.
    """
    def _make_record(storage_type='sqlite', backup_type='full', success=True, started_at=None,
                     size=1024, destinations=(), record_id=None, **kwargs):
        started_at = started_at or datetime.now(timezone.utc) - timedelta(hours=1)
        return BackupRecord(
            id=record_id or new_record_id(),
            storage_type=storage_type,
            backup_type=backup_type,
            started_at=started_at,
            completed_at=started_at + timedelta(minutes=1),
            success=success,
            size=size,
            checksum='ab' * 32 if success else None,
            destinations=tuple(destinations),
            error=None if success else 'backup failed',
            error_code=None if success else 'backup_error',
            **kwargs
        )
    return _make_record


@pytest.fixture
def write_result():
    return WriteResult(
        destination_type='local',
        destination_path='/backups',
        location='sqlite/2024/01/sqlite-full-20240115_120000.sqlite.gz',
        size=1024,
        checksum='ab' * 32,
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP destination testing.

    Returns the patched class; ``mock_ssh_client.return_value.open_sftp.return_value``
    is the SFTP client.
    """
    with patch('backup_orchestrator.backup.storage.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - source/test_file1.txt
    - source/test_file2.log
    - source/nested/test_file3.txt
    - source/test_file.pyc (should be excluded in tests)
    """
    source = tmp_path / 'source'
    source.mkdir()

    # Create files
    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    # Create nested directory
    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    # Create file that should be excluded
    (source / 'test_file.pyc').write_bytes(b'compiled python')

    return source


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing the scheduler's trigger loop.
    """
    with patch('backup_orchestrator.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
