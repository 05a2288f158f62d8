"""
Unit tests for destination sinks (backup_orchestrator/backup/storage.py).

Tests LocalDestination, S3Destination (moto) and SFTPDestination (mocked
paramiko) for storing backup artifacts.
"""

import hashlib
import re
from datetime import datetime, timezone

import boto3
import paramiko
import pytest

from backup_orchestrator.backup.compression import file_checksum
from backup_orchestrator.backup.config import BackupDestination
from backup_orchestrator.backup.models import Artifact
from backup_orchestrator.backup.storage import (
    DestinationRegistry,
    LocalDestination,
    S3Destination,
    SFTPDestination,
    StorageError,
    artifact_location,
    default_destination_registry,
)


@pytest.fixture
def artifact(tmp_path):
    path = tmp_path / 'work' / 'sqlite-full-20240115_120000.sqlite.gz'
    path.parent.mkdir()
    path.write_bytes(b'compressed sqlite backup' * 50)
    return Artifact(
        id='artifact-1',
        path=str(path),
        size=path.stat().st_size,
        checksum=file_checksum(str(path)),
        storage_type='sqlite',
    )


class TestArtifactLocation:
    """Test the shared artifact layout."""

    def test_layout(self, artifact):
        now = datetime(2024, 3, 5, tzinfo=timezone.utc)

        assert artifact_location(artifact, now) == 'sqlite/2024/03/sqlite-full-20240115_120000.sqlite.gz'

    def test_record_id_prefixes_file_name(self, artifact):
        now = datetime(2024, 3, 5, tzinfo=timezone.utc)

        assert artifact_location(artifact, now, record_id='3f2a') == \
            'sqlite/2024/03/3f2a-sqlite-full-20240115_120000.sqlite.gz'

    def test_runs_with_same_file_name_do_not_collide(self, artifact, tmp_path):
        """Test two runs writing an identically named artifact keep both copies."""
        destination = BackupDestination(type='local', path=str(tmp_path / 'backups'))
        sink = LocalDestination()

        first = sink.write(artifact, destination, record_id='run-1')
        second = sink.write(artifact, destination, record_id='run-2')
        sink.delete(first.location, destination)

        assert first.location != second.location
        assert (tmp_path / 'backups' / second.location).exists()


class TestLocalDestination:
    """Test LocalDestination for local filesystem storage."""

    @pytest.fixture
    def destination(self, tmp_path):
        return BackupDestination(type='local', path=str(tmp_path / 'backups'))

    def test_write(self, artifact, destination, tmp_path):
        """Test writing copies the artifact and reads its checksum back."""
        result = LocalDestination().write(artifact, destination)

        assert re.match(r'^sqlite/\d{4}/\d{2}/sqlite-full-20240115_120000\.sqlite\.gz$', result.location)
        assert result.size == artifact.size
        assert result.checksum == artifact.checksum
        assert result.destination_type == 'local'
        assert (tmp_path / 'backups' / result.location).exists()

    def test_write_missing_artifact(self, artifact, destination, tmp_path):
        (tmp_path / 'work' / 'sqlite-full-20240115_120000.sqlite.gz').unlink()

        with pytest.raises(StorageError, match='not found'):
            LocalDestination().write(artifact, destination)

    def test_write_honours_cancellation(self, artifact, destination):
        def cancelled():
            raise StorageError('cancelled')

        with pytest.raises(StorageError, match='cancelled'):
            LocalDestination().write(artifact, destination, cancellation_check=cancelled)

    def test_list_and_fetch(self, artifact, destination, tmp_path):
        sink = LocalDestination()
        result = sink.write(artifact, destination)

        listed = sink.list_artifacts(destination)
        assert [ref.location for ref in listed] == [result.location]
        assert listed[0].size == artifact.size

        fetched = sink.fetch(result.location, destination, str(tmp_path / 'fetched'))
        assert file_checksum(fetched) == artifact.checksum

    def test_list_missing_directory(self, destination):
        assert LocalDestination().list_artifacts(destination) == []

    def test_delete_removes_sidecar(self, artifact, destination, tmp_path):
        """Test delete removes the artifact and its metadata sidecar."""
        sink = LocalDestination()
        result = sink.write(artifact, destination)
        sidecar = tmp_path / 'backups' / (result.location + '.meta.json')
        sidecar.write_text('{}')

        sink.delete(result.location, destination)

        assert not (tmp_path / 'backups' / result.location).exists()
        assert not sidecar.exists()

    def test_location_cannot_escape(self, destination):
        with pytest.raises(StorageError, match='escapes'):
            LocalDestination().describe('../outside.txt', destination)

    def test_fetch_missing(self, destination, tmp_path):
        with pytest.raises(StorageError, match='not found'):
            LocalDestination().fetch('sqlite/2024/01/missing', destination, str(tmp_path / 'x'))


class TestS3Destination:
    """Test S3Destination against moto's S3."""

    @pytest.fixture
    def destination(self):
        return BackupDestination(type='aws-s3', path='test-bucket/backups', config={'region': 'us-east-1'})

    def test_write(self, mock_s3, artifact, destination):
        """Test upload stores the object under the prefix with its sha256."""
        result = S3Destination().write(artifact, destination)

        obj = mock_s3.Object('test-bucket', f'backups/{result.location}')
        assert obj.content_length == artifact.size
        assert obj.metadata['sha256'] == artifact.checksum
        assert result.checksum == artifact.checksum
        assert result.size == artifact.size

    def test_list_fetch_delete(self, mock_s3, artifact, destination, tmp_path):
        sink = S3Destination()
        result = sink.write(artifact, destination)

        listed = sink.list_artifacts(destination)
        assert [ref.location for ref in listed] == [result.location]

        fetched = sink.fetch(result.location, destination, str(tmp_path / 'fetched'))
        assert file_checksum(fetched) == artifact.checksum

        sink.delete(result.location, destination)
        assert sink.list_artifacts(destination) == []

    def test_prefix_from_config(self, mock_s3, artifact):
        destination = BackupDestination(
            type='aws-s3', path='test-bucket', config={'region': 'us-east-1', 'prefix': 'nightly'}
        )

        result = S3Destination().write(artifact, destination)

        assert mock_s3.Object('test-bucket', f'nightly/{result.location}').content_length == artifact.size

    def test_missing_bucket(self, mock_s3, artifact):
        destination = BackupDestination(type='aws-s3', path='no-such-bucket', config={'region': 'us-east-1'})

        with pytest.raises(StorageError, match='S3 upload failed'):
            S3Destination().write(artifact, destination)

    def test_connection(self, mock_s3, destination):
        sink = S3Destination()

        assert sink.test_connection(destination) is True

        with pytest.raises(StorageError, match='Bucket does not exist'):
            sink.test_connection(BackupDestination(type='aws-s3', path='missing', config={'region': 'us-east-1'}))

    def test_multipart_upload(self, mock_s3, artifact, destination, monkeypatch):
        """Test large files go through multipart upload."""
        monkeypatch.setattr('backup_orchestrator.backup.storage.MULTIPART_THRESHOLD', 10)
        monkeypatch.setattr('backup_orchestrator.backup.storage.MULTIPART_CHUNK_SIZE', 5 * 1024 * 1024)

        result = S3Destination().write(artifact, destination)

        client = boto3.client('s3', region_name='us-east-1')
        body = client.get_object(Bucket='test-bucket', Key=f'backups/{result.location}')['Body'].read()
        assert hashlib.sha256(body).hexdigest() == artifact.checksum
        assert result.checksum == artifact.checksum


class TestSFTPDestination:
    """Test SFTPDestination with a mocked paramiko client."""

    @pytest.fixture
    def destination(self):
        return BackupDestination(
            type='sftp',
            path='/srv/backups',
            config={'host': 'backup.example.com', 'username': 'backup', 'password': 'secret'},
        )

    def test_write(self, mock_ssh_client, artifact, destination):
        """Test upload puts the file and hashes the remote copy."""
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        with open(artifact.path, 'rb') as f:
            data = f.read()
        sftp.stat.return_value.st_size = artifact.size
        sftp.open.return_value.__enter__.return_value.read.side_effect = [data, b'']

        result = SFTPDestination().write(artifact, destination)

        remote_path = f'/srv/backups/{result.location}'
        sftp.put.assert_called_once_with(artifact.path, remote_path)
        mock_ssh_client.return_value.connect.assert_called_with(
            hostname='backup.example.com', port=22, username='backup', timeout=30, password='secret'
        )
        assert result.checksum == artifact.checksum
        assert result.size == artifact.size

    def test_creates_missing_directories(self, mock_ssh_client, artifact, destination):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.stat.side_effect = FileNotFoundError()

        SFTPDestination().put_file(artifact.path, 'sqlite/2024/01/file.gz', destination)

        created = [call.args[0] for call in sftp.mkdir.call_args_list]
        assert created[-1] == '/srv/backups/sqlite/2024/01'

    def test_requires_host(self, artifact):
        destination = BackupDestination(type='sftp', path='/srv', config={'username': 'u', 'password': 'p'})

        with pytest.raises(StorageError, match='requires a host'):
            SFTPDestination().write(artifact, destination)

    def test_requires_credentials(self, artifact):
        destination = BackupDestination(type='sftp', path='/srv', config={'host': 'h', 'username': 'u'})

        with pytest.raises(StorageError, match='password or private_key'):
            SFTPDestination().write(artifact, destination)

    def test_authentication_failure(self, mock_ssh_client, artifact, destination):
        mock_ssh_client.return_value.connect.side_effect = paramiko.AuthenticationException('bad password')

        with pytest.raises(StorageError, match='authentication failed'):
            SFTPDestination().write(artifact, destination)

        mock_ssh_client.return_value.close.assert_called()

    def test_delete_tolerates_missing_sidecars(self, mock_ssh_client, destination):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.remove.side_effect = [None, FileNotFoundError(), FileNotFoundError()]

        SFTPDestination().delete('sqlite/2024/01/file.gz', destination)

        assert sftp.remove.call_args_list[0].args[0] == '/srv/backups/sqlite/2024/01/file.gz'
        assert sftp.remove.call_count == 3


class TestDestinationRegistry:
    """Test DestinationRegistry lookups."""

    def test_default_registry(self):
        registry = default_destination_registry()

        assert registry.types() == ['aws-s3', 'local', 'sftp']
        assert isinstance(registry.get('local'), LocalDestination)

    def test_unsupported_type(self):
        with pytest.raises(StorageError, match='not supported'):
            DestinationRegistry().get('ftp')

    def test_register(self):
        registry = DestinationRegistry()
        sink = LocalDestination()

        registry.register('ftp', sink)

        assert 'ftp' in registry
        assert registry.get('ftp') is sink
