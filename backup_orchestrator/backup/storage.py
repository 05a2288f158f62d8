"""
Destination sinks for backup artifacts.

Supports:
- LocalDestination: Copy into a local directory
- S3Destination: Upload to AWS S3 (or an S3-compatible endpoint)
- SFTPDestination: Upload to a remote host over SSH/SFTP

All sinks lay artifacts out as ``{storage_type}/{YYYY}/{MM}/{record_id}-{filename}``
relative to the destination's path (directory, bucket prefix or remote dir).
"""

import hashlib
import logging
import os
import posixpath
import shutil
import stat as stat_module
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, List, Callable

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from .compression import file_checksum, CHUNK_SIZE
from .config import BackupDestination
from .errors import StorageError
from .models import Artifact, ArtifactRef, WriteResult


logger = logging.getLogger(__name__)

# Use multipart upload for files larger than 100MB
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

SIDECAR_SUFFIXES = ('.meta.json', '.meta.yaml')


def artifact_location(artifact: Artifact, now: Optional[datetime] = None,
                      record_id: Optional[str] = None) -> str:
    """
    Relative location for an artifact: {storage_type}/{YYYY}/{MM}/{record_id}-{filename}

    Handlers may reuse file names across runs, so the record id keeps each
    run's copy at its own location.
    """
    now = now or datetime.now(timezone.utc)
    filename = os.path.basename(artifact.path)
    if record_id:
        filename = f"{record_id}-{filename}"
    return f"{artifact.storage_type}/{now.year}/{now.month:02d}/{filename}"


class DestinationSink(ABC):
    """Capability interface for a destination transport."""

    type: str = ''

    def write(self, artifact: Artifact, destination: BackupDestination,
              cancellation_check: Optional[Callable[[], None]] = None,
              record_id: Optional[str] = None) -> WriteResult:
        """
        Persist an artifact.

        Args:
            artifact: Processed artifact to store
            destination: Destination settings
            cancellation_check: Called between transfer steps; raises to abort
            record_id: Id of the run that owns the copy, prefixed to the file name

        Returns:
            WriteResult with the size and checksum read back from the destination

        Raises:
            StorageError: If the write fails
        """
        if not os.path.exists(artifact.path):
            raise StorageError(f"Artifact file not found: {artifact.path}")
        location = artifact_location(artifact, record_id=record_id)
        self.put_file(artifact.path, location, destination, cancellation_check)
        size, checksum = self.describe(location, destination)
        return WriteResult(
            destination_type=destination.type,
            destination_path=destination.path,
            location=location,
            size=size,
            checksum=checksum,
        )

    @abstractmethod
    def put_file(self, local_path: str, location: str, destination: BackupDestination,
                 cancellation_check: Optional[Callable[[], None]] = None):
        """Copy a local file to ``location``."""

    @abstractmethod
    def describe(self, location: str, destination: BackupDestination):
        """Return (size, sha256) of a stored object."""

    @abstractmethod
    def list_artifacts(self, destination: BackupDestination, prefix: str = '') -> List[ArtifactRef]:
        pass

    @abstractmethod
    def delete(self, location: str, destination: BackupDestination):
        """Delete an artifact and its metadata sidecar, if any."""

    @abstractmethod
    def fetch(self, location: str, destination: BackupDestination, local_path: str) -> str:
        pass


class LocalDestination(DestinationSink):
    """
    Stores artifacts in a local directory.

    Layout: {path}/{storage_type}/{YYYY}/{MM}/{record_id}-{filename}
    """

    type = 'local'

    def _full_path(self, location: str, destination: BackupDestination) -> Path:
        base = Path(destination.path).expanduser().resolve()
        full_path = (base / location).resolve()
        if base != full_path and base not in full_path.parents:
            raise StorageError(f"Location escapes destination directory: {location}")
        return full_path

    def put_file(self, local_path, location, destination, cancellation_check=None):
        dest_path = self._full_path(location, destination)
        if cancellation_check:
            cancellation_check()
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def describe(self, location, destination):
        full_path = self._full_path(location, destination)
        try:
            return full_path.stat().st_size, file_checksum(str(full_path))
        except OSError as e:
            raise StorageError(f"Failed to read back {location}: {e}")

    def list_artifacts(self, destination, prefix=''):
        base = Path(destination.path).expanduser().resolve()
        root = base / prefix if prefix else base
        if not root.exists():
            return []

        artifacts = []
        try:
            for file_path in root.rglob('*'):
                if file_path.is_file():
                    file_stat = file_path.stat()
                    artifacts.append(ArtifactRef(
                        location=file_path.relative_to(base).as_posix(),
                        size=file_stat.st_size,
                        modified_at=datetime.fromtimestamp(file_stat.st_mtime, tz=timezone.utc),
                    ))
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")
        return sorted(artifacts, key=lambda ref: ref.location)

    def delete(self, location, destination):
        for path in [location] + [location + suffix for suffix in SIDECAR_SUFFIXES]:
            full_path = self._full_path(path, destination)
            try:
                if full_path.exists():
                    full_path.unlink()
            except PermissionError as e:
                raise StorageError(f"Permission denied deleting {full_path}: {e}")
            except OSError as e:
                raise StorageError(f"Failed to delete local file: {e}")

    def fetch(self, location, destination, local_path):
        full_path = self._full_path(location, destination)
        if not full_path.exists():
            raise StorageError(f"Artifact not found: {location}")
        try:
            shutil.copy2(full_path, local_path)
        except OSError as e:
            raise StorageError(f"Failed to fetch {location}: {e}")
        return local_path


class S3Destination(DestinationSink):
    """
    Uploads artifacts to S3.

    ``destination.path`` is the bucket name, optionally followed by a key
    prefix (``bucket/prefix``). ``destination.config`` may hold ``region``,
    ``access_key_id``, ``secret_access_key`` and ``endpoint_url``; without
    credentials the default boto3 credential chain is used.
    """

    type = 'aws-s3'

    def _client(self, destination: BackupDestination):
        config = destination.config or {}
        kwargs = {'region_name': config.get('region', 'us-east-1')}
        if config.get('access_key_id'):
            kwargs['aws_access_key_id'] = config['access_key_id']
            kwargs['aws_secret_access_key'] = config.get('secret_access_key')
        if config.get('endpoint_url'):
            kwargs['endpoint_url'] = config['endpoint_url']
        try:
            return boto3.client('s3', **kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def _bucket_and_key(location: str, destination: BackupDestination):
        bucket, _, prefix = destination.path.strip('/').partition('/')
        prefix = (destination.config or {}).get('prefix', prefix).strip('/')
        key = f"{prefix}/{location}" if prefix else location
        return bucket, key

    @staticmethod
    def _raise(action: str, e: Exception):
        if isinstance(e, ClientError):
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 {action} failed ({error_code}): {e}")
        raise StorageError(f"S3 {action} failed: {e}")

    def put_file(self, local_path, location, destination, cancellation_check=None):
        client = self._client(destination)
        bucket, key = self._bucket_and_key(location, destination)
        metadata = {'sha256': file_checksum(local_path)}

        try:
            file_size = os.path.getsize(local_path)
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(client, bucket, key, local_path, metadata, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                with open(local_path, 'rb') as f:
                    client.put_object(Bucket=bucket, Key=key, Body=f, Metadata=metadata)
        except (ClientError, BotoCoreError, OSError) as e:
            self._raise('upload', e)

    def _multipart_upload(self, client, bucket: str, key: str, local_path: str,
                          metadata: Dict[str, str], cancellation_check=None):
        response = client.create_multipart_upload(Bucket=bucket, Key=key, Metadata=metadata)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except BaseException:
            try:
                client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def describe(self, location, destination):
        client = self._client(destination)
        bucket, key = self._bucket_and_key(location, destination)
        try:
            head = client.head_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self._raise('head', e)
        return head['ContentLength'], head.get('Metadata', {}).get('sha256', '')

    def list_artifacts(self, destination, prefix=''):
        client = self._client(destination)
        bucket, search_prefix = self._bucket_and_key(prefix, destination)
        _, base_key = self._bucket_and_key('', destination)

        artifacts = []
        try:
            paginator = client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=bucket, Prefix=search_prefix):
                for obj in page.get('Contents', []):
                    artifacts.append(ArtifactRef(
                        location=obj['Key'][len(base_key):],
                        size=obj['Size'],
                        modified_at=obj['LastModified'],
                    ))
        except (ClientError, BotoCoreError) as e:
            self._raise('list', e)
        return artifacts

    def delete(self, location, destination):
        client = self._client(destination)
        try:
            for path in [location] + [location + suffix for suffix in SIDECAR_SUFFIXES]:
                bucket, key = self._bucket_and_key(path, destination)
                client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self._raise('delete', e)

    def fetch(self, location, destination, local_path):
        client = self._client(destination)
        bucket, key = self._bucket_and_key(location, destination)
        try:
            client.download_file(bucket, key, local_path)
        except (ClientError, BotoCoreError) as e:
            self._raise('download', e)
        return local_path

    def test_connection(self, destination: BackupDestination) -> bool:
        """
        Check that the bucket exists and is accessible.

        Raises:
            StorageError: If the bucket is missing or access is denied
        """
        client = self._client(destination)
        bucket, _ = self._bucket_and_key('', destination)
        try:
            client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {bucket}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {bucket}")
            raise StorageError(f"S3 connection test failed ({error_code}): {e}")


class SFTPDestination(DestinationSink):
    """
    Uploads artifacts to a remote directory over SFTP.

    ``destination.path`` is the remote base directory. ``destination.config``
    holds ``host``, ``port`` (default 22), ``username`` and either
    ``password`` or ``private_key`` (path to a key file).
    """

    type = 'sftp'

    @contextmanager
    def _session(self, destination: BackupDestination):
        config = destination.config or {}
        host = config.get('host') or config.get('hostname')
        if not host:
            raise StorageError("SFTP destination requires a host")

        connect_kwargs = {
            'hostname': host,
            'port': config.get('port', 22),
            'username': config.get('username'),
            'timeout': 30
        }
        if config.get('password'):
            connect_kwargs['password'] = config['password']
        elif config.get('private_key'):
            key_path = Path(config['private_key']).expanduser()
            if not key_path.exists():
                raise StorageError(f"Private key not found: {config['private_key']}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise StorageError("Either password or private_key must be provided")

        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())
        try:
            ssh_client.connect(**connect_kwargs)
            sftp_client = ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise StorageError(f"Failed to connect to {host}: {e}")

        try:
            yield sftp_client
        finally:
            sftp_client.close()
            ssh_client.close()

    @staticmethod
    def _remote_path(location: str, destination: BackupDestination) -> str:
        return posixpath.join(destination.path, location)

    @staticmethod
    def _makedirs(sftp, remote_dir: str):
        parts = [p for p in remote_dir.split('/') if p]
        current = '/' if remote_dir.startswith('/') else ''
        for part in parts:
            current = posixpath.join(current, part) if current else part
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def put_file(self, local_path, location, destination, cancellation_check=None):
        remote_path = self._remote_path(location, destination)
        with self._session(destination) as sftp:
            if cancellation_check:
                cancellation_check()
            try:
                self._makedirs(sftp, posixpath.dirname(remote_path))
                sftp.put(local_path, remote_path)
            except PermissionError as e:
                raise StorageError(f"Permission denied writing {remote_path}: {e}")
            except (IOError, paramiko.SSHException) as e:
                raise StorageError(f"Failed to upload {remote_path}: {e}")

    def describe(self, location, destination):
        remote_path = self._remote_path(location, destination)
        with self._session(destination) as sftp:
            try:
                size = sftp.stat(remote_path).st_size
                digest = hashlib.sha256()
                with sftp.open(remote_path, 'rb') as remote_file:
                    for chunk in iter(lambda: remote_file.read(CHUNK_SIZE), b''):
                        digest.update(chunk)
            except (IOError, paramiko.SSHException) as e:
                raise StorageError(f"Failed to read back {remote_path}: {e}")
        return size, digest.hexdigest()

    def list_artifacts(self, destination, prefix=''):
        root = self._remote_path(prefix, destination).rstrip('/')
        artifacts = []
        with self._session(destination) as sftp:
            try:
                self._walk(sftp, root, destination.path.rstrip('/'), artifacts)
            except FileNotFoundError:
                return []
            except (IOError, paramiko.SSHException) as e:
                raise StorageError(f"Failed to list {root}: {e}")
        return sorted(artifacts, key=lambda ref: ref.location)

    def _walk(self, sftp, remote_dir: str, base: str, artifacts: List[ArtifactRef]):
        for attr in sftp.listdir_attr(remote_dir):
            remote_path = posixpath.join(remote_dir, attr.filename)
            if stat_module.S_ISDIR(attr.st_mode):
                self._walk(sftp, remote_path, base, artifacts)
            else:
                artifacts.append(ArtifactRef(
                    location=posixpath.relpath(remote_path, base),
                    size=attr.st_size,
                    modified_at=datetime.fromtimestamp(attr.st_mtime, tz=timezone.utc),
                ))

    def delete(self, location, destination):
        with self._session(destination) as sftp:
            try:
                sftp.remove(self._remote_path(location, destination))
            except FileNotFoundError:
                logger.info(f"Remote artifact already gone: {location}")
            except (IOError, paramiko.SSHException) as e:
                raise StorageError(f"Failed to delete {location}: {e}")

            for suffix in SIDECAR_SUFFIXES:
                try:
                    sftp.remove(self._remote_path(location + suffix, destination))
                except FileNotFoundError:
                    continue

    def fetch(self, location, destination, local_path):
        remote_path = self._remote_path(location, destination)
        with self._session(destination) as sftp:
            try:
                sftp.get(remote_path, local_path)
            except FileNotFoundError:
                raise StorageError(f"Remote artifact not found: {remote_path}")
            except (IOError, paramiko.SSHException) as e:
                raise StorageError(f"Failed to download {remote_path}: {e}")
        return local_path


class DestinationRegistry:
    """Lookup table of destination sinks keyed by destination type."""

    def __init__(self, sinks: Optional[Dict[str, DestinationSink]] = None):
        self._sinks: Dict[str, DestinationSink] = dict(sinks or {})

    def register(self, destination_type: str, sink: DestinationSink):
        self._sinks[destination_type] = sink

    def get(self, destination_type: str) -> DestinationSink:
        """
        Raises:
            StorageError: If no sink is registered for the type
        """
        sink = self._sinks.get(destination_type)
        if sink is None:
            raise StorageError(f"Destination type not supported: {destination_type}")
        return sink

    def __contains__(self, destination_type: str) -> bool:
        return destination_type in self._sinks

    def types(self) -> List[str]:
        return sorted(self._sinks)


def default_destination_registry() -> DestinationRegistry:
    return DestinationRegistry({
        LocalDestination.type: LocalDestination(),
        S3Destination.type: S3Destination(),
        SFTPDestination.type: SFTPDestination(),
    })
