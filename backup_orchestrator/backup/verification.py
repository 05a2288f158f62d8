"""
Post-write verification of backup artifacts.

Verification types:
- checksum: every destination reports the checksum of what was written
- size-validation: the artifact is non-empty and every destination holds the same size
- integrity-check: the stored artifact decodes back to the handler's output
  and the handler accepts it
- restore-test: the handler performs a trial restore
"""

import logging
import os
import tempfile
from typing import Callable, Iterable, List, Optional, Sequence

from .compression import file_checksum
from .errors import BackupSystemError
from .handlers import StorageBackupHandler
from .models import Artifact, VerificationResult, WriteResult


logger = logging.getLogger(__name__)

# Writes the decoded (decrypted and decompressed) artifact to the given path
Decoder = Callable[[str, str], str]


def verify_checksum(artifact: Artifact, writes: Sequence[WriteResult]) -> VerificationResult:
    errors = []
    for write in writes:
        if not write.checksum:
            errors.append(f"{write.destination_type}:{write.location} reported no checksum")
        elif write.checksum != artifact.checksum:
            errors.append(
                f"{write.destination_type}:{write.location} checksum mismatch "
                f"(expected {artifact.checksum[:12]}, got {write.checksum[:12]})"
            )
    return VerificationResult(
        type='checksum',
        passed=not errors and bool(writes),
        details=f"Checksum matches at {len(writes)} destination(s)" if not errors else '',
        errors=tuple(errors) if writes else ('No destination writes to verify',),
    )


def verify_size(artifact: Artifact, writes: Sequence[WriteResult]) -> VerificationResult:
    errors = []
    if artifact.size <= 0:
        errors.append("Artifact is empty")
    for write in writes:
        if write.size != artifact.size:
            errors.append(
                f"{write.destination_type}:{write.location} size mismatch "
                f"(expected {artifact.size}, got {write.size})"
            )
    return VerificationResult(
        type='size-validation',
        passed=not errors,
        details=f"{artifact.size} bytes at {len(writes)} destination(s)" if not errors else '',
        errors=tuple(errors),
    )


def _decoded_artifact(artifact: Artifact, path: str) -> Artifact:
    return Artifact(
        id=artifact.id,
        path=path,
        size=os.path.getsize(path),
        checksum=file_checksum(path),
        storage_type=artifact.storage_type,
        backup_type=artifact.backup_type,
        metadata=dict(artifact.metadata),
    )


def verify_with_handler(
    vtype: str,
    artifact: Artifact,
    handler: StorageBackupHandler,
    decode: Decoder,
    work_dir: str,
    source_checksum: Optional[str] = None,
) -> VerificationResult:
    """Decode the stored artifact into ``work_dir`` and let the handler check it."""
    with tempfile.TemporaryDirectory(prefix='verify_', dir=work_dir) as scratch:
        try:
            decoded_path = decode(artifact.path, os.path.join(scratch, 'decoded'))
            decoded = _decoded_artifact(artifact, decoded_path)
        except (BackupSystemError, OSError) as e:
            return VerificationResult(type=vtype, passed=False, errors=(f"Artifact could not be decoded: {e}",))

        if vtype == 'integrity-check' and source_checksum and decoded.checksum != source_checksum:
            return VerificationResult(
                type=vtype, passed=False,
                errors=("Decoded artifact does not match the original backup checksum",),
            )

        try:
            result = handler.verify(decoded, [vtype])
        except BackupSystemError as e:
            return VerificationResult(type=vtype, passed=False, errors=(str(e),))

    return VerificationResult(
        type=vtype, passed=result.passed, details=result.details, errors=tuple(result.errors)
    )


def run_verifications(
    types: Iterable[str],
    artifact: Artifact,
    writes: Sequence[WriteResult],
    handler: StorageBackupHandler,
    decode: Decoder,
    work_dir: str,
    source_checksum: Optional[str] = None,
) -> List[VerificationResult]:
    """
    Run each verification type against a written artifact.

    Args:
        types: Verification types to run
        artifact: The processed artifact as written to the destinations
        writes: WriteResults of the destinations that accepted the artifact
        handler: Handler that produced the artifact
        decode: Reverses encryption and compression
        work_dir: Scratch directory
        source_checksum: Checksum of the handler's original output

    Returns:
        One VerificationResult per type, in order
    """
    results = []
    for vtype in types:
        if vtype == 'checksum':
            result = verify_checksum(artifact, writes)
        elif vtype == 'size-validation':
            result = verify_size(artifact, writes)
        elif vtype in ('integrity-check', 'restore-test'):
            result = verify_with_handler(vtype, artifact, handler, decode, work_dir, source_checksum)
        else:
            result = VerificationResult(type=vtype, passed=False, errors=(f"Unknown verification type: {vtype}",))

        if not result.passed:
            logger.warning(f"Verification {vtype} failed for {artifact.id}: {'; '.join(result.errors)}")
        results.append(result)
    return results
