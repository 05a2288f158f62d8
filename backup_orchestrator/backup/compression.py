"""
Compression transforms for backup artifacts.

Supports:
- none: Plain copy
- gzip: stdlib gzip
- brotli: Google brotli
- lz4: LZ4 frame format
"""

import gzip
import hashlib
import logging
import os
import shutil
from typing import Optional

import brotli
import lz4.frame

from .errors import CompressionError


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

COMPRESSION_EXTENSIONS = {
    'none': '',
    'gzip': '.gz',
    'brotli': '.br',
    'lz4': '.lz4',
}


def _copy_stream(src, dst):
    shutil.copyfileobj(src, dst, CHUNK_SIZE)


def _brotli_compress(source_path: str, output_path: str):
    compressor = brotli.Compressor(quality=6)
    with open(source_path, 'rb') as src, open(output_path, 'wb') as dst:
        while True:
            chunk = src.read(CHUNK_SIZE)
            if not chunk:
                break
            dst.write(compressor.process(chunk))
        dst.write(compressor.finish())


def _brotli_decompress(source_path: str, output_path: str):
    decompressor = brotli.Decompressor()
    with open(source_path, 'rb') as src, open(output_path, 'wb') as dst:
        while True:
            chunk = src.read(CHUNK_SIZE)
            if not chunk:
                break
            dst.write(decompressor.process(chunk))
        if not decompressor.is_finished():
            raise CompressionError("Truncated brotli stream")


def _compress(source_path: str, output_path: str, compression: str):
    if compression == 'none':
        shutil.copyfile(source_path, output_path)
    elif compression == 'gzip':
        with open(source_path, 'rb') as src, gzip.open(output_path, 'wb') as dst:
            _copy_stream(src, dst)
    elif compression == 'brotli':
        _brotli_compress(source_path, output_path)
    elif compression == 'lz4':
        with open(source_path, 'rb') as src, lz4.frame.open(output_path, 'wb') as dst:
            _copy_stream(src, dst)


def _decompress(source_path: str, output_path: str, compression: str):
    if compression == 'none':
        shutil.copyfile(source_path, output_path)
    elif compression == 'gzip':
        with gzip.open(source_path, 'rb') as src, open(output_path, 'wb') as dst:
            _copy_stream(src, dst)
    elif compression == 'brotli':
        _brotli_decompress(source_path, output_path)
    elif compression == 'lz4':
        with lz4.frame.open(source_path, 'rb') as src, open(output_path, 'wb') as dst:
            _copy_stream(src, dst)


def _validate(compression: str):
    if compression not in COMPRESSION_EXTENSIONS:
        raise ValueError(
            f"Invalid compression type: {compression}. "
            f"Valid options: {list(COMPRESSION_EXTENSIONS.keys())}"
        )


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial output {path}: {e}")


def compress_file(source_path: str, compression: str, output_path: Optional[str] = None) -> str:
    """
    Compress a file.

    Args:
        source_path: File to compress
        compression: Compression type ('none', 'gzip', 'brotli', 'lz4')
        output_path: Destination path (default: source path plus the type's extension,
            or ``.copy`` for 'none')

    Returns:
        Path of the compressed file

    Raises:
        CompressionError: If compression fails
        ValueError: If compression type is invalid
    """
    _validate(compression)
    if not os.path.isfile(source_path):
        raise CompressionError(f"File not found: {source_path}")

    if output_path is None:
        output_path = source_path + (COMPRESSION_EXTENSIONS[compression] or '.copy')

    try:
        _compress(source_path, output_path, compression)
        return output_path
    except CompressionError:
        _remove_partial(output_path)
        raise
    except Exception as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to compress {os.path.basename(source_path)} ({compression}): {e}")


def decompress_file(source_path: str, compression: str, output_path: str) -> str:
    """
    Reverse compress_file.

    Returns:
        output_path

    Raises:
        CompressionError: If the input is missing or not valid for the given type
        ValueError: If compression type is invalid
    """
    _validate(compression)
    if not os.path.isfile(source_path):
        raise CompressionError(f"File not found: {source_path}")

    try:
        _decompress(source_path, output_path, compression)
        return output_path
    except CompressionError:
        _remove_partial(output_path)
        raise
    except Exception as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to decompress {os.path.basename(source_path)} ({compression}): {e}")


def file_checksum(path: str) -> str:
    """SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def get_file_size(path: str) -> int:
    """
    Get the size of a file in bytes.

    Raises:
        CompressionError: If the file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(path)
    except FileNotFoundError:
        raise CompressionError(f"File not found: {path}")
    except OSError as e:
        raise CompressionError(f"Failed to get file size: {e}")
