"""
Compression handlers for backup archives.

Supports:
- tar archives (tar.gz, tar.bz2, tar.xz, or uncompressed 'none') for
  directory trees
- single-file gzip for database dumps
"""

import gzip
import os
import shutil
import tarfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional

# Timestamp embedded in every archive name, e.g. 2024-01-15-03-00-00
TIMESTAMP_FORMAT = '%Y-%m-%d-%H-%M-%S'

TAR_FORMATS = {
    'tar.gz': ('tar.gz', 'w:gz'),
    'tar.bz2': ('tar.bz2', 'w:bz2'),
    'tar.xz': ('tar.xz', 'w:xz'),
    'none': ('tar', 'w'),
}


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def archive_extension(compression_format: str) -> str:
    """
    Map a compression format to its file extension.

    Raises:
        ValueError: If compression_format is invalid
    """
    if compression_format not in TAR_FORMATS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(TAR_FORMATS.keys())}"
        )
    return TAR_FORMATS[compression_format][0]


def create_archive(source_paths: List[str], output_path: str, compression_format: str = 'tar.gz') -> str:
    """
    Create a tar archive from source paths.

    Each path is stored under its basename, so a directory ``/srv/www/site``
    becomes the single top-level entry ``site``.

    Args:
        source_paths: List of file/directory paths to include in archive
        output_path: Path where archive should be created (without extension)
        compression_format: 'tar.gz', 'tar.bz2', 'tar.xz' or 'none'

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    extension = archive_extension(compression_format)
    mode = TAR_FORMATS[compression_format][1]
    archive_path = f"{output_path}.{extension}"

    try:
        with tarfile.open(archive_path, mode) as tar:
            for source_path in source_paths:
                source = Path(source_path)
                if not source.exists():
                    raise CompressionError(f"Path does not exist: {source_path}")
                tar.add(source, arcname=source.name, recursive=True)
        return archive_path

    except CompressionError:
        _remove_partial(archive_path)
        raise
    except (OSError, tarfile.TarError) as e:
        _remove_partial(archive_path)
        raise CompressionError(f"Failed to create archive: {e}")


def gzip_file(source_path: str, remove_source: bool = True) -> str:
    """
    Compress a single file to ``{source_path}.gz``.

    Args:
        source_path: File to compress
        remove_source: Delete the uncompressed file afterwards, like gzip(1)

    Returns:
        Path of the compressed file

    Raises:
        CompressionError: If compression fails
    """
    gz_path = f"{source_path}.gz"

    try:
        with open(source_path, 'rb') as src, gzip.open(gz_path, 'wb') as dst:
            shutil.copyfileobj(src, dst)
    except OSError as e:
        _remove_partial(gz_path)
        raise CompressionError(f"Failed to compress {source_path}: {e}")

    if remove_source:
        os.remove(source_path)

    return gz_path


def generate_archive_filename(source_id: str, kind: str, extension: str, when: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {source_id}-{kind}-{YYYY-MM-DD-HH-MM-SS}.{ext}

    Args:
        source_id: Site or database name
        kind: 'files' or 'backup'
        extension: Extension without leading dot
        when: Timestamp to embed (default: now)

    Returns:
        Filename (without path)
    """
    when = when or datetime.now()
    return f"{source_id}-{kind}-{when.strftime(TIMESTAMP_FORMAT)}.{extension}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass
