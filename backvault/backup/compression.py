"""
Export archives for restored backups.

A restored run is packed into a single downloadable file:
- tar.gz: Gzip compressed tar (default)
- zip: Standard zip compression
"""

import logging
import os
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Iterator, List

from .errors import BackupError, ValidationError

logger = logging.getLogger(__name__)

ARCHIVE_FORMATS = {
    'tar.gz': 'application/gzip',
    'zip': 'application/zip',
}

STREAM_CHUNK_SIZE = 64 * 1024


class CompressionError(BackupError):
    """Raised when archive creation fails."""


def create_archive(source_paths: List[str], output_path: str, archive_format: str = 'tar.gz') -> str:
    """
    Pack files and directories into one archive.

    Each source is stored under its base name at the archive root.

    Args:
        source_paths: Files/directories to include
        output_path: Archive path without extension
        archive_format: 'tar.gz' or 'zip'

    Returns:
        Full path to the created archive file

    Raises:
        ValidationError: If archive_format is not supported
        CompressionError: If archive creation fails
    """
    if not source_paths:
        raise CompressionError("No source paths provided")
    if archive_format not in ARCHIVE_FORMATS:
        raise ValidationError(
            f"Invalid archive format: {archive_format}",
            {'format': f"must be one of: {', '.join(ARCHIVE_FORMATS)}"}
        )

    archive_path = f"{output_path}.{archive_format}"
    try:
        if archive_format == 'zip':
            _create_zip(source_paths, archive_path)
        else:
            _create_tar(source_paths, archive_path)
    except (OSError, tarfile.TarError, zipfile.BadZipFile, CompressionError) as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            os.remove(archive_path)
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}")

    logger.info(f"Created archive {archive_path} ({os.path.getsize(archive_path)} bytes)")
    return archive_path


def _create_zip(source_paths: List[str], archive_path: str):
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for source_path in source_paths:
            source = Path(source_path)
            if source.is_file():
                zipf.write(source, source.name)
            elif source.is_dir():
                # Keep empty directories out; every file is stored relative to the source's parent
                for item in sorted(source.rglob('*')):
                    if item.is_file():
                        zipf.write(item, item.relative_to(source.parent).as_posix())
            else:
                raise CompressionError(f"Path does not exist: {source_path}")


def _create_tar(source_paths: List[str], archive_path: str):
    with tarfile.open(archive_path, 'w:gz') as tar:
        for source_path in source_paths:
            source = Path(source_path)
            if not source.exists():
                raise CompressionError(f"Path does not exist: {source_path}")
            tar.add(source, arcname=source.name, recursive=True)


def export_filename(target_name: str, run_id: str, archive_format: str) -> str:
    """
    Download name for an exported run.

    Format: {target_name}-{run_id}.{ext}
    """
    safe_name = "".join(
        c if (c.isascii() and c.isalnum()) or c in ('-', '_') else '_'
        for c in target_name
    )
    return f"{safe_name}-{run_id}.{archive_format}"


def stream_file(path: str, cleanup_dir: str = None, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    """
    Yield a file in chunks, removing cleanup_dir once the stream is consumed or closed.
    """
    try:
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(chunk_size), b''):
                yield chunk
    finally:
        if cleanup_dir:
            shutil.rmtree(cleanup_dir, ignore_errors=True)
