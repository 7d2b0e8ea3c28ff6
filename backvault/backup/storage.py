"""
Storage backends for backup objects.

Supports:
- LocalStorage: Objects stored under a local directory
- SyncStorage: Objects pushed to a remote host over SFTP (sync_storage.py)
- S3Storage: AWS S3 and S3-compatible object stores (s3_storage.py)

Every backend exposes the same transfer contract and routes its
operations through a shared RetryPolicy. The backend kind is selected
once, when a target's configuration is loaded, via create_storage().
"""

import logging
import os
import posixpath
import secrets
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .errors import (
    ObjectNotFoundError,
    TransferError,
    UnsupportedOperationError,
    ValidationError,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

BACKEND_KINDS = ('local', 'sync', 'object-store')

COPY_BUFFER_SIZE = 1024 * 1024

ProgressCallback = Callable[[int, int], None]


@dataclass
class TransferOptions:
    """Per-call transfer options."""
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    progress: Optional[ProgressCallback] = None
    # Inclusive (start, end) byte offsets; end may be None for "to EOF"
    byte_range: Optional[Tuple[int, Optional[int]]] = None


@dataclass
class UploadResult:
    key: str
    size: int
    etag: Optional[str] = None
    multipart: bool = False
    parts: int = 1


@dataclass
class ObjectInfo:
    key: str
    size: int
    last_modified: Optional[datetime] = None


@dataclass
class ListResult:
    entries: List[ObjectInfo]
    continuation_token: Optional[str] = None


@dataclass
class DeleteResult:
    deleted: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class StorageStats:
    total_bytes: int
    total_count: int


def generate_key(original_name: str, prefix: str = '') -> str:
    """
    Generate a unique, backend-safe object key.

    Format: {epoch_ms}_{random_hex}_{sanitized_name}{ext}

    Args:
        original_name: Original file name
        prefix: Optional key prefix

    Returns:
        Generated key
    """
    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(8)
    stem, ext = os.path.splitext(os.path.basename(original_name))

    # Replace anything outside [A-Za-z0-9-_] with underscores
    safe_stem = "".join(
        c if (c.isascii() and c.isalnum()) or c in ('-', '_') else '_'
        for c in stem
    ) or 'object'
    safe_ext = "".join(c for c in ext if (c.isascii() and c.isalnum()) or c == '.')

    key = f"{timestamp}_{random_part}_{safe_stem}{safe_ext}"
    return posixpath.join(prefix, key) if prefix else key


def paginate(entries: List[ObjectInfo], max_keys: int, continuation_token: Optional[str]) -> ListResult:
    """Slice a key-sorted listing using the last returned key as the continuation token."""
    if continuation_token:
        entries = [e for e in entries if e.key > continuation_token]
    page = entries[:max_keys]
    token = page[-1].key if len(entries) > max_keys else None
    return ListResult(entries=page, continuation_token=token)


def copy_stream(source, destination, total: int, progress: Optional[ProgressCallback] = None,
                limit: Optional[int] = None) -> int:
    """Copy between file objects in fixed-size chunks, reporting progress."""
    copied = 0
    remaining = limit
    while True:
        size = COPY_BUFFER_SIZE if remaining is None else min(COPY_BUFFER_SIZE, remaining)
        if size <= 0:
            break
        chunk = source.read(size)
        if not chunk:
            break
        destination.write(chunk)
        copied += len(chunk)
        if remaining is not None:
            remaining -= len(chunk)
        if progress:
            progress(copied, total)
    return copied


class StorageBackend:
    """
    Uniform transfer contract over heterogeneous destinations.

    Subclasses implement the single-attempt primitives (_upload_once,
    _download_once, _delete_once, _copy_once, ...); the public methods wrap
    them in the retry policy.
    """

    kind = None
    # Maximum keys per batched delete request; None means no limit
    delete_batch_size = None

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()

    def _retry(self, fn, *args, **kwargs):
        return self.retry_policy.call(fn, *args, **kwargs)

    # Transfer

    def upload(self, local_path: str, remote_key: str, options: Optional[TransferOptions] = None) -> UploadResult:
        """
        Upload a local file.

        Args:
            local_path: Path of the file to upload
            remote_key: Destination key
            options: Content type, metadata and progress callback

        Returns:
            UploadResult describing the stored object

        Raises:
            TransferError: If the upload fails after retries
        """
        options = options or TransferOptions()
        if not os.path.isfile(local_path):
            raise TransferError(f"Local file not found: {local_path}", key=remote_key)
        return self._retry(self._upload_once, local_path, remote_key, options)

    def download(self, remote_key: str, local_path: str, options: Optional[TransferOptions] = None) -> int:
        """
        Download an object (or a byte range of it) to a local file.

        Returns:
            Number of bytes written

        Raises:
            ObjectNotFoundError: If the key does not exist
            TransferError: If the download fails after retries
        """
        options = options or TransferOptions()
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        return self._retry(self._download_once, remote_key, local_path, options)

    def exists(self, remote_key: str) -> bool:
        """True if the key exists. Not-found is False; other failures propagate."""
        try:
            return self._retry(self._exists_once, remote_key)
        except ObjectNotFoundError:
            return False

    def list(self, prefix: str = '', max_keys: int = 1000, continuation_token: Optional[str] = None) -> ListResult:
        """List one page of objects under prefix."""
        return self._retry(self._list_once, prefix, max_keys, continuation_token)

    def iter_objects(self, prefix: str = '') -> Iterator[ObjectInfo]:
        """Yield every object under prefix, following continuation tokens."""
        token = None
        while True:
            page = self.list(prefix, continuation_token=token)
            yield from page.entries
            token = page.continuation_token
            if not token:
                break

    def delete(self, remote_key: str):
        """Delete a single object. Deleting a missing key is not an error."""
        return self._retry(self._delete_once, remote_key)

    def delete_many(self, remote_keys: List[str]) -> DeleteResult:
        """
        Delete many objects, chunking to the backend's per-request limit.

        Args:
            remote_keys: Keys to delete (duplicates are collapsed)

        Returns:
            DeleteResult aggregating per-key outcomes across all batches
        """
        keys = list(dict.fromkeys(remote_keys))
        result = DeleteResult()
        if not keys:
            return result

        batch_size = self.delete_batch_size or len(keys)
        for start in range(0, len(keys), batch_size):
            batch = keys[start:start + batch_size]
            try:
                outcome = self._retry(self._delete_batch, batch)
            except TransferError as e:
                logger.error(f"Batch delete of {len(batch)} keys failed: {e}")
                outcome = DeleteResult(errors=[{'key': k, 'error': str(e)} for k in batch])
            result.deleted.extend(outcome.deleted)
            result.errors.extend(outcome.errors)

        return result

    def _delete_batch(self, keys: List[str]) -> DeleteResult:
        outcome = DeleteResult()
        for key in keys:
            try:
                self._delete_once(key)
                outcome.deleted.append(key)
            except TransferError as e:
                outcome.errors.append({'key': key, 'error': str(e)})
        return outcome

    def copy(self, source_key: str, target_key: str):
        """Copy an object within the backend."""
        return self._retry(self._copy_once, source_key, target_key)

    def move(self, source_key: str, target_key: str):
        """
        Copy then delete the source.

        If the delete fails the source is left in place; the duplicate is
        tolerated and the error propagates.
        """
        result = self.copy(source_key, target_key)
        self.delete(source_key)
        return result

    def signed_url(self, operation: str, remote_key: str, ttl: int = 3600) -> str:
        raise UnsupportedOperationError(
            f"Signed URLs are not supported by the {self.kind} backend", key=remote_key
        )

    def stats(self, prefix: str = '') -> StorageStats:
        """Total bytes and object count under prefix."""
        total_bytes = 0
        total_count = 0
        for obj in self.iter_objects(prefix):
            total_bytes += obj.size or 0
            total_count += 1
        return StorageStats(total_bytes=total_bytes, total_count=total_count)

    def test_connection(self) -> bool:
        raise NotImplementedError

    def verify_writable(self, prefix: str = '') -> bool:
        """Write and delete a check object to prove credentials allow writes."""
        check_key = generate_key('connection-check.txt', posixpath.join(prefix, '.connection-check') if prefix else '.connection-check')
        fd, check_path = tempfile.mkstemp(prefix='backvault_check_')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(b'backvault connection check\n')
            self.upload(check_path, check_key, TransferOptions(content_type='text/plain'))
            self.delete(check_key)
        finally:
            os.unlink(check_path)
        return True

    def close(self):
        """Release connections. Backends without persistent connections do nothing."""
        pass

    # Single-attempt primitives

    def _upload_once(self, local_path: str, remote_key: str, options: TransferOptions) -> UploadResult:
        raise NotImplementedError

    def _download_once(self, remote_key: str, local_path: str, options: TransferOptions) -> int:
        raise NotImplementedError

    def _exists_once(self, remote_key: str) -> bool:
        raise NotImplementedError

    def _list_once(self, prefix: str, max_keys: int, continuation_token: Optional[str]) -> ListResult:
        raise NotImplementedError

    def _delete_once(self, remote_key: str):
        raise NotImplementedError

    def _copy_once(self, source_key: str, target_key: str):
        raise NotImplementedError


def classify_os_error(error: OSError, key: str = None) -> TransferError:
    """Map a filesystem error onto the transfer taxonomy."""
    if isinstance(error, FileNotFoundError):
        return ObjectNotFoundError(f"Not found: {key or error.filename}", key=key)
    if isinstance(error, PermissionError):
        return TransferError(f"Permission denied: {error}", key=key, retryable=False)
    return TransferError(f"Filesystem error: {error}", key=key, retryable=False)


class LocalStorage(StorageBackend):
    """
    Backend storing objects as files under a base directory.

    Keys map to relative paths: {base_path}/{key}. Writes go to a
    temporary sibling first and are moved into place atomically.
    """

    kind = 'local'

    def __init__(self, base_path: str, retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize local storage backend.

        Args:
            base_path: Base directory for stored objects
            retry_policy: Retry policy shared by all operations
        """
        super().__init__(retry_policy)
        self.base_path = Path(base_path).expanduser().resolve()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise classify_os_error(e)

    def _path(self, remote_key: str) -> Path:
        path = (self.base_path / remote_key.lstrip('/')).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise TransferError(f"Key escapes storage root: {remote_key}", key=remote_key)
        return path

    def _key(self, path: Path) -> str:
        return path.relative_to(self.base_path).as_posix()

    def get_full_path(self, remote_key: str) -> str:
        return str(self._path(remote_key))

    def _upload_once(self, local_path, remote_key, options):
        dest = self._path(remote_key)
        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.tmp")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            size = os.path.getsize(local_path)
            with open(local_path, 'rb') as src, open(tmp, 'wb') as dst:
                copy_stream(src, dst, size, options.progress)
            os.replace(tmp, dest)
            return UploadResult(key=remote_key, size=size)
        except OSError as e:
            if tmp.exists():
                tmp.unlink()
            raise classify_os_error(e, remote_key)

    def _download_once(self, remote_key, local_path, options):
        source = self._path(remote_key)
        tmp = f"{local_path}.{uuid.uuid4().hex}.part"
        try:
            total = source.stat().st_size
            start, limit = _range_bounds(options.byte_range, total)
            with open(source, 'rb') as src, open(tmp, 'wb') as dst:
                src.seek(start)
                written = copy_stream(src, dst, limit if limit is not None else total - start,
                                      options.progress, limit)
            os.replace(tmp, local_path)
            return written
        except OSError as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise classify_os_error(e, remote_key)

    def _exists_once(self, remote_key):
        return self._path(remote_key).is_file()

    def _list_once(self, prefix, max_keys, continuation_token):
        entries = []
        try:
            for path in self.base_path.rglob('*'):
                if not path.is_file() or path.name.endswith(('.tmp', '.part')):
                    continue
                key = self._key(path)
                if not key.startswith(prefix):
                    continue
                stat = path.stat()
                entries.append(ObjectInfo(
                    key=key,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                ))
        except OSError as e:
            raise classify_os_error(e, prefix)

        entries.sort(key=lambda e: e.key)
        return paginate(entries, max_keys, continuation_token)

    def _delete_once(self, remote_key):
        path = self._path(remote_key)
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            raise classify_os_error(e, remote_key)

    def _copy_once(self, source_key, target_key):
        source = self._path(source_key)
        dest = self._path(target_key)
        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.tmp")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, tmp)
            os.replace(tmp, dest)
        except OSError as e:
            if tmp.exists():
                tmp.unlink()
            raise classify_os_error(e, source_key)

    def test_connection(self) -> bool:
        """
        Check that the base directory exists and is writable.

        Raises:
            TransferError: If the directory is not writable
        """
        if not self.base_path.is_dir() or not os.access(self.base_path, os.W_OK):
            raise TransferError(f"Local path is not writable: {self.base_path}", retryable=False)
        return True


def _range_bounds(byte_range, total: int):
    """Translate an inclusive (start, end) range into (offset, length)."""
    if not byte_range:
        return 0, None
    start, end = byte_range
    if end is None or end >= total:
        end = total - 1
    return start, max(end - start + 1, 0)


def create_storage(kind: str, params: dict, retry_policy: Optional[RetryPolicy] = None, **transfer_settings):
    """
    Factory function to create the backend for a target.

    Args:
        kind: 'local', 'sync' or 'object-store'
        params: Backend connection parameters
        retry_policy: Retry policy for all operations
        transfer_settings: multipart_threshold, chunk_size, max_parallel_chunks
            (used by the object-store backend)

    Returns:
        StorageBackend instance

    Raises:
        ValidationError: If kind is invalid
    """
    if kind == 'local':
        return LocalStorage(params['base_path'], retry_policy=retry_policy)
    elif kind == 'sync':
        from .sync_storage import SyncStorage
        return SyncStorage(params, retry_policy=retry_policy)
    elif kind == 'object-store':
        from .s3_storage import S3Storage
        return S3Storage(params, retry_policy=retry_policy, **transfer_settings)
    else:
        raise ValidationError(f"Invalid backend kind: {kind}", {'backend_kind': 'unknown backend kind'})
