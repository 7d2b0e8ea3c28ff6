"""
Remote sync backend over SSH/SFTP.

Objects are files under a base directory on a remote host. A single SSH
transport is shared by the process; each worker thread opens its own SFTP
channel on it.
"""

import logging
import posixpath
import socket
import stat
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import paramiko
from paramiko import AutoAddPolicy, SSHClient

from .errors import (
    AuthError,
    BackendConnectionError,
    ObjectNotFoundError,
    TransferError,
)
from .retry import RetryPolicy
from .storage import (
    ListResult,
    ObjectInfo,
    StorageBackend,
    UploadResult,
    classify_os_error,
    copy_stream,
    paginate,
)

logger = logging.getLogger(__name__)


def classify_sftp_error(error: Exception, key: str = None) -> TransferError:
    """
    Map paramiko and socket exceptions onto the transfer taxonomy.

    Args:
        error: Exception raised by paramiko or the SFTP channel
        key: Object key involved in the failed call

    Returns:
        TransferError subclass instance
    """
    if isinstance(error, TransferError):
        return error
    if isinstance(error, paramiko.AuthenticationException):
        return AuthError(f"SSH authentication failed: {error}", key=key)
    if isinstance(error, (paramiko.SSHException, EOFError, ConnectionError, socket.timeout, TimeoutError)):
        return BackendConnectionError(f"SSH connection failed: {error}", key=key)
    if isinstance(error, OSError):
        return classify_os_error(error, key)
    return TransferError(f"SFTP operation failed: {error}", key=key, retryable=False)


class SyncStorage(StorageBackend):
    """
    Backend storing objects on a remote host via SFTP.

    Keys map to paths under remote_path. Uploads go to a temporary name and
    are renamed into place once complete.
    """

    kind = 'sync'

    def __init__(self, params: Dict[str, Any], retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize sync storage backend.

        Args:
            params: Connection parameters:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional if using key)
                - private_key: Path to private key file (optional)
                - private_key_passphrase: Passphrase for the key (optional)
                - remote_path: Base directory on the remote host
                - timeout: Connect timeout in seconds (default 30)
            retry_policy: Retry policy shared by all operations
        """
        super().__init__(retry_policy)
        self.host = params.get('host') or params.get('hostname')
        self.port = int(params.get('port') or 22)
        self.username = params.get('username')
        self.password = params.get('password')
        self.private_key_path = params.get('private_key')
        self.private_key_passphrase = params.get('private_key_passphrase')
        self.remote_path = (params.get('remote_path') or '.').rstrip('/') or '/'
        self.timeout = params.get('timeout', 30)

        self.ssh_client = None
        self._connect_lock = threading.Lock()
        self._local = threading.local()
        self._channels = []

    def _connect(self) -> SSHClient:
        """
        Establish (or reuse) the shared SSH connection.

        Raises:
            AuthError: If the server rejects the credentials
            BackendConnectionError: If the host cannot be reached
        """
        with self._connect_lock:
            if self.ssh_client is not None:
                transport = self.ssh_client.get_transport()
                if transport is not None and transport.is_active():
                    return self.ssh_client

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': self.timeout,
            }
            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise AuthError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
                if self.private_key_passphrase:
                    connect_kwargs['passphrase'] = self.private_key_passphrase
            else:
                raise AuthError("Either password or private_key must be provided")

            client = SSHClient()
            client.set_missing_host_key_policy(AutoAddPolicy())
            try:
                client.connect(**connect_kwargs)
            except (paramiko.SSHException, OSError) as e:
                client.close()
                raise classify_sftp_error(e) from e

            logger.info(f"Connected to {self.username}@{self.host}:{self.port}")
            self.ssh_client = client
            self._channels = []
            return client

    def _sftp(self) -> paramiko.SFTPClient:
        """SFTP channel for the calling thread."""
        sftp = getattr(self._local, 'sftp', None)
        if sftp is not None and not sftp.sock.closed:
            return sftp

        client = self._connect()
        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            raise classify_sftp_error(e) from e

        self._local.sftp = sftp
        with self._connect_lock:
            self._channels.append(sftp)
        return sftp

    def _run(self, key: Optional[str], operation):
        """Run operation(sftp) with the thread's channel, classifying failures."""
        try:
            return operation(self._sftp())
        except TransferError:
            raise
        except (paramiko.SSHException, EOFError, OSError) as e:
            error = classify_sftp_error(e, key)
            if isinstance(error, BackendConnectionError):
                self._local.sftp = None
            raise error from e

    def _remote(self, remote_key: str) -> str:
        parts = [p for p in remote_key.split('/') if p not in ('', '.')]
        if '..' in parts:
            raise TransferError(f"Key escapes storage root: {remote_key}", key=remote_key)
        return posixpath.join(self.remote_path, *parts)

    @staticmethod
    def _makedirs(sftp, directory: str):
        """Create a remote directory and its parents (mkdir -p)."""
        missing = []
        current = directory
        while current and current not in ('/', '.'):
            try:
                sftp.stat(current)
                break
            except FileNotFoundError:
                missing.append(current)
                current = posixpath.dirname(current)

        for path in reversed(missing):
            try:
                sftp.mkdir(path)
            except OSError:
                # Another worker may have created it concurrently
                sftp.stat(path)

    @staticmethod
    def _rename(sftp, source: str, target: str):
        try:
            sftp.posix_rename(source, target)
        except IOError:
            # Servers without the posix-rename extension refuse to overwrite
            try:
                sftp.remove(target)
            except FileNotFoundError:
                pass
            sftp.rename(source, target)

    def _upload_once(self, local_path, remote_key, options):
        remote = self._remote(remote_key)
        tmp = f"{remote}.{uuid.uuid4().hex}.tmp"

        def operation(sftp):
            self._makedirs(sftp, posixpath.dirname(remote))
            try:
                attrs = sftp.put(local_path, tmp, callback=options.progress, confirm=True)
                self._rename(sftp, tmp, remote)
            except Exception:
                try:
                    sftp.remove(tmp)
                except (IOError, paramiko.SSHException):
                    pass
                raise
            return UploadResult(key=remote_key, size=attrs.st_size)

        return self._run(remote_key, operation)

    def _download_once(self, remote_key, local_path, options):
        remote = self._remote(remote_key)
        tmp = Path(f"{local_path}.{uuid.uuid4().hex}.part")

        def operation(sftp):
            total = sftp.stat(remote).st_size
            start, limit = 0, None
            if options.byte_range:
                start, end = options.byte_range
                if end is None or end >= total:
                    end = total - 1
                limit = max(end - start + 1, 0)

            try:
                with sftp.open(remote, 'rb') as src, open(tmp, 'wb') as dst:
                    src.seek(start)
                    src.prefetch()
                    written = copy_stream(src, dst, limit if limit is not None else total - start,
                                          options.progress, limit)
                tmp.replace(local_path)
            finally:
                if tmp.exists():
                    tmp.unlink()
            return written

        return self._run(remote_key, operation)

    def _exists_once(self, remote_key):
        remote = self._remote(remote_key)
        attrs = self._run(remote_key, lambda sftp: sftp.stat(remote))
        return stat.S_ISREG(attrs.st_mode)

    def _walk(self, sftp, directory: str, entries: list, prefix: str):
        try:
            items = sftp.listdir_attr(directory)
        except FileNotFoundError:
            return

        for item in items:
            path = posixpath.join(directory, item.filename)
            key = posixpath.relpath(path, self.remote_path)
            if stat.S_ISDIR(item.st_mode):
                # Only descend into directories that can contain matching keys
                if key.startswith(prefix) or prefix.startswith(key + '/'):
                    self._walk(sftp, path, entries, prefix)
            elif not item.filename.endswith('.tmp') and key.startswith(prefix):
                entries.append(ObjectInfo(key=key, size=item.st_size or 0, last_modified=None))

    def _list_once(self, prefix, max_keys, continuation_token):
        def operation(sftp):
            entries = []
            self._walk(sftp, self.remote_path, entries, prefix)
            return entries

        entries = self._run(prefix, operation)
        entries.sort(key=lambda e: e.key)
        return paginate(entries, max_keys, continuation_token)

    def _delete_once(self, remote_key):
        remote = self._remote(remote_key)

        def operation(sftp):
            try:
                sftp.remove(remote)
            except FileNotFoundError:
                pass

        return self._run(remote_key, operation)

    def _copy_once(self, source_key, target_key):
        source = self._remote(source_key)
        target = self._remote(target_key)
        tmp = f"{target}.{uuid.uuid4().hex}.tmp"

        def operation(sftp):
            self._makedirs(sftp, posixpath.dirname(target))
            with sftp.open(source, 'rb') as src, sftp.open(tmp, 'wb') as dst:
                src.prefetch()
                dst.set_pipelined(True)
                copy_stream(src, dst, 0)
            self._rename(sftp, tmp, target)

        return self._run(source_key, operation)

    def test_connection(self) -> bool:
        """
        Connect and make sure the base directory exists.

        Returns:
            True if connection is successful

        Raises:
            AuthError: If credentials are rejected
            TransferError: If the base directory cannot be created
        """
        def operation(sftp):
            self._makedirs(sftp, self.remote_path)
            return True

        result = self._retry(self._run, self.remote_path, operation)
        logger.info(f"Successfully connected to {self.host}:{self.remote_path}")
        return result

    def close(self):
        """Close SFTP channels and the SSH connection."""
        with self._connect_lock:
            for sftp in self._channels:
                try:
                    sftp.close()
                except (paramiko.SSHException, OSError) as e:
                    logger.debug(f"Error closing SFTP channel: {e}")
            self._channels = []
            if self.ssh_client:
                self.ssh_client.close()
                self.ssh_client = None
        self._local = threading.local()
