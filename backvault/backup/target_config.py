"""
Target configuration validation and run snapshots.

A BackupTarget row is mutable between runs. When a run starts, the row is
frozen into a TargetSettings snapshot (secrets decrypted, application
defaults filled in) and the orchestrator only ever reads the snapshot.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from .errors import ValidationError
from .manifest import MANIFEST_FORMATS
from .retry import RetryPolicy
from .s3_storage import MIN_PART_SIZE
from .sources import DOMAINS
from .storage import BACKEND_KINDS, create_storage

REQUIRED_BACKEND_PARAMS = {
    'local': ('base_path',),
    'sync': ('host', 'username', 'remote_path'),
    'object-store': ('bucket', 'access_key_id', 'secret_access_key'),
}


@dataclass(frozen=True)
class TargetSettings:
    """Immutable view of a target for the duration of one run."""
    target_id: int
    name: str
    backend_kind: str
    backend_params: Mapping[str, Any]
    domains: Tuple[str, ...]
    path_prefix: str = ''
    retention_max_age_days: Optional[int] = None
    retention_max_count: Optional[int] = None
    concurrency: int = 4
    multipart_threshold_bytes: int = 100 * 1024 * 1024
    chunk_size_bytes: int = 10 * 1024 * 1024
    max_parallel_chunks: int = 4
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    manifest_format: str = 'json'
    notify_failure_threshold: int = 1

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
        )

    def create_backend(self):
        """Build the storage backend for this target."""
        return create_storage(
            self.backend_kind,
            dict(self.backend_params),
            retry_policy=self.retry_policy(),
            **self.transfer_settings()
        )

    def transfer_settings(self) -> dict:
        if self.backend_kind != 'object-store':
            return {}
        return {
            'multipart_threshold': self.multipart_threshold_bytes,
            'chunk_size': self.chunk_size_bytes,
            'max_parallel_chunks': self.max_parallel_chunks,
        }

    @property
    def has_retention(self) -> bool:
        return self.retention_max_age_days is not None or self.retention_max_count is not None


def _check_positive(errors: dict, field: str, value):
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        errors[field] = 'must be a positive integer'


def _check_non_negative(errors: dict, field: str, value):
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        errors[field] = 'must be zero or a positive integer'


def validate_backend(kind: str, params: Mapping[str, Any]) -> dict:
    """
    Check a backend kind and its connection parameters.

    Returns:
        Field to message map (empty if valid)
    """
    errors = {}
    if kind not in BACKEND_KINDS:
        errors['backend_kind'] = f"must be one of: {', '.join(BACKEND_KINDS)}"
        return errors

    if not isinstance(params, Mapping):
        errors['backend_params'] = 'must be an object'
        return errors

    for name in REQUIRED_BACKEND_PARAMS[kind]:
        if not params.get(name):
            errors[f'backend_params.{name}'] = 'required'

    if kind == 'sync' and not (params.get('password') or params.get('private_key')):
        errors['backend_params.password'] = 'password or private_key is required'

    return errors


def validate_target_config(data: Mapping[str, Any]) -> None:
    """
    Validate a target configuration document.

    Args:
        data: Target fields as accepted by the targets API

    Raises:
        ValidationError: With a field to message map when anything is invalid
    """
    errors = {}

    if not data.get('name'):
        errors['name'] = 'required'

    errors.update(validate_backend(data.get('backend_kind'), data.get('backend_params') or {}))

    schedule = data.get('schedule')
    if schedule:
        try:
            CronTrigger.from_crontab(schedule, timezone='UTC')
        except ValueError as e:
            errors['schedule'] = f'invalid cron expression: {e}'

    domains = data.get('domains') or {}
    unknown = [name for name in domains if name not in DOMAINS]
    if unknown:
        errors['domains'] = f"unknown domains: {', '.join(unknown)}"
    elif not any(domains.get(name) for name in DOMAINS):
        errors['domains'] = 'at least one domain must be enabled'

    retention = data.get('retention') or {}
    _check_non_negative(errors, 'retention.max_age_days', retention.get('max_age_days'))
    _check_non_negative(errors, 'retention.max_count', retention.get('max_count'))

    _check_positive(errors, 'concurrency', data.get('concurrency'))
    _check_positive(errors, 'multipart_threshold_bytes', data.get('multipart_threshold_bytes'))
    _check_positive(errors, 'chunk_size_bytes', data.get('chunk_size_bytes'))

    chunk_size = data.get('chunk_size_bytes')
    if (data.get('backend_kind') == 'object-store' and 'chunk_size_bytes' not in errors
            and chunk_size is not None and chunk_size < MIN_PART_SIZE):
        errors['chunk_size_bytes'] = f'must be at least {MIN_PART_SIZE} bytes for object stores'

    retry = data.get('retry') or {}
    _check_positive(errors, 'retry.max_attempts', retry.get('max_attempts'))
    _check_positive(errors, 'retry.base_delay_ms', retry.get('base_delay_ms'))
    _check_positive(errors, 'retry.max_delay_ms', retry.get('max_delay_ms'))
    base_delay, max_delay = retry.get('base_delay_ms'), retry.get('max_delay_ms')
    if ('retry.base_delay_ms' not in errors and 'retry.max_delay_ms' not in errors
            and base_delay is not None and max_delay is not None and base_delay > max_delay):
        errors['retry.base_delay_ms'] = 'must not exceed max_delay_ms'

    manifest_format = data.get('manifest_format')
    if manifest_format is not None and manifest_format not in MANIFEST_FORMATS:
        errors['manifest_format'] = f"must be one of: {', '.join(MANIFEST_FORMATS)}"

    _check_non_negative(errors, 'notify_failure_threshold', data.get('notify_failure_threshold'))

    if errors:
        raise ValidationError('Invalid target configuration', errors)


def snapshot_target(target, app_config: Mapping[str, Any], backend_params: Mapping[str, Any]) -> TargetSettings:
    """
    Freeze a BackupTarget row into TargetSettings.

    Args:
        target: BackupTarget model instance
        app_config: Flask config supplying defaults for unset fields
        backend_params: Decrypted backend parameters

    Returns:
        TargetSettings snapshot
    """
    def pick(value, key):
        return value if value is not None else app_config[key]

    return TargetSettings(
        target_id=target.id,
        name=target.name,
        backend_kind=target.backend_kind,
        backend_params=MappingProxyType(dict(backend_params)),
        domains=tuple(target.domains),
        path_prefix=(target.path_prefix or '').strip('/'),
        retention_max_age_days=target.retention_max_age_days,
        retention_max_count=target.retention_max_count,
        concurrency=pick(target.concurrency, 'BACKUP_CONCURRENCY'),
        multipart_threshold_bytes=pick(target.multipart_threshold_bytes, 'MULTIPART_THRESHOLD_BYTES'),
        chunk_size_bytes=pick(target.chunk_size_bytes, 'CHUNK_SIZE_BYTES'),
        max_parallel_chunks=app_config['MAX_PARALLEL_CHUNKS'],
        retry_max_attempts=pick(target.retry_max_attempts, 'RETRY_MAX_ATTEMPTS'),
        retry_base_delay_ms=pick(target.retry_base_delay_ms, 'RETRY_BASE_DELAY_MS'),
        retry_max_delay_ms=pick(target.retry_max_delay_ms, 'RETRY_MAX_DELAY_MS'),
        manifest_format=target.manifest_format or 'json',
        notify_failure_threshold=target.notify_failure_threshold if target.notify_failure_threshold is not None else 1,
    )


def load_settings(target, app_config: Mapping[str, Any] = None) -> TargetSettings:
    """
    Snapshot a target using the application's config and credential cipher.

    Raises:
        ValidationError: If the stored secrets cannot be decrypted
    """
    from flask import current_app
    from backvault.utils.crypto import credential_cipher

    params = target.get_backend_params()
    if credential_cipher.is_initialized:
        try:
            params = credential_cipher.decrypt_params(params)
        except ValueError as e:
            raise ValidationError(str(e), {'backend_params': 'cannot decrypt secrets'})

    return snapshot_target(target, app_config or current_app.config, params)
