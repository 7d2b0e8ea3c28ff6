"""
Triggering API used by the HTTP layer and the scheduler.

Every entry point expects an active Flask application context.
"""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from flask import current_app

from backvault import db
from backvault.backup.compression import ARCHIVE_FORMATS, create_archive, export_filename, stream_file
from backvault.backup.errors import (
    BackupInUse,
    RunNotFoundError,
    TargetNotFoundError,
    TransferError,
    ValidationError,
)
from backvault.backup.manifest import fingerprint_file, object_key, parse_manifest
from backvault.backup.orchestrator import BackupOrchestrator
from backvault.backup.registry import RunRegistry
from backvault.backup.retention import RetentionManager
from backvault.backup.retry import RetryPolicy
from backvault.backup.storage import StorageStats, create_storage
from backvault.backup.target_config import load_settings, validate_backend, validate_target_config
from backvault.models import SECRET_PARAM_FIELDS, BackupRun, BackupTarget
from backvault.utils.crypto import credential_cipher

logger = logging.getLogger(__name__)

SECRET_MASK = '********'

_notification_hook: Optional[Callable[[BackupRun], None]] = None


def register_notification_hook(hook: Optional[Callable[[BackupRun], None]]):
    """
    Register the callable invoked with finished runs that need attention.

    Passing None removes the hook.
    """
    global _notification_hook
    _notification_hook = hook


def source_config(app_config=None) -> Dict[str, Any]:
    """Domain locations taken from the application config."""
    app_config = app_config or current_app.config
    return {
        'database_url': app_config.get('SOURCE_DATABASE_URL') or app_config['SQLALCHEMY_DATABASE_URI'],
        'pg_dump_path': app_config.get('PG_DUMP_PATH'),
        'active_assets_dir': app_config.get('ACTIVE_ASSETS_DIR'),
        'archives_dir': app_config.get('ARCHIVES_DIR'),
    }


def get_target(target_id: int) -> BackupTarget:
    target = db.session.get(BackupTarget, target_id)
    if target is None:
        raise TargetNotFoundError(f"Backup target not found: {target_id}")
    return target


def _build_orchestrator(settings) -> BackupOrchestrator:
    return BackupOrchestrator(
        settings,
        source_config(),
        temp_root=current_app.config.get('TEMP_DIR'),
        registry=RunRegistry(),
        notifier=_notification_hook,
    )


def _validated_settings(target: BackupTarget):
    settings = load_settings(target)
    validate_target_config(target_document(target, dict(settings.backend_params)))
    return settings


# Runs

def trigger_backup(target_id: int) -> str:
    """
    Start a backup of a target.

    The lock is taken and the run created before returning, so a concurrent
    trigger fails immediately. Execution is handed to the scheduler thread,
    or happens inline when no scheduler runs in this process.

    Returns:
        Run id

    Raises:
        TargetNotFoundError: If the target does not exist
        ValidationError: If the target configuration is invalid
        BackupAlreadyRunning: If the target already has an active run
    """
    from backvault import scheduler

    target = get_target(target_id)
    _validated_settings(target)

    registry = RunRegistry()
    run = registry.acquire(target.id, trigger='manual')
    run_id = run.id

    if scheduler.is_scheduler_running():
        try:
            scheduler.schedule_run(run_id)
        except Exception as e:
            fail_queued_run(run_id, f"Could not queue run: {e}")
            raise
    else:
        execute_run(run_id)

    return run_id


def execute_run(run_id: str) -> BackupRun:
    """
    Execute a pending run created by trigger_backup().

    Runs that are no longer pending (e.g. aborted by the startup sweep) are
    returned untouched.
    """
    registry = RunRegistry()
    run = registry.status(run_id)
    if run.status != 'pending':
        logger.warning(f"Run {run_id} is {run.status}, not executing")
        return run

    try:
        settings = load_settings(run.target)
    except ValidationError as e:
        fail_queued_run(run_id, str(e))
        raise

    return _build_orchestrator(settings).execute(run)


def fail_queued_run(run_id: str, reason: str) -> Optional[BackupRun]:
    """
    Fail a run that will never execute and release its target's lock.

    Runs that already reached a final status are returned untouched.
    """
    registry = RunRegistry()
    try:
        run = registry.status(run_id)
    except RunNotFoundError:
        return None

    if run.is_active:
        logger.error(f"Run {run_id} did not execute: {reason}")
        registry.finalize(run, 'failed', reason)
        registry.release(run.target_id, run.id)
    return run


def run_scheduled_backup(target_id: int) -> Optional[BackupRun]:
    """
    Timer entry point: run a target's backup on the calling thread.

    Returns:
        The finished run, or None if the target is disabled

    Raises:
        BackupAlreadyRunning: If the target already has an active run
    """
    target = get_target(target_id)
    if not target.enabled:
        logger.info(f"Target {target.name} is disabled, skipping scheduled backup")
        return None

    settings = _validated_settings(target)
    return _build_orchestrator(settings).run(trigger='scheduled')


def get_status(run_id: str) -> BackupRun:
    return RunRegistry().status(run_id)


def list_history(target_id: int, page: int = 1, page_size: int = 20) -> List[BackupRun]:
    get_target(target_id)
    return RunRegistry().history(target_id, page, page_size)


def delete_backup(run_id: str):
    """
    Remove a run with its manifests and the objects only it referenced.

    Raises:
        RunNotFoundError: If the run does not exist
        BackupInUse: If the run is pending or running, or another run of the
            target is active (it may rely on this run's objects)
        RetentionPruneError: If storage cleanup failed (the run is kept)
    """
    registry = RunRegistry()
    run = registry.status(run_id)
    if run.is_active:
        raise BackupInUse(f"Backup run {run_id} is {run.status}", {'run_id': run_id})

    with registry.idle_target(run.target_id):
        settings = load_settings(run.target)
        backend = settings.create_backend()
        try:
            RetentionManager(registry).prune_run(run, backend, settings.path_prefix)
        finally:
            backend.close()
    logger.info(f"Deleted backup run {run_id}")


def _finished_run(run_id: str) -> BackupRun:
    run = RunRegistry().status(run_id)
    if run.is_active:
        raise BackupInUse(f"Backup run {run_id} is {run.status}", {'run_id': run_id})
    if not run.manifests:
        raise RunNotFoundError(f"Backup run {run_id} has no stored manifests")
    return run


def restore_run(run_id: str, destination: str) -> Dict[str, int]:
    """
    Download every file of a run into destination/{domain}/{path}.

    Each file is checked against its manifest fingerprint.

    Returns:
        {'files': int, 'bytes': int}

    Raises:
        TransferError: If a download fails or a fingerprint does not match
    """
    run = _finished_run(run_id)
    settings = load_settings(run.target)
    backend = settings.create_backend()
    root = Path(destination).resolve()
    restored = {'files': 0, 'bytes': 0}

    try:
        for record in run.manifests:
            manifest = parse_manifest(record.content, record.format)
            domain_root = root / manifest.domain
            for entry in manifest.entries:
                target_path = (domain_root / entry.path).resolve()
                if domain_root not in target_path.parents:
                    raise TransferError(f"Manifest path escapes restore root: {entry.path}")

                key = object_key(settings.path_prefix, manifest.domain, entry.fingerprint)
                backend.download(key, str(target_path))
                if fingerprint_file(str(target_path)) != entry.fingerprint:
                    raise TransferError(f"Fingerprint mismatch for {entry.path}", key=key)

                restored['files'] += 1
                restored['bytes'] += entry.size_bytes
    finally:
        backend.close()

    logger.info(f"Restored run {run_id} to {root}: {restored['files']} files")
    return restored


def download_backup(run_id: str, archive_format: str = 'tar.gz') -> Tuple[str, str, Iterator[bytes]]:
    """
    Restore a run into a staging directory and stream it as one archive.

    The archive holds data/{domain}/... plus manifests/{domain}.{fmt}. The
    staging directory is removed when the stream is exhausted or closed.

    Returns:
        (filename, mimetype, chunk iterator)
    """
    if archive_format not in ARCHIVE_FORMATS:
        raise ValidationError(f"Invalid archive format: {archive_format}",
                              {'format': f"must be one of: {', '.join(ARCHIVE_FORMATS)}"})

    run = _finished_run(run_id)
    staging = tempfile.mkdtemp(prefix='backvault_export_', dir=current_app.config.get('TEMP_DIR'))
    try:
        data_dir = os.path.join(staging, 'data')
        manifests_dir = os.path.join(staging, 'manifests')
        os.makedirs(data_dir)
        os.makedirs(manifests_dir)

        restore_run(run_id, data_dir)
        for record in run.manifests:
            with open(os.path.join(manifests_dir, f"{record.domain}.{record.format}"), 'w', encoding='utf-8') as f:
                f.write(record.content)

        archive_path = create_archive([data_dir, manifests_dir], os.path.join(staging, run.id), archive_format)
    except Exception:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    filename = export_filename(run.target.name, run.id, archive_format)
    return filename, ARCHIVE_FORMATS[archive_format], stream_file(archive_path, cleanup_dir=staging)


def signed_links(run_id: str, ttl: int = 3600) -> List[Dict[str, str]]:
    """
    Time-limited download URLs for every object of a run.

    Raises:
        UnsupportedOperationError: If the target's backend cannot sign URLs
    """
    run = _finished_run(run_id)
    settings = load_settings(run.target)
    backend = settings.create_backend()
    links = []
    try:
        for record in run.manifests:
            manifest = parse_manifest(record.content, record.format)
            links.append({
                'domain': manifest.domain,
                'path': None,
                'url': backend.signed_url('get', record.storage_key, ttl),
            })
            for entry in manifest.entries:
                key = object_key(settings.path_prefix, manifest.domain, entry.fingerprint)
                links.append({
                    'domain': manifest.domain,
                    'path': entry.path,
                    'url': backend.signed_url('get', key, ttl),
                })
    finally:
        backend.close()
    return links


# Backends

def test_backend_connection(kind: str, params: Dict[str, Any]) -> bool:
    """
    Check that a backend is reachable and writable with the given parameters.

    Raises:
        ValidationError: If the parameters are incomplete
        TransferError: If the connection or the check write fails
    """
    errors = validate_backend(kind, params or {})
    if errors:
        raise ValidationError('Invalid backend configuration', errors)

    policy = RetryPolicy(
        max_attempts=current_app.config['RETRY_MAX_ATTEMPTS'],
        base_delay_ms=current_app.config['RETRY_BASE_DELAY_MS'],
        max_delay_ms=current_app.config['RETRY_MAX_DELAY_MS'],
    )
    backend = create_storage(kind, dict(params), retry_policy=policy)
    try:
        backend.test_connection()
        backend.verify_writable((params.get('path_prefix') or '').strip('/'))
    finally:
        backend.close()
    return True


def target_stats(target_id: int) -> StorageStats:
    target = get_target(target_id)
    settings = load_settings(target)
    backend = settings.create_backend()
    try:
        return backend.stats(f"{settings.path_prefix}/" if settings.path_prefix else '')
    finally:
        backend.close()


# Targets

def target_document(target: BackupTarget, backend_params: Dict[str, Any]) -> Dict[str, Any]:
    """Target fields in the shape accepted by validate_target_config()."""
    document = target.to_dict()
    document['backend_params'] = dict(backend_params)
    return document


def _decrypted_params(target: BackupTarget) -> Dict[str, Any]:
    params = target.get_backend_params()
    if credential_cipher.is_initialized:
        params = credential_cipher.decrypt_params(params)
    return params


def _encrypt_params(params: Dict[str, Any]) -> str:
    if any(params.get(name) for name in SECRET_PARAM_FIELDS):
        if not credential_cipher.is_initialized:
            raise ValidationError('CREDENTIALS_KEY is not configured', {'backend_params': 'cannot store secrets'})
        params = credential_cipher.encrypt_params(params)
    return json.dumps(params)


def _apply(target: BackupTarget, data: Dict[str, Any]):
    domains = data.get('domains') or {}
    retention = data.get('retention') or {}
    retry = data.get('retry') or {}

    target.name = data['name']
    target.enabled = bool(data.get('enabled', True))
    target.schedule_cron = data.get('schedule') or None
    target.backend_kind = data['backend_kind']
    target.backend_params = _encrypt_params(dict(data.get('backend_params') or {}))
    target.path_prefix = (data.get('path_prefix') or '').strip('/')
    target.domain_database = bool(domains.get('database'))
    target.domain_active_assets = bool(domains.get('active_assets'))
    target.domain_archives = bool(domains.get('archives'))
    target.retention_max_age_days = retention.get('max_age_days')
    target.retention_max_count = retention.get('max_count')
    target.concurrency = data.get('concurrency')
    target.multipart_threshold_bytes = data.get('multipart_threshold_bytes')
    target.chunk_size_bytes = data.get('chunk_size_bytes')
    target.retry_max_attempts = retry.get('max_attempts')
    target.retry_base_delay_ms = retry.get('base_delay_ms')
    target.retry_max_delay_ms = retry.get('max_delay_ms')
    target.manifest_format = data.get('manifest_format') or 'json'
    notify = data.get('notify_failure_threshold')
    target.notify_failure_threshold = 1 if notify is None else notify


def _sync_scheduler():
    from backvault import scheduler

    if scheduler.is_scheduler_running():
        scheduler.sync_backup_targets()


def _check_unique_name(name: str, target_id: int = None):
    existing = BackupTarget.query.filter_by(name=name).first()
    if existing and existing.id != target_id:
        raise ValidationError(f"Target name already exists: {name}", {'name': 'already exists'})


def create_target(data: Dict[str, Any]) -> BackupTarget:
    """
    Raises:
        ValidationError: If the configuration is invalid or the name is taken
    """
    validate_target_config(data)
    _check_unique_name(data['name'])

    target = BackupTarget()
    _apply(target, data)
    db.session.add(target)
    db.session.commit()
    logger.info(f"Created backup target {target.name}")

    _sync_scheduler()
    return target


def update_target(target_id: int, data: Dict[str, Any]) -> BackupTarget:
    """
    Update a target between runs. Omitted fields keep their values; masked or
    omitted secret parameters keep their stored values.
    """
    target = get_target(target_id)
    merged = target_document(target, _decrypted_params(target))

    for key, value in data.items():
        if key == 'backend_params':
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value

    if 'backend_params' in data:
        previous = merged['backend_params'] if data.get('backend_kind', target.backend_kind) == target.backend_kind else {}
        params = dict(data['backend_params'] or {})
        for name in SECRET_PARAM_FIELDS:
            if params.get(name) in (None, SECRET_MASK) and previous.get(name):
                params[name] = previous[name]
        merged['backend_params'] = params

    validate_target_config(merged)
    _check_unique_name(merged['name'], target.id)

    _apply(target, merged)
    db.session.commit()
    logger.info(f"Updated backup target {target.name}")

    _sync_scheduler()
    return target


def delete_target(target_id: int):
    """
    Remove a target and its run history. Stored objects are left in place.

    Raises:
        BackupInUse: If the target has an active run
    """
    target = get_target(target_id)
    if RunRegistry().is_locked(target.id):
        raise BackupInUse(f"Target {target.name} has an active run", {'target_id': target.id})

    db.session.delete(target)
    db.session.commit()
    logger.info(f"Deleted backup target {target.name}")

    _sync_scheduler()
