"""
Backup orchestrator - coordinates one backup run of a target.

Workflow:
1. Take the target's single-flight lock and create the run record
2. For each enabled domain:
   a. Stage the domain (database dump or directory tree)
   b. Build the manifest against the latest successful one
   c. Upload changed content through a bounded worker pool
   d. Upload the manifest and record it in the registry
3. Compute the final status (succeeded / partial / failed)
4. Apply retention, release the lock, notify
"""

import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional

from backvault.models import BackupRun, utcnow
from .errors import (
    AuthError,
    BackupError,
    ManifestPersistError,
    PerFileTransferError,
    SourceError,
    TransferError,
    ValidationError,
)
from .manifest import (
    ChangeSet,
    Manifest,
    ManifestBuilder,
    manifest_key,
    object_key,
    serialize_manifest,
)
from .registry import RunRegistry
from .retention import RetentionManager
from .sources import create_source
from .storage import TransferOptions, UploadResult
from .target_config import TargetSettings

logger = logging.getLogger(__name__)

MANIFEST_CONTENT_TYPES = {
    'json': 'application/json',
    'yaml': 'application/x-yaml',
}

LOG_FLUSH_INTERVAL = 5


def should_notify(status: str, failure_count: int, threshold: int) -> bool:
    """Failed runs always notify; otherwise notify once failures reach the threshold (0 = every run)."""
    return status == 'failed' or failure_count >= threshold


class BackupOrchestrator:
    """
    Runs one backup of a target.

    Transfers happen on worker threads; every registry write happens on the
    thread that called run() or execute().
    """

    def __init__(self, settings: TargetSettings, source_config: Dict, temp_root: str = None,
                 registry: RunRegistry = None, backend=None, builder: ManifestBuilder = None,
                 notifier: Optional[Callable[[BackupRun], None]] = None):
        """
        Initialize backup orchestrator.

        Args:
            settings: Target snapshot for this run
            source_config: Domain locations (database_url, active_assets_dir, archives_dir)
            temp_root: Directory for staging (system temp dir if None)
            registry: Run registry
            backend: Storage backend (built from settings if None)
            builder: Manifest builder
            notifier: Called with the finished run when it warrants attention
        """
        self.settings = settings
        self.source_config = source_config
        self.temp_root = temp_root
        self.registry = registry or RunRegistry()
        self.backend = backend
        self.builder = builder or ManifestBuilder()
        self.notifier = notifier

        self.run_record = None
        self.temp_dir = None
        self.logs = []
        self._log_flush_counter = 0
        self.failure_count = 0

    def run(self, trigger: str = 'manual') -> BackupRun:
        """
        Acquire the lock and execute a run.

        Raises:
            BackupAlreadyRunning: If the target already has an active run
        """
        run = self.registry.acquire(self.settings.target_id, trigger)
        return self.execute(run)

    def execute(self, run: BackupRun) -> BackupRun:
        """
        Execute a run whose lock is already held.

        Args:
            run: Pending run created by RunRegistry.acquire()

        Returns:
            The finalized run record
        """
        self.run_record = run
        self.registry.mark_running(run)
        self._log(f"Starting backup run {run.id} for target: {self.settings.name}")

        status = 'failed'
        error_message = None
        try:
            status = self._execute_workflow()
            if status == 'succeeded':
                self._log("Backup completed successfully")
            elif status == 'partial':
                self._log(f"Backup completed with {self.failure_count} failed files")
            else:
                error_message = "One or more domains could not be backed up"
                self._log(f"Backup failed: {error_message}")
        except AuthError as e:
            error_message = f"Authentication failed: {e}"
            self._log(f"Backup aborted: {error_message}")
        except BackupError as e:
            error_message = str(e)
            self._log(f"Backup failed: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error in run {run.id}")
            error_message = f"Unexpected error: {e}"
            self._log(f"Backup failed: {error_message}")

        try:
            self.registry.finalize(run, status, error_message, self.logs)

            if status in ('succeeded', 'partial'):
                self._apply_retention(run)
        finally:
            self.registry.release(self.settings.target_id, run.id)
            self._cleanup()

        self._notify(run)
        return run

    def _execute_workflow(self) -> str:
        """Execute the domains of the run and compute the final status."""
        self.temp_dir = tempfile.mkdtemp(prefix='backvault_run_', dir=self.temp_root)
        self._log(f"Staging directory: {self.temp_dir}")

        if self.backend is None:
            self.backend = self.settings.create_backend()

        domain_failed = False
        for domain in self.settings.domains:
            try:
                self._backup_domain(domain)
            except ManifestPersistError as e:
                domain_failed = True
                self._log(f"[{domain}] {e}")
                logger.error(f"Run {self.run_record.id}: {e}")
            except (SourceError, ValidationError) as e:
                domain_failed = True
                self._log(f"[{domain}] Could not stage domain: {e}")
                logger.error(f"Run {self.run_record.id}: staging {domain} failed: {e}")
            self._flush_logs_to_db()

        if domain_failed:
            return 'failed'
        return 'partial' if self.failure_count else 'succeeded'

    def _backup_domain(self, domain: str):
        source = create_source(domain, self.source_config)
        try:
            root = source.stage(self.temp_dir)
            parent = self.registry.latest_successful(self.settings.target_id, domain)
            if parent:
                self._log(f"[{domain}] Incremental against run {parent.run_id}")
            else:
                self._log(f"[{domain}] No previous manifest, full backup")

            manifest, changes = self.builder.build(root, parent, run_id=self.run_record.id, domain=domain)
            summary = changes.summary()
            self._log(
                f"[{domain}] {manifest.file_count} files; "
                f"{summary['added']} added, {summary['modified']} modified, {summary['removed']} removed"
            )

            failures = self._transfer(domain, root, manifest, changes, parent)
            stored = self._stored_manifest(manifest, parent, failures)
            self._persist_manifest(domain, stored, changes)
        finally:
            source.cleanup()

    def _transfer(self, domain: str, root: str, manifest: Manifest, changes: ChangeSet,
                  parent: Optional[Manifest]) -> Dict[str, PerFileTransferError]:
        """
        Upload the content of added and modified files.

        Identical content is uploaded once; content already referenced by the
        parent manifest is not uploaded again.

        Returns:
            Failed paths mapped to their error
        """
        entries = manifest.entry_map()
        known = parent.fingerprints() if parent else set()
        pending = {}
        for path in changes.to_transfer:
            fingerprint = entries[path].fingerprint
            if fingerprint in known:
                continue
            pending.setdefault(fingerprint, []).append(path)

        skipped = len(changes.to_transfer) - sum(len(paths) for paths in pending.values())
        if skipped:
            self._log(f"[{domain}] {skipped} changed files already stored by content")
        if not pending:
            return {}

        self._log(f"[{domain}] Uploading {len(pending)} objects ({self.settings.concurrency} workers)")
        failures = {}
        pool = ThreadPoolExecutor(max_workers=self.settings.concurrency, thread_name_prefix=f'backup-{domain}')
        try:
            futures = {
                pool.submit(self._upload_object, domain, root, paths[0], fingerprint): paths
                for fingerprint, paths in pending.items()
            }
            for future in as_completed(futures):
                paths = futures[future]
                try:
                    result = future.result()
                except AuthError:
                    pool.shutdown(wait=True, cancel_futures=True)
                    raise
                except (TransferError, OSError) as e:
                    attempts = getattr(e, 'attempts', 1)
                    for path in paths:
                        failures[path] = self._record_failure(domain, path, e, attempts)
                    continue

                self.run_record.bytes_transferred += result.size
                self.run_record.files_transferred += len(paths)
        finally:
            pool.shutdown(wait=True)

        self._log(f"[{domain}] Transfer complete: {len(failures)} failed files")
        return failures

    def _upload_object(self, domain: str, root: str, path: str, fingerprint: str) -> UploadResult:
        # Runs on a worker thread: storage only, no registry access
        return self.backend.upload(
            os.path.join(root, path),
            object_key(self.settings.path_prefix, domain, fingerprint),
            TransferOptions(metadata={'fingerprint': fingerprint})
        )

    def _record_failure(self, domain: str, path: str, error: Exception, attempts: int) -> PerFileTransferError:
        failure = PerFileTransferError(path, str(error), attempts)
        self.failure_count += 1
        self.registry.record_failure(self.run_record, domain, path, str(error), attempts)
        self._log(f"[{domain}] Failed to transfer {path} after {attempts} attempts: {error}")
        logger.error(f"Run {self.run_record.id}: {failure}")
        return failure

    @staticmethod
    def _stored_manifest(manifest: Manifest, parent: Optional[Manifest],
                         failures: Dict[str, PerFileTransferError]) -> Manifest:
        """
        Manifest describing what the backend actually holds.

        A failed file keeps its previously stored version; a failed new file
        is left out so the next run detects and sends it again.
        """
        if not failures:
            return manifest

        entries = manifest.entry_map()
        previous = parent.entry_map() if parent else {}
        for path in failures:
            if path in previous:
                entries[path] = previous[path]
            else:
                entries.pop(path, None)
        return manifest.with_entries(entries.values())

    def _persist_manifest(self, domain: str, manifest: Manifest, changes: ChangeSet):
        """
        Upload the manifest document and record it.

        Raises:
            AuthError: If credentials were rejected
            ManifestPersistError: If the manifest could not be stored
        """
        fmt = self.settings.manifest_format
        content = serialize_manifest(manifest, fmt)
        key = manifest_key(self.settings.path_prefix, domain, self.run_record.id, fmt)
        local_path = os.path.join(self.temp_dir, f"manifest-{domain}.{fmt}")

        with open(local_path, 'wb') as f:
            f.write(content)

        options = TransferOptions(
            content_type=MANIFEST_CONTENT_TYPES[fmt],
            metadata={'run-id': self.run_record.id, 'domain': domain},
        )
        try:
            result = self.backend.upload(local_path, key, options)
        except AuthError:
            raise
        except TransferError as e:
            raise ManifestPersistError(f"Failed to upload manifest: {e}", {'key': key, 'attempts': e.attempts})

        self.run_record.bytes_transferred += result.size
        self.registry.save_manifest(self.run_record, manifest, changes, key, fmt, content.decode('utf-8'))
        self._log(f"[{domain}] Manifest stored: {key}")

    def _apply_retention(self, run: BackupRun):
        if not self.settings.has_retention:
            return
        try:
            manager = RetentionManager(self.registry)
            result = manager.apply(self.settings, self.backend, protected=[run.id])
            if result['runs_pruned'] or result['errors']:
                self._log(
                    f"Retention: {result['runs_pruned']} runs pruned, "
                    f"{result['objects_deleted']} objects deleted, {len(result['errors'])} errors"
                )
        except BackupError as e:
            logger.error(f"Retention failed for target {self.settings.name}: {e}")
            self._log(f"Retention failed: {e}")
        self._flush_logs_to_db()

    def _notify(self, run: BackupRun):
        if self.notifier is None:
            return
        if not should_notify(run.status, self.failure_count, self.settings.notify_failure_threshold):
            return
        try:
            self.notifier(run)
        except Exception as e:
            logger.error(f"Notification hook failed for run {run.id}: {e}")

    def _cleanup(self):
        """Remove staging directory and close backend connections."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir, ignore_errors=True)
        if self.backend is not None:
            try:
                self.backend.close()
            except Exception as e:
                logger.warning(f"Failed to close storage backend: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)

        # Flush logs every few entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= LOG_FLUSH_INTERVAL:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run_record is not None:
            self.registry.flush_logs(self.run_record, self.logs)
            self._log_flush_counter = 0
