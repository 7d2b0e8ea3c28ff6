"""
Run registry: run records, persisted manifests and the single-flight lock.

All writes go through the Flask-SQLAlchemy session of the calling thread.
Worker threads never touch the registry; the orchestrating thread records
their outcomes.
"""

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from backvault import db
from backvault.models import (
    ACTIVE_STATUSES,
    SUCCESSFUL_STATUSES,
    BackupRun,
    FileFailure,
    ManifestRecord,
    RunLock,
    utcnow,
)
from .errors import BackupAlreadyRunning, BackupInUse, RunNotFoundError
from .manifest import ChangeSet, Manifest, parse_manifest

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

# Serializes lock acquisition between the scheduler thread and request threads
_acquire_lock = threading.RLock()


def generate_run_id() -> str:
    """Run id of the form backup-{epoch_ms}-{8 hex}."""
    return f"backup-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class RunRegistry:
    """Persistence for runs and manifests, and owner of the single-flight lock."""

    def __init__(self, session=None):
        self.session = session or db.session

    # Single-flight lock

    def acquire(self, target_id: int, trigger: str = 'manual') -> BackupRun:
        """
        Take the target's lock and create a pending run.

        Raises:
            BackupAlreadyRunning: If a run is already pending or running for
                the target; nothing is created in that case
        """
        with _acquire_lock:
            active = BackupRun.query.filter(
                BackupRun.target_id == target_id,
                BackupRun.status.in_(ACTIVE_STATUSES)
            ).first()
            if active:
                raise BackupAlreadyRunning(
                    f"A backup is already running for target {target_id}",
                    {'run_id': active.id, 'target_id': target_id}
                )

            run = BackupRun(
                id=generate_run_id(),
                target_id=target_id,
                status='pending',
                trigger=trigger,
                started_at=utcnow(),
            )
            self.session.add(run)
            self.session.add(RunLock(target_id=target_id, run_id=run.id))
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                holder = self.session.get(RunLock, target_id)
                raise BackupAlreadyRunning(
                    f"A backup is already running for target {target_id}",
                    {'run_id': holder.run_id if holder else None, 'target_id': target_id}
                )

        logger.info(f"Acquired run lock for target {target_id} (run {run.id})")
        return run

    def release(self, target_id: int, run_id: str):
        """Drop the target's lock if it is held by run_id."""
        RunLock.query.filter_by(target_id=target_id, run_id=run_id).delete()
        self.session.commit()
        logger.info(f"Released run lock for target {target_id} (run {run_id})")

    def is_locked(self, target_id: int) -> bool:
        return self.session.get(RunLock, target_id) is not None

    @contextmanager
    def idle_target(self, target_id: int):
        """
        Hold off new runs of a target while its stored data is modified
        outside a run.

        Raises:
            BackupInUse: If the target has a pending or running run
        """
        with _acquire_lock:
            holder = RunLock.query.filter_by(target_id=target_id).first()
            if holder is not None:
                raise BackupInUse(
                    f"Target {target_id} has an active run",
                    {'target_id': target_id, 'run_id': holder.run_id}
                )
            yield

    def reconcile(self) -> int:
        """
        Startup sweep: runs left pending/running by a previous process become
        aborted, and every lock is removed.

        Returns:
            Number of runs marked aborted
        """
        stale = BackupRun.query.filter(BackupRun.status.in_(ACTIVE_STATUSES)).all()
        now = utcnow()
        for run in stale:
            run.status = 'aborted'
            run.completed_at = now
            run.error_message = 'Run interrupted by process shutdown'
            line = f"[{now.strftime('%Y-%m-%d %H:%M:%S UTC')}] Marked aborted by startup reconciliation"
            run.logs = f"{run.logs}\n{line}" if run.logs else line

        released = RunLock.query.delete()
        self.session.commit()

        if stale or released:
            logger.warning(f"Reconciliation aborted {len(stale)} stale runs and cleared {released} locks")
        return len(stale)

    # Run lifecycle

    def mark_running(self, run: BackupRun):
        run.status = 'running'
        self.session.commit()

    def record_failure(self, run: BackupRun, domain: str, path: str, error: str, attempts: int) -> FileFailure:
        failure = FileFailure(run_id=run.id, domain=domain, path=path, error=error, attempts=attempts)
        self.session.add(failure)
        self.session.commit()
        return failure

    def save_manifest(self, run: BackupRun, manifest: Manifest, changes: ChangeSet,
                      storage_key: str, fmt: str, content: str) -> ManifestRecord:
        summary = changes.summary()
        record = ManifestRecord(
            run_id=run.id,
            domain=manifest.domain,
            storage_key=storage_key,
            format=fmt,
            parent_run_id=manifest.parent_ref,
            content=content,
            file_count=manifest.file_count,
            total_bytes=manifest.total_bytes,
            added_count=summary['added'],
            modified_count=summary['modified'],
            removed_count=summary['removed'],
        )
        self.session.add(record)
        self.session.commit()
        return record

    def flush_logs(self, run: BackupRun, logs: List[str]):
        run.logs = '\n'.join(logs)
        self.session.commit()

    def finalize(self, run: BackupRun, status: str, error_message: str = None, logs: List[str] = None):
        run.status = status
        run.completed_at = utcnow()
        if error_message:
            run.error_message = error_message
        if logs is not None:
            run.logs = '\n'.join(logs)
        self.session.commit()

    def delete_run(self, run: BackupRun):
        self.session.delete(run)
        self.session.commit()

    # Queries

    def status(self, run_id: str) -> BackupRun:
        """
        Raises:
            RunNotFoundError: If no run has the given id
        """
        run = self.session.get(BackupRun, run_id)
        if run is None:
            raise RunNotFoundError(f"Backup run not found: {run_id}")
        return run

    def history(self, target_id: int, page: int = 1, page_size: int = 20) -> List[BackupRun]:
        """Runs of a target, newest first. page is 1-based."""
        page = max(int(page or 1), 1)
        page_size = min(max(int(page_size or 20), 1), MAX_PAGE_SIZE)
        return (
            BackupRun.query
            .filter_by(target_id=target_id)
            .order_by(BackupRun.started_at.desc(), BackupRun.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )

    def latest_successful_record(self, target_id: int, domain: str) -> Optional[ManifestRecord]:
        return (
            ManifestRecord.query
            .join(BackupRun)
            .filter(
                BackupRun.target_id == target_id,
                BackupRun.status.in_(SUCCESSFUL_STATUSES),
                ManifestRecord.domain == domain,
            )
            .order_by(BackupRun.started_at.desc(), ManifestRecord.id.desc())
            .first()
        )

    def latest_successful(self, target_id: int, domain: str) -> Optional[Manifest]:
        """Most recent manifest of the domain from a succeeded or partial run."""
        record = self.latest_successful_record(target_id, domain)
        if record is None:
            return None
        return parse_manifest(record.content, record.format)

    def finished_runs(self, target_id: int) -> List[BackupRun]:
        """Completed runs of a target, newest first."""
        return (
            BackupRun.query
            .filter(
                BackupRun.target_id == target_id,
                BackupRun.status.notin_(ACTIVE_STATUSES),
            )
            .order_by(BackupRun.started_at.desc(), BackupRun.id.desc())
            .all()
        )

    def manifests_for_target(self, target_id: int, exclude_run_ids=()) -> List[ManifestRecord]:
        query = ManifestRecord.query.join(BackupRun).filter(BackupRun.target_id == target_id)
        if exclude_run_ids:
            query = query.filter(ManifestRecord.run_id.notin_(list(exclude_run_ids)))
        return query.all()
