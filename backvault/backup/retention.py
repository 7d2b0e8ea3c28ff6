"""
Retention policy enforcement for backup runs.

Prunes expired runs of a target: their manifest documents, the objects no
remaining manifest references, and finally their registry rows. The newest
successful run of a target is never pruned, since it anchors the lineage.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from backvault.models import BackupRun, BackupTarget, utcnow
from .errors import BackupError, BackupInUse, RetentionPruneError, TransferError
from .manifest import manifest_key, parse_manifest, referenced_keys
from .registry import RunRegistry
from .target_config import TargetSettings, load_settings

logger = logging.getLogger(__name__)


def select_expired(runs: List[BackupRun], max_age_days: Optional[int], max_count: Optional[int],
                   now: datetime, protected: Iterable[str] = ()) -> List[BackupRun]:
    """
    Pick the runs a retention policy removes.

    Args:
        runs: Finished runs of one target, newest first
        max_age_days: Runs started longer ago than this expire
        max_count: Only this many successful runs are kept
        now: Reference time (naive UTC)
        protected: Run ids that are never pruned

    Returns:
        Expired runs, newest first
    """
    protected = set(protected)
    anchor = next((run for run in runs if run.is_successful), None)
    cutoff = now - timedelta(days=max_age_days) if max_age_days is not None else None

    expired = []
    kept_successful = 0
    for run in runs:
        if run is anchor or run.id in protected:
            if run.is_successful:
                kept_successful += 1
            continue

        too_old = cutoff is not None and run.started_at < cutoff
        if run.is_successful:
            over_count = max_count is not None and kept_successful >= max_count
            if too_old or over_count:
                expired.append(run)
            else:
                kept_successful += 1
        elif too_old:
            expired.append(run)

    return expired


class RetentionManager:
    """
    Manages retention policy enforcement for backup targets.
    """

    def __init__(self, registry: RunRegistry = None):
        """Initialize retention manager."""
        self.registry = registry or RunRegistry()
        self.logs = []

    def apply(self, settings: TargetSettings, backend, protected: Iterable[str] = ()) -> Dict[str, Any]:
        """
        Enforce one target's retention policy.

        Args:
            settings: Target snapshot carrying the policy
            backend: Storage backend of the target
            protected: Run ids that must survive (e.g. the run that just finished)

        Returns:
            Dict with counts: {'runs_pruned': int, 'objects_deleted': int, 'errors': List[str]}
        """
        result = {'runs_pruned': 0, 'objects_deleted': 0, 'errors': []}
        if not settings.has_retention:
            return result

        runs = self.registry.finished_runs(settings.target_id)
        expired = select_expired(
            runs,
            settings.retention_max_age_days,
            settings.retention_max_count,
            utcnow(),
            protected,
        )
        if not expired:
            return result

        self._log(f"Target {settings.name}: {len(expired)} runs exceed the retention policy")
        expired_ids = {run.id for run in expired}
        still_referenced = self._referenced_keys(settings, exclude_run_ids=expired_ids)

        for run in expired:
            try:
                result['objects_deleted'] += self.prune_run(run, backend, settings.path_prefix, still_referenced)
                result['runs_pruned'] += 1
            except RetentionPruneError as e:
                message = f"Failed to prune run {run.id}: {e}"
                logger.error(message)
                self._log(message)
                result['errors'].append(message)

        return result

    def _referenced_keys(self, settings: TargetSettings, exclude_run_ids: Iterable[str]) -> Set[str]:
        keys = set()
        for record in self.registry.manifests_for_target(settings.target_id, exclude_run_ids):
            keys.add(record.storage_key)
            keys.update(referenced_keys(settings.path_prefix, parse_manifest(record.content, record.format)))
        return keys

    def prune_run(self, run: BackupRun, backend, prefix: str, still_referenced: Set[str] = None) -> int:
        """
        Remove a run, its manifest documents and the objects only it referenced.

        Args:
            run: Run to remove
            backend: Storage backend of the run's target
            prefix: Target path prefix
            still_referenced: Keys other manifests depend on (computed if omitted)

        Returns:
            Number of storage objects deleted

        Raises:
            RetentionPruneError: If any object could not be deleted; the
                registry row is kept so a later sweep can retry
        """
        if still_referenced is None:
            still_referenced = set()
            for record in self.registry.manifests_for_target(run.target_id, exclude_run_ids=[run.id]):
                still_referenced.add(record.storage_key)
                still_referenced.update(referenced_keys(prefix, parse_manifest(record.content, record.format)))

        manifest_keys = []
        object_keys = set()
        try:
            for record in run.manifests:
                manifest_keys.append(record.storage_key or manifest_key(prefix, record.domain, run.id, record.format))
                object_keys.update(referenced_keys(prefix, parse_manifest(record.content, record.format)))
        except BackupError as e:
            raise RetentionPruneError(f"Unreadable manifest for run {run.id}: {e}")

        # Manifest documents first, then the objects nothing else references
        keys = manifest_keys + sorted(object_keys - still_referenced)
        deleted = 0
        if keys:
            try:
                outcome = backend.delete_many(keys)
            except TransferError as e:
                raise RetentionPruneError(f"Delete failed for run {run.id}: {e}")
            if outcome.errors:
                raise RetentionPruneError(
                    f"{len(outcome.errors)} objects of run {run.id} could not be deleted",
                    {'errors': outcome.errors[:10]}
                )
            deleted = len(outcome.deleted)

        self.registry.delete_run(run)
        self._log(f"Pruned run {run.id} ({deleted} objects deleted)")
        return deleted

    def enforce_all_policies(self) -> Dict[str, Any]:
        """
        Enforce retention policies for all targets.

        Targets with an active run are skipped; the run applies retention itself.

        Returns:
            Dict with summary of cleanup operations
        """
        self._log("Starting retention policy enforcement for all targets")

        summary = {
            'targets_processed': 0,
            'runs_pruned': 0,
            'objects_deleted': 0,
            'errors': []
        }

        for target in BackupTarget.query.all():
            if target.retention_max_age_days is None and target.retention_max_count is None:
                continue

            backend = None
            try:
                with self.registry.idle_target(target.id):
                    settings = load_settings(target)
                    backend = settings.create_backend()
                    result = self.apply(settings, backend)
                summary['targets_processed'] += 1
                summary['runs_pruned'] += result['runs_pruned']
                summary['objects_deleted'] += result['objects_deleted']
                summary['errors'].extend(result['errors'])
            except BackupInUse:
                self._log(f"Target {target.name} has an active run, skipping")
            except BackupError as e:
                error_msg = f"Failed to enforce policy for target {target.name}: {e}"
                logger.error(error_msg)
                self._log(error_msg)
                summary['errors'].append(error_msg)
            finally:
                if backend is not None:
                    backend.close()

        self._log(
            f"Retention enforcement complete. "
            f"Targets: {summary['targets_processed']}, "
            f"Runs pruned: {summary['runs_pruned']}, "
            f"Objects deleted: {summary['objects_deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def enforce_retention_policies() -> Dict[str, Any]:
    """
    Enforce retention policies for all targets.

    This function is called by the scheduler on a daily basis.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    manager = RetentionManager()
    return manager.enforce_all_policies()
