"""
Backup engine for backvault.

This module handles the core backup functionality including:
- Storage backends (local, SFTP sync, S3-compatible object stores)
- Manifest building and change detection
- Domain staging (database dump, asset trees)
- Run orchestration and the run registry
- Retention policy enforcement
"""

from .errors import BackupError, TransferError
from .manifest import ChangeSet, Manifest, ManifestBuilder, ManifestEntry
from .orchestrator import BackupOrchestrator
from .registry import RunRegistry
from .retention import RetentionManager
from .retry import RetryPolicy
from .storage import LocalStorage, StorageBackend, create_storage

__all__ = [
    'BackupError',
    'TransferError',
    'ChangeSet',
    'Manifest',
    'ManifestBuilder',
    'ManifestEntry',
    'BackupOrchestrator',
    'RunRegistry',
    'RetentionManager',
    'RetryPolicy',
    'LocalStorage',
    'StorageBackend',
    'create_storage',
]
