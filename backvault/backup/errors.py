"""
Exception hierarchy for the backup engine.

Storage backends translate their native exceptions (botocore, paramiko,
OSError) into the TransferError family at their boundary, so the retry
wrapper and the orchestrator only ever reason about these types.
"""


class BackupError(Exception):
    """Base exception for all backup engine errors."""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class TransferError(BackupError):
    """
    Raised when a storage operation fails.

    Attributes:
        key: Remote key the operation targeted (if any)
        retryable: Whether the retry wrapper may attempt the operation again
        attempts: Number of attempts made before the error surfaced
    """

    default_retryable = False

    def __init__(self, message: str, key: str = None, retryable: bool = None, details: dict = None):
        super().__init__(message, details)
        self.key = key
        self.retryable = self.default_retryable if retryable is None else retryable
        self.attempts = 1


class BackendConnectionError(TransferError):
    """Network reset, timeout, throttling or a 5xx from the backend."""

    default_retryable = True


class AuthError(TransferError):
    """Credentials were rejected. Never retried."""


class ObjectNotFoundError(TransferError):
    """The remote key does not exist."""


class UnsupportedOperationError(TransferError):
    """The backend kind cannot perform the requested operation."""


class ValidationError(BackupError):
    """Raised when target configuration is invalid."""

    def __init__(self, message: str, errors: dict = None):
        super().__init__(message, errors)
        self.errors = errors or {}


class SourceError(BackupError):
    """Raised when a domain cannot be staged for walking."""


class PerFileTransferError(BackupError):
    """A single file could not be transferred; the run continues."""

    def __init__(self, path: str, error: str, attempts: int):
        super().__init__(f"Failed to transfer {path}: {error}", {'attempts': attempts})
        self.path = path
        self.error = error
        self.attempts = attempts


class ManifestPersistError(BackupError):
    """The manifest for a domain could not be stored."""


class BackupAlreadyRunning(BackupError):
    """A run is already active for the target."""


class BackupInUse(BackupError):
    """The backup cannot be deleted while it is in use."""


class RunNotFoundError(BackupError):
    """No run exists with the given id."""


class RetentionPruneError(BackupError):
    """Pruning an expired run failed."""


class InvalidManifestError(BackupError):
    """A manifest document is malformed or fails its checksum."""


class TargetNotFoundError(BackupError):
    """No backup target exists with the given id."""
