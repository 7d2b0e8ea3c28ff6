import json
from datetime import datetime, timezone

from backvault import db

SECRET_PARAM_FIELDS = ('secret_access_key', 'password', 'private_key_passphrase')

RUN_STATUSES = ('pending', 'running', 'succeeded', 'partial', 'failed', 'aborted')
ACTIVE_STATUSES = ('pending', 'running')
SUCCESSFUL_STATUSES = ('succeeded', 'partial')


def utcnow():
    """Naive UTC timestamp, as stored in the registry."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() + 'Z' if value else None


class BackupTarget(db.Model):
    """Backup target configuration"""
    __tablename__ = 'backup_targets'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    schedule_cron = db.Column(db.String(100))  # Cron expression
    backend_kind = db.Column(db.String(20), nullable=False)  # local, sync, object-store
    backend_params = db.Column(db.Text, nullable=False, default='{}')  # JSON string, secrets encrypted
    path_prefix = db.Column(db.String(500), nullable=False, default='')

    # Domains
    domain_database = db.Column(db.Boolean, default=False, nullable=False)
    domain_active_assets = db.Column(db.Boolean, default=True, nullable=False)
    domain_archives = db.Column(db.Boolean, default=False, nullable=False)

    # Retention (null = no limit)
    retention_max_age_days = db.Column(db.Integer)
    retention_max_count = db.Column(db.Integer)

    # Transfer tuning (null = application default)
    concurrency = db.Column(db.Integer)
    multipart_threshold_bytes = db.Column(db.BigInteger)
    chunk_size_bytes = db.Column(db.BigInteger)
    retry_max_attempts = db.Column(db.Integer)
    retry_base_delay_ms = db.Column(db.Integer)
    retry_max_delay_ms = db.Column(db.Integer)

    manifest_format = db.Column(db.String(10), default='json', nullable=False)  # json or yaml
    notify_failure_threshold = db.Column(db.Integer, default=1, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationship
    runs = db.relationship('BackupRun', back_populates='target', cascade='all, delete-orphan', lazy='dynamic')

    @property
    def domains(self) -> list:
        """Enabled domain names"""
        flags = (
            ('database', self.domain_database),
            ('active_assets', self.domain_active_assets),
            ('archives', self.domain_archives),
        )
        return [name for name, enabled in flags if enabled]

    def get_backend_params(self) -> dict:
        """Stored backend parameters (secret fields still encrypted)"""
        return json.loads(self.backend_params or '{}')

    def to_dict(self) -> dict:
        params = self.get_backend_params()
        for name in SECRET_PARAM_FIELDS:
            if params.get(name):
                params[name] = '********'

        return {
            'id': self.id,
            'name': self.name,
            'enabled': self.enabled,
            'schedule': self.schedule_cron,
            'backend_kind': self.backend_kind,
            'backend_params': params,
            'path_prefix': self.path_prefix,
            'domains': {
                'database': self.domain_database,
                'active_assets': self.domain_active_assets,
                'archives': self.domain_archives,
            },
            'retention': {
                'max_age_days': self.retention_max_age_days,
                'max_count': self.retention_max_count,
            },
            'concurrency': self.concurrency,
            'multipart_threshold_bytes': self.multipart_threshold_bytes,
            'chunk_size_bytes': self.chunk_size_bytes,
            'retry': {
                'max_attempts': self.retry_max_attempts,
                'base_delay_ms': self.retry_base_delay_ms,
                'max_delay_ms': self.retry_max_delay_ms,
            },
            'manifest_format': self.manifest_format,
            'notify_failure_threshold': self.notify_failure_threshold,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<BackupTarget {self.name} kind={self.backend_kind} enabled={self.enabled}>'


class BackupRun(db.Model):
    """One orchestration invocation"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.String(64), primary_key=True)  # backup-{timestamp}-{hex}
    target_id = db.Column(db.Integer, db.ForeignKey('backup_targets.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False)  # pending, running, succeeded, partial, failed, aborted
    trigger = db.Column(db.String(20), default='manual', nullable=False)  # manual or scheduled
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    completed_at = db.Column(db.DateTime)
    bytes_transferred = db.Column(db.BigInteger, default=0, nullable=False)
    files_transferred = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Timestamped run log

    # Relationships
    target = db.relationship('BackupTarget', back_populates='runs')
    manifests = db.relationship('ManifestRecord', back_populates='run', cascade='all, delete-orphan',
                                order_by='ManifestRecord.domain')
    failures = db.relationship('FileFailure', back_populates='run', cascade='all, delete-orphan',
                               order_by='FileFailure.id')

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_successful(self) -> bool:
        return self.status in SUCCESSFUL_STATUSES

    def to_dict(self, include_logs: bool = False) -> dict:
        data = {
            'id': self.id,
            'target_id': self.target_id,
            'status': self.status,
            'trigger': self.trigger,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'bytes_transferred': self.bytes_transferred,
            'files_transferred': self.files_transferred,
            'error_message': self.error_message,
            'manifests': [m.to_dict() for m in self.manifests],
            'failures': [f.to_dict() for f in self.failures],
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRun {self.id} target_id={self.target_id} status={self.status}>'


class ManifestRecord(db.Model):
    """Persisted manifest of one domain for one run"""
    __tablename__ = 'manifests'
    __table_args__ = (db.UniqueConstraint('run_id', 'domain', name='uq_manifest_run_domain'),)

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(64), db.ForeignKey('backup_runs.id'), nullable=False, index=True)
    domain = db.Column(db.String(50), nullable=False)
    storage_key = db.Column(db.String(1000), nullable=False)
    format = db.Column(db.String(10), nullable=False)
    parent_run_id = db.Column(db.String(64))
    content = db.Column(db.Text, nullable=False)  # Serialized manifest document
    file_count = db.Column(db.Integer, default=0, nullable=False)
    total_bytes = db.Column(db.BigInteger, default=0, nullable=False)
    added_count = db.Column(db.Integer, default=0, nullable=False)
    modified_count = db.Column(db.Integer, default=0, nullable=False)
    removed_count = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    # Relationship
    run = db.relationship('BackupRun', back_populates='manifests')

    def to_dict(self) -> dict:
        return {
            'domain': self.domain,
            'storage_key': self.storage_key,
            'format': self.format,
            'parent_run_id': self.parent_run_id,
            'file_count': self.file_count,
            'total_bytes': self.total_bytes,
            'changes': {
                'added': self.added_count,
                'modified': self.modified_count,
                'removed': self.removed_count,
            },
        }

    def __repr__(self):
        return f'<ManifestRecord run_id={self.run_id} domain={self.domain}>'


class FileFailure(db.Model):
    """A file that could not be transferred during a run"""
    __tablename__ = 'file_failures'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(64), db.ForeignKey('backup_runs.id'), nullable=False, index=True)
    domain = db.Column(db.String(50), nullable=False)
    path = db.Column(db.String(1000), nullable=False)
    error = db.Column(db.Text, nullable=False)
    attempts = db.Column(db.Integer, default=1, nullable=False)

    # Relationship
    run = db.relationship('BackupRun', back_populates='failures')

    def to_dict(self) -> dict:
        return {
            'domain': self.domain,
            'path': self.path,
            'error': self.error,
            'attempts': self.attempts,
        }

    def __repr__(self):
        return f'<FileFailure run_id={self.run_id} path={self.path}>'


class RunLock(db.Model):
    """Single-flight lock; one row per target with an active run"""
    __tablename__ = 'run_locks'

    target_id = db.Column(db.Integer, db.ForeignKey('backup_targets.id'), primary_key=True)
    run_id = db.Column(db.String(64), nullable=False)
    acquired_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<RunLock target_id={self.target_id} run_id={self.run_id}>'
