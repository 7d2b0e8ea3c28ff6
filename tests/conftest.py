"""
Shared pytest fixtures for backvault tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Credential cipher and backup target fixtures
- Domain trees to back up
- Mock fixtures for external services (S3, SSH, scheduler)
"""

import os
import json
from unittest.mock import MagicMock, patch

import pytest
import boto3
from cryptography.fernet import Fernet
from moto import mock_aws

from backvault import create_app, db as _db
from backvault.backup.registry import RunRegistry
from backvault.backup.retry import RetryPolicy
from backvault.backup.storage import LocalStorage
from backvault.models import BackupTarget
from backvault.utils.crypto import credential_cipher


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    key = Fernet.generate_key().decode()
    app = create_app('testing', {
        'SECRET_KEY': 'test-secret-key',
        'CREDENTIALS_KEY': key,
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'ACTIVE_ASSETS_DIR': str(tmp_path / 'assets'),
        'ARCHIVES_DIR': str(tmp_path / 'archives'),
    })

    yield app

    # Other tests must not see this app's key
    credential_cipher._fernet = None


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def registry(db):
    return RunRegistry()


@pytest.fixture
def fast_retry():
    """Retry policy that never sleeps."""
    return RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=5, sleep=lambda s: None)


@pytest.fixture
def asset_tree(app):
    """
    Populate the active assets domain.

    Creates:
    - a.txt
    - b.txt
    - nested/c.txt
    """
    root = app.config['ACTIVE_ASSETS_DIR']
    os.makedirs(os.path.join(root, 'nested'), exist_ok=True)
    with open(os.path.join(root, 'a.txt'), 'w') as f:
        f.write('alpha')
    with open(os.path.join(root, 'b.txt'), 'w') as f:
        f.write('bravo')
    with open(os.path.join(root, 'nested', 'c.txt'), 'w') as f:
        f.write('charlie')
    return root


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / 'storage'
    path.mkdir()
    return path


@pytest.fixture
def local_backend(storage_dir, fast_retry):
    return LocalStorage(str(storage_dir), retry_policy=fast_retry)


@pytest.fixture(scope='function')
def local_target(db, storage_dir):
    """
    Create a target storing the active assets domain on a local directory.
    """
    target = BackupTarget(
        name='test_local_target',
        enabled=True,
        backend_kind='local',
        backend_params=json.dumps({'base_path': str(storage_dir)}),
        path_prefix='site',
        domain_active_assets=True,
        retry_max_attempts=2,
        retry_base_delay_ms=1,
        retry_max_delay_ms=2,
        concurrency=2,
    )
    db.session.add(target)
    db.session.commit()
    return target


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_params():
    return {
        'bucket': 'test-bucket',
        'region': 'us-east-1',
        'access_key_id': 'testing',
        'secret_access_key': 'testing',
    }


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('backvault.backup.sync_storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_sftp.sock.closed = False
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        mock_ssh.return_value.get_transport.return_value.is_active.return_value = True

        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import backvault.scheduler as scheduler_module

    with patch('backvault.scheduler.BackgroundScheduler') as mock_sched, \
            patch('backvault.scheduler.SQLAlchemyJobStore'):
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        scheduler_module.scheduler = None
        yield scheduler_instance
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None
