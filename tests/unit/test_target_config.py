"""
Unit tests for target validation and run snapshots (backvault/backup/target_config.py).
"""

import json
from types import MappingProxyType

import pytest

from backvault.backup.errors import ValidationError
from backvault.backup.s3_storage import MIN_PART_SIZE
from backvault.backup.storage import LocalStorage
from backvault.backup.target_config import (
    load_settings,
    snapshot_target,
    validate_backend,
    validate_target_config,
)
from backvault.utils.crypto import credential_cipher


def _valid_config(**overrides):
    config = {
        'name': 'nightly',
        'backend_kind': 'object-store',
        'backend_params': {'bucket': 'b', 'access_key_id': 'AK', 'secret_access_key': 'SK'},
        'schedule': '0 2 * * *',
        'domains': {'database': True, 'active_assets': True},
        'retention': {'max_age_days': 30, 'max_count': 10},
        'retry': {'max_attempts': 3, 'base_delay_ms': 100, 'max_delay_ms': 1000},
        'manifest_format': 'yaml',
    }
    config.update(overrides)
    return config


def _errors(config):
    with pytest.raises(ValidationError) as exc_info:
        validate_target_config(config)
    return exc_info.value.errors


class TestValidateBackend:

    def test_required_params(self):
        assert validate_backend('local', {}) == {'backend_params.base_path': 'required'}
        errors = validate_backend('object-store', {'bucket': 'b'})
        assert set(errors) == {'backend_params.access_key_id', 'backend_params.secret_access_key'}

    def test_sync_needs_password_or_key(self):
        params = {'host': 'h', 'username': 'u', 'remote_path': '/b'}
        assert 'backend_params.password' in validate_backend('sync', params)
        assert validate_backend('sync', {**params, 'private_key': '~/.ssh/id_rsa'}) == {}

    def test_unknown_kind(self):
        assert 'backend_kind' in validate_backend('ftp', {})


class TestValidateTargetConfig:
    """Test validate_target_config()."""

    def test_valid(self):
        validate_target_config(_valid_config())

    def test_name_required(self):
        assert _errors(_valid_config(name=''))['name'] == 'required'

    def test_invalid_cron(self):
        assert 'schedule' in _errors(_valid_config(schedule='every day'))

    def test_at_least_one_domain(self):
        assert 'domains' in _errors(_valid_config(domains={'database': False}))

    def test_unknown_domain(self):
        assert 'unknown' in _errors(_valid_config(domains={'logs': True}))['domains']

    def test_negative_retention(self):
        errors = _errors(_valid_config(retention={'max_age_days': -1}))
        assert 'retention.max_age_days' in errors

    def test_zero_retention_allowed(self):
        validate_target_config(_valid_config(retention={'max_count': 0}))

    def test_concurrency_must_be_positive(self):
        assert 'concurrency' in _errors(_valid_config(concurrency=0))
        assert 'concurrency' in _errors(_valid_config(concurrency=True))

    def test_object_store_chunk_floor(self):
        errors = _errors(_valid_config(chunk_size_bytes=MIN_PART_SIZE - 1))
        assert 'chunk_size_bytes' in errors
        validate_target_config(_valid_config(chunk_size_bytes=MIN_PART_SIZE))

    def test_base_delay_not_above_max(self):
        errors = _errors(_valid_config(retry={'base_delay_ms': 5000, 'max_delay_ms': 1000}))
        assert 'retry.base_delay_ms' in errors

    def test_manifest_format(self):
        assert 'manifest_format' in _errors(_valid_config(manifest_format='xml'))

    def test_collects_every_error(self):
        errors = _errors(_valid_config(name='', concurrency=-1, manifest_format='xml'))
        assert {'name', 'concurrency', 'manifest_format'} <= set(errors)


class TestSnapshot:
    """Test freezing targets into TargetSettings."""

    def test_defaults_come_from_app_config(self, app, local_target):
        local_target.concurrency = None
        settings = snapshot_target(local_target, app.config, {'base_path': '/tmp/x'})

        assert settings.concurrency == app.config['BACKUP_CONCURRENCY']
        assert settings.retry_max_attempts == 2
        assert settings.domains == ('active_assets',)
        assert settings.path_prefix == 'site'
        assert isinstance(settings.backend_params, MappingProxyType)

    def test_snapshot_is_isolated_from_later_edits(self, app, local_target, db):
        settings = load_settings(local_target)

        local_target.name = 'renamed'
        local_target.retention_max_count = 1
        db.session.commit()

        assert settings.name == 'test_local_target'
        assert settings.retention_max_count is None
        assert not settings.has_retention

    def test_load_settings_decrypts_secrets(self, app, local_target, db):
        params = {'base_path': '/tmp/x', 'password': 'hunter2'}
        local_target.backend_params = json.dumps(credential_cipher.encrypt_params(params))
        db.session.commit()

        settings = load_settings(local_target)
        assert settings.backend_params['password'] == 'hunter2'

    def test_load_settings_with_wrong_key(self, app, local_target, db):
        local_target.backend_params = json.dumps({'base_path': '/tmp/x', 'password': 'not-a-token'})
        db.session.commit()

        with pytest.raises(ValidationError):
            load_settings(local_target)

    def test_create_backend(self, app, local_target, storage_dir):
        backend = load_settings(local_target).create_backend()

        assert isinstance(backend, LocalStorage)
        assert backend.base_path == storage_dir.resolve()
        assert backend.retry_policy.max_attempts == 2

    def test_transfer_settings_only_for_object_store(self, app, local_target):
        assert load_settings(local_target).transfer_settings() == {}
