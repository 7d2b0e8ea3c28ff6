"""
Unit tests for the triggering API and HTTP routes (backvault/api.py, backvault/routes/).
"""

import io
import os
import tarfile
import zipfile
from unittest.mock import MagicMock, patch

import pytest

from backvault import api
from backvault.backup.errors import BackupInUse, TransferError
from backvault.backup.manifest import ManifestBuilder, object_key, parse_manifest
from backvault.backup.orchestrator import BackupOrchestrator
from backvault.backup.registry import RunRegistry
from backvault.backup.target_config import load_settings
from backvault.models import BackupRun, BackupTarget
from backvault.utils.crypto import credential_cipher


def _local_payload(storage_dir, **overrides):
    data = {
        'name': 'nightly',
        'backend_kind': 'local',
        'backend_params': {'base_path': str(storage_dir)},
        'path_prefix': 'site',
        'domains': {'active_assets': True},
        'retry': {'max_attempts': 2, 'base_delay_ms': 1, 'max_delay_ms': 2},
    }
    data.update(overrides)
    return data


def _sync_payload(**overrides):
    data = {
        'name': 'offsite',
        'backend_kind': 'sync',
        'backend_params': {
            'host': 'backup.example.com',
            'username': 'backup',
            'password': 'hunter2',
            'remote_path': '/srv/backups',
        },
        'domains': {'database': True},
    }
    data.update(overrides)
    return data


def _run_now(client, target_id):
    response = client.post(f'/api/targets/{target_id}/run')
    assert response.status_code == 202
    return response.get_json()['run_id']


class TestTargetRoutes:
    """Test target CRUD over HTTP."""

    def test_create_and_list(self, client, storage_dir):
        response = client.post('/api/targets', json=_local_payload(storage_dir))

        assert response.status_code == 201
        created = response.get_json()
        assert created['name'] == 'nightly'
        assert created['domains'] == {'database': False, 'active_assets': True, 'archives': False}
        assert created['notify_failure_threshold'] == 1

        listed = client.get('/api/targets').get_json()
        assert [t['id'] for t in listed] == [created['id']]

    def test_secrets_are_masked_and_encrypted(self, client, db):
        response = client.post('/api/targets', json=_sync_payload())

        assert response.status_code == 201
        assert response.get_json()['backend_params']['password'] == '********'

        target = db.session.get(BackupTarget, response.get_json()['id'])
        assert 'hunter2' not in target.backend_params
        assert credential_cipher.decrypt_params(target.get_backend_params())['password'] == 'hunter2'

    def test_update_keeps_masked_secret(self, client, db):
        target_id = client.post('/api/targets', json=_sync_payload()).get_json()['id']

        payload = {'name': 'offsite-2', 'backend_params': {
            'host': 'other.example.com',
            'username': 'backup',
            'password': '********',
            'remote_path': '/srv/backups',
        }}
        response = client.put(f'/api/targets/{target_id}', json=payload)

        assert response.status_code == 200
        db.session.expire_all()
        target = db.session.get(BackupTarget, target_id)
        params = credential_cipher.decrypt_params(target.get_backend_params())
        assert params['password'] == 'hunter2'
        assert params['host'] == 'other.example.com'
        assert target.name == 'offsite-2'

    def test_partial_update_merges_nested_fields(self, client, storage_dir):
        payload = _local_payload(storage_dir, retention={'max_age_days': 30})
        target_id = client.post('/api/targets', json=payload).get_json()['id']

        response = client.put(f'/api/targets/{target_id}', json={'retention': {'max_count': 3}, 'enabled': False})

        body = response.get_json()
        assert body['retention'] == {'max_age_days': 30, 'max_count': 3}
        assert body['enabled'] is False
        assert body['name'] == 'nightly'

    def test_validation_errors(self, client):
        response = client.post('/api/targets', json={'name': '', 'backend_kind': 'ftp'})

        assert response.status_code == 400
        fields = response.get_json()['fields']
        assert 'name' in fields
        assert 'backend_kind' in fields

    def test_invalid_cron_rejected(self, client, storage_dir):
        response = client.post('/api/targets', json=_local_payload(storage_dir, schedule='61 * * * *'))

        assert response.status_code == 400
        assert 'schedule' in response.get_json()['fields']

    def test_secret_without_credentials_key(self, client):
        credential_cipher._fernet = None

        response = client.post('/api/targets', json=_sync_payload())

        assert response.status_code == 400
        assert 'backend_params' in response.get_json()['fields']

    def test_duplicate_name(self, client, storage_dir):
        client.post('/api/targets', json=_local_payload(storage_dir))
        response = client.post('/api/targets', json=_local_payload(storage_dir))

        assert response.status_code == 400
        assert response.get_json()['fields'] == {'name': 'already exists'}

    def test_body_must_be_json_object(self, client):
        response = client.post('/api/targets', data='not json', content_type='application/json')
        assert response.status_code == 400

    def test_get_unknown_target(self, client):
        assert client.get('/api/targets/999').status_code == 404

    def test_delete_target(self, client, local_target):
        response = client.delete(f'/api/targets/{local_target.id}')

        assert response.status_code == 200
        assert client.get(f'/api/targets/{local_target.id}').status_code == 404

    def test_delete_target_with_active_run(self, client, local_target):
        RunRegistry().acquire(local_target.id)

        response = client.delete(f'/api/targets/{local_target.id}')

        assert response.status_code == 409
        assert response.get_json()['details'] == {'target_id': local_target.id}

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestConnectionRoute:

    def test_local_success(self, client, storage_dir):
        response = client.post('/api/targets/test-connection', json={
            'backend_kind': 'local',
            'backend_params': {'base_path': str(storage_dir)},
        })

        assert response.status_code == 200
        assert response.get_json()['success'] is True
        # Connection check object is removed again
        assert [p for p in storage_dir.rglob('*') if p.is_file()] == []

    def test_missing_params(self, client):
        response = client.post('/api/targets/test-connection', json={
            'backend_kind': 'object-store',
            'backend_params': {},
        })

        assert response.status_code == 400
        assert 'backend_params.bucket' in response.get_json()['fields']

    def test_unusable_path(self, client, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('x')

        response = client.post('/api/targets/test-connection', json={
            'backend_kind': 'local',
            'backend_params': {'base_path': str(blocker)},
        })

        assert response.status_code == 502
        assert response.get_json()['success'] is False


class TestRunRoutes:
    """Test triggering and inspecting runs over HTTP."""

    def test_trigger_runs_inline_without_scheduler(self, client, local_target, asset_tree):
        response = client.post(f'/api/targets/{local_target.id}/run')

        assert response.status_code == 202
        assert response.get_json()['status'] == 'succeeded'

        run = client.get(f"/api/runs/{response.get_json()['run_id']}").get_json()
        assert run['files_transferred'] == 3
        assert run['manifests'][0]['file_count'] == 3
        assert 'Starting backup run' in run['logs']

    def test_trigger_rejected_while_active(self, client, local_target):
        active = RunRegistry().acquire(local_target.id)

        response = client.post(f'/api/targets/{local_target.id}/run')

        assert response.status_code == 409
        assert response.get_json()['details']['run_id'] == active.id

    def test_trigger_unknown_target(self, client):
        assert client.post('/api/targets/999/run').status_code == 404

    def test_unknown_run(self, client):
        assert client.get('/api/runs/backup-0-00000000').status_code == 404

    def test_history(self, client, local_target, asset_tree):
        first = _run_now(client, local_target.id)
        second = _run_now(client, local_target.id)

        body = client.get(f'/api/targets/{local_target.id}/history?page_size=1').get_json()
        assert [r['id'] for r in body['runs']] == [second]

        body = client.get(f'/api/targets/{local_target.id}/history?page=2&page_size=1').get_json()
        assert [r['id'] for r in body['runs']] == [first]

    def test_stats(self, client, local_target, asset_tree):
        _run_now(client, local_target.id)

        body = client.get(f'/api/targets/{local_target.id}/stats').get_json()

        # Three objects plus one manifest
        assert body['total_count'] == 4
        assert body['total_bytes'] > len('alpha' 'bravo' 'charlie')

    def test_delete_run(self, client, db, local_target, asset_tree, storage_dir):
        run_id = _run_now(client, local_target.id)

        response = client.delete(f'/api/runs/{run_id}')

        assert response.status_code == 200
        assert client.get(f'/api/runs/{run_id}').status_code == 404
        assert not (storage_dir / f'site/manifests/active_assets/{run_id}.json').exists()

    def test_delete_active_run(self, client, local_target):
        run = RunRegistry().acquire(local_target.id)

        response = client.delete(f'/api/runs/{run.id}')

        assert response.status_code == 409

    def test_delete_finished_run_while_target_is_busy(self, client, local_target, asset_tree, storage_dir):
        run_id = _run_now(client, local_target.id)
        active = RunRegistry().acquire(local_target.id)

        response = client.delete(f'/api/runs/{run_id}')

        assert response.status_code == 409
        assert response.get_json()['details']['run_id'] == active.id
        assert client.get(f'/api/runs/{run_id}').status_code == 200
        assert (storage_dir / f'site/manifests/active_assets/{run_id}.json').exists()

    def test_download_tar_gz(self, app, client, local_target, asset_tree):
        run_id = _run_now(client, local_target.id)

        response = client.get(f'/api/runs/{run_id}/download')
        data = response.data
        response.close()

        assert response.status_code == 200
        assert f'test_local_target-{run_id}.tar.gz' in response.headers['Content-Disposition']
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:gz') as tar:
            names = tar.getnames()
            assert tar.extractfile('data/active_assets/nested/c.txt').read() == b'charlie'
        assert 'manifests/active_assets.json' in names
        assert os.listdir(app.config['TEMP_DIR']) == []

    def test_download_zip(self, client, local_target, asset_tree):
        run_id = _run_now(client, local_target.id)

        response = client.get(f'/api/runs/{run_id}/download?format=zip')

        assert response.mimetype == 'application/zip'
        with zipfile.ZipFile(io.BytesIO(response.data)) as zipf:
            assert zipf.read('data/active_assets/a.txt') == b'alpha'

    def test_download_invalid_format(self, client, local_target, asset_tree):
        run_id = _run_now(client, local_target.id)
        assert client.get(f'/api/runs/{run_id}/download?format=rar').status_code == 400

    def test_download_active_run(self, client, local_target):
        run = RunRegistry().acquire(local_target.id)
        assert client.get(f'/api/runs/{run.id}/download').status_code == 409

    def test_links_unsupported_on_local(self, client, local_target, asset_tree):
        run_id = _run_now(client, local_target.id)

        response = client.get(f'/api/runs/{run_id}/links')

        assert response.status_code == 400
        assert 'not supported' in response.get_json()['error']

    def test_links_on_object_store(self, client, mock_s3, s3_params, asset_tree):
        payload = dict(_local_payload('unused'), backend_kind='object-store', backend_params=s3_params)
        target_id = client.post('/api/targets', json=payload).get_json()['id']
        run_id = _run_now(client, target_id)

        body = client.get(f'/api/runs/{run_id}/links?ttl=60').get_json()

        assert body['ttl'] == 60
        assert len(body['links']) == 4
        manifest_link = next(link for link in body['links'] if link['path'] is None)
        assert f'site/manifests/active_assets/{run_id}.json' in manifest_link['url']
        assert all('test-bucket' in link['url'] for link in body['links'])


class TestApiFunctions:
    """Test API entry points called directly."""

    def test_restore_run(self, app, db, local_target, asset_tree, tmp_path):
        run_id = api.trigger_backup(local_target.id)

        restored = api.restore_run(run_id, str(tmp_path / 'restore'))

        assert restored == {'files': 3, 'bytes': len('alpha' 'bravo' 'charlie')}
        assert (tmp_path / 'restore' / 'active_assets' / 'nested' / 'c.txt').read_text() == 'charlie'

    def test_restore_detects_tampered_object(self, app, db, local_target, asset_tree, storage_dir, tmp_path):
        run_id = api.trigger_backup(local_target.id)
        run = db.session.get(BackupRun, run_id)
        entry = next(e for e in parse_manifest(run.manifests[0].content, 'json').entries if e.path == 'a.txt')
        (storage_dir / object_key('site', 'active_assets', entry.fingerprint)).write_text('tampered')

        with pytest.raises(TransferError, match='Fingerprint mismatch'):
            api.restore_run(run_id, str(tmp_path / 'restore'))

    def test_trigger_queues_on_running_scheduler(self, app, db, local_target):
        with patch('backvault.scheduler.is_scheduler_running', return_value=True), \
                patch('backvault.scheduler.schedule_run') as mock_schedule:
            run_id = api.trigger_backup(local_target.id)

        mock_schedule.assert_called_once_with(run_id)
        assert db.session.get(BackupRun, run_id).status == 'pending'
        assert RunRegistry().is_locked(local_target.id)

    def test_trigger_queue_failure_releases_lock(self, app, db, local_target):
        with patch('backvault.scheduler.is_scheduler_running', return_value=True), \
                patch('backvault.scheduler.schedule_run', side_effect=RuntimeError('job store down')):
            with pytest.raises(RuntimeError):
                api.trigger_backup(local_target.id)

        run = BackupRun.query.one()
        assert run.status == 'failed'
        assert 'job store down' in run.error_message
        assert not RunRegistry().is_locked(local_target.id)

    def test_parent_run_survives_deletion_during_next_run(self, app, db, local_target, asset_tree, tmp_path):
        first_id = api.trigger_backup(local_target.id)
        builder = ManifestBuilder()
        build = builder.build
        rejected = []

        def build_then_delete_parent(*args, **kwargs):
            result = build(*args, **kwargs)
            try:
                api.delete_backup(first_id)
            except BackupInUse as e:
                rejected.append(e)
            return result

        builder.build = build_then_delete_parent
        orchestrator = BackupOrchestrator(
            load_settings(local_target),
            api.source_config(app.config),
            temp_root=app.config['TEMP_DIR'],
            registry=RunRegistry(),
            builder=builder,
        )
        second = orchestrator.run()

        assert len(rejected) == 1
        assert second.status == 'succeeded'
        assert db.session.get(BackupRun, first_id) is not None
        assert api.restore_run(second.id, str(tmp_path / 'restore'))['files'] == 3

    def test_fail_queued_run_releases_lock(self, app, db, local_target):
        run = RunRegistry().acquire(local_target.id)

        api.fail_queued_run(run.id, 'Run was not started in time')

        assert run.status == 'failed'
        assert run.error_message == 'Run was not started in time'
        assert not RunRegistry().is_locked(local_target.id)

    def test_fail_queued_run_leaves_finished_runs(self, app, db, local_target, asset_tree):
        run_id = api.trigger_backup(local_target.id)

        assert api.fail_queued_run(run_id, 'late').status == 'succeeded'
        assert api.fail_queued_run('backup-0-00000000', 'late') is None

    def test_execute_run_skips_non_pending(self, app, db, local_target):
        registry = RunRegistry()
        run = registry.acquire(local_target.id)
        registry.finalize(run, 'aborted')

        assert api.execute_run(run.id).status == 'aborted'

    def test_scheduled_backup_of_disabled_target(self, app, db, local_target):
        local_target.enabled = False
        db.session.commit()

        assert api.run_scheduled_backup(local_target.id) is None
        assert BackupRun.query.count() == 0

    def test_scheduled_backup(self, app, db, local_target, asset_tree):
        run = api.run_scheduled_backup(local_target.id)

        assert run.trigger == 'scheduled'
        assert run.status == 'succeeded'

    def test_notification_hook(self, app, db, local_target, asset_tree):
        local_target.notify_failure_threshold = 0
        db.session.commit()
        hook = MagicMock()
        api.register_notification_hook(hook)
        try:
            run_id = api.trigger_backup(local_target.id)
        finally:
            api.register_notification_hook(None)

        hook.assert_called_once()
        assert hook.call_args.args[0].id == run_id

