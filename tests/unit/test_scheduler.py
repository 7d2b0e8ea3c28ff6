"""
Unit tests for scheduler (backvault/scheduler.py).

Tests APScheduler configuration and job scheduling.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent

from backvault import api
from backvault import scheduler as scheduler_module
from backvault.backup.errors import BackupAlreadyRunning
from backvault.backup.registry import RunRegistry


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def test_init_scheduler(self, app, mock_scheduler):
        result = scheduler_module.init_scheduler(app)

        assert result is mock_scheduler
        assert scheduler_module.flask_app is app

        retention_call = mock_scheduler.add_job.call_args
        assert retention_call.kwargs['id'] == 'retention_cleanup'

    def test_listens_for_missed_and_crashed_jobs(self, app, mock_scheduler):
        scheduler_module.init_scheduler(app)

        mock_scheduler.add_listener.assert_called_once_with(
            scheduler_module._run_job_listener, EVENT_JOB_MISSED | EVENT_JOB_ERROR
        )

    def test_single_backup_worker(self, app, mock_scheduler):
        with patch('backvault.scheduler.BackgroundScheduler', return_value=mock_scheduler) as mock_class:
            scheduler_module.init_scheduler(app)

        call_kwargs = mock_class.call_args.kwargs
        assert call_kwargs['executors']['default']._pool._max_workers == 1
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['timezone'] == 'UTC'

    def test_init_scheduler_only_once(self, app, mock_scheduler):
        assert scheduler_module.init_scheduler(app) is scheduler_module.init_scheduler(app)


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.get_jobs.return_value = []
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_start_scheduler(self):
        scheduler_module.start_scheduler()
        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        scheduler_module.scheduler = None
        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        self.mock_scheduler.running = True
        scheduler_module.start_scheduler()
        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        self.mock_scheduler.running = True
        scheduler_module.stop_scheduler()
        self.mock_scheduler.shutdown.assert_called_once()

    def test_is_scheduler_running(self):
        self.mock_scheduler.running = True
        assert scheduler_module.is_scheduler_running() is True
        scheduler_module.scheduler = None
        assert scheduler_module.is_scheduler_running() is False


class TestSyncBackupTargets:
    """Test syncing backup targets with scheduler."""

    def setup_method(self):
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.get_jobs.return_value = []
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_not_initialized(self):
        scheduler_module.scheduler = None
        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.sync_backup_targets()

    def test_adds_enabled_target_with_schedule(self, db, local_target):
        local_target.schedule_cron = '0 2 * * *'
        db.session.commit()

        scheduler_module.sync_backup_targets()

        call_kwargs = self.mock_scheduler.add_job.call_args.kwargs
        assert call_kwargs['id'] == f'backup_{local_target.id}'
        assert call_kwargs['args'] == [local_target.id]
        assert call_kwargs['replace_existing'] is True

    def test_removes_disabled_target(self, db, local_target):
        local_target.schedule_cron = '0 2 * * *'
        local_target.enabled = False
        db.session.commit()
        existing = MagicMock()
        existing.id = f'backup_{local_target.id}'
        self.mock_scheduler.get_jobs.return_value = [existing]

        scheduler_module.sync_backup_targets()

        self.mock_scheduler.add_job.assert_not_called()
        self.mock_scheduler.remove_job.assert_called_once_with(f'backup_{local_target.id}')

    def test_removes_jobs_of_deleted_targets(self, db):
        orphan = MagicMock()
        orphan.id = 'backup_999'
        self.mock_scheduler.get_jobs.return_value = [orphan]

        scheduler_module.sync_backup_targets()

        self.mock_scheduler.remove_job.assert_called_once_with('backup_999')

    def test_queued_runs_cleared_only_on_startup(self, db):
        queued = MagicMock()
        queued.id = 'run_backup-1-abcdef12'
        self.mock_scheduler.get_jobs.return_value = [queued]

        scheduler_module.sync_backup_targets()
        self.mock_scheduler.remove_job.assert_not_called()

        scheduler_module.sync_backup_targets(clear_queued_runs=True)
        self.mock_scheduler.remove_job.assert_called_once_with('run_backup-1-abcdef12')

    def test_invalid_cron_is_skipped(self, db, local_target):
        local_target.schedule_cron = 'not a cron'
        db.session.commit()

        scheduler_module.sync_backup_targets()

        self.mock_scheduler.add_job.assert_not_called()


class TestScheduleRun:

    def setup_method(self):
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        scheduler_module.scheduler = None

    def test_schedule_run(self):
        scheduler_module.schedule_run('backup-1-abcdef12')

        call_kwargs = self.mock_scheduler.add_job.call_args.kwargs
        assert call_kwargs['id'] == 'run_backup-1-abcdef12'
        assert call_kwargs['args'] == ['backup-1-abcdef12']
        # Queued behind a long backup, the run still starts eventually
        assert call_kwargs['misfire_grace_time'] is None
        assert call_kwargs['coalesce'] is False

    def test_schedule_run_not_initialized(self):
        scheduler_module.scheduler = None
        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.schedule_run('backup-1-abcdef12')


class TestRunJobListener:
    """Test queued runs whose job never completes."""

    @pytest.fixture(autouse=True)
    def _bind_app(self, app):
        scheduler_module.flask_app = app
        yield
        scheduler_module.flask_app = None

    def _event(self, code, job_id, **kwargs):
        return JobExecutionEvent(code, job_id, 'default', datetime.now(timezone.utc), **kwargs)

    def test_missed_run_fails_and_releases_lock(self, db, local_target):
        run = RunRegistry().acquire(local_target.id, trigger='manual')

        scheduler_module._run_job_listener(self._event(EVENT_JOB_MISSED, f'run_{run.id}'))

        db.session.expire_all()
        assert run.status == 'failed'
        assert 'not started in time' in run.error_message
        assert not RunRegistry().is_locked(local_target.id)

        # The target can be backed up again
        assert RunRegistry().acquire(local_target.id).status == 'pending'

    def test_crashed_run_job_fails_run(self, db, local_target):
        run = RunRegistry().acquire(local_target.id, trigger='manual')
        event = self._event(EVENT_JOB_ERROR, f'run_{run.id}', exception=RuntimeError('boom'))

        scheduler_module._run_job_listener(event)

        db.session.expire_all()
        assert run.status == 'failed'
        assert 'boom' in run.error_message
        assert not RunRegistry().is_locked(local_target.id)

    def test_other_jobs_are_ignored(self, db, local_target):
        run = RunRegistry().acquire(local_target.id)

        with patch.object(api, 'fail_queued_run') as mock_fail:
            scheduler_module._run_job_listener(self._event(EVENT_JOB_MISSED, f'backup_{local_target.id}'))
            scheduler_module._run_job_listener(self._event(EVENT_JOB_MISSED, 'retention_cleanup'))

        mock_fail.assert_not_called()
        assert RunRegistry().is_locked(local_target.id)
        assert run.status == 'pending'

    def test_finished_run_is_untouched(self, db, local_target):
        registry = RunRegistry()
        run = registry.acquire(local_target.id)
        registry.finalize(run, 'succeeded')
        registry.release(local_target.id, run.id)

        scheduler_module._run_job_listener(self._event(EVENT_JOB_ERROR, f'run_{run.id}', exception=RuntimeError('late')))

        db.session.expire_all()
        assert run.status == 'succeeded'
        assert run.error_message is None


class TestWrappers:
    """Test job wrappers run inside the application context."""

    def setup_method(self):
        scheduler_module.flask_app = MagicMock()

    def teardown_method(self):
        scheduler_module.flask_app = None

    @patch('backvault.api.run_scheduled_backup')
    def test_scheduled_backup_wrapper(self, mock_run):
        mock_run.return_value = MagicMock(status='succeeded')

        scheduler_module._scheduled_backup_wrapper(7)

        mock_run.assert_called_once_with(7)
        scheduler_module.flask_app.app_context.assert_called_once()

    @patch('backvault.api.run_scheduled_backup')
    def test_scheduled_backup_wrapper_skips_active_target(self, mock_run):
        mock_run.side_effect = BackupAlreadyRunning('busy')

        scheduler_module._scheduled_backup_wrapper(7)

    @patch('backvault.api.execute_run')
    def test_execute_run_wrapper(self, mock_execute):
        mock_execute.return_value = MagicMock(status='partial')

        scheduler_module._execute_run_wrapper('backup-1-abcdef12')

        mock_execute.assert_called_once_with('backup-1-abcdef12')

    @patch('backvault.backup.retention.enforce_retention_policies')
    def test_retention_wrapper(self, mock_enforce):
        scheduler_module._retention_wrapper()
        mock_enforce.assert_called_once()


class TestCreateAppWithScheduler:

    def test_startup_reconciles_and_syncs(self, tmp_path, mock_scheduler):
        from backvault import create_app

        with patch('atexit.register'):
            app = create_app('testing', {
                'SCHEDULER_ENABLED': True,
                'TEMP_DIR': str(tmp_path / 'temp'),
                'LOG_DIR': str(tmp_path / 'logs'),
            })

        assert scheduler_module.flask_app is app
        mock_scheduler.start.assert_called_once()
