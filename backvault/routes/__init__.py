"""
HTTP blueprints and the JSON error mapping shared by them.
"""

from flask import jsonify

from backvault.backup.errors import (
    BackupAlreadyRunning,
    BackupError,
    BackupInUse,
    RunNotFoundError,
    TargetNotFoundError,
    TransferError,
    UnsupportedOperationError,
    ValidationError,
)


def register_error_handlers(app):
    """Map engine exceptions onto HTTP responses."""

    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        return jsonify({'error': e.message, 'fields': e.errors}), 400

    @app.errorhandler(UnsupportedOperationError)
    def handle_unsupported(e):
        return jsonify({'error': e.message}), 400

    @app.errorhandler(RunNotFoundError)
    @app.errorhandler(TargetNotFoundError)
    def handle_not_found(e):
        return jsonify({'error': e.message}), 404

    @app.errorhandler(BackupAlreadyRunning)
    @app.errorhandler(BackupInUse)
    def handle_conflict(e):
        return jsonify({'error': e.message, 'details': e.details}), 409

    @app.errorhandler(TransferError)
    def handle_transfer_error(e):
        return jsonify({'success': False, 'error': str(e)}), 502

    @app.errorhandler(BackupError)
    def handle_backup_error(e):
        app.logger.error(f"Backup error: {e}")
        return jsonify({'error': str(e)}), 500
