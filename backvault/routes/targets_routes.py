"""
Backup target routes - CRUD, connection tests, statistics and manual runs.
"""

from flask import Blueprint, jsonify, request

from backvault import api
from backvault.backup.errors import TransferError, ValidationError
from backvault.models import BackupTarget


bp = Blueprint('targets', __name__, url_prefix='/api/targets')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object', {'body': 'invalid JSON'})
    return data


@bp.route('', methods=['GET'])
def list_targets():
    """
    Get list of all backup targets.

    Returns:
        JSON array of targets (secrets masked)
    """
    targets = BackupTarget.query.order_by(BackupTarget.created_at.desc()).all()
    return jsonify([target.to_dict() for target in targets])


@bp.route('', methods=['POST'])
def create_target():
    """
    Create a new backup target.

    Request body: name, backend_kind, backend_params, domains, and optionally
    enabled, schedule, path_prefix, retention, concurrency,
    multipart_threshold_bytes, chunk_size_bytes, retry, manifest_format,
    notify_failure_threshold.

    Returns:
        JSON with created target, 201
    """
    target = api.create_target(_json_body())
    return jsonify(target.to_dict()), 201


@bp.route('/<int:target_id>', methods=['GET'])
def get_target(target_id):
    return jsonify(api.get_target(target_id).to_dict())


@bp.route('/<int:target_id>', methods=['PUT'])
def update_target(target_id):
    target = api.update_target(target_id, _json_body())
    return jsonify(target.to_dict())


@bp.route('/<int:target_id>', methods=['DELETE'])
def delete_target(target_id):
    api.delete_target(target_id)
    return jsonify({'success': True})


@bp.route('/test-connection', methods=['POST'])
def test_connection():
    """
    Test backend parameters before saving a target.

    Request body:
        - backend_kind: local, sync or object-store
        - backend_params: Connection parameters

    Returns:
        {'success': true} or {'success': false, 'error': ...} with 502
    """
    data = _json_body()
    try:
        api.test_backend_connection(data.get('backend_kind'), data.get('backend_params') or {})
    except TransferError as e:
        return jsonify({'success': False, 'error': str(e)}), 502
    return jsonify({'success': True, 'message': 'Connection successful'})


@bp.route('/<int:target_id>/stats', methods=['GET'])
def target_stats(target_id):
    stats = api.target_stats(target_id)
    return jsonify({'total_bytes': stats.total_bytes, 'total_count': stats.total_count})


@bp.route('/<int:target_id>/run', methods=['POST'])
def run_target(target_id):
    """
    Trigger a backup now.

    Returns:
        {'run_id': ...} with 202; 409 if a run is already active
    """
    run_id = api.trigger_backup(target_id)
    return jsonify({'run_id': run_id, 'status': api.get_status(run_id).status}), 202


@bp.route('/<int:target_id>/history', methods=['GET'])
def target_history(target_id):
    """
    Paginated run history of a target, newest first.

    Query params:
        - page: Page number (default: 1)
        - page_size: Items per page (default: 20, max: 200)
    """
    page = request.args.get('page', 1, type=int)
    page_size = request.args.get('page_size', 20, type=int)
    runs = api.list_history(target_id, page, page_size)
    return jsonify({
        'page': page,
        'page_size': page_size,
        'runs': [run.to_dict() for run in runs],
    })
