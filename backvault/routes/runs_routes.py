"""
Backup run routes - status, deletion, export download and signed links.
"""

from flask import Blueprint, Response, jsonify, request

from backvault import api


bp = Blueprint('runs', __name__, url_prefix='/api/runs')


@bp.route('/<run_id>', methods=['GET'])
def get_run(run_id):
    """
    Get a run with its manifests, failures and log.
    """
    run = api.get_status(run_id)
    return jsonify(run.to_dict(include_logs=True))


@bp.route('/<run_id>', methods=['DELETE'])
def delete_run(run_id):
    """
    Delete a finished run (409 while it is pending or running).
    """
    api.delete_backup(run_id)
    return jsonify({'success': True})


@bp.route('/<run_id>/download', methods=['GET'])
def download_run(run_id):
    """
    Stream a restored run as an archive.

    Query params:
        - format: tar.gz (default) or zip
    """
    archive_format = request.args.get('format', 'tar.gz')
    filename, mimetype, chunks = api.download_backup(run_id, archive_format)
    return Response(
        chunks,
        mimetype=mimetype,
        headers={'Content-Disposition': f'attachment; filename="{filename}"'}
    )


@bp.route('/<run_id>/links', methods=['GET'])
def run_links(run_id):
    """
    Time-limited download URLs (object-store targets only).

    Query params:
        - ttl: Lifetime in seconds (default: 3600, max: 604800)
    """
    ttl = min(max(request.args.get('ttl', 3600, type=int), 1), 604800)
    return jsonify({'ttl': ttl, 'links': api.signed_links(run_id, ttl)})
