"""
Backup routes - manual backup trigger and run status.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from nsbackup.backup.results import ALREADY_RUNNING_MESSAGE, BackupOptions
from nsbackup.preconditions import BackupRequest, default_preconditions, run_preconditions
from nsbackup.scheduler import get_next_run_time, is_scheduler_running
from nsbackup.services import get_backup_service


logger = logging.getLogger(__name__)

bp = Blueprint('backup', __name__, url_prefix='/api/backup')


def _request_token():
    auth = request.headers.get('Authorization', '')
    if auth.lower().startswith('bearer '):
        return auth[7:].strip()
    return request.headers.get('X-Backup-Token')


@bp.route('', methods=['POST'])
def trigger_backup():
    """
    Run a manual backup and wait for it to finish.

    Request body:
        - collections: List of names or comma-separated string (default: all)
        - create_thread: Open a notification thread (default: true)
        - channel: Channel the request was made from

    Returns:
        JSON BackupResult (200 on success, 500 on failure, 409 if another
        run was admitted first), 403/409/429 when a precondition fails,
        400 on invalid input
    """
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Request body must be a JSON object'}), 400

    service = get_backup_service(current_app)

    backup_request = BackupRequest(token=_request_token(), channel=data.get('channel'))
    failure = run_preconditions(default_preconditions(current_app.config, service.guard), backup_request)
    if failure:
        logger.warning(f"Backup request refused by {failure.name}: {failure.message}")
        return jsonify({'error': failure.message, 'precondition': failure.name}), failure.status_code

    try:
        options = BackupOptions.from_request(
            collections=data.get('collections'),
            create_thread=data.get('create_thread', True),
            is_manual=True
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    result = service.perform_backup(options)

    if result.success:
        logger.info(
            f"[ManualBackup] Backup completed: {result.total_documents_processed} documents "
            f"from {len(result.collections_processed)} collections"
        )
        return jsonify(result.to_dict()), 200

    if result.error == ALREADY_RUNNING_MESSAGE:
        # Lost the race to another run after the rate-limit check
        logger.warning("[ManualBackup] Backup rejected: another run was admitted first")
        return jsonify(result.to_dict()), 409

    logger.error(f"[ManualBackup] Backup failed: {result.error}")
    return jsonify(result.to_dict()), 500


@bp.route('/status', methods=['GET'])
def backup_status():
    """
    Get current backup run state.

    Returns:
        JSON with guard state and scheduler info
    """
    service = get_backup_service(current_app)
    state = service.guard.state()

    return jsonify({
        'running': state['status'] == 'running',
        'started_at': state['started_at'],
        'last_completed_at': state['last_completed_at'],
        'database': state['target'],
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'next_scheduled_run': get_next_run_time()
    })
