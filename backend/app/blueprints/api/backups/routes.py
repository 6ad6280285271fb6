"""
Backup API routes.

Purpose: Manual role-scoped database backups and storage status.
Key endpoints:
- POST /manual: Run a backup and download the zip (Admin, Doctor)
- GET /status: Last storage status and whether monitoring runs (Admin, Doctor)
- POST /status/check: Check storage now, subject to the monitor cooldown (Admin, Doctor)
- GET /history: Recent manual backups (Admin)

Security: JWT required; role claim decides access and backup scope
"""
import logging

from flask import Blueprint, current_app, jsonify, request, send_file
from flask_jwt_extended import get_jwt, get_jwt_identity

from backend.app.extensions import limiter
from backend.app.middleware.roles_required import roles_required
from backend.app.repositories import serialize_history
from clinic_backup.errors import BackupFailedError, BackupForbiddenError
from clinic_backup.monitor import force_storage_check, get_storage_status, is_storage_monitoring
from clinic_backup.runner import BACKUP_ROLES, ROLE_ADMIN

logger = logging.getLogger(__name__)

backups_bp = Blueprint('backups', __name__)


def _get_runner():
    runner = current_app.extensions.get('backup_runner')
    if runner is None:
        raise RuntimeError('Backup runner not initialized')
    return runner


def _status_payload(status):
    return status.to_dict() if status is not None else None


@backups_bp.route('/manual', methods=['POST'])
@limiter.limit("3 per minute")
@roles_required(*BACKUP_ROLES)
def manual_backup():
    """
    Run a manual backup for the caller's role and return the archive.

    Returns:
        The zip archive as an attachment, or a JSON error
    """
    role = get_jwt().get('role')
    user_id = get_jwt_identity()

    try:
        result = _get_runner().run_manual(role=role, triggered_by=user_id)
    except BackupForbiddenError:
        return jsonify({'error': 'forbidden'}), 403
    except BackupFailedError:
        return jsonify({'error': 'backup_failed', 'message': 'Backup failed'}), 500
    except Exception:
        logger.exception("Manual backup route failed")
        return jsonify({'error': 'backup_failed', 'message': 'Backup failed'}), 500

    return send_file(
        result.path,
        mimetype='application/zip',
        as_attachment=True,
        download_name=result.filename,
    )


@backups_bp.route('/status', methods=['GET'])
@roles_required(*BACKUP_ROLES)
def storage_status():
    """
    Get the last computed storage status without triggering a check.

    Returns:
        JSON with the status (null before the first check) and monitoring flag
    """
    return jsonify({
        'status': _status_payload(get_storage_status()),
        'monitoring': is_storage_monitoring(),
    })


@backups_bp.route('/status/check', methods=['POST'])
@limiter.limit("10 per minute")
@roles_required(*BACKUP_ROLES)
def check_storage_status():
    """Check storage usage now. Within the cooldown the cached status comes back."""
    status = force_storage_check()
    return jsonify({
        'status': _status_payload(status),
        'monitoring': is_storage_monitoring(),
    })


@backups_bp.route('/history', methods=['GET'])
@roles_required(ROLE_ADMIN)
def list_backup_history():
    """List recent manual backups, newest first (``?limit=`` up to 100)."""
    limit = request.args.get('limit', default=20, type=int)
    limit = min(max(limit, 1), 100)

    repository = current_app.extensions.get('backup_history')
    if repository is None:
        return jsonify({'error': 'backup history unavailable'}), 503
    try:
        rows = repository.list_recent(limit=limit)
    except Exception:
        logger.exception("Failed to list backup history")
        return jsonify({'error': 'Internal server error'}), 500
    return jsonify({'backups': [serialize_history(row) for row in rows]})
