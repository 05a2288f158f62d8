"""
Backup routes - Statistics, schedules and backup records.
"""

from flask import Blueprint, jsonify, request

from backup_orchestrator.routes import get_backup_system


bp = Blueprint('backups', __name__, url_prefix='/api')


@bp.route('/statistics', methods=['GET'])
def get_statistics():
    """
    Catalog statistics combined with scheduler counters.

    Returns:
        JSON with 'backups' (catalog) and 'scheduler' sections
    """
    system = get_backup_system()
    return jsonify({
        'backups': system.manager.get_statistics().to_dict(),
        'scheduler': system.scheduler.get_statistics(),
    })


@bp.route('/schedules', methods=['GET'])
def list_schedules():
    """List scheduled jobs with their state and next execution."""
    system = get_backup_system()
    return jsonify({'jobs': system.scheduler.get_scheduled_jobs()})


@bp.route('/schedules/<job_id>/run', methods=['POST'])
def run_schedule(job_id):
    """
    Trigger a scheduled job immediately.

    Returns:
        202 when the job was marked due, 404 for an unknown job
    """
    system = get_backup_system()
    if not system.scheduler.trigger_now(job_id):
        return jsonify({'error': 'Scheduled job not found'}), 404
    return jsonify({'message': f'Backup job {job_id} triggered'}), 202


@bp.route('/backups', methods=['GET'])
def list_backups():
    """
    Get backup records with filtering and pagination.

    Query params:
        - storage_type: Filter by storage type
        - success: 'true' or 'false'
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with records, newest first
    """
    storage_type = request.args.get('storage_type')
    success_filter = request.args.get('success')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1
    if offset < 0:
        offset = 0

    success = None
    if success_filter is not None:
        if success_filter.lower() not in ('true', 'false'):
            return jsonify({'error': 'success must be true or false'}), 400
        success = success_filter.lower() == 'true'

    records = get_backup_system().manager.search_backups(
        storage_type=storage_type, success=success, limit=limit, offset=offset
    )
    return jsonify({
        'backups': [record.to_dict() for record in records],
        'limit': limit,
        'offset': offset,
    })


@bp.route('/backups/<record_id>', methods=['GET'])
def get_backup(record_id):
    record = get_backup_system().manager.get_backup(record_id)
    if record is None:
        return jsonify({'error': 'Backup not found'}), 404
    return jsonify(record.to_dict())
