"""
Health routes - Liveness and backup health verdict.
"""

from flask import Blueprint, jsonify

from backup_orchestrator.routes import get_backup_system
from backup_orchestrator.system import check_backup_system_health


bp = Blueprint('health', __name__)


@bp.route('/health', methods=['GET'])
def health():
    """
    Backup system health.

    Returns:
        JSON health report, 200 when healthy and 503 otherwise
    """
    system = get_backup_system()
    report = check_backup_system_health(system.manager, system.scheduler)
    return jsonify(report), 200 if report['healthy'] else 503
