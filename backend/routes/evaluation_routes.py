"""
Evaluation Routes — Forecast accuracy monitor

POST /metrics/monitor                 — evaluate | check_alerts | update_actuals | get_performance
POST /metrics/alerts/<id>/resolve     — Operator resolves an alert (admin)
GET  /metrics/scheduler               — Background scheduler status
"""

from flask import Blueprint, request, jsonify
from flask_jwt_extended import get_jwt_identity
from services.access import admin_required
from services.evaluation_service import EvaluationService

evaluation_bp = Blueprint('evaluation', __name__, url_prefix='/metrics')


@evaluation_bp.route('/monitor', methods=['POST'])
def monitor():
    data = request.get_json(silent=True) or {}
    action = data.get('action')
    if not action:
        return jsonify({'success': False, 'error': 'action is required'}), 400

    result = EvaluationService.run_action(
        action,
        commodity=data.get('commodity'),
        market=data.get('market'),
        horizon=data.get('horizon'),
        threshold_mape=data.get('threshold_mape'),
    )
    return jsonify({'success': True, 'action': action, **result})


@evaluation_bp.route('/alerts/<alert_id>/resolve', methods=['POST'])
@admin_required
def resolve_alert(alert_id):
    alert = EvaluationService.resolve_alert(alert_id, resolved_by=get_jwt_identity())
    return jsonify({'success': True, 'alert': alert})


@evaluation_bp.route('/scheduler', methods=['GET'])
def scheduler_status():
    """Returns background scheduler job status."""
    from services.scheduler import get_scheduler_status
    return jsonify(get_scheduler_status())
