"""
ETL Routes — Admin-only ingestion and pipeline trigger

POST /etl/ingest  — Upsert raw mandi price records into mandi_prices
POST /etl/run     — mandi_prices → mandi_timeseries → mandi_features
"""

from flask import Blueprint, current_app, request, jsonify
from services.access import admin_required
from services.errors import ValidationError
from services.timeseries_store import ingest_raw_records, run_etl

etl_bp = Blueprint('etl', __name__, url_prefix='/etl')


def _as_bool(value, default=True):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


@etl_bp.route('/ingest', methods=['POST'])
@admin_required
def ingest():
    data = request.get_json(silent=True) or {}
    records = data.get('records')
    if not isinstance(records, list):
        return jsonify({'success': False, 'error': 'records must be a list of raw price records'}), 400

    stats = ingest_raw_records(records, batch_size=current_app.config.get('FEATURE_BATCH_SIZE', 500))
    return jsonify({'success': True, 'stats': stats})


@etl_bp.route('/run', methods=['POST'])
@admin_required
def run_pipeline():
    data = request.get_json(silent=True) or {}

    limit = data.get('limit', current_app.config.get('ETL_FETCH_LIMIT', 1000))
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        raise ValidationError('limit must be a positive integer')

    stats = run_etl(
        state=data.get('state'),
        commodity=data.get('commodity'),
        start_date=data.get('startDate'),
        end_date=data.get('endDate'),
        compute_features=_as_bool(data.get('computeFeatures')),
        limit=limit,
        batch_size=current_app.config.get('FEATURE_BATCH_SIZE', 500),
    )
    message = 'No data to process' if stats['fetched'] == 0 else 'ETL pipeline completed'
    return jsonify({'success': True, 'message': message, 'stats': stats})
