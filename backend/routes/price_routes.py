from flask import Blueprint, current_app, request, jsonify
from services.price_service import PriceService
from services.rate_limiter import rate_limited

price_bp = Blueprint('price_bp', __name__)


@price_bp.route('/price/forecast', methods=['GET', 'POST'])
@rate_limited
def get_price_forecast():
    """
    POST /price/forecast  {state, district?, market, commodity, variety?, horizon?, external_source_url?}
    GET  /price/forecast?state=Maharashtra&market=Pune&commodity=Onion&horizon=7
    """
    if request.method == 'POST':
        data = request.get_json(silent=True)
        if data is None:
            return jsonify({'success': False, 'error': 'Request body must be JSON'}), 400
    else:
        data = request.args.to_dict()

    result = PriceService.forecast_price(
        data,
        timeout=current_app.config.get('EXTERNAL_FORECAST_TIMEOUT', 10),
        history_window=current_app.config.get('HISTORY_WINDOW_DAYS', 90),
    )
    return jsonify(result), 200
