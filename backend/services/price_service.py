"""
Price Forecast Service — Orchestrates one forecast request

Pipeline:
  1. validate request (fields, horizon 1..30, external URL guard)
  2. load history: mandi_timeseries → mandi_prices (latest 90 rows)
  3. try external source (optional)  ──▶ source="external"
     or else statistical forecaster   ──▶ source="statistical"
     (synthetic history when < 7 rows ──▶ source="synthetic_statistical")
  4. persist one ml_predictions row per horizon step
"""

import datetime
import logging

from sqlalchemy.exc import SQLAlchemyError

from database.db import db
from database.models import PREDICTION_KEY, MandiFeature, MandiPrice, MandiTimeseries, MlPrediction
from services.crop_calendar import commodity_profile
from services.errors import PersistenceError, UpstreamUnavailable, ValidationError
from services.external_source import DEFAULT_TIMEOUT, try_external_forecast, validate_forecast_source_url
from services.feature_engine import as_date
from services.forecaster import MIN_HISTORY, forecast, market_context, validate_horizon
from services.history_synthesizer import synthesize
from services.observability import metrics

logger = logging.getLogger('price_service')

DEFAULT_HORIZON = 7
HISTORY_WINDOW = 90
EXTERNAL_HISTORY_DAYS = 30
REQUIRED_FIELDS = ('state', 'market', 'commodity')


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_horizon(value):
    if value is None or value == '':
        return DEFAULT_HORIZON
    if isinstance(value, str):
        if not value.strip().lstrip('-').isdigit():
            raise ValidationError(f'horizon must be an integer between 1 and 30 (got {value!r})')
        value = int(value.strip())
    return validate_horizon(value)


def _serialise(row):
    data = dict(row)
    if isinstance(data.get('arrival_date'), (datetime.date, datetime.datetime)):
        data['arrival_date'] = as_date(data['arrival_date']).isoformat()
    return data


class PriceService:

    @staticmethod
    def validate_request(data):
        if not isinstance(data, dict):
            raise ValidationError('Request body must be a JSON object')

        request = {field: _clean(data.get(field)) for field in ('state', 'district', 'market', 'commodity', 'variety')}
        missing = [f for f in REQUIRED_FIELDS if not request[f]]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

        request['horizon'] = _parse_horizon(data.get('horizon'))
        request['external_source_url'] = _clean(data.get('external_source_url'))
        return request

    @staticmethod
    def _scoped(model, req):
        query = model.query.filter_by(state=req['state'], market=req['market'], commodity=req['commodity'])
        if req.get('district'):
            query = query.filter_by(district=req['district'])
        if req.get('variety'):
            query = query.filter_by(variety=req['variety'])
        return query

    @staticmethod
    def load_history(req, limit=HISTORY_WINDOW):
        """Latest `limit` observations, oldest first. Canonical table first, raw table as fallback."""
        for model, table in ((MandiTimeseries, 'mandi_timeseries'), (MandiPrice, 'mandi_prices')):
            rows = PriceService._scoped(model, req).order_by(model.arrival_date.desc()).limit(limit).all()
            if rows:
                logger.info(f"Loaded {len(rows)} rows of history from {table}")
                return [r.observation_dict() for r in reversed(rows)]
        return []

    @staticmethod
    def latest_features(req):
        row = PriceService._scoped(MandiFeature, req).order_by(MandiFeature.arrival_date.desc()).first()
        return row.to_dict() if row else None

    @staticmethod
    def historical_summary(history):
        prices = [h['modal_price'] for h in history]
        latest = history[-1]
        return {
            'days_analyzed': len(history),
            'latest_price': latest['modal_price'],
            'latest_date': as_date(latest['arrival_date']).isoformat(),
            'min_price': min(prices),
            'max_price': max(prices),
            'avg_price': round(sum(prices) / len(prices), 2),
        }

    @staticmethod
    def _upsert_prediction(row):
        """
        Writes one step keyed on PREDICTION_KEY. A repeat request on the same
        day overwrites the pending row; a resolved row is left alone.
        Returns False when the step was skipped.
        """
        key = {k: row[k] for k in PREDICTION_KEY}
        existing = MlPrediction.query.filter_by(**key).first()
        if existing is None:
            db.session.add(MlPrediction(**row))
            return True
        if existing.actual_price is not None:
            return False
        for column, value in row.items():
            setattr(existing, column, value)
        return True

    @staticmethod
    def persist_predictions(req, result, source):
        """One MlPrediction per step. Failed writes are logged and skipped."""
        persisted = 0
        today = datetime.date.today()
        model = result.get('model') or {}

        for step in result['forecasts']:
            components = step.get('components') or {}
            try:
                row = {
                    'state': req['state'],
                    'district': req.get('district'),
                    'market': req['market'],
                    'commodity': req['commodity'],
                    'variety': req.get('variety'),
                    'prediction_date': today,
                    'target_date': as_date(step['target_date']),
                    'horizon_days': step['horizon_days'],
                    'arima_prediction': components.get('arima'),
                    'xgboost_prediction': components.get('xgboost'),
                    'lstm_prediction': components.get('lstm'),
                    'ensemble_prediction': step['predicted_modal'],
                    'confidence_lower': step['confidence_lower'],
                    'confidence_upper': step['confidence_upper'],
                    'confidence_level': step.get('confidence_level', 0.95),
                    'feature_importance': result.get('feature_importance'),
                    'top_drivers': result.get('top_drivers'),
                    'model_version': model.get('version'),
                    'model_weights': model.get('weights'),
                    'source': source,
                }
                if not PriceService._upsert_prediction(row):
                    logger.info(f"Prediction for h={step['horizon_days']} already resolved; not overwritten")
                    continue
                db.session.commit()
                persisted += 1
            except (SQLAlchemyError, ValueError) as e:
                db.session.rollback()
                error = PersistenceError(f"Could not store prediction for h={step.get('horizon_days')}: {e}")
                logger.error(error.message)
        return persisted

    @staticmethod
    def _external_payload(req, history, features):
        return {
            'state': req['state'],
            'district': req['district'],
            'market': req['market'],
            'commodity': req['commodity'],
            'variety': req['variety'],
            'horizon': req['horizon'],
            'features': features,
            'history': [_serialise(h) for h in history[-EXTERNAL_HISTORY_DAYS:]],
        }

    @staticmethod
    def forecast_price(data, timeout=DEFAULT_TIMEOUT, history_window=HISTORY_WINDOW):
        req = PriceService.validate_request(data)
        url = req['external_source_url']

        # URL guard runs before any lookup or network call
        if url:
            try:
                validate_forecast_source_url(url)
            except UpstreamUnavailable as e:
                logger.warning(f"External source skipped: {e.message}")
                url = None

        history = PriceService.load_history(req, history_window)
        features = PriceService.latest_features(req)

        result = None
        source = None
        if url:
            base_date = as_date(history[-1]['arrival_date']) if history else datetime.date.today()
            result = try_external_forecast(
                url, PriceService._external_payload(req, history, features),
                req['horizon'], base_date, timeout=timeout,
            )
            if result is not None:
                source = 'external'
                result['market_context'] = market_context(features)

        if result is None:
            if len(history) < MIN_HISTORY:
                logger.info(
                    f"Only {len(history)} rows for {req['commodity']} @ {req['market']}; using synthetic history"
                )
                history = synthesize(req['state'], req['market'], req['commodity'], district=req['district'])
                source = 'synthetic_statistical'
            else:
                source = 'statistical'
            result = forecast(history, req['horizon'], commodity_profile(req['commodity']), features)

        persisted = PriceService.persist_predictions(req, result, source)

        metrics.record_forecast(source)

        logger.info(
            f"Forecast served: {req['commodity']} @ {req['market']} h={req['horizon']} "
            f"source={source} persisted={persisted}/{len(result['forecasts'])}"
        )

        return {
            'success': True,
            'source': source,
            'request': {k: req[k] for k in ('state', 'district', 'market', 'commodity', 'variety', 'horizon')},
            'forecasts': result['forecasts'],
            'model': result.get('model'),
            'feature_importance': result.get('feature_importance'),
            'top_drivers': result.get('top_drivers'),
            'statistics': result.get('statistics'),
            'market_context': result.get('market_context'),
            'historical_summary': PriceService.historical_summary(history) if history else None,
            'persisted': persisted,
        }
