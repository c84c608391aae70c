"""
Evaluation Service — Tracking Forecast Accuracy & Raising Alerts

Answers:
- Which predictions have matured, and what actually happened?
- How accurate is the ensemble (MAE / RMSE / MAPE / R²) per scope?
- Has accuracy degraded past the alert threshold?

Prediction lifecycle: PENDING (actual_price null) → RESOLVED, one way,
only once the target date has passed and a matching actual exists.
"""

import datetime
import logging
import math

import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
from sqlalchemy.exc import SQLAlchemyError

from database.db import db
from database.models import MandiTimeseries, MlAlert, MlPrediction, ModelPerformance
from services.errors import NotFoundError, PersistenceError, ValidationError
from services.forecaster import MODEL_VERSION

logger = logging.getLogger('evaluation_service')

ENSEMBLE_MODEL_NAME = 'ensemble'
DEFAULT_MAPE_THRESHOLD = 15.0
CRITICAL_MULTIPLIER = 1.5
MAX_PERFORMANCE_ROWS = 20
MAX_ALERT_ROWS = 50


def _optional_int(value, field):
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')


def _threshold(value):
    if value is None or value == '':
        return DEFAULT_MAPE_THRESHOLD
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        raise ValidationError('threshold_mape must be a number')
    if not threshold > 0:
        raise ValidationError('threshold_mape must be positive')
    return threshold


class EvaluationService:

    @staticmethod
    def _matching_actual(prediction):
        query = MandiTimeseries.query.filter_by(
            state=prediction.state,
            market=prediction.market,
            commodity=prediction.commodity,
            arrival_date=prediction.target_date,
        )
        if prediction.district:
            query = query.filter_by(district=prediction.district)
        if prediction.variety:
            query = query.filter_by(variety=prediction.variety)
        return query.first()

    @staticmethod
    def update_actuals(today=None, limit=500):
        """
        Resolves PENDING predictions with target_date <= today.
        Predictions without an observed price stay PENDING.
        """
        today = today or datetime.date.today()
        pending = (
            MlPrediction.query
            .filter(MlPrediction.actual_price.is_(None))
            .filter(MlPrediction.target_date <= today)
            .order_by(MlPrediction.target_date.asc())
            .limit(limit)
            .all()
        )

        updated = 0
        for prediction in pending:
            actual = EvaluationService._matching_actual(prediction)
            if actual is None or not actual.modal_price:
                continue
            error = abs(prediction.ensemble_prediction - actual.modal_price)
            prediction.actual_price = actual.modal_price
            prediction.absolute_error = error
            prediction.percentage_error = error / actual.modal_price * 100
            updated += 1

        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(PersistenceError(f'Failed to store actuals: {e}').message)
            updated = 0

        result = {'checked': len(pending), 'updated': updated, 'still_pending': len(pending) - updated}
        logger.info(f"Update actuals: {result}")
        return result

    @staticmethod
    def _resolved(commodity=None, market=None, horizon=None):
        query = MlPrediction.query.filter(MlPrediction.actual_price.isnot(None))
        if commodity:
            query = query.filter(MlPrediction.commodity == commodity)
        if market:
            query = query.filter(MlPrediction.market == market)
        if horizon is not None:
            query = query.filter(MlPrediction.horizon_days == horizon)
        return query.all()

    @staticmethod
    def compute_metrics(predicted, actual, percentage_errors):
        """MAE, RMSE, MAPE and R² (None below 2 samples or when undefined)."""
        mae = float(mean_absolute_error(actual, predicted))
        rmse = math.sqrt(mean_squared_error(actual, predicted))
        mape = float(pd.Series(percentage_errors, dtype=float).mean())
        r2 = None
        if len(actual) >= 2:
            score = float(r2_score(actual, predicted))
            r2 = score if math.isfinite(score) else None
        return {
            'mae': round(mae, 2),
            'rmse': round(rmse, 2),
            'mape': round(mape, 2),
            'r2_score': round(r2, 4) if r2 is not None else None,
        }

    @staticmethod
    def evaluate(commodity=None, market=None, horizon=None, threshold_mape=DEFAULT_MAPE_THRESHOLD):
        """Persists a new active ModelPerformance for the scope; alerts when MAPE > threshold."""
        threshold = _threshold(threshold_mape)
        predictions = EvaluationService._resolved(commodity, market, horizon)
        scope = {'commodity': commodity, 'market': market, 'horizon_days': horizon}

        if not predictions:
            return {
                'evaluated': False,
                'scope': scope,
                'sample_size': 0,
                'message': 'No resolved predictions in scope yet.',
            }

        df = pd.DataFrame([{
            'predicted': p.ensemble_prediction,
            'actual': p.actual_price,
            'percentage_error': p.percentage_error,
            'target_date': p.target_date,
            'model_version': p.model_version,
        } for p in predictions])

        scores = EvaluationService.compute_metrics(df['predicted'], df['actual'], df['percentage_error'])
        versions = df['model_version'].dropna()
        model_version = versions.mode().iloc[0] if not versions.empty else MODEL_VERSION

        ModelPerformance.query.filter_by(
            model_name=ENSEMBLE_MODEL_NAME,
            commodity=commodity,
            market=market,
            horizon_days=horizon,
            is_active=True,
        ).update({'is_active': False})

        performance = ModelPerformance(
            model_name=ENSEMBLE_MODEL_NAME,
            model_version=model_version,
            commodity=commodity,
            market=market,
            horizon_days=horizon,
            evaluation_start=df['target_date'].min(),
            evaluation_end=df['target_date'].max(),
            sample_size=len(df),
            is_active=True,
            **scores,
        )
        db.session.add(performance)

        alert = None
        if scores['mape'] > threshold:
            severity = 'critical' if scores['mape'] > threshold * CRITICAL_MULTIPLIER else 'warning'
            label = ' / '.join(str(v) for v in (commodity, market) if v) or 'all commodities'
            alert = MlAlert(
                alert_type='accuracy_degradation',
                severity=severity,
                commodity=commodity,
                market=market,
                model_name=ENSEMBLE_MODEL_NAME,
                message=f"MAPE {scores['mape']:.2f}% exceeds threshold {threshold:.1f}% for {label}",
                metric_name='mape',
                metric_value=scores['mape'],
                threshold_value=threshold,
            )
            db.session.add(alert)

        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f'Failed to store evaluation: {e}')

        if alert is not None:
            logger.warning(f"Accuracy alert ({alert.severity}): {alert.message}")
        logger.info(f"Evaluation {scope}: n={len(df)} mape={scores['mape']} rmse={scores['rmse']}")

        return {
            'evaluated': True,
            'scope': scope,
            'performance': performance.to_dict(),
            'interpretation': _interpret_mape(scores['mape']),
            'alert': alert.to_dict() if alert else None,
        }

    @staticmethod
    def check_alerts(limit=MAX_ALERT_ROWS):
        alerts = (
            MlAlert.query
            .filter_by(is_resolved=False)
            .order_by(MlAlert.created_at.desc())
            .limit(limit)
            .all()
        )
        return {'count': len(alerts), 'alerts': [a.to_dict() for a in alerts]}

    @staticmethod
    def get_performance(commodity=None, market=None, limit=MAX_PERFORMANCE_ROWS):
        query = ModelPerformance.query.filter_by(is_active=True)
        if commodity:
            query = query.filter(ModelPerformance.commodity == commodity)
        if market:
            query = query.filter(ModelPerformance.market == market)
        rows = query.order_by(ModelPerformance.evaluated_at.desc()).limit(min(limit, MAX_PERFORMANCE_ROWS)).all()
        return {'count': len(rows), 'performance': [r.to_dict() for r in rows]}

    @staticmethod
    def resolve_alert(alert_id, resolved_by):
        alert = db.session.get(MlAlert, alert_id)
        if alert is None:
            raise NotFoundError(f'Alert {alert_id} not found')
        if not alert.is_resolved:
            alert.is_resolved = True
            alert.resolved_at = datetime.datetime.utcnow()
            alert.resolved_by = str(resolved_by) if resolved_by else None
            db.session.commit()
            logger.info(f"Alert {alert_id} resolved by {resolved_by}")
        return alert.to_dict()

    @staticmethod
    def tracked_commodities():
        rows = (
            db.session.query(MlPrediction.commodity)
            .filter(MlPrediction.actual_price.isnot(None))
            .distinct()
            .all()
        )
        return [r[0] for r in rows if r[0]]

    @staticmethod
    def run_action(action, commodity=None, market=None, horizon=None, threshold_mape=None):
        """Dispatch for the monitor trigger endpoint."""
        if action == 'update_actuals':
            return EvaluationService.update_actuals()
        if action == 'evaluate':
            return EvaluationService.evaluate(
                commodity=commodity,
                market=market,
                horizon=_optional_int(horizon, 'horizon'),
                threshold_mape=_threshold(threshold_mape),
            )
        if action == 'check_alerts':
            return EvaluationService.check_alerts()
        if action == 'get_performance':
            return EvaluationService.get_performance(commodity=commodity, market=market)
        raise ValidationError(
            f"Unknown action {action!r}. Use one of: evaluate, check_alerts, update_actuals, get_performance"
        )


def _interpret_mape(mape):
    if mape is None:
        return 'No data'
    if mape < 10:
        return 'Excellent accuracy'
    elif mape < 20:
        return 'Good accuracy'
    elif mape < 30:
        return 'Fair accuracy — room for improvement'
    else:
        return 'Poor accuracy — forecasts need review'
