import uuid
from database.db import db
from datetime import datetime, date


def _uuid():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


NATURAL_KEY = ('state', 'district', 'market', 'commodity', 'variety', 'arrival_date')
PREDICTION_KEY = ('state', 'district', 'market', 'commodity', 'variety', 'prediction_date', 'horizon_days')


# ============================================================================
# 🔹 DOMAIN 1: ACCESS DOMAIN
# ============================================================================

class UserRole(db.Model):
    """Role grants per identity. 'admin' unlocks ingestion and ETL triggers."""
    __tablename__ = 'user_roles'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default='user')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'role', name='uq_user_roles_user_role'),
    )

    def to_dict(self):
        return {'id': self.id, 'user_id': self.user_id, 'role': self.role}


# ============================================================================
# 🔹 DOMAIN 2: MARKET DOMAIN (Raw + Canonical Time Series)
# ============================================================================

class _ObservationColumns:
    """Columns shared by raw and canonical daily mandi observations."""
    state = db.Column(db.String(50), nullable=False)
    district = db.Column(db.String(50), nullable=False)
    market = db.Column(db.String(100), nullable=False)
    commodity = db.Column(db.String(50), nullable=False)
    variety = db.Column(db.String(100))
    grade = db.Column(db.String(50))
    arrival_date = db.Column(db.Date, nullable=False)
    min_price = db.Column(db.Float)
    max_price = db.Column(db.Float)
    modal_price = db.Column(db.Float, nullable=False)
    arrivals_tonnes = db.Column(db.Float)
    rainfall_mm = db.Column(db.Float)
    temp_max = db.Column(db.Float)
    temp_min = db.Column(db.Float)
    humidity = db.Column(db.Float)

    def observation_dict(self):
        return {
            'state': self.state, 'district': self.district,
            'market': self.market, 'commodity': self.commodity,
            'variety': self.variety, 'grade': self.grade,
            'arrival_date': self.arrival_date,
            'min_price': self.min_price, 'max_price': self.max_price,
            'modal_price': self.modal_price,
            'arrivals_tonnes': self.arrivals_tonnes,
            'rainfall_mm': self.rainfall_mm,
            'temp_max': self.temp_max, 'temp_min': self.temp_min,
            'humidity': self.humidity,
        }


class MandiPrice(_ObservationColumns, db.Model):
    """Raw daily mandi prices as produced by ingestion."""
    __tablename__ = 'mandi_prices'

    id = db.Column(db.Integer, primary_key=True)
    is_festival = db.Column(db.Boolean)
    is_sowing_season = db.Column(db.Boolean)
    is_harvest_season = db.Column(db.Boolean)
    policy_event = db.Column(db.String(200))
    source = db.Column(db.String(50), default='agmarknet')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint(*NATURAL_KEY, name='uq_mandi_prices_natural_key'),
        db.Index('idx_mandi_prices_commodity_market_date', 'commodity', 'market', 'arrival_date'),
    )

    def to_dict(self):
        data = self.observation_dict()
        data.update({
            'id': self.id,
            'arrival_date': _iso(self.arrival_date),
            'is_festival': self.is_festival,
            'is_sowing_season': self.is_sowing_season,
            'is_harvest_season': self.is_harvest_season,
            'policy_event': self.policy_event,
            'source': self.source,
        })
        return data


class MandiTimeseries(_ObservationColumns, db.Model):
    """Canonical time series, annotated with MSP / festival / season flags."""
    __tablename__ = 'mandi_timeseries'

    id = db.Column(db.Integer, primary_key=True)
    is_festival = db.Column(db.Boolean, default=False)
    is_sowing_season = db.Column(db.Boolean, default=False)
    is_harvest_season = db.Column(db.Boolean, default=False)
    week_of_year = db.Column(db.Integer)
    month = db.Column(db.Integer)
    msp_price = db.Column(db.Float)
    policy_event = db.Column(db.String(200))
    data_source = db.Column(db.String(50), default='agmarknet')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint(*NATURAL_KEY, name='uq_mandi_timeseries_natural_key'),
        db.Index('idx_mandi_timeseries_lookup', 'state', 'district', 'market', 'commodity', 'arrival_date'),
    )

    def to_dict(self):
        data = self.observation_dict()
        data.update({
            'id': self.id,
            'arrival_date': _iso(self.arrival_date),
            'is_festival': self.is_festival,
            'is_sowing_season': self.is_sowing_season,
            'is_harvest_season': self.is_harvest_season,
            'week_of_year': self.week_of_year, 'month': self.month,
            'msp_price': self.msp_price,
            'policy_event': self.policy_event,
            'data_source': self.data_source,
        })
        return data


# ============================================================================
# 🔹 DOMAIN 3: FEATURE STORE
# ============================================================================

FEATURE_COLUMNS = (
    'price_lag_1', 'price_lag_7', 'price_lag_30',
    'arrivals_lag_1', 'arrivals_lag_7',
    'rolling_mean_7', 'rolling_mean_30', 'rolling_mean_90',
    'rolling_std_7', 'rolling_std_30', 'rolling_std_90',
    'momentum_7', 'momentum_30', 'volatility_7', 'volatility_30',
    'state_modal_price', 'national_modal_price',
    'msp_gap', 'msp_gap_pct', 'neighbor_avg_price',
    'arrivals_deviation', 'arrivals_zscore',
    'cumulative_rainfall_7', 'cumulative_rainfall_30',
    'day_of_week', 'week_of_year', 'month', 'quarter',
    'is_weekend', 'is_month_start', 'is_month_end',
    'is_festival', 'is_sowing', 'is_harvest',
    'rainfall_x_crop', 'arrivals_x_msp_gap', 'volatility_x_arrivals',
)


class MandiFeature(db.Model):
    """Precomputed per-observation features. Recomputed and upserted, never edited."""
    __tablename__ = 'mandi_features'

    id = db.Column(db.Integer, primary_key=True)
    state = db.Column(db.String(50), nullable=False)
    district = db.Column(db.String(50), nullable=False)
    market = db.Column(db.String(100), nullable=False)
    commodity = db.Column(db.String(50), nullable=False)
    variety = db.Column(db.String(100))
    arrival_date = db.Column(db.Date, nullable=False)

    # Lagged prices / arrivals
    price_lag_1 = db.Column(db.Float)
    price_lag_7 = db.Column(db.Float)
    price_lag_30 = db.Column(db.Float)
    arrivals_lag_1 = db.Column(db.Float)
    arrivals_lag_7 = db.Column(db.Float)

    # Rolling statistics
    rolling_mean_7 = db.Column(db.Float)
    rolling_mean_30 = db.Column(db.Float)
    rolling_mean_90 = db.Column(db.Float)
    rolling_std_7 = db.Column(db.Float)
    rolling_std_30 = db.Column(db.Float)
    rolling_std_90 = db.Column(db.Float)

    momentum_7 = db.Column(db.Float)       # price - 7d mean
    momentum_30 = db.Column(db.Float)
    volatility_7 = db.Column(db.Float)     # std / mean
    volatility_30 = db.Column(db.Float)

    # Cross-market
    state_modal_price = db.Column(db.Float)
    national_modal_price = db.Column(db.Float)
    msp_gap = db.Column(db.Float)
    msp_gap_pct = db.Column(db.Float)
    neighbor_avg_price = db.Column(db.Float)

    # Demand / supply proxies
    arrivals_deviation = db.Column(db.Float)
    arrivals_zscore = db.Column(db.Float)
    cumulative_rainfall_7 = db.Column(db.Float)
    cumulative_rainfall_30 = db.Column(db.Float)

    # Calendar
    day_of_week = db.Column(db.Integer)
    week_of_year = db.Column(db.Integer)
    month = db.Column(db.Integer)
    quarter = db.Column(db.Integer)
    is_weekend = db.Column(db.Boolean)
    is_month_start = db.Column(db.Boolean)
    is_month_end = db.Column(db.Boolean)
    is_festival = db.Column(db.Boolean)
    is_sowing = db.Column(db.Boolean)
    is_harvest = db.Column(db.Boolean)

    # Interactions
    rainfall_x_crop = db.Column(db.Float)
    arrivals_x_msp_gap = db.Column(db.Float)
    volatility_x_arrivals = db.Column(db.Float)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint(*NATURAL_KEY, name='uq_mandi_features_natural_key'),
        db.Index('idx_mandi_features_lookup', 'state', 'district', 'market', 'commodity', 'arrival_date'),
    )

    def to_dict(self):
        data = {
            'id': self.id, 'state': self.state, 'district': self.district,
            'market': self.market, 'commodity': self.commodity,
            'variety': self.variety, 'arrival_date': _iso(self.arrival_date),
        }
        for column in FEATURE_COLUMNS:
            data[column] = getattr(self, column)
        return data


# ============================================================================
# 🔹 DOMAIN 4: ML PREDICTIONS DOMAIN
# ============================================================================

class MlPrediction(db.Model):
    """One forecast step. Actual/error columns are filled once the target date passes."""
    __tablename__ = 'ml_predictions'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    state = db.Column(db.String(50), nullable=False)
    district = db.Column(db.String(50))
    market = db.Column(db.String(100), nullable=False)
    commodity = db.Column(db.String(50), nullable=False)
    variety = db.Column(db.String(100))

    prediction_date = db.Column(db.Date, nullable=False, default=date.today)
    target_date = db.Column(db.Date, nullable=False)
    horizon_days = db.Column(db.Integer, nullable=False)

    arima_prediction = db.Column(db.Float)
    xgboost_prediction = db.Column(db.Float)
    lstm_prediction = db.Column(db.Float)
    ensemble_prediction = db.Column(db.Float, nullable=False)

    confidence_lower = db.Column(db.Float)
    confidence_upper = db.Column(db.Float)
    confidence_level = db.Column(db.Float, default=0.95)

    feature_importance = db.Column(db.JSON)
    top_drivers = db.Column(db.JSON)
    model_version = db.Column(db.String(50))
    model_weights = db.Column(db.JSON)
    source = db.Column(db.String(30))

    # Filled by the accuracy monitor
    actual_price = db.Column(db.Float)
    absolute_error = db.Column(db.Float)
    percentage_error = db.Column(db.Float)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint(*PREDICTION_KEY, name='uq_ml_predictions_step'),
        db.Index('idx_ml_predictions_lookup', 'market', 'commodity', 'target_date'),
        db.Index('idx_ml_predictions_pending', 'target_date', 'actual_price'),
    )

    @property
    def status(self):
        return 'RESOLVED' if self.actual_price is not None else 'PENDING'

    def to_dict(self):
        return {
            'id': self.id, 'state': self.state, 'district': self.district,
            'market': self.market, 'commodity': self.commodity,
            'variety': self.variety,
            'prediction_date': _iso(self.prediction_date),
            'target_date': _iso(self.target_date),
            'horizon_days': self.horizon_days,
            'arima_prediction': self.arima_prediction,
            'xgboost_prediction': self.xgboost_prediction,
            'lstm_prediction': self.lstm_prediction,
            'ensemble_prediction': self.ensemble_prediction,
            'confidence_lower': self.confidence_lower,
            'confidence_upper': self.confidence_upper,
            'confidence_level': self.confidence_level,
            'feature_importance': self.feature_importance,
            'top_drivers': self.top_drivers,
            'model_version': self.model_version,
            'model_weights': self.model_weights,
            'source': self.source,
            'actual_price': self.actual_price,
            'absolute_error': self.absolute_error,
            'percentage_error': self.percentage_error,
            'status': self.status,
        }


# ============================================================================
# 🔹 DOMAIN 5: EVALUATION & ALERTS DOMAIN
# ============================================================================

class ModelPerformance(db.Model):
    """Append-only evaluation snapshots. is_active marks the trusted one per scope."""
    __tablename__ = 'ml_model_performance'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    model_name = db.Column(db.String(50), nullable=False)
    model_version = db.Column(db.String(50), nullable=False)
    commodity = db.Column(db.String(50))
    market = db.Column(db.String(100))
    horizon_days = db.Column(db.Integer)
    mae = db.Column(db.Float)
    rmse = db.Column(db.Float)
    mape = db.Column(db.Float)
    r2_score = db.Column(db.Float)
    evaluation_start = db.Column(db.Date)
    evaluation_end = db.Column(db.Date)
    sample_size = db.Column(db.Integer)
    evaluated_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    is_active = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            'id': self.id, 'model_name': self.model_name,
            'model_version': self.model_version,
            'commodity': self.commodity, 'market': self.market,
            'horizon_days': self.horizon_days,
            'mae': self.mae, 'rmse': self.rmse, 'mape': self.mape,
            'r2_score': self.r2_score,
            'evaluation_start': _iso(self.evaluation_start),
            'evaluation_end': _iso(self.evaluation_end),
            'sample_size': self.sample_size,
            'evaluated_at': _iso(self.evaluated_at),
            'is_active': self.is_active,
        }


class MlAlert(db.Model):
    """Accuracy alerts. Every breach is a new row; operators resolve them."""
    __tablename__ = 'ml_alerts'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    alert_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(20), nullable=False, default='warning')
    commodity = db.Column(db.String(50))
    market = db.Column(db.String(100))
    model_name = db.Column(db.String(50))
    message = db.Column(db.Text, nullable=False)
    metric_name = db.Column(db.String(30))
    metric_value = db.Column(db.Float)
    threshold_value = db.Column(db.Float)
    is_resolved = db.Column(db.Boolean, default=False)
    resolved_at = db.Column(db.DateTime)
    resolved_by = db.Column(db.String(36))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id, 'alert_type': self.alert_type,
            'severity': self.severity,
            'commodity': self.commodity, 'market': self.market,
            'model_name': self.model_name, 'message': self.message,
            'metric_name': self.metric_name,
            'metric_value': self.metric_value,
            'threshold_value': self.threshold_value,
            'is_resolved': self.is_resolved,
            'resolved_at': _iso(self.resolved_at),
            'resolved_by': self.resolved_by,
            'created_at': _iso(self.created_at),
        }
