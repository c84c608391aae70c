"""
Statistical Forecaster — Trend + Weekly Seasonality + Momentum

Deterministic price projection from a daily history:
  1. OLS trend on the centred day index (slope, R²)
  2. 7-slot day-of-week profile of the detrended prices
  3. 7-day momentum and recent volatility
  4. per-horizon projection with a 95% interval that widens with h

"ARIMA", "XGBoost" and "LSTM" are tags on three loadings of the same
momentum signal; their weighted blend is the ensemble point estimate.
"""

import datetime
import logging
import math

import numpy as np

from services.crop_calendar import DEFAULT_PROFILE
from services.errors import InsufficientDataError, ValidationError
from services.feature_engine import as_date

logger = logging.getLogger('forecaster')

MIN_HISTORY = 7
MAX_HORIZON = 30
CONFIDENCE_LEVEL = 0.95
Z_95 = 1.96
SEASONAL_WEIGHT = 0.5
MOMENTUM_DECAY = 0.2
BAND_MARGIN = 0.05

MODEL_NAME = 'Statistical Ensemble (Trend + Seasonality + Momentum)'
MODEL_VERSION = 'statistical-2.0'

ENSEMBLE_WEIGHTS = {'arima': 0.30, 'xgboost': 0.45, 'lstm': 0.25}
# Weighted sum of loadings is 1.0, so the blend carries the full momentum term.
MOMENTUM_LOADINGS = {'arima': 0.0, 'xgboost': 1.0, 'lstm': 2.2}

# Driver gates
TREND_MIN_R2 = 0.3
MOMENTUM_THRESHOLD = 0.02
SEASONAL_AMPLITUDE_THRESHOLD = 0.01
MAX_DRIVERS = 4

CONTEXT_FEATURES = (
    'arrival_date', 'rolling_mean_7', 'rolling_mean_30', 'volatility_7',
    'msp_gap', 'msp_gap_pct', 'arrivals_zscore',
    'is_festival', 'is_sowing', 'is_harvest',
)


def _clamp_strength(value):
    return int(max(0, min(100, round(value))))


def validate_horizon(horizon):
    if isinstance(horizon, bool) or not isinstance(horizon, int):
        raise ValidationError('horizon must be an integer between 1 and 30')
    if horizon < 1 or horizon > MAX_HORIZON:
        raise ValidationError(f'horizon must be between 1 and {MAX_HORIZON} days (got {horizon})')
    return horizon


def fit_trend(prices):
    """Closed-form OLS on the centred index. Returns (slope, intercept, r2, sxx, fitted)."""
    n = len(prices)
    x = np.arange(n, dtype=float)
    x_mean = (n - 1) / 2
    y_mean = prices.mean()
    dx = x - x_mean
    sxx = float((dx ** 2).sum())
    slope = float((dx * (prices - y_mean)).sum() / sxx) if sxx else 0.0
    intercept = float(y_mean - slope * x_mean)
    fitted = intercept + slope * x

    ss_tot = float(((prices - y_mean) ** 2).sum())
    ss_res = float(((prices - fitted) ** 2).sum())
    r2 = 1 - ss_res / ss_tot if ss_tot > 0 else 0.0
    return slope, intercept, r2, sxx, fitted


def weekly_profile(prices, fitted):
    """Mean detrended residual per (index mod 7) slot."""
    totals = np.zeros(7)
    counts = np.zeros(7)
    for i, residual in enumerate(prices - fitted):
        totals[i % 7] += residual
        counts[i % 7] += 1
    return np.divide(totals, counts, out=np.zeros(7), where=counts > 0)


def momentum_signal(prices, slope):
    """
    Returns (momentum, trend_adjusted_momentum).

    momentum compares the last 7 prices with the 7 before them (or with the
    whole history when there are fewer than 14 points). The adjusted value
    removes the part the OLS slope already explains, so the projection does
    not count the trend twice.
    """
    n = len(prices)
    recent_mean = float(prices[-7:].mean())
    recent_center = n - 4
    if n >= 14:
        prior_mean = float(prices[-14:-7].mean())
        prior_center = n - 11
    else:
        prior_mean = float(prices.mean())
        prior_center = (n - 1) / 2

    if not prior_mean:
        return 0.0, 0.0
    momentum = (recent_mean - prior_mean) / prior_mean
    trend_share = slope * (recent_center - prior_center) / prior_mean
    return momentum, momentum - trend_share


def feature_importance(slope, horizon, seasonal, momentum, volatility, last_price):
    raw = {
        'trend': abs(slope * horizon),
        'seasonality': float(np.max(np.abs(seasonal))),
        'momentum': abs(momentum * last_price),
        'recent_volatility': volatility * last_price,
    }
    total = sum(raw.values())
    if total > 0:
        pct = {k: int(math.floor(v / total * 100)) for k, v in raw.items()}
    else:
        pct = {k: 0 for k in raw}
    pct['trend'] += 100 - sum(pct.values())
    return pct


def top_drivers(slope, r2, momentum, volatility, baseline_volatility, seasonal, mean_price):
    drivers = []

    if r2 >= TREND_MIN_R2 and abs(slope) > 1e-9:
        drivers.append({
            'driver': 'Upward price trend' if slope > 0 else 'Downward price trend',
            'direction': 'positive' if slope > 0 else 'negative',
            'strength': _clamp_strength(r2 * 100),
        })

    if momentum > MOMENTUM_THRESHOLD:
        drivers.append({'driver': 'Positive 7-day momentum', 'direction': 'positive',
                        'strength': _clamp_strength(momentum * 1000)})
    elif momentum < -MOMENTUM_THRESHOLD:
        drivers.append({'driver': 'Negative 7-day momentum', 'direction': 'negative',
                        'strength': _clamp_strength(abs(momentum) * 1000)})

    if baseline_volatility and volatility > baseline_volatility:
        drivers.append({'driver': 'High market volatility', 'direction': 'uncertain',
                        'strength': _clamp_strength(volatility / baseline_volatility * 25)})

    amplitude = float(seasonal.max() - seasonal.min()) / mean_price if mean_price else 0.0
    if amplitude > SEASONAL_AMPLITUDE_THRESHOLD:
        drivers.append({'driver': 'Weekly seasonal pattern', 'direction': 'uncertain',
                        'strength': _clamp_strength(amplitude * 1000)})

    drivers.sort(key=lambda d: d['strength'], reverse=True)
    return drivers[:MAX_DRIVERS]


def _price_ratios(rows, profile):
    """Average min/modal and max/modal ratios from history, falling back to the profile band."""
    mins = [r['min_price'] / r['modal_price'] for r in rows if r.get('min_price') and r['modal_price'] > 0]
    maxs = [r['max_price'] / r['modal_price'] for r in rows if r.get('max_price') and r['modal_price'] > 0]
    min_ratio = float(np.mean(mins)) if mins else profile['min_ratio']
    max_ratio = float(np.mean(maxs)) if maxs else profile['max_ratio']
    return min(min_ratio, 1.0), max(max_ratio, 1.0)


def market_context(features):
    if not features:
        return None
    return {k: features.get(k) for k in CONTEXT_FEATURES}


def forecast(history, horizon_days, commodity_config=None, features=None):
    """
    Projects prices `horizon_days` ahead from `history` (observation dicts).

    Interval half-widths are clamped to the commodity min/max band (plus 5%)
    measured from the last observed price, not from each step's estimate.
    The lower bound is floored at 0 and the interval never narrows as the
    horizon grows.

    Raises InsufficientDataError with fewer than 7 priced observations.
    """
    validate_horizon(horizon_days)
    profile = dict(DEFAULT_PROFILE)
    profile.update(commodity_config or {})

    rows = sorted(
        (r for r in history if r.get('modal_price') is not None),
        key=lambda r: as_date(r['arrival_date']),
    )
    if len(rows) < MIN_HISTORY:
        raise InsufficientDataError(
            f'At least {MIN_HISTORY} historical prices are required for forecasting (got {len(rows)})'
        )

    prices = np.array([float(r['modal_price']) for r in rows])
    n = len(prices)
    last_price = float(prices[-1])
    last_date = as_date(rows[-1]['arrival_date'])

    mean_price = float(prices.mean())
    std_price = float(prices.std())
    slope, intercept, r2, sxx, fitted = fit_trend(prices)
    seasonal = weekly_profile(prices, fitted)
    momentum, momentum_adjusted = momentum_signal(prices, slope)

    recent = prices[-7:]
    recent_mean = float(recent.mean())
    volatility = float(recent.std()) / recent_mean if recent_mean else 0.0

    min_ratio, max_ratio = _price_ratios(rows, profile)
    lower_cap = last_price * (1 - profile['min_ratio'] + BAND_MARGIN)
    upper_cap = last_price * (profile['max_ratio'] - 1 + BAND_MARGIN)

    forecasts = []
    prev_width = 0.0
    for h in range(1, horizon_days + 1):
        base = last_price + slope * h + SEASONAL_WEIGHT * seasonal[(n + h - 1) % 7]
        momentum_term = momentum_adjusted * last_price * math.exp(-MOMENTUM_DECAY * h)
        components = {
            name: round(max(base + loading * momentum_term, 0.0), 2)
            for name, loading in MOMENTUM_LOADINGS.items()
        }
        modal = round(max(base + momentum_term, 0.0), 2)

        half_width = Z_95 * std_price * math.sqrt(1 + 1 / n + h ** 2 / sxx) * math.sqrt(h)
        lower_half = round(min(half_width, lower_cap), 2)
        upper_half = round(min(half_width, upper_cap), 2)
        lower = max(round(modal - lower_half, 2), 0.0)
        upper = round(modal + upper_half, 2)
        # Width lost to the zero floor moves to the upper side
        if upper - lower < prev_width:
            upper = round(lower + prev_width, 2)
        prev_width = upper - lower

        forecasts.append({
            'target_date': (last_date + datetime.timedelta(days=h)).isoformat(),
            'horizon_days': h,
            'predicted_min': round(modal * min_ratio, 2),
            'predicted_modal': modal,
            'predicted_max': round(modal * max_ratio, 2),
            'confidence_lower': lower,
            'confidence_upper': upper,
            'confidence_level': CONFIDENCE_LEVEL,
            'components': components,
        })

    logger.info(
        f"Forecast: n={n} slope={slope:.3f} r2={r2:.3f} momentum={momentum:.4f} "
        f"volatility={volatility:.4f} horizon={horizon_days}"
    )

    return {
        'forecasts': forecasts,
        'model': {
            'name': MODEL_NAME,
            'version': MODEL_VERSION,
            'weights': dict(ENSEMBLE_WEIGHTS),
            'momentum_loadings': dict(MOMENTUM_LOADINGS),
        },
        'feature_importance': feature_importance(slope, horizon_days, seasonal, momentum, volatility, last_price),
        'top_drivers': top_drivers(slope, r2, momentum, volatility, profile['volatility'], seasonal, mean_price),
        'statistics': {
            'historical_mean': round(mean_price, 2),
            'historical_std': round(std_price, 2),
            'trend_per_day': round(slope, 4),
            'trend_intercept': round(intercept, 2),
            'r_squared': round(r2, 4),
            'momentum_7d': round(momentum * 100, 2),
            'volatility_7d': round(volatility * 100, 2),
            'seasonal_profile': [round(float(s), 2) for s in seasonal],
            'data_points': n,
            'last_price': last_price,
            'last_date': last_date.isoformat(),
        },
        'market_context': market_context(features),
    }
