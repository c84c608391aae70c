"""
Feature Engineering Layer

Turns one daily mandi observation plus its trailing history into the flat
feature row stored in `mandi_features`. Pure function of its inputs: only
history strictly older than the observation is used, and every lag/rolling
feature stays None (never 0) when there is not enough history.
"""

import datetime
import logging

import numpy as np

from services.crop_calendar import is_festival_period, msp_for, season_flags, week_of_year

logger = logging.getLogger('feature_engine')

LAGS = (1, 7, 30)
ARRIVAL_LAGS = (1, 7)
ROLLING_WINDOWS = (7, 30, 90)
MOMENTUM_WINDOWS = (7, 30)
# Rolling stats need a full week of prior prices; beyond that they use
# min(W, available) points.
MIN_ROLLING_POINTS = 7


def as_date(value):
    """Accepts a date, a datetime or an ISO 'YYYY-MM-DD' string."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


def _mean(values):
    if not values:
        return None
    return float(np.mean(values))


def _std(values):
    # population std (ddof=0); two points minimum
    if len(values) < 2:
        return None
    return float(np.std(values))


def _nth(rows, key, k):
    if len(rows) < k:
        return None
    return rows[k - 1].get(key)


def _window(rows, key, size):
    return [r.get(key) for r in rows[:size] if r.get(key) is not None]


def _prior_history(current_date, history):
    prior = [h for h in history if as_date(h['arrival_date']) < current_date]
    return sorted(prior, key=lambda h: as_date(h['arrival_date']), reverse=True)


def calendar_features(commodity, day):
    is_sowing, is_harvest = season_flags(commodity, day)
    day_of_week = (day.weekday() + 1) % 7   # Sunday=0 .. Saturday=6
    return {
        'day_of_week': day_of_week,
        'week_of_year': week_of_year(day),
        'month': day.month,
        'quarter': (day.month - 1) // 3 + 1,
        'is_weekend': day_of_week in (0, 6),
        'is_month_start': day.day <= 5,
        'is_month_end': day.day >= 25,
        'is_festival': is_festival_period(day),
        'is_sowing': is_sowing,
        'is_harvest': is_harvest,
    }


def compute_features(current, history, state_avg_price=None, national_avg_price=None):
    """
    Computes the feature row for `current` from `history` (any order).

    Returns a dict with lag, rolling, momentum, volatility, cross-market,
    demand/supply, calendar and interaction features.
    """
    current_date = as_date(current['arrival_date'])
    price = current['modal_price']
    arrivals = current.get('arrivals_tonnes') or 0
    rainfall_today = current.get('rainfall_mm') or 0

    prior = _prior_history(current_date, history)

    features = {}

    # Lagged prices and arrivals
    for k in LAGS:
        features[f'price_lag_{k}'] = _nth(prior, 'modal_price', k)
    for k in ARRIVAL_LAGS:
        features[f'arrivals_lag_{k}'] = _nth(prior, 'arrivals_tonnes', k)

    # Rolling statistics
    for w in ROLLING_WINDOWS:
        window = _window(prior, 'modal_price', w)
        if len(window) < min(w, MIN_ROLLING_POINTS):
            window = []
        features[f'rolling_mean_{w}'] = _mean(window)
        features[f'rolling_std_{w}'] = _std(window)

    # Momentum and volatility
    for w in MOMENTUM_WINDOWS:
        mean = features[f'rolling_mean_{w}']
        std = features[f'rolling_std_{w}']
        features[f'momentum_{w}'] = price - mean if mean is not None else None
        if mean is None or std is None or mean == 0:
            features[f'volatility_{w}'] = None
        else:
            features[f'volatility_{w}'] = std / mean

    # Cross-market
    msp = msp_for(current.get('commodity'))
    features['state_modal_price'] = state_avg_price
    features['national_modal_price'] = national_avg_price
    features['msp_gap'] = price - msp if msp else None
    features['msp_gap_pct'] = (price - msp) / msp * 100 if msp else None
    features['neighbor_avg_price'] = None

    # Arrivals vs trailing week. A zero/undefined std falls back to 1 here,
    # unlike the price volatility above which goes to None.
    weekly_arrivals = _window(prior, 'arrivals_tonnes', 7)
    avg_weekly = _mean(weekly_arrivals)
    features['arrivals_deviation'] = arrivals - avg_weekly if avg_weekly is not None else None
    if avg_weekly is not None and len(weekly_arrivals) > 1:
        features['arrivals_zscore'] = (arrivals - avg_weekly) / (_std(weekly_arrivals) or 1)
    else:
        features['arrivals_zscore'] = None

    # Cumulative rainfall over the trailing observations
    if prior:
        features['cumulative_rainfall_7'] = float(sum(r.get('rainfall_mm') or 0 for r in prior[:7]))
        features['cumulative_rainfall_30'] = float(sum(r.get('rainfall_mm') or 0 for r in prior[:30]))
    else:
        features['cumulative_rainfall_7'] = None
        features['cumulative_rainfall_30'] = None

    features.update(calendar_features(current.get('commodity'), current_date))

    # Interactions
    volatility_7 = features['volatility_7']
    features['rainfall_x_crop'] = rainfall_today * (-1 if features['is_harvest'] else 1)
    features['arrivals_x_msp_gap'] = arrivals * features['msp_gap'] if features['msp_gap'] is not None else None
    features['volatility_x_arrivals'] = volatility_7 * arrivals if volatility_7 is not None else None

    return features
