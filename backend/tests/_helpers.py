import datetime

from database.db import db
from database.models import MandiTimeseries

MARKET_KEY = {
    'state': 'Maharashtra',
    'district': 'Pune',
    'market': 'Pune',
    'commodity': 'Onion',
}


def make_history(prices, start=datetime.date(2025, 1, 1), arrivals=None, **overrides):
    """Observation dicts, one per day from `start`, oldest first."""
    key = {**MARKET_KEY, 'variety': None, **overrides}
    rows = []
    for i, price in enumerate(prices):
        rows.append({
            **key,
            'arrival_date': start + datetime.timedelta(days=i),
            'min_price': price * 0.9 if price is not None else None,
            'max_price': price * 1.1 if price is not None else None,
            'modal_price': price,
            'arrivals_tonnes': arrivals[i] if arrivals is not None else 100.0,
            'rainfall_mm': 0.0,
        })
    return rows


def seed_timeseries(prices, start=datetime.date(2025, 1, 1), **overrides):
    rows = make_history(prices, start=start, **overrides)
    for row in rows:
        db.session.add(MandiTimeseries(**row))
    db.session.commit()
    return rows
