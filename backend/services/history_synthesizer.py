"""
Deterministic History Synthesizer

Fallback used when a (state, market, commodity) has fewer than 7 real rows.
Produces a plausible 90-day daily series seeded from the key itself, so the
same inputs always give the same series.
"""

import datetime
import logging
import math

from services.crop_calendar import commodity_profile

logger = logging.getLogger('history_synthesizer')

HISTORY_DAYS = 90
MEAN_REVERSION = 0.15
DAILY_DRIFT = 0.0002            # ~0.02% per day
WEEKEND_PREMIUM = 0.01          # thinner weekend arrivals lift prices slightly
WEEKEND_ARRIVAL_FACTOR = 0.6
STATE_SPREAD = 0.05             # ±5% price level per state

# Numerical Recipes LCG constants
LCG_MULTIPLIER = 1664525
LCG_INCREMENT = 1013904223
LCG_MODULUS = 2 ** 32


def string_hash(text):
    """32-bit polynomial (x31) string hash."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) % LCG_MODULUS
    return h


class LinearCongruentialGenerator:

    def __init__(self, seed):
        self.state = seed % LCG_MODULUS

    def next_float(self):
        """Next value in [0, 1)."""
        self.state = (LCG_MULTIPLIER * self.state + LCG_INCREMENT) % LCG_MODULUS
        return self.state / LCG_MODULUS


def state_multiplier(state):
    """Maps the state name to a fixed level in [0.95, 1.05]."""
    return 1 - STATE_SPREAD + (string_hash(state or '') % 1001) / 1000 * (2 * STATE_SPREAD)


def synthesize(state, market, commodity, end_date=None, district=None, days=HISTORY_DAYS):
    """
    Returns `days` chronologically ordered observation dicts ending at `end_date`
    (default today). Identical arguments always produce identical output.
    """
    if end_date is None:
        end_date = datetime.date.today()

    profile = commodity_profile(commodity)
    rng = LinearCongruentialGenerator(string_hash(f"{state}-{market}-{commodity}"))

    base = profile['base_price'] * state_multiplier(state)
    price = None
    series = []

    for i in range(days):
        day = end_date - datetime.timedelta(days=days - 1 - i)
        is_weekend = day.weekday() >= 5

        seasonal = math.sin(2 * math.pi * day.timetuple().tm_yday / 365.25) * base * profile['seasonal_strength']
        weekly = base * WEEKEND_PREMIUM if is_weekend else 0.0
        target = base * (1 + DAILY_DRIFT * i) + seasonal + weekly

        if price is None:
            price = target
        noise = (rng.next_float() - 0.5) * 2 * profile['volatility'] * base
        price = price + MEAN_REVERSION * (target - price) + noise

        modal = float(round(price))
        arrivals = (200 + rng.next_float() * 800) * (WEEKEND_ARRIVAL_FACTOR if is_weekend else 1.0)

        series.append({
            'state': state,
            'district': district,
            'market': market,
            'commodity': commodity,
            'variety': None,
            'arrival_date': day,
            'min_price': float(round(modal * profile['min_ratio'])),
            'max_price': float(round(modal * profile['max_ratio'])),
            'modal_price': modal,
            'arrivals_tonnes': round(arrivals, 1),
            'rainfall_mm': None,
            'data_source': 'synthetic',
        })

    logger.info(f"Synthesized {days} days of history for {commodity} @ {market}, {state}")
    return series
