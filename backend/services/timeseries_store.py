"""
Time-Series Store Adapter — Raw ingestion, canonical series, feature store

mandi_prices  ──(annotate)──▶  mandi_timeseries
      │
      └──(compute_features)──▶  mandi_features  (chunks of 500)

Every write is an upsert on the natural key
(state, district, market, commodity, variety, arrival_date). A failing chunk
is rolled back, logged and skipped; the rest of the run carries on.
"""

import datetime
import logging
from collections import defaultdict

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from database.db import db
from database.models import NATURAL_KEY, MandiFeature, MandiPrice, MandiTimeseries
from services.crop_calendar import is_festival_period, msp_for, season_flags, week_of_year
from services.errors import PersistenceError, ValidationError
from services.feature_engine import as_date
from services.feature_engine import compute_features as compute_feature_row

logger = logging.getLogger('timeseries_store')

FEATURE_BATCH_SIZE = 500
ETL_FETCH_LIMIT = 1000
FEATURE_HISTORY_DEPTH = 90
CROSS_MARKET_SAMPLE = 5000

DATE_FORMATS = ('%Y-%m-%d', '%d/%m/%Y', '%d-%m-%Y')

OBSERVATION_FIELDS = (
    'state', 'district', 'market', 'commodity', 'variety', 'grade', 'arrival_date',
    'min_price', 'max_price', 'modal_price', 'arrivals_tonnes',
    'rainfall_mm', 'temp_max', 'temp_min', 'humidity',
)
NUMERIC_FIELDS = (
    'min_price', 'max_price', 'modal_price', 'arrivals_tonnes',
    'rainfall_mm', 'temp_max', 'temp_min', 'humidity',
)
REQUIRED_FIELDS = ('state', 'district', 'market', 'commodity')


# ── Parsing ───────────────────────────────────────────────────

def parse_date(value):
    """Tolerant date parser: YYYY-MM-DD, DD/MM/YYYY, DD-MM-YYYY. None when unparseable."""
    if value is None or value == '':
        return None
    if isinstance(value, (datetime.date, datetime.datetime)):
        return as_date(value)
    text = str(value).strip()[:10]
    for fmt in DATE_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_number(value):
    """Accepts numbers and numeric strings ("2,450.50"). None when blank or invalid."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace(',', '').strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def normalise_raw_record(record):
    """
    Maps one raw ingestion record to observation columns.
    Returns None for records that cannot be stored (missing key fields,
    unparseable date, non-positive modal price).
    """
    if not isinstance(record, dict):
        return None
    lowered = {str(k).strip().lower(): v for k, v in record.items()}

    row = {}
    for field in REQUIRED_FIELDS + ('variety', 'grade'):
        value = lowered.get(field)
        row[field] = str(value).strip() if value not in (None, '') else None
    if not all(row[f] for f in REQUIRED_FIELDS):
        return None

    row['arrival_date'] = parse_date(lowered.get('arrival_date'))
    if row['arrival_date'] is None:
        return None

    for field in NUMERIC_FIELDS:
        row[field] = parse_number(lowered.get(field))
    if row['modal_price'] is None or row['modal_price'] <= 0:
        return None

    row['policy_event'] = lowered.get('policy_event')
    row['source'] = lowered.get('source') or 'agmarknet'
    return row


def _annotations(commodity, day):
    is_sowing, is_harvest = season_flags(commodity, day)
    return {
        'is_festival': is_festival_period(day),
        'is_sowing_season': is_sowing,
        'is_harvest_season': is_harvest,
    }


def to_timeseries_row(raw):
    """Canonical mandi_timeseries row for a raw observation dict."""
    day = as_date(raw['arrival_date'])
    row = {field: raw.get(field) for field in OBSERVATION_FIELDS}
    row['arrival_date'] = day
    row.update(_annotations(raw.get('commodity'), day))
    if raw.get('is_festival'):
        row['is_festival'] = True
    row.update({
        'week_of_year': week_of_year(day),
        'month': day.month,
        'msp_price': msp_for(raw.get('commodity')),
        'policy_event': raw.get('policy_event'),
        'data_source': raw.get('source') or 'agmarknet',
    })
    return row


# ── Upserts ───────────────────────────────────────────────────

def _upsert_row(model, row):
    key = {k: row.get(k) for k in NATURAL_KEY}
    existing = model.query.filter_by(**key).first()
    if existing is None:
        db.session.add(model(**row))
    else:
        for column, value in row.items():
            setattr(existing, column, value)


def _upsert_chunked(model, rows, batch_size, label):
    """Upserts rows chunk by chunk. Returns (written, failed_chunks)."""
    written = 0
    failed = 0
    for start in range(0, len(rows), batch_size):
        chunk = rows[start:start + batch_size]
        try:
            for row in chunk:
                _upsert_row(model, row)
            db.session.commit()
            written += len(chunk)
        except SQLAlchemyError as e:
            db.session.rollback()
            failed += 1
            error = PersistenceError(f'{label} chunk {start // batch_size} ({len(chunk)} rows) failed: {e}')
            logger.error(error.message)
    return written, failed


def upsert_raw_prices(rows, batch_size=FEATURE_BATCH_SIZE):
    prepared = []
    for row in rows:
        prepared.append({**row, **_annotations(row['commodity'], row['arrival_date'])})
    written, _ = _upsert_chunked(MandiPrice, prepared, batch_size, 'mandi_prices')
    return written


def upsert_timeseries(rows, batch_size=FEATURE_BATCH_SIZE):
    written, _ = _upsert_chunked(MandiTimeseries, rows, batch_size, 'mandi_timeseries')
    logger.info(f"Upserted {written}/{len(rows)} rows into mandi_timeseries")
    return written


def upsert_features(records, batch_size=FEATURE_BATCH_SIZE):
    written, failed = _upsert_chunked(MandiFeature, records, batch_size, 'mandi_features')
    if failed:
        logger.warning(f"Feature upsert: {failed} chunk(s) skipped")
    logger.info(f"Upserted {written}/{len(records)} feature rows")
    return written


def ingest_raw_records(records, batch_size=FEATURE_BATCH_SIZE):
    """Admin ingestion: raw records → mandi_prices. Returns {received, upserted, skipped}."""
    if not isinstance(records, list):
        raise ValidationError('records must be a list')

    rows = []
    for record in records:
        row = normalise_raw_record(record)
        if row is not None:
            rows.append(row)

    # Last write wins for duplicate keys within one payload
    deduped = {tuple(r.get(k) for k in NATURAL_KEY): r for r in rows}
    upserted = upsert_raw_prices(list(deduped.values()), batch_size)

    stats = {
        'received': len(records),
        'upserted': upserted,
        'skipped': len(records) - upserted,
    }
    logger.info(f"Ingestion: {stats}")
    return stats


# ── Feature building ──────────────────────────────────────────

def cross_market_averages(sample_size=CROSS_MARKET_SAMPLE):
    """
    Average modal price per state and nationally over the latest raw rows.
    Returns (state_avg_map, national_avg).
    """
    rows = (
        db.session.query(MandiPrice.state, MandiPrice.modal_price)
        .order_by(MandiPrice.arrival_date.desc())
        .limit(sample_size)
        .all()
    )
    if not rows:
        return {}, None

    df = pd.DataFrame(rows, columns=['state', 'modal_price']).dropna(subset=['modal_price'])
    if df.empty:
        return {}, None
    state_avg = df.groupby('state')['modal_price'].mean().to_dict()
    return {k: float(v) for k, v in state_avg.items()}, float(df['modal_price'].mean())


def build_feature_records(observations, state_avg_map=None, national_avg=None):
    """
    One feature record per observation. Observations are grouped by
    (state, district, market, commodity, variety); each one sees at most the
    90 most recent strictly-older observations of its group as history.
    """
    state_avg_map = state_avg_map or {}
    groups = defaultdict(list)
    for obs in observations:
        key = (obs['state'], obs['district'], obs['market'], obs['commodity'], obs.get('variety'))
        groups[key].append(obs)

    records = []
    for (state, district, market, commodity, variety), group in groups.items():
        ordered = sorted(group, key=lambda r: as_date(r['arrival_date']), reverse=True)
        for i, current in enumerate(ordered):
            history = ordered[i + 1:i + 1 + FEATURE_HISTORY_DEPTH]
            features = compute_feature_row(
                current, history,
                state_avg_price=state_avg_map.get(state),
                national_avg_price=national_avg,
            )
            record = {
                'state': state, 'district': district, 'market': market,
                'commodity': commodity, 'variety': variety,
                'arrival_date': as_date(current['arrival_date']),
            }
            record.update(features)
            records.append(record)
    return records


# ── ETL run ───────────────────────────────────────────────────

def fetch_raw(state=None, commodity=None, start_date=None, end_date=None, limit=ETL_FETCH_LIMIT):
    query = MandiPrice.query
    if state:
        query = query.filter(MandiPrice.state == state)
    if commodity:
        query = query.filter(MandiPrice.commodity == commodity)
    if start_date:
        query = query.filter(MandiPrice.arrival_date >= start_date)
    if end_date:
        query = query.filter(MandiPrice.arrival_date <= end_date)
    rows = query.order_by(MandiPrice.arrival_date.desc()).limit(limit).all()
    return [
        {**r.observation_dict(), 'source': r.source, 'policy_event': r.policy_event, 'is_festival': r.is_festival}
        for r in rows
    ]


def run_etl(state=None, commodity=None, start_date=None, end_date=None,
            compute_features=True, limit=ETL_FETCH_LIMIT, batch_size=FEATURE_BATCH_SIZE):
    """
    Raw prices → canonical time series → feature store.

    Returns {fetched, timeseries_upserted, features_computed}. Only the
    initial fetch is allowed to raise.
    """
    start = parse_date(start_date) if start_date else None
    end = parse_date(end_date) if end_date else None
    if start_date and start is None:
        raise ValidationError(f'Invalid startDate: {start_date}')
    if end_date and end is None:
        raise ValidationError(f'Invalid endDate: {end_date}')
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError('limit must be a positive integer')

    logger.info(f"ETL start: state={state} commodity={commodity} range={start}..{end} limit={limit}")
    raw = fetch_raw(state, commodity, start, end, limit)
    stats = {'fetched': len(raw), 'timeseries_upserted': 0, 'features_computed': 0}
    if not raw:
        logger.info("ETL: no raw rows to process")
        return stats

    stats['timeseries_upserted'] = upsert_timeseries([to_timeseries_row(r) for r in raw], batch_size)

    if compute_features:
        state_avg_map, national_avg = cross_market_averages()
        records = build_feature_records(raw, state_avg_map, national_avg)
        stats['features_computed'] = upsert_features(records, batch_size)

    logger.info(f"ETL complete: {stats}")
    return stats
