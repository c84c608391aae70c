import datetime
import socket
from unittest.mock import MagicMock, patch

import requests
from flask_jwt_extended import create_access_token

from _helpers import MARKET_KEY, seed_timeseries
from database.db import db
from database.models import MandiPrice, MandiTimeseries, MlAlert, MlPrediction

PUBLIC_ADDR = [(socket.AF_INET, socket.SOCK_STREAM, 6, '', ('93.184.216.34', 443))]
EXTERNAL_URL = 'https://ml.example.com/forecast'


def _body(**overrides):
    return {**MARKET_KEY, 'horizon': 7, **overrides}


def _raw(day, modal):
    return {**MARKET_KEY, 'variety': 'Red', 'arrival_date': day, 'modal_price': modal}


# ── Forecast ──

def test_forecast_uses_stored_history(client):
    seed_timeseries([2000.0 + 10 * i for i in range(30)])

    res = client.post('/price/forecast', json=_body())

    assert res.status_code == 200
    data = res.get_json()
    assert data['success'] is True
    assert data['source'] == 'statistical'
    assert len(data['forecasts']) == 7
    assert data['persisted'] == 7
    assert data['historical_summary']['days_analyzed'] == 30
    assert data['historical_summary']['latest_price'] == 2290.0
    assert MlPrediction.query.count() == 7
    assert {p.source for p in MlPrediction.query.all()} == {'statistical'}


def test_repeat_forecast_updates_pending_rows(client):
    seed_timeseries([2000.0 + 10 * i for i in range(30)])

    first = client.post('/price/forecast', json=_body(horizon=3)).get_json()
    second = client.post('/price/forecast', json=_body(horizon=3)).get_json()

    assert first['persisted'] == second['persisted'] == 3
    assert MlPrediction.query.count() == 3
    assert sorted(p.horizon_days for p in MlPrediction.query.all()) == [1, 2, 3]


def test_repeat_forecast_leaves_resolved_rows_alone(client):
    seed_timeseries([2000.0 + 10 * i for i in range(30)])
    client.post('/price/forecast', json=_body(horizon=2))
    resolved = MlPrediction.query.filter_by(horizon_days=1).one()
    resolved.actual_price = 2310.0
    resolved.ensemble_prediction = 1.0
    db.session.commit()

    data = client.post('/price/forecast', json=_body(horizon=2)).get_json()

    assert data['persisted'] == 1
    assert MlPrediction.query.count() == 2
    assert MlPrediction.query.filter_by(horizon_days=1).one().ensemble_prediction == 1.0


def test_forecast_falls_back_to_raw_prices(client):
    start = datetime.date(2025, 2, 1)
    for i in range(10):
        db.session.add(MandiPrice(**MARKET_KEY, arrival_date=start + datetime.timedelta(days=i), modal_price=1500.0))
    db.session.commit()

    data = client.post('/price/forecast', json=_body(horizon=3)).get_json()

    assert data['source'] == 'statistical'
    assert data['forecasts'][0]['predicted_modal'] == 1500.0


def test_forecast_without_history_is_synthetic(client):
    res = client.post('/price/forecast', json=_body(horizon=5))

    data = res.get_json()
    assert res.status_code == 200
    assert data['source'] == 'synthetic_statistical'
    assert len(data['forecasts']) == 5
    assert data['historical_summary']['days_analyzed'] == 90
    assert MandiTimeseries.query.count() == 0


def test_forecast_via_query_string(client):
    res = client.get('/price/forecast?state=Maharashtra&market=Pune&commodity=Onion&horizon=3')

    assert res.status_code == 200
    assert [s['horizon_days'] for s in res.get_json()['forecasts']] == [1, 2, 3]


def test_forecast_validation_errors(client):
    cases = [
        _body(horizon=0),
        _body(horizon=31),
        _body(horizon='soon'),
        {'state': 'Maharashtra', 'commodity': 'Onion'},
    ]
    for body in cases:
        res = client.post('/price/forecast', json=body)
        assert res.status_code == 400
        assert res.get_json()['success'] is False

    assert client.post('/price/forecast', data='not json', content_type='text/plain').status_code == 400
    assert MlPrediction.query.count() == 0


def test_metadata_url_is_rejected_before_any_request(client):
    with patch('services.external_source.requests.Session.post') as post:
        res = client.post('/price/forecast', json=_body(external_source_url='http://169.254.169.254/latest'))

    assert res.status_code == 400
    assert 'error' in res.get_json()
    post.assert_not_called()
    assert MlPrediction.query.count() == 0


def test_external_source_result_is_served(client):
    seed_timeseries([2000.0] * 10)
    response = MagicMock(status_code=200)
    response.json.return_value = {'forecasts': [
        {'predicted_modal': 2050, 'confidence_lower': 1950, 'confidence_upper': 2150},
        {'predicted_modal': 2080, 'confidence_lower': 1960, 'confidence_upper': 2200},
    ]}

    with patch('services.external_source.socket.getaddrinfo', return_value=PUBLIC_ADDR), \
            patch('services.external_source.requests.Session.post', return_value=response) as post:
        data = client.post('/price/forecast', json=_body(horizon=2, external_source_url=EXTERNAL_URL)).get_json()

    assert data['source'] == 'external'
    assert [s['predicted_modal'] for s in data['forecasts']] == [2050.0, 2080.0]
    assert data['forecasts'][0]['target_date'] == '2025-01-11'
    payload = post.call_args.kwargs['json']
    assert payload['horizon'] == 2
    assert len(payload['history']) == 10
    assert MlPrediction.query.filter_by(source='external').count() == 2


def test_external_failure_falls_back_to_statistical(client):
    seed_timeseries([2000.0] * 10)

    with patch('services.external_source.socket.getaddrinfo', return_value=PUBLIC_ADDR), \
            patch('services.external_source.requests.Session.post', side_effect=requests.Timeout('slow')):
        res = client.post('/price/forecast', json=_body(horizon=2, external_source_url=EXTERNAL_URL))

    assert res.status_code == 200
    assert res.get_json()['source'] == 'statistical'


def test_forecast_rate_limit(client):
    # TestConfig allows 5 per window; rejected requests still count
    for _ in range(5):
        assert client.post('/price/forecast', json={}).status_code == 400

    res = client.post('/price/forecast', json=_body())

    assert res.status_code == 429
    assert int(res.headers['Retry-After']) >= 1
    assert res.get_json()['success'] is False


def test_rate_limit_is_per_identity(client, auth_headers):
    for _ in range(5):
        client.post('/price/forecast', json={})

    assert client.post('/price/forecast', json={}).status_code == 429
    assert client.post('/price/forecast', json={}, headers=auth_headers('farmer-7')).status_code == 400


def test_bad_tokens_are_limited_by_address(client, app):
    expired = create_access_token(identity='farmer-7', expires_delta=datetime.timedelta(seconds=-1))
    headers = [{'Authorization': 'Bearer not-a-jwt'}, {'Authorization': f'Bearer {expired}'}]

    for i in range(5):
        res = client.post('/price/forecast', json={}, headers=headers[i % 2])
        assert res.status_code == 400

    assert client.post('/price/forecast', json={}).status_code == 429


def test_metrics_count_forecasts_by_source(client):
    client.post('/price/forecast', json=_body(horizon=1))

    data = client.get('/metrics').get_json()

    assert data['forecasts_by_source'] == {'synthetic_statistical': 1}
    assert data['totals']['total_requests'] >= 1


# ── ETL ──

def test_etl_requires_admin(client, auth_headers):
    body = {'records': [_raw('2025-03-01', 2000)]}

    assert client.post('/etl/ingest', json=body).status_code == 401
    assert client.post('/etl/ingest', json=body, headers=auth_headers('farmer-1')).status_code == 403
    assert client.post('/etl/run', json={}, headers=auth_headers('farmer-1')).status_code == 403
    assert MandiPrice.query.count() == 0


def test_etl_ingest_and_run(client, admin_headers):
    records = [_raw(f'2025-03-{d:02d}', 2000 + d) for d in range(1, 11)] + [{'state': 'Goa'}]

    ingest = client.post('/etl/ingest', json={'records': records}, headers=admin_headers)
    assert ingest.status_code == 200
    assert ingest.get_json()['stats'] == {'received': 11, 'upserted': 10, 'skipped': 1}

    run = client.post('/etl/run', json={'commodity': 'Onion', 'startDate': '2025-03-05'}, headers=admin_headers)
    assert run.status_code == 200
    assert run.get_json()['stats'] == {'fetched': 6, 'timeseries_upserted': 6, 'features_computed': 6}


def test_etl_input_errors(client, admin_headers):
    assert client.post('/etl/ingest', json={'records': 'x'}, headers=admin_headers).status_code == 400
    assert client.post('/etl/run', json={'startDate': 'soon'}, headers=admin_headers).status_code == 400
    assert client.post('/etl/run', json={'limit': 'all'}, headers=admin_headers).status_code == 400

    empty = client.post('/etl/run', json={'commodity': 'Saffron'}, headers=admin_headers).get_json()
    assert empty['message'] == 'No data to process'


# ── Monitoring ──

def test_monitor_actions(client):
    res = client.post('/metrics/monitor', json={'action': 'check_alerts'})
    assert res.status_code == 200
    assert res.get_json() == {'success': True, 'action': 'check_alerts', 'count': 0, 'alerts': []}

    evaluate = client.post('/metrics/monitor', json={'action': 'evaluate', 'commodity': 'Onion'}).get_json()
    assert evaluate['evaluated'] is False

    assert client.post('/metrics/monitor', json={'action': 'update_actuals'}).get_json()['checked'] == 0


def test_monitor_rejects_missing_or_unknown_action(client):
    assert client.post('/metrics/monitor', json={}).status_code == 400
    res = client.post('/metrics/monitor', json={'action': 'retrain'})
    assert res.status_code == 400
    assert 'Unknown action' in res.get_json()['error']


def test_resolve_alert(client, admin_headers, auth_headers):
    alert = MlAlert(alert_type='accuracy_degradation', severity='critical', message='MAPE 40%', commodity='Onion')
    db.session.add(alert)
    db.session.commit()
    url = f'/metrics/alerts/{alert.id}/resolve'

    assert client.post(url, headers=auth_headers('farmer-1')).status_code == 403

    res = client.post(url, headers=admin_headers)
    assert res.status_code == 200
    assert res.get_json()['alert']['resolved_by'] == 'admin-1'
    assert res.get_json()['alert']['is_resolved'] is True

    assert client.post('/metrics/alerts/nope/resolve', headers=admin_headers).status_code == 404


def test_scheduler_status(client):
    data = client.get('/metrics/scheduler').get_json()

    assert data['running'] is False
    assert isinstance(data['jobs'], list)
