import datetime
import socket
from unittest.mock import MagicMock, patch

import pytest
import requests

from services.errors import UpstreamUnavailable, ValidationError
from services.external_source import (
    PinnedAddressAdapter,
    pinned_request_target,
    try_external_forecast,
    validate_forecast_source_url,
)

BASE_DATE = datetime.date(2025, 6, 30)
PUBLIC_ADDR = [(socket.AF_INET, socket.SOCK_STREAM, 6, '', ('93.184.216.34', 443))]


def _addrinfo(address):
    family = socket.AF_INET6 if ':' in address else socket.AF_INET
    return [(family, socket.SOCK_STREAM, 6, '', (address, 443))]


def _response(status=200, body=None, json_error=False):
    response = MagicMock()
    response.status_code = status
    if json_error:
        response.json.side_effect = ValueError('not json')
    else:
        response.json.return_value = body
    return response


@pytest.mark.parametrize('url', [
    'http://169.254.169.254/latest',
    'http://example.com/forecast',
    'ftp://example.com/forecast',
    'https://169.254.169.254/latest/meta-data',
    'https://metadata.google.internal/computeMetadata/v1',
    'https://localhost/forecast',
    'https://127.0.0.1/forecast',
    'https://10.0.0.8/forecast',
    'https://[::1]/forecast',
    'https:///forecast',
    '',
])
def test_unsafe_urls_are_rejected_without_network(url):
    with patch('services.external_source.socket.getaddrinfo') as resolve, \
            patch('services.external_source.requests.Session.post') as post:
        with pytest.raises(ValidationError):
            validate_forecast_source_url(url)
        with pytest.raises(ValidationError):
            try_external_forecast(url, {}, 7, BASE_DATE)

    post.assert_not_called()
    if url.startswith('http://') or not url:
        resolve.assert_not_called()


@pytest.mark.parametrize('address', ['192.168.1.10', '172.16.5.5', '169.254.10.1', 'fe80::1', '100.64.1.1', '0.0.0.0'])
def test_hostnames_resolving_to_internal_addresses_are_rejected(address):
    with patch('services.external_source.socket.getaddrinfo', return_value=_addrinfo(address)), \
            patch('services.external_source.requests.Session.post') as post:
        with pytest.raises(ValidationError):
            validate_forecast_source_url('https://ml.example.com/forecast')
    post.assert_not_called()


def test_public_https_url_is_accepted():
    with patch('services.external_source.socket.getaddrinfo', return_value=PUBLIC_ADDR):
        assert validate_forecast_source_url('https://ml.example.com/forecast') == ['93.184.216.34']


def test_dns_failure_is_an_upstream_failure():
    with patch('services.external_source.socket.getaddrinfo', side_effect=socket.gaierror('nope')):
        with pytest.raises(UpstreamUnavailable):
            validate_forecast_source_url('https://ml.example.com/forecast')
        assert try_external_forecast('https://ml.example.com/forecast', {}, 7, BASE_DATE) is None


@pytest.mark.parametrize('outcome', [
    requests.Timeout('slow'),
    requests.ConnectionError('refused'),
    _response(status=500, body={'error': 'boom'}),
    _response(status=302, body={}),
    _response(json_error=True),
    _response(body={'unexpected': True}),
    _response(body=[1, 2, 3]),
    _response(body={'ensemble_prediction': 'high'}),
    _response(body={'ensemble_prediction': 2500, 'confidence_lower': 2600, 'confidence_upper': 2700}),
    _response(body={'ensemble_prediction': 2500, 'predicted_min': 2600, 'predicted_max': 2700}),
    _response(body={'ensemble_prediction': 2500, 'predicted_min': 2400, 'predicted_max': 2450}),
    _response(body={'forecasts': [{'predicted_modal': 2500}]}),   # 1 step for horizon 7
])
def test_upstream_failures_return_none(outcome):
    kwargs = {'side_effect': outcome} if isinstance(outcome, Exception) else {'return_value': outcome}
    with patch('services.external_source.socket.getaddrinfo', return_value=PUBLIC_ADDR), \
            patch('services.external_source.requests.Session.post', **kwargs) as post:
        assert try_external_forecast('https://ml.example.com/forecast', {'a': 1}, 7, BASE_DATE) is None
    assert post.call_count == 1


def test_single_step_response_is_normalised():
    body = {
        'arima_prediction': 2480, 'xgboost_prediction': 2510, 'lstm_prediction': 2530,
        'ensemble_prediction': 2505, 'confidence_lower': 2400, 'confidence_upper': 2600,
        'model_version': 'ml-api-1.3', 'model_weights': {'arima': 0.3, 'xgboost': 0.45, 'lstm': 0.25},
        'feature_importance': {'trend': 60, 'seasonality': 40},
    }
    with patch('services.external_source.socket.getaddrinfo', return_value=PUBLIC_ADDR), \
            patch('services.external_source.requests.Session.post', return_value=_response(body=body)) as post:
        result = try_external_forecast('https://ml.example.com/forecast', {'horizon': 7}, 7, BASE_DATE, timeout=10)

    _, kwargs = post.call_args
    assert kwargs['timeout'] == 10
    assert kwargs['allow_redirects'] is False

    step = result['forecasts'][0]
    assert step['horizon_days'] == 7
    assert step['target_date'] == '2025-07-07'
    assert step['predicted_modal'] == 2505.0
    assert step['components'] == {'arima': 2480, 'xgboost': 2510, 'lstm': 2530}
    assert result['model']['version'] == 'ml-api-1.3'


def test_multi_step_response_is_normalised():
    body = {'forecasts': [
        {'target_date': '2025-07-01', 'predicted_modal': 2500, 'confidence_lower': 2450, 'confidence_upper': 2550},
        {'target_date': '2025-07-02', 'predicted_modal': 2510, 'confidence_lower': 2440, 'confidence_upper': 2580},
    ]}
    with patch('services.external_source.socket.getaddrinfo', return_value=PUBLIC_ADDR), \
            patch('services.external_source.requests.Session.post', return_value=_response(body=body)):
        result = try_external_forecast('https://ml.example.com/forecast', {}, 2, BASE_DATE)

    assert [s['horizon_days'] for s in result['forecasts']] == [1, 2]
    assert result['forecasts'][1]['predicted_min'] == 2510.0


def test_request_goes_to_the_validated_address():
    body = {'forecasts': [{'predicted_modal': 2500}]}
    # A second lookup would return an internal address
    lookups = [PUBLIC_ADDR, _addrinfo('10.0.0.5')]
    with patch('services.external_source.socket.getaddrinfo', side_effect=lookups) as resolve, \
            patch('services.external_source.requests.Session.post', return_value=_response(body=body)) as post:
        result = try_external_forecast('https://ml.example.com/v1/forecast?m=1', {}, 1, BASE_DATE)

    assert result is not None
    assert resolve.call_count == 1
    args, kwargs = post.call_args
    assert args[0] == 'https://93.184.216.34/v1/forecast?m=1'
    assert kwargs['headers'] == {'Host': 'ml.example.com'}


def test_pinned_request_target_keeps_port_and_brackets_ipv6():
    assert pinned_request_target('https://ml.example.com:8443/f', '2606:2800:220:1::1') == (
        'https://[2606:2800:220:1::1]:8443/f', 'ml.example.com:8443',
    )
    assert pinned_request_target('https://ml.example.com:443/f', '93.184.216.34') == (
        'https://93.184.216.34:443/f', 'ml.example.com',
    )


def test_pinned_adapter_verifies_the_original_hostname():
    adapter = PinnedAddressAdapter('ml.example.com')

    assert adapter.poolmanager.connection_pool_kw['server_hostname'] == 'ml.example.com'
    assert adapter.poolmanager.connection_pool_kw['assert_hostname'] == 'ml.example.com'
