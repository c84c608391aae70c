"""
External Forecast Source — Optional pass-through to a caller-supplied ML API

Two pieces:
- validate_forecast_source_url(): SSRF guard, runs before any request is made
- try_external_forecast(): one POST with a hard timeout, no retries, sent to
  the address the guard validated.
  Returns the normalised forecast dict, or None on any upstream failure so the
  caller can fall back to the statistical forecaster.
"""

import datetime
import ipaddress
import logging
import socket
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter

from services.errors import UpstreamUnavailable, ValidationError

logger = logging.getLogger('external_source')

DEFAULT_TIMEOUT = 10

METADATA_HOSTS = {
    '169.254.169.254',
    'fd00:ec2::254',
    '100.100.100.200',
    'metadata',
    'metadata.google.internal',
    'localhost',
}

# Ranges the `ipaddress` flags do not cover
BLOCKED_NETWORKS = [
    ipaddress.ip_network('100.64.0.0/10'),   # carrier-grade NAT (also Alibaba metadata)
]


def _is_public(address):
    ip = ipaddress.ip_address(address.split('%')[0])
    if getattr(ip, 'ipv4_mapped', None):
        ip = ip.ipv4_mapped
    if (ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved
            or ip.is_multicast or ip.is_unspecified):
        return False
    return not any(ip in net for net in BLOCKED_NETWORKS if net.version == ip.version)


def validate_forecast_source_url(url):
    """
    Raises ValidationError unless `url` is an https URL whose host is not a
    metadata service and resolves only to public addresses.

    Returns the list of resolved addresses. A DNS failure raises
    UpstreamUnavailable, which callers treat like any other upstream failure.
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError('external_source_url must be a non-empty string')

    parsed = urlparse(url.strip())
    if parsed.scheme != 'https':
        raise ValidationError('external_source_url must use https')

    host = (parsed.hostname or '').lower().rstrip('.')
    if not host:
        raise ValidationError('external_source_url must include a host')
    if host in METADATA_HOSTS or host.endswith('.localhost'):
        raise ValidationError(f'external_source_url host is not allowed: {host}')

    # Literal IPs are checked without touching DNS
    try:
        ipaddress.ip_address(host)
        literal = True
    except ValueError:
        literal = False

    if literal:
        addresses = [host]
    else:
        try:
            infos = socket.getaddrinfo(host, parsed.port or 443, proto=socket.IPPROTO_TCP)
        except socket.gaierror as e:
            raise UpstreamUnavailable(f'Could not resolve {host}: {e}')
        addresses = sorted({info[4][0] for info in infos})

    if not addresses:
        raise UpstreamUnavailable(f'{host} did not resolve to any address')

    for address in addresses:
        if address in METADATA_HOSTS or not _is_public(address):
            raise ValidationError(f'external_source_url resolves to a non-public address: {address}')
    return addresses


def _number(value, field):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UpstreamUnavailable(f'External forecast field {field!r} is not numeric')
    return float(value)


def _normalise_step(step, horizon, base_date):
    modal = _number(step.get('predicted_modal', step.get('ensemble_prediction')), 'predicted_modal')
    lower = _number(step.get('confidence_lower', modal), 'confidence_lower')
    upper = _number(step.get('confidence_upper', modal), 'confidence_upper')
    if not lower <= modal <= upper:
        raise UpstreamUnavailable('External forecast bounds are out of order')
    low = _number(step.get('predicted_min', modal), 'predicted_min')
    high = _number(step.get('predicted_max', modal), 'predicted_max')
    if not low <= modal <= high:
        raise UpstreamUnavailable('External forecast min/max are out of order')

    return {
        'target_date': step.get('target_date') or (base_date + datetime.timedelta(days=horizon)).isoformat(),
        'horizon_days': int(step.get('horizon_days', horizon)),
        'predicted_min': low,
        'predicted_modal': modal,
        'predicted_max': high,
        'confidence_lower': lower,
        'confidence_upper': upper,
        'confidence_level': float(step.get('confidence_level', 0.95)),
        'components': {
            'arima': step.get('arima_prediction'),
            'xgboost': step.get('xgboost_prediction'),
            'lstm': step.get('lstm_prediction'),
        },
    }


def normalise_response(body, horizon, base_date):
    """
    Accepts either a multi-step body ({"forecasts": [...]}, one step per day up
    to the requested horizon) or a single-step body carrying
    `ensemble_prediction` at the requested horizon.
    """
    if not isinstance(body, dict):
        raise UpstreamUnavailable('External forecast response is not a JSON object')

    if isinstance(body.get('forecasts'), list) and body['forecasts']:
        steps = [
            _normalise_step(step, i + 1, base_date)
            for i, step in enumerate(body['forecasts'])
            if isinstance(step, dict)
        ]
        if len(steps) != len(body['forecasts']):
            raise UpstreamUnavailable('External forecast steps must be objects')
        if len(steps) != horizon:
            raise UpstreamUnavailable(f'External forecast has {len(steps)} steps, expected {horizon}')
    elif 'ensemble_prediction' in body:
        steps = [_normalise_step(body, horizon, base_date)]
    else:
        raise UpstreamUnavailable('External forecast response has no forecasts')

    return {
        'forecasts': steps,
        'model': {
            'name': body.get('model_name', 'external'),
            'version': body.get('model_version', 'external'),
            'weights': body.get('model_weights'),
        },
        'feature_importance': body.get('feature_importance') or {},
        'top_drivers': body.get('top_drivers') or [],
        'statistics': body.get('statistics') or {},
    }


class PinnedAddressAdapter(HTTPAdapter):
    """
    Connects to an already-validated IP while presenting the original host
    for SNI and certificate checks, so the connection cannot be re-resolved
    to a different address.
    """

    def __init__(self, hostname, **kwargs):
        self.hostname = hostname
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs['server_hostname'] = self.hostname
        kwargs['assert_hostname'] = self.hostname
        super().init_poolmanager(*args, **kwargs)


def pinned_request_target(url, address):
    """Returns (url rewritten to `address`, Host header value)."""
    parsed = urlparse(url.strip())
    host = parsed.hostname
    ip_host = f'[{address}]' if ':' in address else address
    if parsed.port:
        netloc = f'{ip_host}:{parsed.port}'
        host_header = host if parsed.port == 443 else f'{host}:{parsed.port}'
    else:
        netloc = ip_host
        host_header = host
    return parsed._replace(netloc=netloc).geturl(), host_header


def _fetch_external(url, payload, horizon, base_date, timeout):
    addresses = validate_forecast_source_url(url)
    target, host_header = pinned_request_target(url, addresses[0])
    try:
        with requests.Session() as session:
            session.mount('https://', PinnedAddressAdapter(urlparse(url.strip()).hostname))
            response = session.post(
                target, json=payload, headers={'Host': host_header},
                timeout=timeout, allow_redirects=False,
            )
    except requests.RequestException as e:
        raise UpstreamUnavailable(f'External forecast request failed: {e}')

    if not 200 <= response.status_code < 300:
        raise UpstreamUnavailable(f'External forecast returned HTTP {response.status_code}')
    try:
        body = response.json()
    except ValueError:
        raise UpstreamUnavailable('External forecast returned a non-JSON body')
    try:
        return normalise_response(body, horizon, base_date)
    except (TypeError, ValueError) as e:
        raise UpstreamUnavailable(f'External forecast has malformed fields: {e}')


def try_external_forecast(url, payload, horizon, base_date, timeout=DEFAULT_TIMEOUT):
    """
    First stage of the forecast pipeline. Returns the normalised result or None.

    ValidationError from the URL guard propagates; every upstream failure
    yields None.
    """
    try:
        result = _fetch_external(url, payload, horizon, base_date, timeout)
    except UpstreamUnavailable as e:
        logger.warning(f"External forecast unavailable, falling back to statistical: {e.message}")
        return None

    logger.info(f"External forecast received from {urlparse(url).hostname} ({len(result['forecasts'])} steps)")
    return result
