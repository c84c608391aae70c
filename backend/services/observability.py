"""
Observability — JSON logs, request counters, forecast sources

- JsonFormatter on the app and root loggers
- per-endpoint request/error counts and mean latency
- forecasts served per source (external / statistical / synthetic_statistical)
- catch-all JSON 500 handler
- GET /metrics
"""

import json
import logging
import threading
import time
import traceback
from collections import defaultdict

from flask import request, g, jsonify
from werkzeug.exceptions import HTTPException


class JsonFormatter(logging.Formatter):
    """One JSON object per log line; `extra_data` is merged in."""

    def format(self, record):
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        log_data.update(getattr(record, 'extra_data', {}))
        if record.exc_info and record.exc_info[0]:
            log_data['exception'] = traceback.format_exception(*record.exc_info)
        return json.dumps(log_data, default=str)


class EndpointStats:
    __slots__ = ('requests', 'errors', 'latency_ms')

    def __init__(self):
        self.requests = 0
        self.errors = 0
        self.latency_ms = 0.0

    def to_dict(self):
        return {
            'requests': self.requests,
            'errors': self.errors,
            'avg_latency_ms': round(self.latency_ms / self.requests, 2) if self.requests else 0,
        }


class ApiMetrics:
    """In-process counters. Lost on restart."""

    def __init__(self):
        self._lock = threading.Lock()
        self.endpoints = defaultdict(EndpointStats)
        self.forecast_sources = defaultdict(int)

    def record_request(self, endpoint, latency_ms, is_error=False):
        with self._lock:
            stats = self.endpoints[endpoint]
            stats.requests += 1
            stats.latency_ms += latency_ms
            if is_error:
                stats.errors += 1

    def record_forecast(self, source):
        with self._lock:
            self.forecast_sources[source] += 1

    def reset(self):
        with self._lock:
            self.endpoints.clear()
            self.forecast_sources.clear()

    def snapshot(self):
        with self._lock:
            per_endpoint = {name: stats.to_dict() for name, stats in self.endpoints.items()}
            sources = dict(self.forecast_sources)
        total_requests = sum(s['requests'] for s in per_endpoint.values())
        total_errors = sum(s['errors'] for s in per_endpoint.values())
        return {
            'totals': {'total_requests': total_requests, 'total_errors': total_errors},
            'per_endpoint': per_endpoint,
            'forecasts_by_source': sources,
        }


metrics = ApiMetrics()


def setup_observability(app):
    """Installs JSON logging, request timing, the 500 handler and /metrics."""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    app.logger.handlers = [handler]
    app.logger.setLevel(logging.INFO)

    # Service loggers (price_service, forecaster, ...) propagate to root
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.INFO)

    @app.before_request
    def start_timer():
        g.start_time = time.time()

    @app.after_request
    def record_request(response):
        latency_ms = (time.time() - g.get('start_time', time.time())) * 1000
        metrics.record_request(request.endpoint or request.path, latency_ms, response.status_code >= 400)

        app.logger.info(
            f"{request.method} {request.path} -> {response.status_code} ({latency_ms:.0f}ms)",
            extra={'extra_data': {
                'type': 'request',
                'status': response.status_code,
                'latency_ms': round(latency_ms, 2),
                'ip': request.remote_addr,
            }}
        )
        return response

    @app.errorhandler(Exception)
    def handle_exception(e):
        if isinstance(e, HTTPException):
            return jsonify({'success': False, 'error': e.description}), e.code

        app.logger.error(
            f"Unhandled exception: {e}",
            exc_info=True,
            extra={'extra_data': {
                'type': 'error',
                'error_class': e.__class__.__name__,
                'path': request.path,
                'method': request.method,
            }}
        )
        return jsonify({'success': False, 'error': 'Internal server error'}), 500

    @app.route('/metrics')
    def metrics_endpoint():
        return jsonify(metrics.snapshot())

    return app
