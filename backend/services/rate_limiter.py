"""
Fixed-Window Rate Limiter — guards the forecast entry point

One instance per app (stored on app.extensions). Clock and storage are
injected so tests can drive time and a shared store can replace the dict.
Counters live in process memory and reset on restart.
"""

import math
import threading
import time
from functools import wraps

from flask import current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

EXTENSION_KEY = 'forecast_rate_limiter'


class RateLimitDecision:
    __slots__ = ('allowed', 'remaining', 'retry_after')

    def __init__(self, allowed, remaining, retry_after):
        self.allowed = allowed
        self.remaining = remaining
        self.retry_after = retry_after


class FixedWindowRateLimiter:
    """
    N hits per window per key. storage maps key -> [count, window_reset_at].
    Increment-or-reset happens under one lock. Expired keys are swept at most
    once per window.
    """

    def __init__(self, limit, window_seconds=60, clock=time.monotonic, storage=None):
        if limit < 1:
            raise ValueError('limit must be at least 1')
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self.storage = storage if storage is not None else {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    def hit(self, key):
        now = self.clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            entry = self.storage.get(key)
            if entry is None or now >= entry[1]:
                entry = [0, now + self.window_seconds]
            if entry[0] >= self.limit:
                self.storage[key] = entry
                return RateLimitDecision(False, 0, max(entry[1] - now, 0))
            entry[0] += 1
            self.storage[key] = entry
            return RateLimitDecision(True, self.limit - entry[0], 0)

    def _sweep(self, now):
        for key in [k for k, entry in self.storage.items() if now >= entry[1]]:
            del self.storage[key]
        self._next_sweep = now + self.window_seconds

    def reset(self, key=None):
        with self._lock:
            if key is None:
                self.storage.clear()
            else:
                self.storage.pop(key, None)


def client_identity():
    """JWT identity when a valid token is present, else the remote address."""
    try:
        verify_jwt_in_request(optional=True)
        identity = get_jwt_identity()
    except (JWTExtendedException, PyJWTError):
        # Expired or malformed tokens are limited by address
        identity = None
    if identity:
        return f'user:{identity}'
    return f'ip:{request.remote_addr or "unknown"}'


def rate_limited(view):
    """Applies the app's FixedWindowRateLimiter to a view."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        limiter = current_app.extensions.get(EXTENSION_KEY)
        if limiter is not None:
            decision = limiter.hit(client_identity())
            if not decision.allowed:
                retry_after = max(1, math.ceil(decision.retry_after))
                response = jsonify({
                    'success': False,
                    'error': 'Rate limit exceeded. Try again later.',
                    'retry_after': retry_after,
                })
                response.status_code = 429
                response.headers['Retry-After'] = str(retry_after)
                return response
        return view(*args, **kwargs)
    return wrapper
