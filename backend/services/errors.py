"""
Domain errors for the forecasting engine.

Only ValidationError and AuthorizationError fail a whole request.
InsufficientDataError is surfaced to the caller, UpstreamUnavailable is
always recovered inside the external-source client, and PersistenceError
is logged per unit while the surrounding operation continues.
"""


class ForecastingError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'success': False, 'error': self.message, 'error_type': self.__class__.__name__}


class ValidationError(ForecastingError):
    """Missing or out-of-range request fields, unsafe forecast source URLs."""
    status_code = 400


class InsufficientDataError(ForecastingError):
    """Fewer historical points than the forecaster needs."""
    status_code = 422


class UpstreamUnavailable(ForecastingError):
    """External forecast source timed out, failed, or returned garbage."""
    status_code = 502


class PersistenceError(ForecastingError):
    """A single upsert/insert failed."""
    status_code = 500


class AuthorizationError(ForecastingError):
    """Caller is unauthenticated (401) or lacks the required role (403)."""
    status_code = 403


class NotFoundError(ForecastingError):
    """Referenced record (alert, prediction) does not exist."""
    status_code = 404
