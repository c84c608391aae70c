import os
from dotenv import load_dotenv

# Load .env file
load_dotenv()


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'hard-to-guess-string'
    # Fallback to SQLite for local development if no URL provided
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///mandi_forecast.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'super-secret-key-change-this-in-env'

    # App-wide limit applied by Flask-Limiter
    RATELIMIT_DEFAULT = os.environ.get('RATELIMIT_DEFAULT', '120 per minute')

    # Forecast entry point: N requests per window per client
    FORECAST_RATE_LIMIT = int(os.environ.get('FORECAST_RATE_LIMIT', 30))
    FORECAST_RATE_WINDOW_SECONDS = int(os.environ.get('FORECAST_RATE_WINDOW_SECONDS', 60))

    # External forecast proxy (seconds)
    EXTERNAL_FORECAST_TIMEOUT = float(os.environ.get('EXTERNAL_FORECAST_TIMEOUT', 10))

    # ETL / feature store
    FEATURE_BATCH_SIZE = int(os.environ.get('FEATURE_BATCH_SIZE', 500))
    ETL_FETCH_LIMIT = int(os.environ.get('ETL_FETCH_LIMIT', 1000))
    HISTORY_WINDOW_DAYS = int(os.environ.get('HISTORY_WINDOW_DAYS', 90))

    # Accuracy monitor
    DEFAULT_MAPE_THRESHOLD = float(os.environ.get('DEFAULT_MAPE_THRESHOLD', 15))

    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    JWT_SECRET_KEY = 'test-secret-key-with-enough-length-for-hs256'
    RATELIMIT_ENABLED = False
    FORECAST_RATE_LIMIT = 5
    SCHEDULER_ENABLED = False
