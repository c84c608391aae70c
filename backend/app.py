from flask import Flask, jsonify
from flask_cors import CORS
from config import Config
from database.db import db
from routes.price_routes import price_bp
from routes.etl_routes import etl_bp
from routes.evaluation_routes import evaluation_bp
from services.errors import ForecastingError
from services.rate_limiter import EXTENSION_KEY, FixedWindowRateLimiter
import atexit
import logging

def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    from flask_jwt_extended import JWTManager
    jwt = JWTManager(app)

    db.init_app(app)
    CORS(app)

    # ── Rate Limiting ──
    # App-wide default via Flask-Limiter; the forecast entry point also has
    # its own fixed-window limiter keyed by JWT identity or client address.
    try:
        from flask_limiter import Limiter
        from flask_limiter.util import get_remote_address
        limiter = Limiter(
            get_remote_address,
            app=app,
            default_limits=[app.config.get('RATELIMIT_DEFAULT', '120 per minute')],
            storage_uri="memory://",
        )
        app.logger.info(f"Rate limiting enabled: {app.config.get('RATELIMIT_DEFAULT')} general")
    except ImportError:
        app.logger.warning("Flask-Limiter not installed. App-wide rate limiting disabled.")

    app.extensions[EXTENSION_KEY] = FixedWindowRateLimiter(
        limit=app.config.get('FORECAST_RATE_LIMIT', 30),
        window_seconds=app.config.get('FORECAST_RATE_WINDOW_SECONDS', 60),
    )

    # ── Observability ──
    try:
        from services.observability import setup_observability
        setup_observability(app)
    except Exception as e:
        logging.warning(f"Observability setup failed: {e}")

    @app.errorhandler(ForecastingError)
    def handle_forecasting_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{e.__class__.__name__}: {e.message}")
        return jsonify({'success': False, 'error': e.message}), e.status_code

    app.register_blueprint(price_bp)
    app.register_blueprint(etl_bp)
    app.register_blueprint(evaluation_bp)

    with app.app_context():
        db.create_all()

    # ── Background Scheduler ──
    if app.config.get('SCHEDULER_ENABLED'):
        try:
            from services.scheduler import init_scheduler, shutdown_scheduler
            init_scheduler(app)
            atexit.register(shutdown_scheduler)
        except ImportError:
            app.logger.warning("APScheduler not installed. Background jobs disabled.")
        except Exception as e:
            app.logger.warning(f"Scheduler init failed: {e}")

    @app.route('/')
    def index():
        return {"message": "Mandi Price Forecasting API is running", "version": "2.0"}

    return app

if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=5000)
