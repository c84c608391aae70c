"""
Background Scheduler — Periodic Jobs

Runs background tasks inside the Flask process using APScheduler:
- ETL + feature computation (nightly)
- Resolve predictions against actuals (hourly)
- Accuracy evaluation per tracked commodity (daily)
"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger('scheduler')

# The scheduler instance
scheduler = BackgroundScheduler()

# Flask app reference (set during init)
_flask_app = None


def init_scheduler(app):
    """
    Initialize and start the background scheduler.
    Must be called after app creation.
    """
    global _flask_app
    _flask_app = app

    # Job 1: Raw prices → time series → features (daily at 1 AM)
    scheduler.add_job(
        func=run_nightly_etl,
        trigger='cron',
        hour=1,
        id='etl_pipeline',
        name='ETL + Feature Computation',
        replace_existing=True,
    )

    # Job 2: Fill actual prices for matured predictions (every hour)
    scheduler.add_job(
        func=update_prediction_actuals,
        trigger='interval',
        hours=1,
        id='update_actuals',
        name='Update Prediction Actuals',
        replace_existing=True,
    )

    # Job 3: Evaluate accuracy and raise alerts (daily at 2 AM)
    scheduler.add_job(
        func=evaluate_models,
        trigger='cron',
        hour=2,
        id='model_evaluation',
        name='Model Evaluation',
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
    logger.info("Background scheduler started with 3 jobs")


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down")


def run_nightly_etl():
    """Process the latest raw batch into the time series and feature store."""
    if not _flask_app:
        return

    with _flask_app.app_context():
        try:
            from services.timeseries_store import run_etl
            stats = run_etl(
                compute_features=True,
                limit=_flask_app.config.get('ETL_FETCH_LIMIT', 1000),
                batch_size=_flask_app.config.get('FEATURE_BATCH_SIZE', 500),
            )
            logger.info(f"Nightly ETL complete: {stats}")
        except Exception as e:
            logger.error(f"Nightly ETL job failed: {e}")


def update_prediction_actuals():
    """Resolve PENDING predictions whose target date has passed."""
    if not _flask_app:
        return

    with _flask_app.app_context():
        try:
            from services.evaluation_service import EvaluationService
            result = EvaluationService.update_actuals()
            if result['updated'] > 0:
                logger.info(f"Actuals: {result['updated']} predictions resolved")
        except Exception as e:
            logger.error(f"Update actuals job failed: {e}")


def evaluate_models():
    """Evaluate every commodity with resolved predictions."""
    if not _flask_app:
        return

    with _flask_app.app_context():
        try:
            from services.evaluation_service import EvaluationService
            threshold = _flask_app.config.get('DEFAULT_MAPE_THRESHOLD', 15)
            commodities = EvaluationService.tracked_commodities()
            for commodity in commodities:
                EvaluationService.evaluate(commodity=commodity, threshold_mape=threshold)
            logger.info(f"Evaluation complete for {len(commodities)} commodities")
        except Exception as e:
            logger.error(f"Evaluation job failed: {e}")


def get_scheduler_status():
    """Returns status of all scheduled jobs."""
    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger),
        })
    return {
        'running': scheduler.running,
        'jobs': jobs,
    }
