"""
Background maintenance jobs (APScheduler), one scheduler per process.
"""
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from models import db
from utils.expiration_sweeper import expire_subscriptions, retry_panel_sync, warn_expiring_subscriptions
from utils.login_sessions import cleanup_login_sessions

logger = logging.getLogger(__name__)

INITIAL_EXPIRY_DELAY = timedelta(seconds=10)

scheduler = None


def expire_and_resync():
    expire_subscriptions()
    retry_panel_sync()


def _in_app_context(app, func):
    """Run a job inside the app context and always release the scoped session."""
    def job():
        with app.app_context():
            try:
                func()
            except Exception:
                logger.exception("Scheduled job %s failed", func.__name__)
            finally:
                db.session.remove()
    job.__name__ = func.__name__
    return job


def start_scheduler(app):
    """Start the maintenance scheduler once per process."""
    global scheduler
    if scheduler is not None and scheduler.running:
        return scheduler

    scheduler = BackgroundScheduler(timezone='UTC')
    scheduler.add_job(
        _in_app_context(app, expire_and_resync),
        'interval',
        hours=1,
        id='subscription_expiry',
        next_run_time=datetime.utcnow() + INITIAL_EXPIRY_DELAY,
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        _in_app_context(app, warn_expiring_subscriptions),
        'interval',
        hours=6,
        id='subscription_expiry_warnings',
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        _in_app_context(app, cleanup_login_sessions),
        'interval',
        minutes=10,
        id='login_session_cleanup',
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(
        "Maintenance jobs scheduled: expiry every hour (first in 10s), warnings every 6 hours, "
        "login session cleanup every 10 minutes"
    )
    return scheduler


def shutdown_scheduler():
    global scheduler
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
    scheduler = None
