from apscheduler.schedulers.background import BackgroundScheduler
import atexit
import logging
from datetime import datetime
from salonbook.extensions import db
from salonbook.services.bookings import auto_complete_bookings
from salonbook.services.holds import HoldManager
from salonbook.services.stores import SqlBookingStore, SqlHoldStore

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def sweep_expired_holds(now=None):
    """Mark active holds past expires_at as expired. Reads never rely on this."""
    manager = HoldManager(store=SqlHoldStore(db.session), booking_creator=None)
    return manager.expire_stale_holds(now or datetime.now())


def complete_finished_bookings(now=None):
    return auto_complete_bookings(SqlBookingStore(db.session), now or datetime.now())


def run_maintenance(app):
    current_time_str = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    with app.app_context():
        try:
            expired = sweep_expired_holds()
            completed = complete_finished_bookings()
            logger.info(
                f"[SCHEDULER] {current_time_str} - Expired {expired} hold(s), "
                f"auto-completed {completed} booking(s)"
            )
        except Exception as e:
            logger.error(f"[SCHEDULER] {current_time_str} - Maintenance failed: {e}")
            db.session.rollback()


def init_scheduler(app):
    """Initialize the APScheduler scheduler with Flask app context."""
    scheduler.add_job(
        run_maintenance,
        "interval",
        minutes=app.config["HOLD_SWEEP_INTERVAL_MINUTES"],
        args=[app],
        id="booking_maintenance",
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("[SCHEDULER] Scheduler started")
    else:
        logger.info("[SCHEDULER] Scheduler already running (skipping duplicate start)")

    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown(wait=False) if scheduler.running else None)
