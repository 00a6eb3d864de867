import atexit
import logging
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler

from services import purge_expired_announcements

logger = logging.getLogger(__name__)


def purge_announcements_job(app):
    """
    Job to delete announcements whose expiry has passed, together with their
    per-farmer read receipts.
    """
    with app.app_context():
        now = datetime.now()
        logger.info("Running scheduled job: purging announcements expired before %s", now.strftime('%Y-%m-%d %H:%M'))
        removed = purge_expired_announcements(now=now)
        if not removed:
            logger.info("No expired announcements to purge.")
            return removed
        logger.info("Purged %d expired announcements.", removed)
        return removed


def start_scheduler(app):
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        purge_announcements_job,
        'cron',
        args=[app],
        hour=app.config['ANNOUNCEMENT_PURGE_HOUR'],
        minute=app.config['ANNOUNCEMENT_PURGE_MINUTE'],
        id='purge_expired_announcements',
        replace_existing=True,
    )
    scheduler.start()
    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown())
    return scheduler
