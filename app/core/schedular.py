import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.database import SessionLocal
from app.services.challenge import ChallengeService

logger = logging.getLogger(__name__)


def expire_overdue_challenges() -> int:
    """
    Scheduled task that expires challenges whose acceptance or completion
    deadline has passed and settles them.
    """
    db = SessionLocal()
    try:
        expired = ChallengeService(db).expire_overdue()
        logger.info(f"Challenge expiry sweep completed. Expired {expired} challenge(s).")
        return expired
    except Exception as e:
        db.rollback()
        logger.error(f"Error during challenge expiry sweep: {e}")
        return 0
    finally:
        db.close()


def start_scheduler():
    """
    Initialize and start the APScheduler for the challenge expiry sweep.
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        expire_overdue_challenges,
        trigger=IntervalTrigger(minutes=settings.challenge_sweep_minutes),
        id="challenge_expiry_sweep",
        name="Expire overdue challenges",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        f"Challenge scheduler started. Sweep every {settings.challenge_sweep_minutes} minute(s)."
    )

    return scheduler


def shutdown_scheduler(scheduler: AsyncIOScheduler):
    """
    Gracefully shutdown the scheduler.
    """
    if scheduler:
        scheduler.shutdown()
        logger.info("Challenge scheduler shut down.")
