# miragecodex/services/scheduler.py
import logging
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from miragecodex.database import async_session_maker
from miragecodex.services.credits import reconcile_pending_debits, reset_monthly_credits
from miragecodex.settings.config import settings

scheduler: Optional[AsyncIOScheduler] = None
logger = logging.getLogger(__name__)


def _pick_tz(name: Optional[str]):
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown APP_TZ %r; using UTC", name)
        return ZoneInfo("UTC")


def _trigger(cron_expr: str, default: dict, tz, label: str) -> CronTrigger:
    """Crontab from settings, else ``default``; an invalid crontab falls back too."""
    cron_expr = (cron_expr or "").strip()
    if cron_expr:
        try:
            trigger = CronTrigger.from_crontab(cron_expr, timezone=tz)
            logger.info("%s scheduled with '%s'", label, cron_expr)
            return trigger
        except ValueError:
            logger.warning("Invalid crontab for %s: %r; using default", label, cron_expr)
    logger.info("%s scheduled with default %s", label, default)
    return CronTrigger(timezone=tz, **default)


def start_scheduler() -> Optional[AsyncIOScheduler]:
    global scheduler
    if scheduler:
        return scheduler
    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled")
        return None

    tz = _pick_tz(settings.APP_TZ)
    scheduler = AsyncIOScheduler(timezone=tz)
    scheduler.add_job(
        job_monthly_credit_reset,
        _trigger(settings.CREDIT_RESET_CRON, {"minute": 0}, tz, "Monthly credit reset"),
        id="monthly_credit_reset",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        job_reconcile_pending_debits,
        _trigger(settings.DEBIT_RECONCILE_CRON, {"minute": "*/10"}, tz, "Pending debit reconciliation"),
        id="reconcile_pending_debits",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started")
    return scheduler


def stop_scheduler() -> None:
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Scheduler stopped")


async def job_monthly_credit_reset():
    async with async_session_maker() as db:
        count = await reset_monthly_credits(db)
    if count:
        logger.info("Monthly reset job refilled %d accounts", count)


async def job_reconcile_pending_debits():
    async with async_session_maker() as db:
        await reconcile_pending_debits(db)
