"""
Accrual Scheduler

Background task that runs the daily ROI accrual pass
"""

from datetime import datetime, UTC
from typing import Optional

from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from config.autogrowth_config import get_config
from src.database.engine import get_session_maker
from src.services.autogrowth.service import AutogrowthService


async def run_scheduled_accrual(service: Optional[AutogrowthService] = None) -> dict:
    """
    Accrue ROI on every active position up to now

    Failed positions are reported and picked up again by the next run.
    """
    service = service or AutogrowthService(get_session_maker())
    start_time = datetime.now(UTC)
    logger.info("Starting scheduled accrual pass")

    try:
        result = await service.trigger_accrual(triggered_by="scheduler")
    except Exception as e:
        # Keep the scheduler alive; the next run retries the same positions
        logger.exception(f"Fatal error in scheduled accrual: {e}")
        return {"success": False, "error": str(e)}

    duration = (datetime.now(UTC) - start_time).total_seconds()
    if result.get("success"):
        logger.info(
            f"Scheduled accrual completed in {duration:.2f}s: "
            f"{result.get('positions_updated', 0)} updated, "
            f"{result.get('positions_matured', 0)} matured"
        )
    else:
        logger.error(f"Scheduled accrual finished with errors in {duration:.2f}s: {result.get('error')}")
    return result


def schedule_accrual_tasks(scheduler, service: Optional[AutogrowthService] = None):
    """
    Schedule the daily accrual pass

    Args:
        scheduler: APScheduler instance
        service: Service to run with (default: one bound to the app engine)
    """
    schedule = get_config().schedule

    scheduler.add_job(
        run_scheduled_accrual,
        CronTrigger(hour=schedule.accrual_hour, minute=schedule.accrual_minute, timezone="UTC"),
        kwargs={"service": service},
        id="autogrowth_accrual",
        name="Autogrowth daily ROI accrual",
        replace_existing=True,
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
    )

    logger.info(
        f"Accrual scheduler configured: daily at "
        f"{schedule.accrual_hour:02d}:{schedule.accrual_minute:02d} UTC"
    )
