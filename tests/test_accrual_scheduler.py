"""
Tests for the daily accrual job
"""

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.services.autogrowth.exceptions import PersistenceError
from src.tasks.accrual_scheduler import run_scheduled_accrual, schedule_accrual_tasks
from src.utils.clock import utc_now
from tests.conftest import add_tier, days_ago, open_position


def test_schedule_registers_daily_job(service):
    scheduler = AsyncIOScheduler(timezone="UTC")

    schedule_accrual_tasks(scheduler, service=service)

    job = scheduler.get_job("autogrowth_accrual")
    assert job is not None
    assert job.max_instances == 1
    assert job.coalesce is True
    assert job.kwargs == {"service": service}
    assert str(job.trigger) == "cron[hour='0', minute='5']"


@pytest.mark.asyncio
async def test_scheduled_run_accrues(session_maker, service):
    await add_tier(session_maker, 1, "0", None, days=30, daily_roi="0.01")
    await open_position(session_maker, "u1", 1, "1000", days_ago(2, now=utc_now()))

    result = await run_scheduled_accrual(service)

    assert result["success"] is True
    assert result["positions_updated"] == 1


@pytest.mark.asyncio
async def test_scheduled_run_survives_errors(service, monkeypatch):
    async def explode(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(service, "trigger_accrual", explode)

    result = await run_scheduled_accrual(service)

    assert result == {"success": False, "error": "unexpected"}


@pytest.mark.asyncio
async def test_scheduled_run_reports_persistence_failure(service, monkeypatch):
    async def down(*args, **kwargs):
        raise PersistenceError("Failed to load active positions")

    monkeypatch.setattr(service.accrual_engine, "accrue", down)

    result = await run_scheduled_accrual(service)

    assert result["success"] is False
    assert result["code"] == "persistence_error"
