"""
Tests for the daily ROI accrual pass
"""

from datetime import datetime, timedelta, UTC
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from src.core.enums import PositionStatus
from src.database import crud
from src.services.autogrowth.accrual_engine import AccrualEngine, plan_accrual
from src.services.autogrowth.exceptions import InvalidState, PersistenceError
from src.services.autogrowth.schemas import PositionSnapshot
from src.utils.clock import ensure_utc
from tests.conftest import NOW, add_tier, days_ago, load_position, open_position, set_position_fields


JAN_1 = datetime(2024, 1, 1, tzinfo=UTC)


def _snapshot(**overrides):
    data = dict(
        id=1,
        user_id="u1",
        tier_id=1,
        principal=Decimal("1000"),
        currency="USD",
        accrued_roi=Decimal("0"),
        status=PositionStatus.ACTIVE,
        opened_at=JAN_1,
        matures_at=JAN_1 + timedelta(days=30),
    )
    data.update(overrides)
    return PositionSnapshot(**data)


@pytest.fixture
async def tier_30d(session_maker):
    await add_tier(session_maker, 1, "0", None, days=30, daily_roi="0.01")


@pytest.fixture
def engine(session_maker):
    return AccrualEngine(session_maker)


# ===========================
# plan_accrual (pure)
# ===========================


def test_plan_stops_at_maturity():
    """Accruing well past the term credits exactly the term"""
    step = plan_accrual(_snapshot(), Decimal("0.01"), datetime(2024, 2, 15, tzinfo=UTC))

    assert step.elapsed_days == 30
    assert step.roi_increment == Decimal("300")
    assert step.new_accrued_roi == Decimal("300")
    assert step.matures is True


def test_plan_counts_whole_days_only():
    now = JAN_1 + timedelta(days=2, hours=18)
    step = plan_accrual(_snapshot(), Decimal("0.01"), now)

    assert step.elapsed_days == 2
    assert step.roi_increment == Decimal("20")
    assert step.new_last_calculation == JAN_1 + timedelta(days=2)
    assert step.matures is False


def test_plan_same_day_is_noop():
    step = plan_accrual(_snapshot(), Decimal("0.01"), JAN_1 + timedelta(hours=5))
    assert step.elapsed_days == 0
    assert step.roi_increment == Decimal("0")
    assert not step.changed


def test_plan_resumes_from_last_calculation():
    snapshot = _snapshot(
        accrued_roi=Decimal("50"),
        last_roi_calculation=JAN_1 + timedelta(days=5),
    )
    step = plan_accrual(snapshot, Decimal("0.01"), JAN_1 + timedelta(days=8))

    assert step.elapsed_days == 3
    assert step.new_accrued_roi == Decimal("80")


def test_plan_rejects_non_active():
    with pytest.raises(InvalidState):
        plan_accrual(_snapshot(status=PositionStatus.MATURED), Decimal("0.01"), JAN_1)


def test_plan_increment_is_quantized():
    snapshot = _snapshot(principal=Decimal("333.33333333"))
    step = plan_accrual(snapshot, Decimal("0.0643"), JAN_1 + timedelta(days=1))
    # 333.33333333 * 0.0643 = 21.433333333119
    assert step.roi_increment == Decimal("21.43333333")


# ===========================
# AccrualEngine
# ===========================


@pytest.mark.asyncio
async def test_accrue_matures_and_caps_roi(session_maker, engine, tier_30d):
    """1000 @ 1%/day for 30 days, accrued 45 days later, yields exactly 300"""
    position_id = await open_position(session_maker, "u1", 1, "1000", JAN_1)

    report = await engine.accrue(now=datetime(2024, 2, 15, tzinfo=UTC))

    assert report.success is True
    assert report.positions_updated == 1
    assert report.positions_matured == 1
    assert report.roi_distributed == Decimal("300")

    position = await load_position(session_maker, position_id)
    assert position.accrued_roi == Decimal("300")
    assert position.status == PositionStatus.MATURED.value
    assert ensure_utc(position.last_roi_calculation) == JAN_1 + timedelta(days=30)
    assert position.version == 2


@pytest.mark.asyncio
async def test_accrue_is_idempotent_for_same_now(session_maker, engine, tier_30d):
    position_id = await open_position(session_maker, "u1", 1, "1000", days_ago(4))

    first = await engine.accrue(now=NOW)
    second = await engine.accrue(now=NOW)

    assert first.positions_updated == 1
    assert second.positions_updated == 0
    assert second.roi_distributed == Decimal("0")

    position = await load_position(session_maker, position_id)
    assert position.accrued_roi == Decimal("40")


@pytest.mark.asyncio
async def test_split_passes_equal_single_pass(session_maker, engine, tier_30d):
    """Accruing at day 3 then day 10 gives the same total as accruing once at day 10"""
    opened = NOW - timedelta(days=10, hours=6)
    split_id = await open_position(session_maker, "split", 1, "2500", opened)
    single_id = await open_position(session_maker, "single", 1, "2500", opened)

    await engine.accrue(now=opened + timedelta(days=3, hours=7), user_id="split")
    await engine.accrue(now=NOW, user_id="split")
    await engine.accrue(now=NOW, user_id="single")

    split = await load_position(session_maker, split_id)
    single = await load_position(session_maker, single_id)
    assert split.accrued_roi == single.accrued_roi == Decimal("250")


@pytest.mark.asyncio
async def test_accrual_never_decreases(session_maker, engine, tier_30d):
    position_id = await open_position(session_maker, "u1", 1, "1000", days_ago(20))

    seen = []
    for offset in (5, 3, 10, 10, 25):
        await engine.accrue(now=days_ago(20) + timedelta(days=offset))
        seen.append((await load_position(session_maker, position_id)).accrued_roi)

    assert seen == sorted(seen)
    assert seen[-1] == Decimal("200")


@pytest.mark.asyncio
async def test_fractional_day_is_carried_to_next_pass(session_maker, engine, tier_30d):
    opened = NOW - timedelta(days=2, hours=12)
    position_id = await open_position(session_maker, "u1", 1, "1000", opened)

    await engine.accrue(now=NOW)
    position = await load_position(session_maker, position_id)
    assert position.accrued_roi == Decimal("20")
    assert ensure_utc(position.last_roi_calculation) == opened + timedelta(days=2)

    # Half a day later the leftover 12h completes a third day
    await engine.accrue(now=NOW + timedelta(hours=12))
    position = await load_position(session_maker, position_id)
    assert position.accrued_roi == Decimal("30")


@pytest.mark.asyncio
async def test_accrue_restricted_to_user(session_maker, engine, tier_30d):
    mine = await open_position(session_maker, "me", 1, "1000", days_ago(3))
    theirs = await open_position(session_maker, "them", 1, "1000", days_ago(3))

    report = await engine.accrue(now=NOW, user_id="me")

    assert report.positions_updated == 1
    assert (await load_position(session_maker, mine)).accrued_roi == Decimal("30")
    assert (await load_position(session_maker, theirs)).accrued_roi == Decimal("0")


@pytest.mark.asyncio
async def test_malformed_position_is_skipped(session_maker, engine, tier_30d):
    """A row that breaks ledger invariants is reported and left alone"""
    bad_id = await open_position(session_maker, "u1", 1, "1000", days_ago(3))
    good_id = await open_position(session_maker, "u2", 1, "1000", days_ago(3))
    await set_position_fields(session_maker, bad_id, claimed_roi=Decimal("5"))

    report = await engine.accrue(now=NOW)

    assert report.success is True
    assert report.positions_skipped == 1
    assert report.positions_updated == 1
    assert report.failures[0].position_id == bad_id
    assert report.failures[0].code == "invalid_state"
    assert (await load_position(session_maker, bad_id)).accrued_roi == Decimal("0")
    assert (await load_position(session_maker, good_id)).accrued_roi == Decimal("30")


@pytest.mark.asyncio
async def test_partial_persistence_failure(session_maker, engine, tier_30d, monkeypatch):
    """One failing write marks the pass unsuccessful but others still land"""
    ids = [await open_position(session_maker, f"u{i}", 1, "1000", days_ago(2)) for i in range(3)]
    broken = ids[1]
    original = crud.update_position_with_version_check

    async def flaky_update(session, position_id, *args, **kwargs):
        if position_id == broken:
            raise OperationalError("UPDATE user_positions", {}, Exception("disk I/O error"))
        return await original(session, position_id, *args, **kwargs)

    monkeypatch.setattr(crud, "update_position_with_version_check", flaky_update)

    report = await engine.accrue(now=NOW)

    assert report.success is False
    assert report.positions_failed == 1
    assert report.positions_updated == 2
    assert report.failures[0].position_id == broken
    assert report.failures[0].code == PersistenceError.code

    monkeypatch.undo()
    assert (await load_position(session_maker, ids[0])).accrued_roi == Decimal("20")
    assert (await load_position(session_maker, broken)).accrued_roi == Decimal("0")
    assert (await load_position(session_maker, ids[2])).accrued_roi == Decimal("20")

    # The failed position catches up on the next pass
    retry = await engine.accrue(now=NOW)
    assert retry.success is True
    assert (await load_position(session_maker, broken)).accrued_roi == Decimal("20")


@pytest.mark.asyncio
async def test_lost_version_race_is_counted_as_conflict(session_maker, engine, tier_30d, monkeypatch):
    await open_position(session_maker, "u1", 1, "1000", days_ago(2))

    async def always_stale(*args, **kwargs):
        return False

    monkeypatch.setattr(crud, "update_position_with_version_check", always_stale)

    report = await engine.accrue(now=NOW)

    assert report.success is True
    assert report.positions_conflicted == 1
    assert report.positions_updated == 0


@pytest.mark.asyncio
async def test_load_failure_raises_persistence_error(engine, tier_30d, monkeypatch):
    async def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(crud, "get_active_positions", broken)

    with pytest.raises(PersistenceError):
        await engine.accrue(now=NOW)


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(session_maker, engine, tier_30d):
    position_id = await open_position(session_maker, "u1", 1, "1000", days_ago(40))

    report = await engine.accrue(now=NOW, dry_run=True)

    assert report.positions_updated == 1
    assert report.positions_matured == 1
    assert report.roi_distributed == Decimal("300")

    position = await load_position(session_maker, position_id)
    assert position.status == PositionStatus.ACTIVE.value
    assert position.accrued_roi == Decimal("0")
    assert position.version == 1
