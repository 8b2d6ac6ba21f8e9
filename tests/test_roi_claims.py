"""
Tests for manual ROI claims
"""

from decimal import Decimal

import pytest

from src.core.enums import PositionStatus, RoiClaimReason
from src.database import crud
from src.services.autogrowth.accrual_engine import AccrualEngine
from src.services.autogrowth.exceptions import (
    ConcurrentModification,
    NothingToClaim,
    PositionNotFound,
)
from src.services.autogrowth.ledger_lock import LedgerLock
from src.services.autogrowth.roi_claims import RoiClaimService
from src.services.autogrowth.status_service import StatusService
from src.services.autogrowth.upgrade_coordinator import UpgradeCoordinator
from tests.conftest import NOW, add_tier, days_ago, load_position, open_position


@pytest.fixture
async def tier_10d(session_maker):
    await add_tier(session_maker, 1, "0", None, days=10, daily_roi="0.01")


@pytest.fixture
def claims(session_maker, autogrowth_config):
    return RoiClaimService(session_maker, config=autogrowth_config)


async def _matured_position(session_maker, user_id, principal="1000", currency="USD"):
    position_id = await open_position(session_maker, user_id, 1, principal, days_ago(15), currency=currency)
    await AccrualEngine(session_maker).accrue(now=NOW, user_id=user_id)
    return position_id


@pytest.mark.asyncio
async def test_claim_single_matured_position(session_maker, claims, tier_10d):
    position_id = await _matured_position(session_maker, "u1")

    result = await claims.claim("u1", position_id=position_id, now=NOW)

    assert result.total_claimed == Decimal("100")
    assert result.positions_count == 1
    assert result.claimed_positions == [position_id]
    assert result.currency == "USD"

    position = await load_position(session_maker, position_id)
    assert position.status == PositionStatus.CLAIMED.value
    assert position.claimed_roi == Decimal("100")
    # Accrued history is kept
    assert position.accrued_roi == Decimal("100")
    assert position.closed_at is not None

    async with session_maker() as session:
        rows = await crud.get_roi_claims(session, "u1")
    assert len(rows) == 1
    assert rows[0].amount == Decimal("100")
    assert rows[0].reason == RoiClaimReason.MANUAL.value
    assert rows[0].upgrade_id is None


@pytest.mark.asyncio
async def test_claim_all_matured_positions(session_maker, claims, tier_10d):
    first = await _matured_position(session_maker, "u1", "1000")
    second = await _matured_position(session_maker, "u1", "500")
    active = await open_position(session_maker, "u1", 1, "800", days_ago(2))

    result = await claims.claim("u1", now=NOW)

    assert result.total_claimed == Decimal("150")
    assert sorted(result.claimed_positions) == [first, second]
    assert (await load_position(session_maker, active)).status == PositionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_mixed_currencies_have_no_single_currency(session_maker, claims, tier_10d):
    await _matured_position(session_maker, "u1", currency="USD")
    await _matured_position(session_maker, "u1", currency="USDT")

    result = await claims.claim("u1", now=NOW)

    assert result.positions_count == 2
    assert result.currency is None


@pytest.mark.asyncio
async def test_nothing_to_claim(session_maker, claims, tier_10d):
    await open_position(session_maker, "u1", 1, "1000", days_ago(2))

    with pytest.raises(NothingToClaim) as exc_info:
        await claims.claim("u1", now=NOW)
    assert exc_info.value.code == "no_claimable_roi"


@pytest.mark.asyncio
async def test_claim_twice_fails_second_time(session_maker, claims, tier_10d):
    position_id = await _matured_position(session_maker, "u1")
    await claims.claim("u1", position_id=position_id, now=NOW)

    with pytest.raises(PositionNotFound):
        await claims.claim("u1", position_id=position_id, now=NOW)
    with pytest.raises(NothingToClaim):
        await claims.claim("u1", now=NOW)


@pytest.mark.asyncio
async def test_cannot_claim_foreign_or_active_position(session_maker, claims, tier_10d):
    foreign = await _matured_position(session_maker, "someone-else")
    active = await open_position(session_maker, "u1", 1, "1000", days_ago(2))

    with pytest.raises(PositionNotFound):
        await claims.claim("u1", position_id=foreign, now=NOW)
    with pytest.raises(PositionNotFound):
        await claims.claim("u1", position_id=active, now=NOW)
    with pytest.raises(PositionNotFound):
        await claims.claim("u1", position_id=424242, now=NOW)

    assert (await load_position(session_maker, foreign)).status == PositionStatus.MATURED.value


@pytest.mark.asyncio
async def test_claim_respects_ledger_lock(session_maker, claims, tier_10d):
    position_id = await _matured_position(session_maker, "u1")
    await LedgerLock(session_maker).acquire("u1")

    with pytest.raises(ConcurrentModification):
        await claims.claim("u1", position_id=position_id, now=NOW)

    assert (await load_position(session_maker, position_id)).status == PositionStatus.MATURED.value


@pytest.mark.asyncio
async def test_stale_position_rolls_back_whole_claim(session_maker, claims, tier_10d, monkeypatch):
    first = await _matured_position(session_maker, "u1", "1000")
    second = await _matured_position(session_maker, "u1", "500")
    original = crud.update_position_with_version_check

    async def second_is_stale(session, position_id, *args, **kwargs):
        if position_id == second:
            return False
        return await original(session, position_id, *args, **kwargs)

    monkeypatch.setattr(crud, "update_position_with_version_check", second_is_stale)

    with pytest.raises(ConcurrentModification):
        await claims.claim("u1", now=NOW)

    monkeypatch.undo()
    assert (await load_position(session_maker, first)).status == PositionStatus.MATURED.value
    async with session_maker() as session:
        assert await crud.get_roi_claims(session, "u1") == []


# ===========================
# ROI left on closed positions
# ===========================


@pytest.fixture
async def upgrade_tiers(session_maker):
    await add_tier(session_maker, 1, "1000", "6000", days=30, daily_roi="0.005", name="Tier A")
    await add_tier(session_maker, 2, "6000", None, days=30, daily_roi="0.01", name="Tier B")


@pytest.mark.asyncio
async def test_claim_roi_kept_on_closed_position(session_maker, claims, upgrade_tiers, autogrowth_config):
    """Upgrade without auto-claim leaves 300 on the closed position; a claim pays it"""
    old_id = await open_position(session_maker, "u1", 1, "6000", days_ago(10))
    upgrade = await UpgradeCoordinator(session_maker, config=autogrowth_config).upgrade(
        "u1", 2, auto_claim_roi=False, now=NOW
    )

    result = await claims.claim("u1", now=NOW)

    assert result.claimed_positions == [old_id]
    assert result.total_claimed == Decimal("300")

    old = await load_position(session_maker, old_id)
    assert old.status == PositionStatus.CLOSED.value
    assert old.claimed_roi == Decimal("300")
    assert old.accrued_roi == Decimal("300")
    new = await load_position(session_maker, upgrade.position_id)
    assert new.status == PositionStatus.ACTIVE.value
    assert new.claimed_roi == Decimal("0")

    async with session_maker() as session:
        rows = await crud.get_roi_claims(session, "u1")
    assert [(r.position_id, r.reason) for r in rows] == [(old_id, RoiClaimReason.MANUAL.value)]

    status = await StatusService(session_maker, config=autogrowth_config).get_status("u1", now=NOW)
    assert status.total_accrued_roi == Decimal("0")

    with pytest.raises(NothingToClaim):
        await claims.claim("u1", now=NOW)


@pytest.mark.asyncio
async def test_claim_closed_position_by_id(session_maker, claims, upgrade_tiers, autogrowth_config):
    old_id = await open_position(session_maker, "u1", 1, "6000", days_ago(10))
    await UpgradeCoordinator(session_maker, config=autogrowth_config).upgrade(
        "u1", 2, auto_claim_roi=False, now=NOW
    )

    result = await claims.claim("u1", position_id=old_id, now=NOW)

    assert result.total_claimed == Decimal("300")
    with pytest.raises(PositionNotFound):
        await claims.claim("u1", position_id=old_id, now=NOW)


@pytest.mark.asyncio
async def test_auto_claimed_closed_position_has_nothing_left(
    session_maker, claims, upgrade_tiers, autogrowth_config
):
    old_id = await open_position(session_maker, "u1", 1, "6000", days_ago(10))
    await UpgradeCoordinator(session_maker, config=autogrowth_config).upgrade(
        "u1", 2, auto_claim_roi=True, now=NOW
    )

    with pytest.raises(PositionNotFound):
        await claims.claim("u1", position_id=old_id, now=NOW)
    with pytest.raises(NothingToClaim):
        await claims.claim("u1", now=NOW)
