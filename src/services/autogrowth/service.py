"""
Autogrowth Service - boundary facade

Entry point for the API, the scheduler and the CLI. Every call returns
an RPC-shaped dict: {"success": True, ...} or
{"success": False, "error": ..., "code": ..., <details>}.

Usage:
    service = AutogrowthService(get_session_maker())
    result = await service.upgrade_tier(user_id, tier_id, auto_claim_roi=True)
"""
from datetime import datetime
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.autogrowth_config import AutogrowthConfig, get_config
from src.database import crud
from src.services.autogrowth.accrual_engine import AccrualEngine
from src.services.autogrowth.exceptions import AutogrowthError, PersistenceError, Unauthenticated
from src.services.autogrowth.ledger_lock import LedgerLock
from src.services.autogrowth.retry import call_with_retry
from src.services.autogrowth.roi_claims import RoiClaimService
from src.services.autogrowth.schemas import AccrualReport
from src.services.autogrowth.status_service import StatusService, next_scheduled_run
from src.services.autogrowth.upgrade_coordinator import UpgradeCoordinator
from src.utils.clock import ensure_utc, utc_now


def _failure(error: AutogrowthError) -> Dict[str, Any]:
    return {"success": False, **error.to_dict()}


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise Unauthenticated("User not authenticated")
    return user_id


class AutogrowthService:
    """Wires the engine components to one session factory and config."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: Optional[AutogrowthConfig] = None,
    ):
        self.session_maker = session_maker
        self.config = config or get_config()

        self.lock = LedgerLock(session_maker, ttl_seconds=self.config.lock.ttl_seconds)
        self.accrual_engine = AccrualEngine(session_maker)
        self.upgrades = UpgradeCoordinator(
            session_maker, accrual_engine=self.accrual_engine, lock=self.lock, config=self.config
        )
        self.claims = RoiClaimService(session_maker, lock=self.lock, config=self.config)
        self.status = StatusService(session_maker, config=self.config)

    # ===========================
    # ACCRUAL
    # ===========================

    async def trigger_accrual(
        self,
        now: Optional[datetime] = None,
        triggered_by: str = "manual",
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Run one accrual pass over every active position

        The pass is recorded in accrual_runs unless dry_run is set.
        Safe to call again after a failure.
        """
        now = ensure_utc(now) if now else utc_now()
        started_at = utc_now()

        try:
            report: AccrualReport = await call_with_retry(
                self.config.retry, self.accrual_engine.accrue, now=now, dry_run=dry_run
            )
        except AutogrowthError as e:
            logger.error(f"Accrual pass failed: {e.message}")
            if not dry_run:
                await self._record_run(now, started_at, None, triggered_by, error=e.message)
            return _failure(e)

        if not dry_run:
            await self._record_run(now, started_at, report, triggered_by)

        result = report.model_dump(mode="json")
        if not report.success:
            result["code"] = PersistenceError.code
        result["dry_run"] = dry_run
        result["next_scheduled_run"] = next_scheduled_run(self.config, now).isoformat()
        return result

    async def _record_run(
        self,
        now: datetime,
        started_at: datetime,
        report: Optional[AccrualReport],
        triggered_by: str,
        error: Optional[str] = None,
    ) -> None:
        try:
            async with self.session_maker() as session:
                await crud.record_accrual_run(
                    session,
                    as_of=now,
                    started_at=started_at,
                    success=report.success if report else False,
                    positions_updated=report.positions_updated if report else 0,
                    positions_matured=report.positions_matured if report else 0,
                    positions_skipped=report.positions_skipped if report else 0,
                    positions_failed=report.positions_failed if report else 0,
                    roi_distributed=report.roi_distributed if report else 0,
                    error=error or (report.error if report else None),
                    triggered_by=triggered_by,
                )
        except SQLAlchemyError as e:
            # History is informational; the pass itself already committed
            logger.error(f"Failed to record accrual run: {e}")

    # ===========================
    # USER CALLS
    # ===========================

    async def get_status(self, user_id: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        try:
            user_id = _require_user(user_id)
            status = await call_with_retry(self.config.retry, self.status.get_status, user_id, now=now)
        except AutogrowthError as e:
            return _failure(e)
        return status.model_dump(mode="json")

    async def get_tiers(self, user_id: Optional[str]) -> Dict[str, Any]:
        try:
            user_id = _require_user(user_id)
            overview = await call_with_retry(self.config.retry, self.status.get_tiers, user_id)
        except AutogrowthError as e:
            return _failure(e)
        return overview.model_dump(mode="json")

    async def upgrade_tier(
        self,
        user_id: Optional[str],
        target_tier_id: int,
        auto_claim_roi: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Upgrade to target_tier_id (never retried here: not idempotent)

        On InsufficientEquity the result carries shortfall and a top-up quote.
        """
        try:
            user_id = _require_user(user_id)
            result = await self.upgrades.upgrade(
                user_id, target_tier_id, auto_claim_roi=auto_claim_roi, now=now
            )
        except AutogrowthError as e:
            if isinstance(e, PersistenceError):
                logger.error(f"Upgrade of user {user_id} to tier {target_tier_id} failed: {e.message}")
            return _failure(e)
        return result.model_dump(mode="json")

    async def claim_roi(
        self,
        user_id: Optional[str],
        position_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        try:
            user_id = _require_user(user_id)
            result = await self.claims.claim(user_id, position_id=position_id, now=now)
        except AutogrowthError as e:
            return _failure(e)
        return result.model_dump(mode="json")

    # ===========================
    # OPERATOR CALLS
    # ===========================

    async def get_system_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        try:
            stats = await call_with_retry(self.config.retry, self.status.get_system_stats, now=now)
        except AutogrowthError as e:
            return _failure(e)
        return stats.model_dump(mode="json")
