# coding: utf-8
"""
Autogrowth API Endpoints

User endpoints (Bearer JWT): status, tiers, upgrade, claim.
Operator endpoints (X-API-Key): trigger accrual, system stats.

Responses are the service's RPC-shaped dicts; failures keep that shape
and get an HTTP status from their error code.
"""

from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.api.api_key_auth import verify_admin_api_key
from src.api.auth import get_current_user_id
from src.database.engine import get_session_maker
from src.services.autogrowth.service import AutogrowthService
from src.utils.clock import ensure_not_future

router = APIRouter(prefix="/autogrowth", tags=["autogrowth"])

limiter = Limiter(key_func=get_remote_address)


# Error code -> HTTP status
ERROR_STATUS = {
    "unauthenticated": 401,
    "tier_not_found": 404,
    "position_not_found": 404,
    "concurrent_modification": 409,
    "invalid_state": 409,
    "already_at_tier": 409,
    "no_claimable_roi": 409,
    "insufficient_equity": 422,
    "persistence_error": 503,
}


@lru_cache(maxsize=1)
def get_autogrowth_service() -> AutogrowthService:
    """FastAPI dependency (override in tests)."""
    return AutogrowthService(get_session_maker())


def _respond(result: Dict[str, Any]) -> Any:
    if result.get("success", True):
        return result
    status_code = ERROR_STATUS.get(result.get("code"), 400)
    if status_code >= 500:
        logger.error(f"Autogrowth call failed: {result.get('error')}")
    return JSONResponse(status_code=status_code, content=result)


# ===========================
# REQUEST MODELS
# ===========================


class UpgradeRequest(BaseModel):
    """Tier upgrade request"""

    tier_id: int = Field(gt=0)
    auto_claim_roi: bool = False


class ClaimRequest(BaseModel):
    """ROI claim request (every claimable position when position_id is omitted)"""

    position_id: Optional[int] = Field(default=None, gt=0)


class TriggerRequest(BaseModel):
    """Manual accrual pass"""

    now: Optional[datetime] = None
    dry_run: bool = False


# ===========================
# USER ENDPOINTS
# ===========================


@router.get("/status")
async def get_status(
    user_id: str = Depends(get_current_user_id),
    service: AutogrowthService = Depends(get_autogrowth_service),
):
    """
    Autogrowth snapshot of the current user

    Returns:
        {
            "success": true,
            "total_invested": "5000.00000000",
            "total_accrued_roi": "250.00000000",
            "current_value": "5250.00000000",
            "positions": [...]
        }
    """
    return _respond(await service.get_status(user_id))


@router.get("/tiers")
async def get_tiers(
    user_id: str = Depends(get_current_user_id),
    service: AutogrowthService = Depends(get_autogrowth_service),
):
    """Tier catalog annotated with eligibility, shortfall and top-up quote"""
    return _respond(await service.get_tiers(user_id))


@router.post("/upgrade")
@limiter.limit("30/minute")
async def upgrade_tier(
    request: Request,  # Required by limiter
    body: UpgradeRequest,
    user_id: str = Depends(get_current_user_id),
    service: AutogrowthService = Depends(get_autogrowth_service),
):
    """
    Upgrade to a higher tier

    422 with shortfall and top_up when equity is insufficient,
    409 when another upgrade/claim for this user is in flight.
    """
    logger.info(f"Upgrade request: user={user_id}, tier={body.tier_id}, auto_claim={body.auto_claim_roi}")
    result = await service.upgrade_tier(user_id, body.tier_id, auto_claim_roi=body.auto_claim_roi)
    return _respond(result)


@router.post("/claim")
@limiter.limit("30/minute")
async def claim_roi(
    request: Request,  # Required by limiter
    body: Optional[ClaimRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: AutogrowthService = Depends(get_autogrowth_service),
):
    """Claim ROI of matured positions and ROI left on closed ones"""
    position_id = body.position_id if body else None
    return _respond(await service.claim_roi(user_id, position_id=position_id))


# ===========================
# OPERATOR ENDPOINTS
# ===========================


@router.post("/trigger")
async def trigger_accrual(
    body: Optional[TriggerRequest] = None,
    api_key: str = Depends(verify_admin_api_key),
    service: AutogrowthService = Depends(get_autogrowth_service),
):
    """
    Run one accrual pass now (or as of body.now)

    body.now may backdate a pass but not move it past the current time.
    """
    body = body or TriggerRequest()
    if body.now is not None:
        try:
            ensure_not_future(body.now)
        except ValueError as e:
            raise HTTPException(
                status_code=422,
                detail={"success": False, "error": str(e), "code": "invalid_as_of"},
            )
    result = await service.trigger_accrual(now=body.now, triggered_by="api", dry_run=body.dry_run)
    return _respond(result)


@router.get("/system-stats")
async def get_system_stats(
    api_key: str = Depends(verify_admin_api_key),
    service: AutogrowthService = Depends(get_autogrowth_service),
):
    """System-wide ledger totals"""
    return _respond(await service.get_system_stats())
