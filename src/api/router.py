"""
FastAPI Router for the Autogrowth API
"""

from typing import Any, Dict

from fastapi import APIRouter

from src.database.engine import check_connection

# Import sub-routers
from src.api.autogrowth import router as autogrowth_router


router = APIRouter()

# Include sub-routers (they carry their own prefixes)
router.include_router(autogrowth_router)


@router.get("/health/db")
async def database_health() -> Dict[str, Any]:
    """Database connectivity check"""
    ok = await check_connection()
    return {"status": "healthy" if ok else "unhealthy", "database": ok}
