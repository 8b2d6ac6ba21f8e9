# coding: utf-8
"""
API Key Authentication

Protects operator endpoints (manual accrual trigger, system stats).

Usage:
    @router.post("/trigger")
    async def trigger(api_key: str = Depends(verify_admin_api_key)):
        # Only accessible with the operator key
        pass
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException
from loguru import logger

from config import config


async def verify_admin_api_key(
    x_api_key: Optional[str] = Header(None, description="Operator API key")
) -> str:
    """
    Verify the operator API key

    Headers:
        X-API-Key: your-secret-api-key

    Raises:
        HTTPException 401: If API key is missing or invalid
        HTTPException 500: If no key is configured

    Returns:
        API key if valid
    """
    if not x_api_key:
        logger.warning("API key missing in request")
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide X-API-Key header."
        )

    expected = config.AUTOGROWTH_ADMIN_API_KEY
    if not expected:
        logger.error("AUTOGROWTH_ADMIN_API_KEY not configured in .env")
        raise HTTPException(
            status_code=500,
            detail="API key authentication not configured"
        )

    if not hmac.compare_digest(x_api_key, expected):
        logger.warning(f"Invalid API key attempt: {x_api_key[:8]}...")
        raise HTTPException(
            status_code=401,
            detail="Invalid API key"
        )

    return x_api_key
