"""
Authentication

Users authenticate with an access token issued by the identity provider
("Authorization: Bearer <jwt>"). The engine only needs the opaque user
id from the "sub" claim; user records live with the provider.
"""

from typing import Any, Dict, Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt
from loguru import logger

from config.config import AUTH_JWT_ALGORITHM, AUTH_JWT_AUDIENCE, AUTH_JWT_SECRET
from config.sentry import set_user_context


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate an access token

    Args:
        token: JWT from the identity provider

    Returns:
        dict: Decoded JWT payload

    Raises:
        HTTPException: If token is invalid, expired or has no subject
    """
    try:
        payload = jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=[AUTH_JWT_ALGORITHM],
            audience=AUTH_JWT_AUDIENCE,
        )
    except JWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid JWT token: {str(e)}")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Missing sub in JWT payload")

    return payload


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """
    FastAPI Dependency returning the authenticated user id

    Raises:
        HTTPException 401: Missing or invalid credentials

    Usage:
        @router.get("/status")
        async def status(user_id: str = Depends(get_current_user_id)):
            ...
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="User not authenticated")

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header. Expected: 'Bearer <token>'",
        )

    payload = decode_access_token(authorization[7:])
    user_id = str(payload["sub"])

    set_user_context(user_id)
    logger.debug(f"Authenticated user {user_id}")
    return user_id
