"""
Workqueue Authentication Module
API key validation for producer endpoints and shared-secret validation for
the worker trigger called by the external scheduler.

Security-critical: Uses constant-time comparison to prevent timing attacks
"""

import secrets
import logging
from typing import Optional

from fastapi import HTTPException, Header, status

from workqueue.config import settings

logger = logging.getLogger("workqueue.auth")


def _matches(provided: str, expected: str) -> bool:
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key")
) -> str:
    """
    FastAPI dependency for producer endpoints - validates the X-API-Key header.

    Returns:
        str: The validated API key (or "dev-bypass" when API_KEY is not configured)

    Raises:
        HTTPException: 401 if key missing, 403 if key invalid
    """
    # Development mode bypass (only when API_KEY not configured)
    if not settings.API_KEY:
        logger.debug("Authentication bypassed - API_KEY not configured")
        return "dev-bypass"

    if not x_api_key:
        logger.warning("Request rejected - missing X-API-Key header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not _matches(x_api_key, settings.API_KEY):
        # Log partial key for debugging (first 8 chars only)
        key_preview = x_api_key[:8] if len(x_api_key) >= 8 else x_api_key
        logger.warning(f"Request rejected - invalid API key: {key_preview}...")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key"
        )

    return x_api_key


async def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
) -> None:
    """
    FastAPI dependency for the worker trigger.

    Accepts either ``Authorization: Bearer <CRON_SECRET>`` or
    ``X-Cron-Secret: <CRON_SECRET>``. Unlike the API key, an unset secret
    does not bypass authentication: the trigger refuses to run.

    Raises:
        HTTPException: 500 if CRON_SECRET is not configured, 401 if the secret
        is missing or wrong
    """
    if not settings.CRON_SECRET:
        logger.error("CRON_SECRET not configured - worker trigger disabled")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfigured"
        )

    provided = x_cron_secret
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]

    if not provided or not _matches(provided, settings.CRON_SECRET):
        logger.warning("Worker trigger rejected - missing or invalid cron secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )

