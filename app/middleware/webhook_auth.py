"""
Webhook Authentication
Shared-secret (X-API-Key) check for the WhatsApp API callbacks and the
operator endpoints
"""
import hmac
import logging
from typing import List, Optional

from fastapi import Header, HTTPException, status

from app.config import settings

logger = logging.getLogger(__name__)


def _accepted_keys() -> List[str]:
    # The WhatsApp API service signs its callbacks with its own API_KEY
    return [key for key in (settings.WEBHOOK_SECRET_KEY, settings.WHATSAPP_API_KEY) if key]


def is_valid_secret(candidate: Optional[str], keys: Optional[List[str]] = None) -> bool:
    """
    Constant-time comparison against the accepted keys.

    Args:
        candidate: Value sent by the client
        keys: Keys to accept (default: WEBHOOK_SECRET_KEY only)
    """
    if keys is None:
        keys = [settings.WEBHOOK_SECRET_KEY] if settings.WEBHOOK_SECRET_KEY else []
    if not keys or not candidate:
        return False
    return any(hmac.compare_digest(candidate.encode(), key.encode()) for key in keys)


def get_webhook_secret(x_api_key: Optional[str] = Header(None, alias="X-API-Key", description="API Key for webhook authentication")) -> str:
    """
    Dependency validating the X-API-Key header.

    Accepts WEBHOOK_SECRET_KEY or WHATSAPP_API_KEY.

    Usage in FastAPI endpoints:
        @router.post("/webhook/...")
        async def webhook_endpoint(secret: str = Depends(get_webhook_secret)):

    Raises:
        HTTPException: 500 if no key is configured, 401 if missing or invalid
    """
    keys = _accepted_keys()
    if not keys:
        logger.error("Neither WEBHOOK_SECRET_KEY nor WHATSAPP_API_KEY is configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook authentication is not properly configured"
        )

    if not x_api_key:
        logger.warning("Webhook request missing X-API-Key header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header"
        )

    if not is_valid_secret(x_api_key, keys):
        logger.warning(f"Invalid webhook secret. Provided: {x_api_key[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret key"
        )

    logger.debug("✅ Webhook request authenticated")
    return x_api_key
