"""API key authentication for mutating and meeting endpoints."""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from config.settings import Settings, get_settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(
    api_key: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """Reject requests without a configured API key.

    With no keys configured (local development) every request is accepted.
    """
    allowed = settings.api.api_keys
    if not allowed:
        return None

    if api_key and any(hmac.compare_digest(api_key, key) for key in allowed):
        return api_key

    logger.warning("Rejected request with missing or invalid API key")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "ApiKey"},
    )
