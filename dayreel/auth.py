"""
API key authentication for the render API.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from dayreel.config import get_settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Dayreel-API-Key"


async def verify_api_key(
    x_dayreel_api_key: Optional[str] = Header(None, alias=API_KEY_HEADER),
) -> None:
    """
    FastAPI dependency to verify the API key.

    If DAYREEL_API_KEY is configured, requests must include a matching
    X-Dayreel-API-Key header. If not configured, authentication is skipped
    (development mode).

    Raises:
        HTTPException: 401 if API key is missing or invalid
    """
    expected_key = get_settings().api_key

    if not expected_key:
        logger.debug("DAYREEL_API_KEY not configured, skipping authentication")
        return

    if not x_dayreel_api_key:
        logger.warning(f"Request missing {API_KEY_HEADER} header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": API_KEY_HEADER},
        )

    if not hmac.compare_digest(x_dayreel_api_key.encode(), expected_key.encode()):
        logger.warning("Invalid API key received")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": API_KEY_HEADER},
        )
