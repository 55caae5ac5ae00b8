"""Internal API key authentication for service-to-service endpoints.

End-user authentication is handled by the external identity provider; the
endpoints here are called by the scheduler trigger, operators and the
checkout service using the shared ``X-Internal-Key`` header.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from app.core.config import ConfigurationError, require_setting

logger = logging.getLogger(__name__)

internal_key_header = APIKeyHeader(name="X-Internal-Key", auto_error=False)


async def require_internal_key(
    api_key: Optional[str] = Depends(internal_key_header),
) -> None:
    """FastAPI dependency rejecting requests without a valid internal key."""
    try:
        expected = require_setting("INTERNAL_API_KEY")
    except ConfigurationError as e:
        logger.error(f"Internal endpoint called without configuration: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfigured",
        )

    if not api_key or not hmac.compare_digest(api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "ApiKey"},
        )
