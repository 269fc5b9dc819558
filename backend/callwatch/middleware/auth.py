"""API key check for the operator-facing endpoints.

Dashboard, monitor and call-creation routes expose call records and
phone numbers, so they require the X-API-Key header. Provider webhooks
(TwiML, status callbacks, media stream) are not behind this check.
"""

import secrets

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from callwatch.config import settings


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: str | None = Security(api_key_header),
) -> str:
    """Reject the request unless X-API-Key matches the configured key.

    503 while no key is configured (the protected surface stays closed),
    401 for a missing or wrong key.
    """
    expected = settings.api_key
    if not expected:
        raise HTTPException(status_code=503, detail="API key not configured")
    if not api_key or not secrets.compare_digest(api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return api_key
