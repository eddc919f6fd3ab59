import hmac
import logging

from fastapi import HTTPException, Request, status

from .settings import get_settings

logger = logging.getLogger(__name__)


def verify_shared_secret(provided: str | None, expected: str | None) -> None:
    """Check an inbound shared secret; raises HTTPException on failure.

    Raises:
        HTTPException: 500 when no secret is configured, 401 when the header
            is missing, 403 when it does not match.
    """
    if not expected:
        logger.error("Auth secret is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication not properly configured",
        )
    if not provided:
        logger.debug("No authentication header provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication header",
        )
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Invalid authentication credentials")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid authentication credentials",
        )


async def require_auth(request: Request) -> None:
    """FastAPI dependency guarding every route except /health."""
    settings = get_settings()
    verify_shared_secret(request.headers.get(settings.auth_header_name), settings.agent_auth_secret)
