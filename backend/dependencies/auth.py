import logging
import secrets

from fastapi import Depends, Header, HTTPException, status

from dependencies.context import get_settings
from settings import Settings

logger = logging.getLogger(__name__)


def require_admin_token(
    x_admin_token: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_token:
        logger.warning("ADMIN_TOKEN not configured; rejecting monitor request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job monitor not configured",
        )
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )
