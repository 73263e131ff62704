import hmac
import logging

from fastapi import Depends, Header, HTTPException, Query, status

from firmbook.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


async def require_maintenance_token(
    settings: Settings = Depends(get_settings),
    x_maintenance_token: str | None = Header(default=None, alias="X-Maintenance-Token"),
    token: str | None = Query(default=None),
) -> None:
    """Gate maintenance operations behind the shared maintenance token.

    An unset secret disables the operations entirely instead of leaving them open.
    """
    expected = settings.maintenance_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="maintenance token is not configured",
        )

    provided = x_maintenance_token or token or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("maintenance request rejected: invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid maintenance token")
