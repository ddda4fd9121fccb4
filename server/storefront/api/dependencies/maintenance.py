import secrets

from fastapi import Depends, Header, HTTPException, status

from storefront.core.config import Settings, get_settings


async def require_maintenance_token(
    x_maintenance_token: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard the scheduled jobs; they are open when no token is configured."""
    expected = settings.maintenance_token
    if expected and not secrets.compare_digest(expected.encode(), (x_maintenance_token or "").encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid maintenance token")
