from fastapi import Header, HTTPException, status

from settlement_api.core.settings import settings


async def require_checkout_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    if not settings.checkout_api_key:
        return

    if x_api_key != settings.checkout_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


async def require_admin(
    x_admin_key: str = Header("", alias="X-Admin-Key"),
    x_admin_id: str | None = Header(None, alias="X-Admin-Id"),
) -> str:
    """Return the operator id recorded on every admin decision."""

    if settings.admin_api_key and x_admin_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    if not x_admin_id or not x_admin_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing admin identity",
        )
    return x_admin_id.strip()
