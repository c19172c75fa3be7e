import hmac

from fastapi import Header, HTTPException, status

from app.core.config import settings


def require_admin_token(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.admin_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error_code": "admin_disabled", "message": "Admin API token is not configured"},
        )
    if not x_admin_token or not hmac.compare_digest(expected.encode("utf-8"), x_admin_token.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error_code": "invalid_admin_token", "message": "Invalid admin token"},
        )
