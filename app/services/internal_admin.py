import hmac

from fastapi import Header, HTTPException, Request


async def require_internal_admin(request: Request, x_internal_admin_key: str | None = Header(default=None)) -> None:
    expected = request.app.state.settings.internal_admin_key
    if not x_internal_admin_key or not hmac.compare_digest(x_internal_admin_key, expected):
        raise HTTPException(status_code=403, detail="Internal admin key required")
