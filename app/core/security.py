"""
Security — Admin authorization for push management routes.

Sending notifications, sweeping tokens, and reading registry stats are
administrative operations. They require the shared ADMIN_API_KEY in the
`X-Admin-Key` header. Caller identity (worker sessions) is issued and
checked elsewhere.

Usage in route handlers:
    from app.core.security import require_admin

    @router.post("/sweep", dependencies=[Depends(require_admin)])
    async def sweep(): ...
"""

import hmac

from fastapi import Header, HTTPException, status


async def require_admin(
    x_admin_key: str | None = Header(None, alias="X-Admin-Key"),
) -> None:
    """
    FastAPI dependency that validates the admin API key.

    Raises:
        HTTPException(503): If ADMIN_API_KEY is not configured.
        HTTPException(401): If the header is missing or wrong.
    """
    expected = _get_admin_key()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured on the server.",
        )

    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing admin key. Provide it in the X-Admin-Key header.",
        )

    # Constant-time comparison
    if not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key.",
        )


def _get_admin_key() -> str:
    """
    Returns the configured admin key.

    Read at call time so tests can patch the config value.
    """
    from app.core import config
    return config.ADMIN_API_KEY
