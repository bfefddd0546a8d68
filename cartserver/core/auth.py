"""
HTTP Basic authentication for the build trigger.

The password comes from CART_PASSWORD; the user name is not checked.
With no password configured the build trigger is disabled.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

logger = logging.getLogger(__name__)

basic_auth = HTTPBasic(auto_error=False, realm="cartserver")


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode(), b.encode())


def require_build_password(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(basic_auth),
) -> None:
    """FastAPI dependency guarding build-triggering endpoints."""
    settings = request.app.state.settings
    if not settings.builds_enabled:
        raise HTTPException(status_code=403, detail="Builds are disabled on this server")

    expected = settings.password.get_secret_value()
    if credentials is None or not constant_time_compare(credentials.password, expected):
        # Never log the supplied credentials
        logger.warning(f"auth_failed path={request.url.path}")
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": 'Basic realm="cartserver"'},
        )
