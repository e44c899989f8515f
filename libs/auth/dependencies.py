import hmac
import time
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from libs.auth.models import AuthUser
from libs.common.config import get_settings

security = HTTPBearer(auto_error=False)

ADMIN_COOKIE_NAME = "admin_token"


def _service_role_jwt(calling_service: str) -> str:
    """Mint a short-lived (60s) service-role token for outbound internal calls."""
    settings = get_settings()
    now = int(time.time())
    payload = {
        "sub": calling_service,
        "role": "service_role",
        "iat": now,
        "exp": now + 60,
    }
    return jwt.encode(payload, settings.ADMIN_JWT_SECRET or "", algorithm="HS256")


def create_admin_token(
    user_id: str, email: str, role: str = "admin", expires_in: int = 3600
) -> str:
    """Issue an admin session token. Used by the login flow and by tests."""
    settings = get_settings()
    now = int(time.time())
    payload = {"sub": user_id, "email": email, "role": role, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.ADMIN_JWT_SECRET or "", algorithm="HS256")


async def get_current_user(
    request: Request,
    token: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> AuthUser:
    """
    Validate the admin JWT from the bearer header or the admin cookie.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )

    settings = get_settings()
    if not settings.ADMIN_JWT_SECRET:
        raise credentials_exception

    raw = token.credentials if token else request.cookies.get(ADMIN_COOKIE_NAME)
    if not raw:
        raise credentials_exception

    try:
        payload = jwt.decode(
            raw,
            settings.ADMIN_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
        user = AuthUser(**payload)
    except (JWTError, ValidationError):
        raise credentials_exception

    request.state.admin = user
    return user


async def require_admin(
    current_user: Annotated[AuthUser, Depends(get_current_user)]
) -> AuthUser:
    """
    Ensure the session belongs to a back-office admin.
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin privileges required",
        )
    return current_user


def bearer_matches(request: Request, secret: Optional[str]) -> bool:
    """Constant-time check of ``Authorization: Bearer <secret>``.

    An unset secret never matches.
    """
    if not secret:
        return False
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value:
        return False
    return hmac.compare_digest(value.strip().encode(), secret.encode())
