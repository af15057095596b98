import logging
from typing import Optional

from fastapi import Depends, Request

from .errors import ForbiddenError, UnauthenticatedError
from .models import User
from .users import optional_active_user

logger = logging.getLogger(__name__)


# Dependency to get the currently authenticated user, if any
async def get_current_user(user: Optional[User] = Depends(optional_active_user)) -> Optional[User]:
    return user


# Dependency to enforce authentication (non-admin user is OK)
async def require_authenticated_user(user: Optional[User] = Depends(optional_active_user)) -> User:
    if not user:
        raise UnauthenticatedError()
    return user


async def require_admin_user(user: User = Depends(require_authenticated_user)) -> User:
    if not getattr(user, "is_superuser", False):
        logger.warning("User %s denied admin access", user.id)
        raise ForbiddenError("Admin access required")
    return user


def client_ip(request: Request) -> Optional[str]:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None
