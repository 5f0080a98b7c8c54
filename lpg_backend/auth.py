"""Tenant resolver.

The session provider in front of the API authenticates the caller and forwards
the user id in ``X-User-Id``. Everything here trusts that header and nothing
else: the tenant always comes from the stored profile, never from the request.
"""

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from lpg_backend.db import get_db
from lpg_backend.exceptions import ForbiddenError, UnauthorizedError
from lpg_backend.logging_config import LogContext
from lpg_backend.models import UserProfile


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> UserProfile:
    if not x_user_id or not x_user_id.strip().isdigit():
        raise UnauthorizedError()
    user = db.get(UserProfile, int(x_user_id))
    if user is None or not user.is_active or user.tenant_id is None:
        raise UnauthorizedError()
    LogContext.set(user_id=str(user.id), tenant_id=str(user.tenant_id))
    return user


def require_roles(*roles: str):
    def dependency(user: UserProfile = Depends(get_current_user)) -> UserProfile:
        if user.role not in roles:
            raise ForbiddenError(f"role '{user.role}' may not perform this action")
        return user

    return dependency
