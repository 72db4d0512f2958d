"""Caller identity supplied by the upstream gateway.

Authentication happens before requests reach this service; the gateway
forwards the verified user id and role as headers.
"""
import enum
from typing import Optional

from fastapi import Depends, Header
from pydantic import BaseModel

from app.core.exceptions import AuthenticationError, AuthorizationError


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    AFFILIATE = "affiliate"
    SERVICE = "service"


class CurrentUser(BaseModel):
    id: str
    role: UserRole


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CurrentUser:
    if not x_user_id:
        raise AuthenticationError("Unauthorized")
    try:
        role = UserRole(x_user_role or UserRole.AFFILIATE.value)
    except ValueError:
        raise AuthenticationError("Unknown role", details={"role": x_user_role})
    return CurrentUser(id=x_user_id, role=role)


def require_role(*roles: UserRole):
    def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            raise AuthorizationError(details={"required": [r.value for r in roles]})
        return current_user

    return checker
