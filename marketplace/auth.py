from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header

from . import storage
from .errors import AuthorizationError


def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Session user id, sent by the frontend in the ``X-User-Id`` header."""

    if not x_user_id:
        raise AuthorizationError("Sign in required", status_code=401)
    return x_user_id


def get_role(user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    return storage.get_profile_role(user_id)


def is_admin(user_id: Optional[str]) -> bool:
    return get_role(user_id) == "admin"


def is_seller(user_id: Optional[str]) -> bool:
    return get_role(user_id) == "seller"


def require_seller(user_id: str = Depends(current_user_id)) -> str:
    if not is_seller(user_id):
        raise AuthorizationError("You need to be a seller to access this panel")
    return user_id
