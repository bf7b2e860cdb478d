# gateway/dependencies/auth.py
from __future__ import annotations

from fastapi import Header, HTTPException, status


def _unauthorized(detail: str = "Could not identify the caller") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def get_current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """
    The upstream auth layer authenticates the caller and forwards its id in
    X-User-Id. Requests that reach us without it are rejected.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise _unauthorized("Missing X-User-Id header")
    if len(user_id) > 128:
        raise _unauthorized("Invalid X-User-Id header")
    return user_id
