"""Actor resolution for the HTTP layer.

Session validation happens in the authentication gateway in front of this
service, which forwards the authenticated user id in ``X-User-Id``.
"""

from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from helpdispatch.database import get_db_session
from helpdispatch.db_models import User

USER_HEADER = "X-User-Id"


async def get_current_user(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> User:
    raw = request.headers.get(USER_HEADER, "")
    if not raw:
        raise HTTPException(status_code=401, detail=f"Missing {USER_HEADER} header")
    try:
        user_id = int(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Invalid {USER_HEADER} header") from None

    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="User is deactivated")
    return user


CurrentUser = Depends(get_current_user)


async def verify_admin_key(request: Request) -> None:
    from helpdispatch.config import settings

    if settings.admin_key is None:
        raise HTTPException(status_code=501, detail="Admin API not configured")
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not secrets.compare_digest(auth[7:], settings.admin_key):
        raise HTTPException(status_code=403, detail="Invalid admin key")
