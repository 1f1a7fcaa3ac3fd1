from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.db import get_db
from ticket_holds.core.security import TokenError, decode_token
from ticket_holds.models.user import User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


async def _user_from_token(db: AsyncSession, token: str) -> User:
    try:
        payload = decode_token(token)
    except TokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Not an access token")

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Token missing user id (sub)")

    try:
        user_id_int = int(user_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid user id in token")

    res = await db.execute(select(User).where(User.id == user_id_int))
    user = res.scalar_one_or_none()

    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User inactive")

    return user


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return await _user_from_token(db, token)


async def get_optional_user(
    token: str | None = Depends(optional_oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    """Public purchase links work without a login; a bad token is still rejected."""
    if not token:
        return None
    return await _user_from_token(db, token)


def require_staff(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role not in ("admin", "organizer"):
        raise HTTPException(status_code=403, detail="Staff only")
    return current_user


def ensure_can_manage(user: User, organizer_id: int | None) -> None:
    """Admins manage every hold; organizer staff only their own organizer's holds."""
    if user.role == "admin":
        return
    if organizer_id is None or user.organizer_id != organizer_id:
        raise HTTPException(status_code=403, detail="Not allowed for this organizer")
