from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.db import get_db
from storefront.core.security import decode_token, TokenError
from storefront.models.login_user import LoginUser

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_token_payload(token: str = Depends(oauth2_scheme)) -> dict:
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        return decode_token(token)
    except TokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


async def get_current_user(
    payload: dict = Depends(get_token_payload),
    db: AsyncSession = Depends(get_db),
) -> LoginUser:
    # Support common claim keys
    user_id = payload.get("sub") or payload.get("user_id") or payload.get("id")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Token missing user id (sub/user_id)")

    res = await db.execute(select(LoginUser).where(LoginUser.user_id == str(user_id)))
    user = res.scalar_one_or_none()

    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.is_blocked:
        raise HTTPException(status_code=403, detail="User blocked")

    return user


def require_admin(payload: dict = Depends(get_token_payload)) -> dict:
    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return payload


def require_payment_gateway(
    x_payment_secret: str | None = Header(default=None),
) -> None:
    if not x_payment_secret or not hmac.compare_digest(
        x_payment_secret.encode(), settings.PAYMENT_CALLBACK_SECRET.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid payment callback secret")
