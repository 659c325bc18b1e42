"""
Caller identity for API requests.

Authentication itself happens upstream: an auth proxy verifies the caller and
passes the external user id in a trusted header (USER_HEADER, default
`X-Forwarded-User`). This module maps that identity to a local User row.
"""
import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.session import get_async_session
from models.user import User

logger = logging.getLogger(__name__)

DEV_USER_EXTERNAL_ID = "dev|local-development-user"
DEV_USER_EMAIL = "dev@localhost"
EMAIL_HEADER = "X-Forwarded-Email"


async def _find_user(db: AsyncSession, external_id: str) -> User | None:
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def get_or_create_user(
    db: AsyncSession,
    external_id: str,
    email: str | None = None,
) -> User:
    """
    Return the local user for an upstream identity, creating it on first sight.

    A non-empty `email` replaces the stored one; a missing email header leaves
    it untouched. Runs first in every request, so rolling back after losing a
    creation race to a concurrent request discards nothing else.
    """
    user = await _find_user(db, external_id)
    if user is None:
        user = User(external_id=external_id, email=email)
        db.add(user)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.debug("User %s created concurrently", external_id)
            user = await _find_user(db, external_id)
            if user is None:
                raise
    elif email and user.email != email:
        user.email = email
        await db.flush()
    return user


async def get_or_create_dev_user(db: AsyncSession) -> User:
    """The single local user every request maps to in DEV_MODE."""
    return await get_or_create_user(db, DEV_USER_EXTERNAL_ID, DEV_USER_EMAIL)


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> User:
    """
    Resolve the caller from the identity header.

    Requests without the header (or with a blank one) are 401. DEV_MODE skips
    the header entirely.
    """
    if settings.dev_mode:
        return await get_or_create_dev_user(db)

    external_id = request.headers.get(settings.user_header, "").strip()
    if not external_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing identity header",
        )
    return await get_or_create_user(
        db, external_id, email=request.headers.get(EMAIL_HEADER),
    )
