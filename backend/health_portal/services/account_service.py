from __future__ import annotations

import logging
import uuid

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.errors import NotFound
from health_portal.models.profile import Profile
from health_portal.models.user import User

logger = logging.getLogger(__name__)


async def delete_account(db: AsyncSession, user_id: uuid.UUID) -> None:
    """Delete the profile row, then the login identity.

    Records, documents and links keyed by the account's email are left to
    the explicit delete operations.
    """
    await db.execute(delete(Profile).where(Profile.id == user_id))
    result = await db.execute(delete(User).where(User.id == user_id))
    if result.rowcount == 0:
        raise NotFound(f"User {user_id} not found")
    logger.info("Deleted account %s", user_id)
