"""
Account deletion.

Endpoints:
    POST /delete-account  — Delete a profile and its login identity (self, or any account for admins)
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import get_db
from health_portal.errors import PortalError
from health_portal.models.user import User, UserRole
from health_portal.api.middleware.auth import get_current_user
from health_portal.api.middleware.audit import log_audit
from health_portal.services import account_service

logger = logging.getLogger(__name__)

router = APIRouter()


class DeleteAccountRequest(BaseModel):
    userId: UUID


@router.post("/delete-account")
async def delete_account(
    payload: DeleteAccountRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if payload.userId != current_user.id and current_user.role != UserRole.ADMIN:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "Cannot delete another account"})

    try:
        await account_service.delete_account(db, payload.userId)
    except PortalError as exc:
        await db.rollback()
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Account deletion failed for %s: %s", payload.userId, exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Account deletion failed"})

    await log_audit(db, "delete", "account", payload.userId, user=None, details=f"by {current_user.id}", request=request)
    return {"success": True}
