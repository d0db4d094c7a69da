"""
Provider links managed by the patient.

Endpoints:
    GET    /providers                  — Linked providers
    POST   /providers                  — Link a provider by email
    DELETE /providers/{provider_id}    — Revoke a provider (204 whether or not it was linked)
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import get_db
from health_portal.errors import PortalError, to_http_exception
from health_portal.models.user import User, UserRole
from health_portal.schemas.records import LinkedProvider
from health_portal.api.middleware.auth import require_role
from health_portal.api.middleware.audit import log_audit
from health_portal.api.middleware.rate_limit import rate_limit
from health_portal.services import provider_directory

router = APIRouter()


class LinkRequest(BaseModel):
    provider_email: str


@router.get("/providers", response_model=list[LinkedProvider])
async def list_providers(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    return await provider_directory.list_linked_providers(db, current_user.id)


@router.post(
    "/providers",
    response_model=LinkedProvider,
    status_code=status.HTTP_201_CREATED,
    dependencies=[rate_limit(max_requests=20, window_seconds=60)],
)
async def link_provider(
    payload: LinkRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        link = await provider_directory.link_provider(db, current_user.id, payload.provider_email)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "link", "provider_link", link["provider_id"], user=current_user, request=request)
    return link


@router.delete("/providers/{provider_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_provider(
    provider_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    removed = await provider_directory.unlink_provider(db, current_user.id, provider_id)
    if removed:
        await log_audit(db, "unlink", "provider_link", provider_id, user=current_user, request=request)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
