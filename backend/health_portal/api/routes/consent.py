"""
Consent routes.

Endpoints:
    GET    /consent/{record_id}                    — Current sharing state
    PUT    /consent/{record_id}                    — Set shared / not shared
    POST   /consent/{record_id}/grantees           — Add a grantee label
    DELETE /consent/{record_id}/grantees/{name}    — Remove a grantee label
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import get_db
from health_portal.errors import PortalError, to_http_exception
from health_portal.models.user import User, UserRole
from health_portal.schemas.records import ConsentState
from health_portal.api.middleware.auth import require_role
from health_portal.api.middleware.audit import log_audit
from health_portal.services import consent_ledger

router = APIRouter()


class SharingRequest(BaseModel):
    shared: bool


class GranteeRequest(BaseModel):
    grantee: str


@router.get("/consent/{record_id}", response_model=ConsentState)
async def get_consent(
    record_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        return await consent_ledger.get_consent(db, record_id, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)


@router.put("/consent/{record_id}", response_model=ConsentState)
async def set_sharing(
    record_id: str,
    payload: SharingRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        state = await consent_ledger.set_shared(db, record_id, payload.shared, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "share", "consent", record_id, user=current_user, details=f"shared={payload.shared}", request=request)
    return state


@router.post("/consent/{record_id}/grantees", response_model=ConsentState)
async def add_grantee(
    record_id: str,
    payload: GranteeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        return await consent_ledger.add_grantee(db, record_id, payload.grantee, current_user.email)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except PortalError as exc:
        raise to_http_exception(exc)


@router.delete("/consent/{record_id}/grantees/{grantee}", response_model=ConsentState)
async def remove_grantee(
    record_id: str,
    grantee: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        return await consent_ledger.remove_grantee(db, record_id, grantee, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)
