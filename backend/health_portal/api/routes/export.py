"""
Export routes. Every bundle is assembled fresh for the request.

Endpoints:
    GET /export/bundle                 — FHIR collection bundle (pretty JSON)
    GET /export/summary.pdf            — Printable summary of the bundle
    GET /export/records/{id}           — One record as JSON
    GET /export/records/{id}/qr.png    — One record as a QR code
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from health_portal.db.postgres import get_db
from health_portal.errors import PortalError, to_http_exception
from health_portal.models.profile import Profile
from health_portal.models.user import User, UserRole
from health_portal.repositories.records import RecordRepository
from health_portal.api.dependencies import get_repository, get_session_factory
from health_portal.api.middleware.auth import require_role
from health_portal.api.middleware.audit import log_audit
from health_portal.services import export_service, record_store
from health_portal.services.bundle_assembler import assemble_bundle

logger = logging.getLogger(__name__)

router = APIRouter()


def _attachment(filename: str) -> dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


async def _bundle_for(user: User, repo: RecordRepository, session_factory: async_sessionmaker):
    async def resolve_identity():
        return user.email

    try:
        return await assemble_bundle(repo, user.email, resolve_identity, session_factory)
    except PortalError as exc:
        raise to_http_exception(exc)


@router.get("/export/bundle")
async def export_bundle(
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    bundle = await _bundle_for(current_user, repo, session_factory)
    await log_audit(db, "export", "bundle", user=current_user, details=f"{bundle.total} entries", request=request)
    return Response(
        content=export_service.bundle_to_json(bundle),
        media_type="application/fhir+json",
        headers=_attachment("health-records-bundle.json"),
    )


@router.get("/export/summary.pdf")
async def export_summary_pdf(
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    bundle = await _bundle_for(current_user, repo, session_factory)
    profile = await db.get(Profile, current_user.id)
    summary = export_service.build_summary(bundle, patient_name=profile.full_name if profile else None)
    try:
        pdf = export_service.render_summary_pdf(summary)
    except (ImportError, OSError) as exc:
        logger.error("PDF rendering unavailable: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="PDF rendering unavailable")
    await log_audit(db, "export", "bundle", user=current_user, details="summary pdf", request=request)
    return Response(content=pdf, media_type="application/pdf", headers=_attachment("health-summary.pdf"))


@router.get("/export/records/{record_id}")
async def export_record(
    record_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        record = await record_store.get_record(repo, record_id, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "export", "clinical_record", record_id, user=current_user, request=request)
    return Response(
        content=export_service.record_to_json(record),
        media_type="application/json",
        headers=_attachment(f"record-{record_id}.json"),
    )


@router.get("/export/records/{record_id}/qr.png")
async def export_record_qr(
    record_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        record = await record_store.get_record(repo, record_id, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)
    png = export_service.render_qr_png(export_service.record_qr_payload(record))
    await log_audit(db, "export", "clinical_record", record_id, user=current_user, details="qr", request=request)
    return Response(content=png, media_type="image/png")
