"""
Ingest of a parsed upload.

Endpoints:
    POST /parse-record  — Store a parsed document and its structured rows for a patient
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import get_db
from health_portal.models.health_record import DocumentType
from health_portal.models.profile import Profile
from health_portal.models.user import User, UserRole
from health_portal.api.middleware.auth import get_current_user
from health_portal.api.middleware.audit import log_audit
from health_portal.services import ingest_service, provider_directory
from health_portal.services.ingest_service import ParsedRecord

logger = logging.getLogger(__name__)

router = APIRouter()


class ParseRecordRequest(BaseModel):
    targetPatientEmail: str
    userEmail: Optional[str] = None
    parsed: ParsedRecord
    fileName: str
    filePath: str
    documentType: DocumentType = DocumentType.OTHER


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _provider_may_write(db: AsyncSession, provider: User, patient_email: str) -> bool:
    result = await db.execute(select(Profile.id).where(func.lower(Profile.email) == patient_email.lower()))
    patient_id = result.scalar_one_or_none()
    if patient_id is None:
        return False
    return await provider_directory.is_linked(db, patient_id, provider.id)


@router.post("/parse-record")
async def parse_record(
    payload: ParseRecordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    target = payload.targetPatientEmail.strip().lower()
    if current_user.role == UserRole.PROVIDER:
        if not await _provider_may_write(db, current_user, target):
            return _error(status.HTTP_403_FORBIDDEN, "Patient has not linked this provider")
        uploader = current_user.email
    elif current_user.role == UserRole.ADMIN:
        uploader = payload.userEmail
    else:
        if target != current_user.email:
            return _error(status.HTTP_403_FORBIDDEN, "Cannot add records for another patient")
        uploader = None

    try:
        result = await ingest_service.ingest_parsed_record(
            db,
            target_patient_email=target,
            parsed=payload.parsed,
            file_name=payload.fileName,
            file_path=payload.filePath,
            user_email=uploader,
            document_type=payload.documentType,
        )
    except IntegrityError:
        await db.rollback()
        return _error(status.HTTP_409_CONFLICT, f"A record already exists for {payload.filePath}")
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("parse-record failed for %s: %s", target, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Could not store parsed record")

    await log_audit(db, "create", "health_record", result["record_id"], user=current_user, details="parse-record", request=request)
    return {"success": True, **result}
