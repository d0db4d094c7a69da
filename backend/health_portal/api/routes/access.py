"""
Provider-side access routes.

Endpoints:
    GET  /access/patients                            — Patients who linked the caller
    GET  /access/patients/{patient_id}/documents     — Shared documents of a linked patient
    POST /access/patients/{patient_id}/documents     — Upload into a linked patient's records
"""

from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import get_db
from health_portal.db.storage import BlobStorage
from health_portal.errors import PortalError, to_http_exception
from health_portal.models.health_record import DocumentType
from health_portal.models.user import User, UserRole
from health_portal.schemas.records import DocumentOut, LinkedPatient
from health_portal.api.dependencies import get_blob_storage
from health_portal.api.middleware.auth import require_role
from health_portal.api.middleware.audit import log_audit
from health_portal.services import access_gateway, provider_directory

router = APIRouter()


@router.get("/access/patients", response_model=list[LinkedPatient])
async def list_patients(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PROVIDER)),
):
    return await provider_directory.list_linked_patients(db, current_user.id)


@router.get("/access/patients/{patient_id}/documents", response_model=list[DocumentOut])
async def visible_documents(
    patient_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    current_user: User = Depends(require_role(UserRole.PROVIDER)),
):
    documents = await access_gateway.list_visible_documents(db, storage, current_user.id, patient_id)
    await log_audit(
        db, "read", "health_record", patient_id, user=current_user,
        details=f"provider view ({len(documents)} documents)", request=request,
    )
    return documents


@router.post(
    "/access/patients/{patient_id}/documents",
    response_model=DocumentOut,
    status_code=status.HTTP_201_CREATED,
)
async def upload_for_patient(
    patient_id: UUID,
    request: Request,
    file: UploadFile = File(...),
    document_type: DocumentType = Form(...),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    current_user: User = Depends(require_role(UserRole.PROVIDER)),
):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")
    try:
        doc = await access_gateway.upload_for_patient(
            db,
            storage,
            current_user,
            patient_id,
            file_name=file.filename or "upload",
            data=data,
            document_type=document_type,
            content_type=file.content_type,
        )
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "create", "health_record", doc["id"], user=current_user, details=f"for patient {patient_id}", request=request)
    return doc
