"""
Uploaded document routes (patient side).

Endpoints:
    POST   /documents              — Upload a file (multipart) with an explicit document type
    GET    /documents              — List own documents, newest first
    GET    /documents/{id}/url     — Mint a short-lived download URL
    DELETE /documents/{id}         — Delete the file, derived records and metadata
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import get_db
from health_portal.db.storage import BlobStorage
from health_portal.errors import PartialFailure, PortalError, to_http_exception
from health_portal.models.health_record import DocumentType
from health_portal.models.user import User, UserRole
from health_portal.repositories.records import RecordRepository
from health_portal.schemas.records import DocumentOut
from health_portal.api.dependencies import get_blob_storage, get_repository
from health_portal.api.middleware.auth import require_role
from health_portal.api.middleware.audit import log_audit
from health_portal.services import record_store

router = APIRouter()

MAX_UPLOAD_BYTES = 25 * 1024 * 1024


@router.post("/documents", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
async def upload_document(
    request: Request,
    file: UploadFile = File(...),
    document_type: DocumentType = Form(...),
    provider_name: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")

    try:
        doc = await record_store.upload_document(
            db,
            storage,
            owner_identity=current_user.email,
            file_name=file.filename or "upload",
            data=data,
            document_type=document_type,
            content_type=file.content_type,
            provider_name=provider_name or None,
        )
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "create", "health_record", doc["id"], user=current_user, details=doc["file_name"], request=request)
    return doc


@router.get("/documents", response_model=list[DocumentOut])
async def list_documents(
    provider: Optional[str] = Query(None, description="Only documents from this provider"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        return await record_store.list_documents(db, current_user.email, provider_name=provider)
    except PortalError as exc:
        raise to_http_exception(exc)


@router.get("/documents/{document_id}/url", response_model=DocumentOut)
async def document_url(
    document_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        doc = await record_store.sign_document(db, storage, document_id, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "read", "health_record", document_id, user=current_user, request=request)
    return doc


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    storage: BlobStorage = Depends(get_blob_storage),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        completed = await record_store.delete_document(db, storage, repo, document_id, current_user.email)
    except PartialFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": exc.message, "completed": exc.completed},
        )
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "delete", "health_record", document_id, user=current_user, details=",".join(completed), request=request)
    return {"deleted": document_id, "completed": completed}
