"""
Clinical record routes (the patient's own records).

Endpoints:
    GET    /records                — List the caller's records
    POST   /records                — Create a record
    GET    /records/stats          — Dashboard counts
    GET    /records/export         — Export records as JSON
    POST   /records/import         — Import a previous export
    DELETE /records                — Remove every record of the caller
    GET    /records/{id}           — One record
    PUT    /records/{id}           — Replace a record
    DELETE /records/{id}           — Delete a record or uploaded document (cascades)
"""

import uuid
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import get_db
from health_portal.db.storage import BlobStorage
from health_portal.errors import PartialFailure, PortalError, to_http_exception
from health_portal.models.clinical_record import RecordCategory
from health_portal.models.user import User, UserRole
from health_portal.repositories.records import RecordRepository
from health_portal.schemas.fhir import parse_resource
from health_portal.schemas.records import RecordStats, StoredRecord
from health_portal.api.dependencies import get_blob_storage, get_repository
from health_portal.api.middleware.auth import require_role
from health_portal.api.middleware.audit import log_audit
from health_portal.services import record_store

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class RecordWriteRequest(BaseModel):
    category: RecordCategory
    resource: dict[str, Any]
    source_record_id: Optional[str] = None
    visit_date: Optional[str] = None
    provider: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class RecordCreateRequest(RecordWriteRequest):
    id: Optional[str] = None


class RecordListResponse(BaseModel):
    records: list[StoredRecord]
    total: int


class DeleteResponse(BaseModel):
    deleted: str
    completed: list[str]


class ImportResponse(BaseModel):
    imported: int


class ClearResponse(BaseModel):
    removed: int


def _build_record(record_id: str, owner_identity: str, payload: RecordWriteRequest) -> StoredRecord:
    data = dict(payload.resource)
    data["id"] = record_id
    try:
        resource = parse_resource(payload.category, data)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return StoredRecord(
        id=record_id,
        owner_identity=owner_identity,
        category=payload.category,
        resource=resource,
        source_record_id=payload.source_record_id,
        visit_date=payload.visit_date,
        provider=payload.provider,
        tags=payload.tags,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/records", response_model=RecordListResponse)
async def list_records(
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        records = await record_store.list_all(repo, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "read", "clinical_record", user=current_user, details=f"list ({len(records)})", request=request)
    return RecordListResponse(records=records, total=len(records))


@router.post("/records", response_model=StoredRecord, status_code=status.HTTP_201_CREATED)
async def create_record(
    payload: RecordCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    record = _build_record(payload.id or str(uuid.uuid4()), current_user.email, payload)
    try:
        stored = await record_store.save(db, repo, record)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "create", "clinical_record", stored.id, user=current_user, request=request)
    return stored


@router.get("/records/stats", response_model=RecordStats)
async def record_stats(
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    return await record_store.get_stats(db, repo, current_user.email)


@router.get("/records/export")
async def export_records(
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        exported = await record_store.export_records(repo, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "export", "clinical_record", user=current_user, request=request)
    return exported


@router.post("/records/import", response_model=ImportResponse)
async def import_records(
    request: Request,
    payload: Any = Body(...),
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        imported = await record_store.import_records(db, repo, current_user.email, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "import", "clinical_record", user=current_user, details=f"{imported} records", request=request)
    return ImportResponse(imported=imported)


@router.delete("/records", response_model=ClearResponse)
async def clear_records(
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        removed = await record_store.clear_all(db, repo, current_user.email)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "delete", "clinical_record", user=current_user, details=f"cleared {removed}", request=request)
    return ClearResponse(removed=removed)


@router.get("/records/{record_id}", response_model=StoredRecord)
async def get_record(
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
    await log_audit(db, "read", "clinical_record", record_id, user=current_user, request=request)
    return record


@router.put("/records/{record_id}", response_model=StoredRecord)
async def replace_record(
    record_id: str,
    payload: RecordWriteRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    record = _build_record(record_id, current_user.email, payload)
    try:
        stored = await record_store.save(db, repo, record)
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "update", "clinical_record", record_id, user=current_user, request=request)
    return stored


@router.delete("/records/{record_id}", response_model=DeleteResponse)
async def delete_record(
    record_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    repo: RecordRepository = Depends(get_repository),
    storage: BlobStorage = Depends(get_blob_storage),
    current_user: User = Depends(require_role(UserRole.PATIENT)),
):
    try:
        completed = await record_store.delete(db, storage, repo, record_id, current_user.email)
    except PartialFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": exc.message, "completed": exc.completed},
        )
    except PortalError as exc:
        raise to_http_exception(exc)
    await log_audit(db, "delete", "clinical_record", record_id, user=current_user, details=",".join(completed), request=request)
    return DeleteResponse(deleted=record_id, completed=completed)
