"""
Record store service — clinical records and uploaded documents.

Clinical record content goes through a ``RecordRepository``; documents are a
``health_records`` row plus a binary in object storage. All public functions
take the caller's ``AsyncSession`` so the route layer owns the transaction.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete as sql_delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.config import get_settings
from health_portal.db.postgres import dialect_insert, utcnow
from health_portal.db.storage import BlobStorage, generate_object_key
from health_portal.errors import PartialFailure, RecordNotFound, StoreUnavailable
from health_portal.models.clinical_record import RecordCategory
from health_portal.models.consent import ConsentGrantee, ConsentRecord
from health_portal.models.health_record import DocumentType, HealthRecord
from health_portal.models.structured import STRUCTURED_TABLES
from health_portal.repositories.records import (
    InMemoryRecordRepository,
    JsonFileRecordRepository,
    RecordRepository,
    SqlRecordRepository,
)
from health_portal.schemas.records import RecordStats, StoredRecord

logger = logging.getLogger(__name__)
settings = get_settings()

_memory_repository: InMemoryRecordRepository | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_record_repository(db: AsyncSession) -> RecordRepository:
    """Repository for the configured ``RECORD_BACKEND``."""
    global _memory_repository
    backend = settings.RECORD_BACKEND
    if backend == "memory":
        if _memory_repository is None:
            _memory_repository = InMemoryRecordRepository()
        return _memory_repository
    if backend == "file":
        return JsonFileRecordRepository(settings.RECORD_CACHE_PATH)
    return SqlRecordRepository(db)


def as_document_id(record_id: str) -> uuid.UUID | None:
    """Document ids are UUIDs; anything else can only be a clinical record."""
    try:
        return uuid.UUID(str(record_id))
    except ValueError:
        return None


def document_to_dict(doc: HealthRecord) -> dict[str, Any]:
    return {
        "id": str(doc.id),
        "email": doc.email,
        "file_path": doc.file_path,
        "file_name": doc.file_name,
        "document_type": doc.document_type,
        "content_type": doc.content_type,
        "size_bytes": doc.size_bytes or 0,
        "provider_name": doc.provider_name,
        "uploaded_by": doc.uploaded_by,
        "is_shared": bool(doc.is_shared),
        "last_shared": doc.last_shared.isoformat() if doc.last_shared else None,
        "uploaded_at": doc.uploaded_at.isoformat() if doc.uploaded_at else None,
    }


async def _delete_consent(db: AsyncSession, record_ids: list[str]) -> None:
    if not record_ids:
        return
    await db.execute(sql_delete(ConsentGrantee).where(ConsentGrantee.record_id.in_(record_ids)))
    await db.execute(sql_delete(ConsentRecord).where(ConsentRecord.record_id.in_(record_ids)))


# ---------------------------------------------------------------------------
# Clinical records
# ---------------------------------------------------------------------------

async def list_all(repo: RecordRepository, owner_identity: str) -> list[StoredRecord]:
    return await repo.list_all(owner_identity)


async def get_record(repo: RecordRepository, record_id: str, owner_identity: str | None = None) -> StoredRecord:
    record = await repo.get(record_id)
    if record is None or (owner_identity is not None and record.owner_identity != owner_identity):
        raise RecordNotFound(f"Record {record_id} not found")
    return record


async def save(db: AsyncSession, repo: RecordRepository, record: StoredRecord) -> StoredRecord:
    """Upsert *record* and make sure it has a consent row (not shared)."""
    stored = await repo.save(record)
    stmt = dialect_insert(db, ConsentRecord).values(
        record_id=stored.id,
        owner_identity=stored.owner_identity,
        consent_given=False,
    )
    await db.execute(stmt.on_conflict_do_nothing(index_elements=["record_id"]))
    logger.debug("Saved record %s (%s) for %s", stored.id, stored.category.value, stored.owner_identity)
    return stored


async def delete_record(
    db: AsyncSession,
    repo: RecordRepository,
    record_id: str,
    owner_identity: str | None = None,
) -> None:
    await get_record(repo, record_id, owner_identity)
    await repo.delete(record_id)
    await _delete_consent(db, [record_id])


async def delete(
    db: AsyncSession,
    storage: BlobStorage,
    repo: RecordRepository,
    record_id: str,
    owner_identity: str | None = None,
) -> list[str]:
    """Delete a clinical record or an uploaded document, whichever *record_id* names.

    Returns the completed steps (see ``delete_document``).
    """
    doc_id = as_document_id(record_id)
    if doc_id is not None:
        exists = await db.execute(select(HealthRecord.id).where(HealthRecord.id == doc_id))
        if exists.scalar_one_or_none() is not None:
            return await delete_document(db, storage, repo, record_id, owner_identity)
    await delete_record(db, repo, record_id, owner_identity)
    return ["record"]


# ---------------------------------------------------------------------------
# Uploaded documents
# ---------------------------------------------------------------------------

async def get_document(db: AsyncSession, document_id: str, owner_identity: str | None = None) -> HealthRecord:
    doc_id = as_document_id(document_id)
    if doc_id is None:
        raise RecordNotFound(f"Document {document_id} not found")
    query = select(HealthRecord).where(HealthRecord.id == doc_id)
    if owner_identity is not None:
        query = query.where(HealthRecord.email == owner_identity)
    result = await db.execute(query.execution_options(populate_existing=True))
    doc = result.scalar_one_or_none()
    if doc is None:
        raise RecordNotFound(f"Document {document_id} not found")
    return doc


async def upload_document(
    db: AsyncSession,
    storage: BlobStorage,
    *,
    owner_identity: str,
    file_name: str,
    data: bytes,
    document_type: DocumentType | str,
    content_type: str | None = None,
    provider_name: str | None = None,
    uploaded_by: str | None = None,
    is_shared: bool = False,
) -> dict[str, Any]:
    """Store the binary, then insert its metadata row.

    A failed upload leaves no row behind; a failed insert leaves an orphaned
    object, which is the tolerated direction.
    """
    document_type = DocumentType(document_type)
    object_key = generate_object_key(owner_identity, file_name)
    await storage.upload(object_key, data, content_type or "application/octet-stream")

    doc = HealthRecord(
        id=uuid.uuid4(),
        email=owner_identity,
        file_path=object_key,
        file_name=file_name,
        document_type=document_type.value,
        content_type=content_type,
        size_bytes=len(data),
        provider_name=provider_name,
        uploaded_by=uploaded_by,
        is_shared=is_shared,
        last_shared=utcnow() if is_shared else None,
        uploaded_at=utcnow(),
    )
    db.add(doc)
    await db.flush()
    logger.info("Uploaded %s (%s, %d bytes) for %s", file_name, document_type.value, len(data), owner_identity)
    return document_to_dict(doc)


async def list_documents(
    db: AsyncSession,
    owner_identity: str,
    provider_name: str | None = None,
) -> list[dict[str, Any]]:
    """Owner's documents, newest first, optionally narrowed to one provider."""
    query = select(HealthRecord).where(HealthRecord.email == owner_identity)
    if provider_name:
        query = query.where(func.lower(HealthRecord.provider_name) == provider_name.strip().lower())
    result = await db.execute(query.order_by(HealthRecord.uploaded_at.desc()))
    return [document_to_dict(doc) for doc in result.scalars().all()]


async def sign_document(
    db: AsyncSession,
    storage: BlobStorage,
    document_id: str,
    owner_identity: str | None = None,
) -> dict[str, Any]:
    doc = await get_document(db, document_id, owner_identity)
    signed = await storage.signed_url(doc.file_path)
    data = document_to_dict(doc)
    data["signed_url"] = signed.url
    data["signed_url_expires_at"] = signed.expires_at.isoformat()
    return data


async def _delete_document_row(db: AsyncSession, doc_id: uuid.UUID) -> bool:
    result = await db.execute(sql_delete(HealthRecord).where(HealthRecord.id == doc_id))
    return result.rowcount > 0


async def delete_document(
    db: AsyncSession,
    storage: BlobStorage,
    repo: RecordRepository,
    document_id: str,
    owner_identity: str | None = None,
) -> list[str]:
    """Cascade-delete an uploaded document.

    1. remove the binary (failure is logged, the delete goes on)
    2. delete everything parsed from it, committed on its own
    3. delete the metadata row; failure raises ``PartialFailure`` and the
       earlier steps stay applied
    """
    doc = await get_document(db, document_id, owner_identity)
    source_id = str(doc.id)
    completed: list[str] = []

    try:
        await storage.remove(doc.file_path)
        completed.append("storage")
    except StoreUnavailable as exc:
        logger.warning("Storage delete failed for %s, continuing: %s", doc.file_path, exc)

    try:
        derived = await repo.delete_derived(source_id)
        for table in STRUCTURED_TABLES:
            await db.execute(sql_delete(table).where(table.source_record_id == source_id))
        await _delete_consent(db, derived)
        await db.commit()
    except (SQLAlchemyError, StoreUnavailable) as exc:
        logger.error("Deleting records derived from %s failed: %s", source_id, exc)
        raise PartialFailure(f"Could not delete records derived from {source_id}", completed=completed) from exc
    completed.append("derived")

    try:
        deleted = await _delete_document_row(db, doc.id)
    except SQLAlchemyError as exc:
        logger.error("Deleting document row %s failed after %s: %s", source_id, completed, exc)
        raise PartialFailure(f"Document {source_id} could not be deleted", completed=completed) from exc
    if not deleted:
        logger.error("Document row %s vanished during delete after %s", source_id, completed)
        raise PartialFailure(f"Document {source_id} could not be deleted", completed=completed)
    await _delete_consent(db, [source_id])
    completed.append("metadata")
    logger.info("Deleted document %s (%s)", source_id, ", ".join(completed))
    return completed


# ---------------------------------------------------------------------------
# Stats, import/export
# ---------------------------------------------------------------------------

async def get_stats(db: AsyncSession, repo: RecordRepository, owner_identity: str) -> RecordStats:
    """Dashboard counts. Approximate; zeros when a store is unreachable."""
    try:
        records = await repo.list_all(owner_identity)
        docs = await db.execute(
            select(HealthRecord.is_shared, HealthRecord.size_bytes).where(HealthRecord.email == owner_identity)
        )
        doc_rows = docs.all()
        remote: dict[str, int] = {}
        for table in STRUCTURED_TABLES:
            count = await db.execute(select(func.count()).select_from(table).where(table.email == owner_identity))
            remote[table.__tablename__] = count.scalar_one()
    except (SQLAlchemyError, StoreUnavailable) as exc:
        logger.warning("Stats unavailable for %s: %s", owner_identity, exc)
        return RecordStats()

    by_category = {category.value: 0 for category in RecordCategory}
    for record in records:
        by_category[record.category.value] += 1

    size = len(json.dumps([r.model_dump(mode="json", exclude_none=True) for r in records]).encode("utf-8"))
    return RecordStats(
        total_records=len(records),
        by_category=by_category,
        documents=len(doc_rows),
        shared_documents=sum(1 for is_shared, _ in doc_rows if is_shared),
        remote=remote,
        size_in_bytes=size,
        storage_size=f"{size / 1024:.2f} KB",
    )


async def export_records(repo: RecordRepository, owner_identity: str) -> dict[str, Any]:
    records = await repo.list_all(owner_identity)
    return {
        "exportDate": utcnow().isoformat() + "Z",
        "records": [r.model_dump(mode="json", exclude_none=True) for r in records],
    }


async def import_records(
    db: AsyncSession,
    repo: RecordRepository,
    owner_identity: str,
    payload: dict | list,
) -> int:
    """Import records from an export document (``{"records": [...]}`` or a bare list).

    Every record is validated before anything is written; imported records
    are re-owned by *owner_identity*.
    """
    items = payload.get("records", payload) if isinstance(payload, dict) else payload
    if isinstance(items, dict):
        items = list(items.values())
    if not isinstance(items, list):
        raise ValueError("Import must contain a list of records")

    records = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"Record #{index} is not an object")
        try:
            records.append(StoredRecord.model_validate({**item, "owner_identity": owner_identity}))
        except ValidationError as exc:
            raise ValueError(f"Record #{index} is invalid: {exc.errors()[0]['msg']}") from exc

    for record in records:
        await save(db, repo, record)
    logger.info("Imported %d records for %s", len(records), owner_identity)
    return len(records)


async def clear_all(db: AsyncSession, repo: RecordRepository, owner_identity: str) -> int:
    """Delete every clinical record of the owner. Documents are untouched."""
    ids = [r.id for r in await repo.list_all(owner_identity)]
    removed = await repo.clear(owner_identity)
    await _delete_consent(db, ids)
    logger.info("Cleared %d records for %s", removed, owner_identity)
    return removed
