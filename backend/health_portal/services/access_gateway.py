"""
Access gateway — what a provider may see for a patient.

Visibility is the intersection of the provider directory (the pair must be
linked) and the per-document ``is_shared`` flag. Anything else fails closed
to an empty list.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.storage import BlobStorage
from health_portal.errors import PatientNotFound, StoreUnavailable
from health_portal.models.health_record import DocumentType, HealthRecord
from health_portal.models.profile import Profile
from health_portal.models.user import User
from health_portal.services import record_store
from health_portal.services.provider_directory import is_linked

logger = logging.getLogger(__name__)


async def list_visible_documents(
    db: AsyncSession,
    storage: BlobStorage,
    provider_id: uuid.UUID,
    patient_id: uuid.UUID,
) -> list[dict[str, Any]]:
    """Shared documents of a linked patient, each with a freshly signed URL."""
    if not await is_linked(db, patient_id, provider_id):
        return []
    patient = await db.get(Profile, patient_id)
    if patient is None:
        return []

    result = await db.execute(
        select(HealthRecord)
        .where(HealthRecord.email == patient.email, HealthRecord.is_shared.is_(True))
        .order_by(HealthRecord.uploaded_at.desc())
        .execution_options(populate_existing=True)
    )
    documents = []
    for doc in result.scalars().all():
        data = record_store.document_to_dict(doc)
        try:
            signed = await storage.signed_url(doc.file_path)
        except StoreUnavailable as exc:
            logger.warning("Could not sign %s for provider %s: %s", doc.file_path, provider_id, exc)
            data["signed_url"] = None
            data["signed_url_expires_at"] = None
        else:
            data["signed_url"] = signed.url
            data["signed_url_expires_at"] = signed.expires_at.isoformat()
        documents.append(data)
    return documents


async def upload_for_patient(
    db: AsyncSession,
    storage: BlobStorage,
    provider: User,
    patient_id: uuid.UUID,
    *,
    file_name: str,
    data: bytes,
    document_type: DocumentType | str,
    content_type: str | None = None,
) -> dict[str, Any]:
    """Provider-initiated upload into a linked patient's records, shared by default."""
    if not await is_linked(db, patient_id, provider.id):
        raise PatientNotFound(f"Patient {patient_id} is not linked to this provider")
    patient = await db.get(Profile, patient_id)
    if patient is None:
        raise PatientNotFound(f"Patient {patient_id} not found")

    provider_profile = await db.get(Profile, provider.id)
    provider_name = provider_profile.full_name if provider_profile and provider_profile.full_name else provider.email
    return await record_store.upload_document(
        db,
        storage,
        owner_identity=patient.email,
        file_name=file_name,
        data=data,
        document_type=document_type,
        content_type=content_type,
        provider_name=provider_name,
        uploaded_by=provider.email,
        is_shared=True,
    )
