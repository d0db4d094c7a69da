"""
Ingest of parsed document contents.

A parsed upload becomes one ``health_records`` row plus one structured row
per extracted fact, each pointing back through ``source_record_id``.
Medications and allergies are deduplicated per patient; lab results and
immunizations are appended.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import dialect_insert, utcnow
from health_portal.models.health_record import DocumentType, HealthRecord
from health_portal.models.structured import Allergy, Immunization, LabResult, Medication

logger = logging.getLogger(__name__)


class ParsedRecord(BaseModel):
    provider: str | None = None
    medications: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    lab_results: list[str] = Field(default_factory=list)
    immunizations: list[str] = Field(default_factory=list)


def _clean(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        value = value.strip()
        if value and value not in seen:
            seen.append(value)
    return seen


async def ingest_parsed_record(
    db: AsyncSession,
    *,
    target_patient_email: str,
    parsed: ParsedRecord,
    file_name: str,
    file_path: str,
    user_email: str | None = None,
    document_type: DocumentType | str = DocumentType.OTHER,
) -> dict[str, Any]:
    """Store a parsed document for *target_patient_email*.

    *user_email* is the uploading provider, if any; provider uploads are
    shared with providers from the start, patient self-uploads are not.
    """
    is_shared = bool(user_email)
    now = utcnow()
    doc = HealthRecord(
        id=uuid.uuid4(),
        email=target_patient_email,
        file_path=file_path,
        file_name=file_name,
        document_type=DocumentType(document_type).value,
        provider_name=parsed.provider or None,
        uploaded_by=user_email,
        is_shared=is_shared,
        last_shared=now if is_shared else None,
        uploaded_at=now,
    )
    db.add(doc)
    await db.flush()
    source_id = str(doc.id)

    counts = {"medications": 0, "allergies": 0, "lab_results": 0, "immunizations": 0}

    for medication in _clean(parsed.medications):
        stmt = dialect_insert(db, Medication).values(
            email=target_patient_email, medication=medication, source_record_id=source_id, created_at=now
        )
        await db.execute(
            stmt.on_conflict_do_update(
                index_elements=["email", "medication"],
                set_={"source_record_id": stmt.excluded.source_record_id},
            )
        )
        counts["medications"] += 1

    for allergy in _clean(parsed.allergies):
        stmt = dialect_insert(db, Allergy).values(
            email=target_patient_email, allergy=allergy, source_record_id=source_id, created_at=now
        )
        await db.execute(
            stmt.on_conflict_do_update(
                index_elements=["email", "allergy"],
                set_={"source_record_id": stmt.excluded.source_record_id},
            )
        )
        counts["allergies"] += 1

    # Free text from the parser: the raw line is both the name and the value
    for lab in _clean(parsed.lab_results):
        db.add(LabResult(email=target_patient_email, test_name=lab, result_value=lab, source_record_id=source_id))
        counts["lab_results"] += 1

    for immunization in _clean(parsed.immunizations):
        db.add(Immunization(email=target_patient_email, immunization=immunization, source_record_id=source_id))
        counts["immunizations"] += 1

    await db.flush()
    logger.info(
        "Ingested %s for %s (shared=%s): %s",
        file_name,
        target_patient_email,
        is_shared,
        counts,
    )
    return {"record_id": source_id, "is_shared": is_shared, "counts": counts}
