"""
Bundle assembler — one FHIR collection bundle from every source.

Local records come from the record repository. Remote rows (medications,
allergies, lab results, immunizations parsed from uploads, and uploaded
documents whose type names a clinical category) are read concurrently, each
on its own session; a failing source contributes nothing and does not stop
the others. Bundles are rebuilt on every call.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from health_portal.db.postgres import utcnow
from health_portal.models.clinical_record import RecordCategory
from health_portal.models.health_record import DocumentType, HealthRecord
from health_portal.models.structured import Allergy, Immunization, LabResult, Medication
from health_portal.repositories.records import RecordRepository
from health_portal.schemas import fhir
from health_portal.schemas.fhir import Bundle, CodeableConcept, FHIRResource, Meta

logger = logging.getLogger(__name__)

IdentityResolver = Callable[[], Awaitable[Optional[str]]]

# Remote-origin id prefixes; keep ids unique next to local records
REMOTE_ID_PREFIXES = {
    Medication: "db-med-",
    Allergy: "db-allergy-",
    LabResult: "db-lab-",
    Immunization: "db-imm-",
}

MANUAL_ID_PREFIXES = {
    RecordCategory.MEDICATION: "manual-med-",
    RecordCategory.ALLERGY: "manual-allergy-",
    RecordCategory.OBSERVATION: "manual-lab-",
    RecordCategory.IMMUNIZATION: "manual-imm-",
}

# Document types that stand for one clinical entry; "lab" is a legacy spelling
MANUAL_DOCUMENT_TYPES = {
    DocumentType.MEDICATION.value: RecordCategory.MEDICATION,
    DocumentType.ALLERGY.value: RecordCategory.ALLERGY,
    DocumentType.LAB_RESULT.value: RecordCategory.OBSERVATION,
    "lab": RecordCategory.OBSERVATION,
    DocumentType.OBSERVATION.value: RecordCategory.OBSERVATION,
    DocumentType.IMMUNIZATION.value: RecordCategory.IMMUNIZATION,
}

ENTRY_ORDER = (
    RecordCategory.MEDICATION,
    RecordCategory.ALLERGY,
    RecordCategory.OBSERVATION,
    RecordCategory.IMMUNIZATION,
    RecordCategory.DOCUMENT,
)


def _timestamp(moment: datetime | None = None) -> str:
    return (moment or utcnow()).isoformat(timespec="milliseconds") + "Z"


# ---------------------------------------------------------------------------
# Remote row mapping
# ---------------------------------------------------------------------------

def medication_resource(row: Medication, now: str) -> fhir.MedicationStatement:
    return fhir.MedicationStatement(
        id=f"{REMOTE_ID_PREFIXES[Medication]}{row.id}",
        meta=Meta(lastUpdated=now),
        medicationCodeableConcept=CodeableConcept(text=row.medication),
    )


def allergy_resource(row: Allergy, now: str) -> fhir.AllergyIntolerance:
    return fhir.AllergyIntolerance(
        id=f"{REMOTE_ID_PREFIXES[Allergy]}{row.id}",
        meta=Meta(lastUpdated=now),
        code=CodeableConcept(text=row.allergy),
    )


def lab_resource(row: LabResult, now: str) -> fhir.Observation:
    value = row.result_value or row.test_name
    if row.result_value and row.unit:
        value = f"{row.result_value} {row.unit}"
    return fhir.Observation(
        id=f"{REMOTE_ID_PREFIXES[LabResult]}{row.id}",
        meta=Meta(lastUpdated=now),
        code=CodeableConcept(text=row.test_name),
        effectiveDateTime=row.result_date or now,
        valueString=value,
    )


def immunization_resource(row: Immunization, now: str) -> fhir.Immunization:
    return fhir.Immunization(
        id=f"{REMOTE_ID_PREFIXES[Immunization]}{row.id}",
        meta=Meta(lastUpdated=now),
        vaccineCode=CodeableConcept(text=row.immunization),
        occurrenceDateTime=row.date or now,
    )


def manual_resource(row: HealthRecord, now: str) -> FHIRResource | None:
    """Map an uploaded document typed as a clinical entry; None for other documents.

    The file name (without ``.pdf``) becomes the entry's text and the upload
    time its date.
    """
    category = MANUAL_DOCUMENT_TYPES.get((row.document_type or "").lower())
    if category is None:
        return None
    label = re.sub(r"\.pdf$", "", row.file_name or "", flags=re.IGNORECASE) or "Manual record"
    updated = _timestamp(row.uploaded_at) if row.uploaded_at else now
    resource_id = f"{MANUAL_ID_PREFIXES[category]}{row.id}"
    meta = Meta(lastUpdated=updated)
    text = CodeableConcept(text=label)

    if category == RecordCategory.MEDICATION:
        return fhir.MedicationStatement(
            id=resource_id, meta=meta, medicationCodeableConcept=text, effectiveDateTime=updated
        )
    if category == RecordCategory.ALLERGY:
        return fhir.AllergyIntolerance(id=resource_id, meta=meta, code=text, recordedDate=updated)
    if category == RecordCategory.OBSERVATION:
        return fhir.Observation(
            id=resource_id, meta=meta, code=text, effectiveDateTime=updated, valueString=label
        )
    return fhir.Immunization(id=resource_id, meta=meta, vaccineCode=text, occurrenceDateTime=updated)


_REMOTE_SOURCES = (
    (RecordCategory.MEDICATION, Medication, medication_resource),
    (RecordCategory.ALLERGY, Allergy, allergy_resource),
    (RecordCategory.OBSERVATION, LabResult, lab_resource),
    (RecordCategory.IMMUNIZATION, Immunization, immunization_resource),
)


# ---------------------------------------------------------------------------
# Remote fan-out
# ---------------------------------------------------------------------------

async def _read_table(session_factory: async_sessionmaker[AsyncSession], model, email: str) -> list:
    order = (model.uploaded_at, model.id) if model is HealthRecord else (model.id,)
    async with session_factory() as session:
        result = await session.execute(select(model).where(model.email == email).order_by(*order))
        return list(result.scalars().all())


async def fetch_remote_resources(
    session_factory: async_sessionmaker[AsyncSession],
    email: str,
    now: str | None = None,
) -> dict[RecordCategory, list[FHIRResource]]:
    """Read the four structured tables and the document table concurrently.

    Per category, structured rows come before documents. A source that fails
    is logged and yields nothing.
    """
    now = now or _timestamp()
    models = [model for _, model, _ in _REMOTE_SOURCES] + [HealthRecord]
    results = await asyncio.gather(
        *(_read_table(session_factory, model, email) for model in models),
        return_exceptions=True,
    )

    remote: dict[RecordCategory, list[FHIRResource]] = {}
    for (category, model, to_resource), rows in zip(_REMOTE_SOURCES, results):
        if isinstance(rows, Exception):
            logger.warning("Remote %s unavailable for bundle, using none: %s", model.__tablename__, rows)
            remote[category] = []
            continue
        remote[category] = [to_resource(row, now) for row in rows]

    documents = results[-1]
    if isinstance(documents, Exception):
        logger.warning("Remote %s unavailable for bundle, using none: %s", HealthRecord.__tablename__, documents)
        return remote
    for row in documents:
        resource = manual_resource(row, now)
        if resource is not None:
            remote[MANUAL_DOCUMENT_TYPES[row.document_type.lower()]].append(resource)
    return remote


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

async def assemble_bundle(
    repo: RecordRepository,
    owner_identity: str,
    resolve_identity: IdentityResolver | None,
    session_factory: async_sessionmaker[AsyncSession],
) -> Bundle:
    """Build the export bundle for *owner_identity*.

    Entries are ordered patient, medications, allergies, observations,
    immunizations, documents; within a category local records come before
    remote ones.
    """
    records = await repo.list_all(owner_identity)
    local: dict[RecordCategory, list[FHIRResource]] = {category: [] for category in RecordCategory}
    for record in records:
        local[record.category].append(record.resource)

    now = _timestamp()
    email = None
    if resolve_identity is not None:
        try:
            email = await resolve_identity()
        except Exception as exc:
            logger.warning("Identity resolution failed, exporting local records only: %s", exc)

    remote: dict[RecordCategory, list[FHIRResource]] = {}
    if email:
        remote = await fetch_remote_resources(session_factory, email, now)

    resources: list[FHIRResource] = local[RecordCategory.PATIENT][:1]
    for category in ENTRY_ORDER:
        resources.extend(local[category])
        resources.extend(remote.get(category, []))

    bundle = Bundle.collection(resources, timestamp=now)
    logger.info(
        "Assembled bundle for %s: %d entries (%d remote)",
        owner_identity,
        bundle.total,
        sum(len(v) for v in remote.values()),
    )
    return bundle
