"""
Consent ledger — sharing flag and free-text grantees per record.

Documents carry their flag on ``health_records.is_shared`` (the only flag
the provider-side access path reads); clinical records use
``consent_states``. Grantees are display data for both.
"""

from __future__ import annotations

import logging

from sqlalchemy import DateTime, and_, case, delete, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import dialect_insert, utcnow
from health_portal.errors import RecordNotFound
from health_portal.models.consent import ConsentGrantee, ConsentRecord
from health_portal.models.health_record import HealthRecord
from health_portal.schemas.records import ConsentState
from health_portal.services.record_store import as_document_id

logger = logging.getLogger(__name__)


async def _grantees(db: AsyncSession, record_id: str) -> list[str]:
    result = await db.execute(
        select(ConsentGrantee.grantee)
        .where(ConsentGrantee.record_id == record_id)
        .order_by(ConsentGrantee.grantee)
    )
    return list(result.scalars().all())


async def get_consent(db: AsyncSession, record_id: str, owner_identity: str | None = None) -> ConsentState:
    doc_id = as_document_id(record_id)
    if doc_id is not None:
        query = select(HealthRecord.is_shared, HealthRecord.last_shared).where(HealthRecord.id == doc_id)
        if owner_identity is not None:
            query = query.where(HealthRecord.email == owner_identity)
        row = (await db.execute(query)).first()
        if row is not None:
            return ConsentState(
                record_id=record_id,
                consent_given=bool(row.is_shared),
                shared_with=await _grantees(db, record_id),
                last_shared=row.last_shared,
            )

    query = select(ConsentRecord.consent_given, ConsentRecord.last_shared).where(
        ConsentRecord.record_id == record_id
    )
    if owner_identity is not None:
        query = query.where(ConsentRecord.owner_identity == owner_identity)
    row = (await db.execute(query)).first()
    if row is None:
        raise RecordNotFound(f"Record {record_id} not found")
    return ConsentState(
        record_id=record_id,
        consent_given=bool(row.consent_given),
        shared_with=await _grantees(db, record_id),
        last_shared=row.last_shared,
    )


async def set_shared(
    db: AsyncSession,
    record_id: str,
    shared: bool,
    owner_identity: str | None = None,
) -> ConsentState:
    """Set the sharing flag with one conditional UPDATE.

    Repeating the current value changes nothing. ``last_shared`` moves only
    on a not-shared to shared transition while at least one grantee exists;
    unsharing keeps both the grantees and ``last_shared``.
    """
    now = utcnow()
    has_grantees = select(ConsentGrantee.id).where(ConsentGrantee.record_id == record_id).exists()

    doc_id = as_document_id(record_id)
    if doc_id is not None:
        values = {"is_shared": shared}
        if shared:
            values["last_shared"] = case(
                (and_(HealthRecord.is_shared.is_(False), has_grantees), literal(now, DateTime)),
                else_=HealthRecord.last_shared,
            )
        stmt = update(HealthRecord).where(HealthRecord.id == doc_id)
        if owner_identity is not None:
            stmt = stmt.where(HealthRecord.email == owner_identity)
        result = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if result.rowcount:
            logger.info("Document %s shared=%s", record_id, shared)
            return await get_consent(db, record_id)

    values = {"consent_given": shared}
    if shared:
        values["last_shared"] = case(
            (and_(ConsentRecord.consent_given.is_(False), has_grantees), literal(now, DateTime)),
            else_=ConsentRecord.last_shared,
        )
    stmt = update(ConsentRecord).where(ConsentRecord.record_id == record_id)
    if owner_identity is not None:
        stmt = stmt.where(ConsentRecord.owner_identity == owner_identity)
    result = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if not result.rowcount:
        raise RecordNotFound(f"Record {record_id} not found")
    logger.info("Record %s shared=%s", record_id, shared)
    return await get_consent(db, record_id)


async def add_grantee(
    db: AsyncSession,
    record_id: str,
    grantee: str,
    owner_identity: str | None = None,
) -> ConsentState:
    grantee = grantee.strip()
    if not grantee:
        raise ValueError("Grantee must not be empty")
    await get_consent(db, record_id, owner_identity)
    stmt = dialect_insert(db, ConsentGrantee).values(record_id=record_id, grantee=grantee, added_at=utcnow())
    await db.execute(stmt.on_conflict_do_nothing(index_elements=["record_id", "grantee"]))
    return await get_consent(db, record_id)


async def remove_grantee(
    db: AsyncSession,
    record_id: str,
    grantee: str,
    owner_identity: str | None = None,
) -> ConsentState:
    await get_consent(db, record_id, owner_identity)
    await db.execute(
        delete(ConsentGrantee).where(
            ConsentGrantee.record_id == record_id,
            ConsentGrantee.grantee == grantee.strip(),
        )
    )
    return await get_consent(db, record_id)
