"""
Provider directory — patient/provider links.

A link is created by the patient looking a provider up by email and is
removed only by the patient. There is no pending state: a pair is either
linked or not.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import utcnow
from health_portal.errors import AlreadyLinked, ProviderNotFound
from health_portal.models.profile import Profile
from health_portal.models.provider_link import PatientProvider
from health_portal.models.user import UserRole

logger = logging.getLogger(__name__)


def _display_name(profile: Profile) -> str:
    return profile.full_name or profile.email


async def find_provider_by_email(db: AsyncSession, provider_email: str) -> Profile:
    email = provider_email.strip().lower()
    result = await db.execute(
        select(Profile).where(func.lower(Profile.email) == email, Profile.role == UserRole.PROVIDER)
    )
    provider = result.scalar_one_or_none()
    if provider is None:
        raise ProviderNotFound(f"No provider account found for {provider_email}")
    return provider


async def link_provider(db: AsyncSession, patient_id: uuid.UUID, provider_email: str) -> dict[str, Any]:
    """Grant *provider_email* access to the patient's shared documents.

    Duplicates are caught by the ``uq_patient_provider`` constraint inside a
    savepoint, so two concurrent grants for the same pair cannot both win.
    """
    provider = await find_provider_by_email(db, provider_email)
    link = PatientProvider(
        id=uuid.uuid4(),
        patient_id=patient_id,
        provider_id=provider.id,
        access_granted_at=utcnow(),
    )
    try:
        async with db.begin_nested():
            db.add(link)
    except IntegrityError as exc:
        raise AlreadyLinked(f"{provider.email} is already linked") from exc

    logger.info("Patient %s linked provider %s", patient_id, provider.id)
    return {
        "patient_id": str(link.patient_id),
        "provider_id": str(link.provider_id),
        "display_name": _display_name(provider),
        "email": provider.email,
        "specialty": provider.specialty,
        "access_granted_at": link.access_granted_at.isoformat(),
    }


async def unlink_provider(db: AsyncSession, patient_id: uuid.UUID, provider_id: uuid.UUID) -> bool:
    """Revoke a link. Returns False when there was nothing to revoke."""
    result = await db.execute(
        delete(PatientProvider).where(
            PatientProvider.patient_id == patient_id,
            PatientProvider.provider_id == provider_id,
        )
    )
    removed = result.rowcount > 0
    if removed:
        logger.info("Patient %s unlinked provider %s", patient_id, provider_id)
    return removed


async def is_linked(db: AsyncSession, patient_id: uuid.UUID, provider_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(PatientProvider.id).where(
            PatientProvider.patient_id == patient_id,
            PatientProvider.provider_id == provider_id,
        )
    )
    return result.first() is not None


async def list_linked_providers(db: AsyncSession, patient_id: uuid.UUID) -> list[dict[str, Any]]:
    result = await db.execute(
        select(PatientProvider, Profile)
        .outerjoin(Profile, Profile.id == PatientProvider.provider_id)
        .where(PatientProvider.patient_id == patient_id)
        .order_by(PatientProvider.access_granted_at)
    )
    providers = []
    for link, profile in result.all():
        if profile is None:
            logger.debug("Dropping link to provider %s with no profile", link.provider_id)
            continue
        providers.append({
            "provider_id": str(link.provider_id),
            "display_name": _display_name(profile),
            "email": profile.email,
            "specialty": profile.specialty,
            "access_granted_at": link.access_granted_at.isoformat() if link.access_granted_at else None,
        })
    return providers


async def list_linked_patients(db: AsyncSession, provider_id: uuid.UUID) -> list[dict[str, Any]]:
    result = await db.execute(
        select(PatientProvider, Profile)
        .outerjoin(Profile, Profile.id == PatientProvider.patient_id)
        .where(PatientProvider.provider_id == provider_id)
        .order_by(PatientProvider.access_granted_at)
    )
    patients = []
    for link, profile in result.all():
        if profile is None:
            logger.debug("Dropping link to patient %s with no profile", link.patient_id)
            continue
        patients.append({
            "patient_id": str(link.patient_id),
            "display_name": _display_name(profile),
            "email": profile.email,
            "access_granted_at": link.access_granted_at.isoformat() if link.access_granted_at else None,
        })
    return patients
