"""
Provider Directory Tests

Linking by email, duplicate protection, revocation, and the joined
listings on both sides of a link.
"""

import uuid

import pytest
from sqlalchemy import func, select

from health_portal.errors import AlreadyLinked, ProviderNotFound
from health_portal.models.provider_link import PatientProvider
from health_portal.models.user import UserRole
from health_portal.services import provider_directory


@pytest.fixture
async def patient(make_user):
    return await make_user("ana@example.com", full_name="Ana Lima")


@pytest.fixture
async def provider(make_user):
    return await make_user(
        "dr.smith@example.com",
        role=UserRole.PROVIDER,
        full_name="Dr. Jane Smith",
        specialty="Cardiology",
    )


class TestLinking:
    async def test_link_by_email(self, db, patient, provider):
        """Should link a provider found case-insensitively by email"""
        link = await provider_directory.link_provider(db, patient.id, "  DR.SMITH@example.com ")

        assert link["provider_id"] == str(provider.id)
        assert link["display_name"] == "Dr. Jane Smith"
        assert link["specialty"] == "Cardiology"
        assert await provider_directory.is_linked(db, patient.id, provider.id)

    async def test_second_link_is_rejected(self, db, patient, provider):
        """Should refuse a duplicate link and keep a single row"""
        await provider_directory.link_provider(db, patient.id, provider.email)

        with pytest.raises(AlreadyLinked):
            await provider_directory.link_provider(db, patient.id, provider.email)

        count = await db.execute(select(func.count()).select_from(PatientProvider))
        assert count.scalar_one() == 1

    async def test_unknown_email(self, db, patient):
        with pytest.raises(ProviderNotFound):
            await provider_directory.link_provider(db, patient.id, "nobody@example.com")

    async def test_patient_email_is_not_a_provider(self, db, patient, make_user):
        """Should not link an account that is not a provider"""
        await make_user("ben@example.com")

        with pytest.raises(ProviderNotFound):
            await provider_directory.link_provider(db, patient.id, "ben@example.com")


class TestUnlinking:
    async def test_unlink_removes_from_listing(self, db, patient, provider):
        """Should drop the provider from the patient's list after unlink"""
        await provider_directory.link_provider(db, patient.id, provider.email)

        assert await provider_directory.unlink_provider(db, patient.id, provider.id) is True
        assert await provider_directory.list_linked_providers(db, patient.id) == []
        assert not await provider_directory.is_linked(db, patient.id, provider.id)

    async def test_unlink_is_idempotent(self, db, patient, provider):
        """Should report nothing removed for a pair that was never linked"""
        assert await provider_directory.unlink_provider(db, patient.id, provider.id) is False

    async def test_relink_after_unlink(self, db, patient, provider):
        await provider_directory.link_provider(db, patient.id, provider.email)
        await provider_directory.unlink_provider(db, patient.id, provider.id)

        await provider_directory.link_provider(db, patient.id, provider.email)

        assert await provider_directory.is_linked(db, patient.id, provider.id)


class TestListings:
    async def test_both_sides_of_a_link(self, db, patient, provider):
        """Should list the provider for the patient and the patient for the provider"""
        await provider_directory.link_provider(db, patient.id, provider.email)

        providers = await provider_directory.list_linked_providers(db, patient.id)
        patients = await provider_directory.list_linked_patients(db, provider.id)

        assert [p["email"] for p in providers] == ["dr.smith@example.com"]
        assert providers[0]["access_granted_at"]
        assert [p["display_name"] for p in patients] == ["Ana Lima"]

    async def test_link_without_profile_is_dropped(self, db, patient, provider):
        """Should silently skip links whose provider has no profile"""
        await provider_directory.link_provider(db, patient.id, provider.email)
        db.add(PatientProvider(id=uuid.uuid4(), patient_id=patient.id, provider_id=uuid.uuid4()))
        await db.flush()

        providers = await provider_directory.list_linked_providers(db, patient.id)

        assert [p["provider_id"] for p in providers] == [str(provider.id)]

    async def test_display_name_falls_back_to_email(self, db, patient, make_user):
        await make_user("nameless@example.com", role=UserRole.PROVIDER)
        await provider_directory.link_provider(db, patient.id, "nameless@example.com")

        providers = await provider_directory.list_linked_providers(db, patient.id)

        assert providers[0]["display_name"] == "nameless@example.com"
