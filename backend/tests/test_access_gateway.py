"""
Access Gateway Tests

A provider sees a document only when the pair is linked AND the document
is shared; every listing carries freshly signed URLs.
"""

import uuid

import pytest

from health_portal.errors import PatientNotFound, StoreUnavailable
from health_portal.models.user import UserRole
from health_portal.services import access_gateway, consent_ledger, provider_directory, record_store


@pytest.fixture
async def patient(make_user):
    return await make_user("ana@example.com", full_name="Ana Lima")


@pytest.fixture
async def provider(make_user):
    return await make_user("dr.smith@example.com", role=UserRole.PROVIDER, full_name="Dr. Jane Smith")


async def _upload(db, storage, file_name, is_shared=False):
    doc = await record_store.upload_document(
        db,
        storage,
        owner_identity="ana@example.com",
        file_name=file_name,
        data=b"%PDF-1.4",
        document_type="lab_report",
        is_shared=is_shared,
    )
    await db.commit()
    return doc


class TestVisibility:
    async def test_unlinked_provider_sees_nothing(self, db, storage, patient, provider):
        """Should return an empty list even when shared documents exist"""
        await _upload(db, storage, "labs.pdf", is_shared=True)

        assert await access_gateway.list_visible_documents(db, storage, provider.id, patient.id) == []
        storage.signed_url.assert_not_awaited()

    async def test_linked_provider_sees_only_shared(self, db, storage, patient, provider):
        """Should list shared documents and hide unshared ones"""
        await _upload(db, storage, "labs.pdf", is_shared=True)
        await _upload(db, storage, "private.pdf")
        await provider_directory.link_provider(db, patient.id, provider.email)

        docs = await access_gateway.list_visible_documents(db, storage, provider.id, patient.id)

        assert [d["file_name"] for d in docs] == ["labs.pdf"]
        assert docs[0]["signed_url"].startswith("https://storage.test/")
        assert docs[0]["signed_url_expires_at"]

    async def test_unsharing_hides_document(self, db, storage, patient, provider):
        """Should stop listing a document as soon as it is unshared"""
        doc = await _upload(db, storage, "labs.pdf", is_shared=True)
        await provider_directory.link_provider(db, patient.id, provider.email)

        await consent_ledger.set_shared(db, doc["id"], False)

        assert await access_gateway.list_visible_documents(db, storage, provider.id, patient.id) == []

    async def test_unlinking_hides_everything(self, db, storage, patient, provider):
        await _upload(db, storage, "labs.pdf", is_shared=True)
        await provider_directory.link_provider(db, patient.id, provider.email)
        await provider_directory.unlink_provider(db, patient.id, provider.id)

        assert await access_gateway.list_visible_documents(db, storage, provider.id, patient.id) == []

    async def test_urls_are_signed_per_call(self, db, storage, patient, provider):
        """Should never hand out a cached URL"""
        await _upload(db, storage, "labs.pdf", is_shared=True)
        await provider_directory.link_provider(db, patient.id, provider.email)

        first = await access_gateway.list_visible_documents(db, storage, provider.id, patient.id)
        second = await access_gateway.list_visible_documents(db, storage, provider.id, patient.id)

        assert first[0]["signed_url"] != second[0]["signed_url"]
        assert storage.signed_url.await_count == 2

    async def test_signing_failure_degrades_to_no_url(self, db, storage, patient, provider, caplog):
        """Should still list the document when its URL cannot be signed"""
        await _upload(db, storage, "labs.pdf", is_shared=True)
        await provider_directory.link_provider(db, patient.id, provider.email)
        storage.signed_url.side_effect = StoreUnavailable("bucket offline")

        with caplog.at_level("WARNING"):
            docs = await access_gateway.list_visible_documents(db, storage, provider.id, patient.id)

        assert docs[0]["signed_url"] is None
        assert "Could not sign" in caplog.text


class TestProviderUpload:
    async def test_requires_link(self, db, storage, patient, provider):
        with pytest.raises(PatientNotFound):
            await access_gateway.upload_for_patient(
                db, storage, provider, patient.id,
                file_name="scan.png", data=b"png", document_type="imaging",
            )
        storage.upload.assert_not_awaited()

    async def test_upload_is_shared_and_attributed(self, db, storage, patient, provider):
        """Should store the upload under the patient, shared, naming the provider"""
        await provider_directory.link_provider(db, patient.id, provider.email)

        doc = await access_gateway.upload_for_patient(
            db, storage, provider, patient.id,
            file_name="scan.png", data=b"png", document_type="imaging", content_type="image/png",
        )

        assert doc["email"] == "ana@example.com"
        assert doc["is_shared"] is True
        assert doc["uploaded_by"] == "dr.smith@example.com"
        assert doc["provider_name"] == "Dr. Jane Smith"

    async def test_unknown_patient(self, db, storage, provider):
        with pytest.raises(PatientNotFound):
            await access_gateway.upload_for_patient(
                db, storage, provider, uuid.uuid4(),
                file_name="scan.png", data=b"png", document_type="imaging",
            )
