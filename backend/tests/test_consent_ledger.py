"""
Consent Ledger Tests

Sharing flag transitions on documents and clinical records, and the
free-text grantee set.
"""

import uuid

import pytest

from health_portal.errors import RecordNotFound
from health_portal.services import consent_ledger, record_store


@pytest.fixture
async def document(db, storage):
    doc = await record_store.upload_document(
        db,
        storage,
        owner_identity="ana@example.com",
        file_name="labs.pdf",
        data=b"%PDF-1.4",
        document_type="lab_report",
    )
    await db.commit()
    return doc


class TestSharingFlag:
    async def test_new_document_is_not_shared(self, db, document):
        """Should start a document unshared with no grantees"""
        state = await consent_ledger.get_consent(db, document["id"], "ana@example.com")

        assert state.consent_given is False
        assert state.shared_with == []
        assert state.last_shared is None

    async def test_set_shared_twice_is_idempotent(self, db, document):
        """Should leave the state unchanged when the current value is repeated"""
        await consent_ledger.add_grantee(db, document["id"], "Dr. Smith")
        first = await consent_ledger.set_shared(db, document["id"], True, "ana@example.com")
        second = await consent_ledger.set_shared(db, document["id"], True, "ana@example.com")

        assert first.consent_given is second.consent_given is True
        assert second.last_shared == first.last_shared

    async def test_last_shared_moves_only_with_grantees(self, db, document):
        """Should stamp last_shared on false to true only while a grantee exists"""
        without = await consent_ledger.set_shared(db, document["id"], True)
        assert without.consent_given is True
        assert without.last_shared is None

        await consent_ledger.set_shared(db, document["id"], False)
        await consent_ledger.add_grantee(db, document["id"], "Dr. Smith")
        with_grantee = await consent_ledger.set_shared(db, document["id"], True)

        assert with_grantee.last_shared is not None

    async def test_unshare_keeps_grantees_and_last_shared(self, db, document):
        """Should clear only the flag when sharing is turned off"""
        await consent_ledger.add_grantee(db, document["id"], "Dr. Smith")
        shared = await consent_ledger.set_shared(db, document["id"], True)

        unshared = await consent_ledger.set_shared(db, document["id"], False)

        assert unshared.consent_given is False
        assert unshared.shared_with == ["Dr. Smith"]
        assert unshared.last_shared == shared.last_shared

    async def test_flag_lives_on_the_document(self, db, document):
        """Should write the document's is_shared column, which providers read"""
        await consent_ledger.set_shared(db, document["id"], True)

        doc = await record_store.get_document(db, document["id"])
        assert doc.is_shared is True

    async def test_clinical_record_consent(self, db, repo, medication_record):
        """Should track consent for clinical records through their consent row"""
        await record_store.save(db, repo, medication_record("med-1", "ana@example.com"))
        await consent_ledger.add_grantee(db, "med-1", "Harbor Clinic")

        state = await consent_ledger.set_shared(db, "med-1", True, "ana@example.com")

        assert state.consent_given is True
        assert state.last_shared is not None

    async def test_other_owner_cannot_toggle(self, db, document):
        """Should treat another owner's document as not found"""
        with pytest.raises(RecordNotFound):
            await consent_ledger.set_shared(db, document["id"], True, "mallory@example.com")

        state = await consent_ledger.get_consent(db, document["id"])
        assert state.consent_given is False

    async def test_unknown_record(self, db):
        with pytest.raises(RecordNotFound):
            await consent_ledger.get_consent(db, str(uuid.uuid4()))
        with pytest.raises(RecordNotFound):
            await consent_ledger.set_shared(db, "missing", True)


class TestGrantees:
    async def test_grantees_form_a_set(self, db, document):
        """Should ignore a duplicate grantee and keep the set sorted"""
        await consent_ledger.add_grantee(db, document["id"], "Dr. Smith")
        await consent_ledger.add_grantee(db, document["id"], " Dr. Smith ")
        state = await consent_ledger.add_grantee(db, document["id"], "City Clinic")

        assert state.shared_with == ["City Clinic", "Dr. Smith"]

    async def test_remove_grantee(self, db, document):
        await consent_ledger.add_grantee(db, document["id"], "Dr. Smith")

        state = await consent_ledger.remove_grantee(db, document["id"], "Dr. Smith")
        again = await consent_ledger.remove_grantee(db, document["id"], "Dr. Smith")

        assert state.shared_with == []
        assert again.shared_with == []

    async def test_empty_grantee_rejected(self, db, document):
        with pytest.raises(ValueError):
            await consent_ledger.add_grantee(db, document["id"], "   ")

    async def test_grantees_do_not_grant_access(self, db, document):
        """Should not flip the sharing flag by adding a grantee"""
        state = await consent_ledger.add_grantee(db, document["id"], "Dr. Smith")

        assert state.consent_given is False
