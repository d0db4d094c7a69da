"""
API Route Tests

End-to-end flows through the FastAPI app with the test database and a
mocked object store:
- a provider sees a document only after link AND share
- an empty export is still a valid bundle
- account deletion and parse-record authorisation
- auth (profile claims, expiry, stale roles), provider links and the record CRUD surface
"""

from datetime import timedelta

import pytest
from jose import jwt

from health_portal.api.middleware.auth import create_access_token, settings
from health_portal.models.user import UserRole

PDF = b"%PDF-1.4 lab results"


@pytest.fixture
async def patient(make_user):
    return await make_user("ana@example.com", full_name="Ana Lima")


@pytest.fixture
async def provider(make_user):
    return await make_user("dr.smith@example.com", role=UserRole.PROVIDER, full_name="Dr. Jane Smith")


async def _upload(api, headers, name="labs.pdf", document_type="lab_report"):
    return await api.post(
        "/documents",
        headers=headers,
        files={"file": (name, PDF, "application/pdf")},
        data={"document_type": document_type},
    )


class TestSharingFlow:
    async def test_provider_sees_document_after_link_and_share(self, api, auth, patient, provider, storage):
        """Should hide the document until the pair is linked and the document is shared"""
        as_patient, as_provider = auth(patient), auth(provider)
        documents_url = f"/access/patients/{patient.id}/documents"

        response = await _upload(api, as_patient)
        assert response.status_code == 201
        doc = response.json()
        assert doc["is_shared"] is False
        assert doc["document_type"] == "lab_report"
        storage.upload.assert_awaited_once()

        # not linked yet
        response = await api.get(documents_url, headers=as_provider)
        assert response.status_code == 200
        assert response.json() == []

        response = await api.post("/providers", headers=as_patient, json={"provider_email": provider.email})
        assert response.status_code == 201

        # linked, not shared
        assert (await api.get(documents_url, headers=as_provider)).json() == []

        response = await api.put(f"/consent/{doc['id']}", headers=as_patient, json={"shared": True})
        assert response.status_code == 200
        assert response.json()["consent_given"] is True

        response = await api.get(documents_url, headers=as_provider)
        visible = response.json()
        assert [d["file_name"] for d in visible] == ["labs.pdf"]
        assert visible[0]["signed_url"].startswith("https://storage.test/")

    async def test_unlink_hides_again(self, api, auth, patient, provider):
        as_patient, as_provider = auth(patient), auth(provider)
        doc = (await _upload(api, as_patient)).json()
        await api.post("/providers", headers=as_patient, json={"provider_email": provider.email})
        await api.put(f"/consent/{doc['id']}", headers=as_patient, json={"shared": True})

        response = await api.delete(f"/providers/{provider.id}", headers=as_patient)

        assert response.status_code == 204
        assert (await api.get(f"/access/patients/{patient.id}/documents", headers=as_provider)).json() == []

    async def test_provider_lists_linked_patients(self, api, auth, patient, provider):
        await api.post("/providers", headers=auth(patient), json={"provider_email": provider.email})

        response = await api.get("/access/patients", headers=auth(provider))

        assert [p["display_name"] for p in response.json()] == ["Ana Lima"]

    async def test_patient_cannot_use_provider_routes(self, api, auth, patient):
        response = await api.get(f"/access/patients/{patient.id}/documents", headers=auth(patient))

        assert response.status_code == 403


class TestExport:
    async def test_empty_bundle(self, api, auth, patient):
        """Should return a valid collection bundle with no entries"""
        response = await api.get("/export/bundle", headers=auth(patient))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/fhir+json")
        assert "attachment" in response.headers["content-disposition"]
        bundle = response.json()
        assert bundle["resourceType"] == "Bundle"
        assert bundle["type"] == "collection"
        assert bundle["total"] == 0
        assert bundle["entry"] == []

    async def test_record_qr(self, api, auth, patient):
        headers = auth(patient)
        created = await api.post(
            "/records",
            headers=headers,
            json={"category": "medication", "resource": {"medicationCodeableConcept": {"text": "Lisinopril"}}},
        )
        record_id = created.json()["id"]

        response = await api.get(f"/export/records/{record_id}/qr.png", headers=headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content.startswith(b"\x89PNG")


class TestRecords:
    async def test_create_list_and_delete(self, api, auth, patient):
        headers = auth(patient)

        created = await api.post(
            "/records",
            headers=headers,
            json={
                "id": "alg-1",
                "category": "allergy",
                "resource": {"code": {"text": "Peanuts"}},
                "tags": ["food"],
            },
        )
        assert created.status_code == 201
        assert created.json()["resource"]["resourceType"] == "AllergyIntolerance"

        listing = (await api.get("/records", headers=headers)).json()
        assert listing["total"] == 1

        deleted = await api.delete("/records/alg-1", headers=headers)
        assert deleted.json() == {"deleted": "alg-1", "completed": ["record"]}
        assert (await api.get("/records/alg-1", headers=headers)).status_code == 404

    async def test_mismatched_resource_type(self, api, auth, patient):
        response = await api.post(
            "/records",
            headers=auth(patient),
            json={"category": "allergy", "resource": {"resourceType": "Immunization"}},
        )

        assert response.status_code == 422

    async def test_other_owner_id_conflicts(self, api, auth, patient, make_user):
        """Should refuse to overwrite another patient's record id"""
        other = await make_user("ben@example.com")
        body = {"id": "med-1", "category": "medication", "resource": {"medicationCodeableConcept": {"text": "A"}}}
        await api.post("/records", headers=auth(patient), json=body)

        response = await api.post("/records", headers=auth(other), json=body)

        assert response.status_code == 409

    async def test_stats(self, api, auth, patient):
        headers = auth(patient)
        await _upload(api, headers)

        stats = (await api.get("/records/stats", headers=headers)).json()

        assert stats["documents"] == 1
        assert stats["total_records"] == 0

    async def test_document_delete_cascade(self, api, auth, patient, storage):
        headers = auth(patient)
        doc = (await _upload(api, headers)).json()

        response = await api.delete(f"/documents/{doc['id']}", headers=headers)

        assert response.status_code == 200
        assert response.json()["completed"] == ["storage", "derived", "metadata"]
        storage.remove.assert_awaited_once_with(doc["file_path"])
        assert (await api.get("/documents", headers=headers)).json() == []


class TestProviders:
    async def test_duplicate_link_conflicts(self, api, auth, patient, provider):
        headers = auth(patient)
        first = await api.post("/providers", headers=headers, json={"provider_email": provider.email})
        second = await api.post("/providers", headers=headers, json={"provider_email": provider.email})

        assert first.status_code == 201
        assert second.status_code == 409
        assert len((await api.get("/providers", headers=headers)).json()) == 1

    async def test_unknown_provider(self, api, auth, patient):
        response = await api.post("/providers", headers=auth(patient), json={"provider_email": "who@example.com"})

        assert response.status_code == 404

    async def test_unlink_never_linked_is_204(self, api, auth, patient, provider):
        response = await api.delete(f"/providers/{provider.id}", headers=auth(patient))

        assert response.status_code == 204


class TestDeleteAccount:
    async def test_delete_self(self, api, auth, patient):
        headers = auth(patient)

        response = await api.post("/delete-account", headers=headers, json={"userId": str(patient.id)})

        assert response.status_code == 200
        assert response.json() == {"success": True}
        # the token outlives the account but no longer resolves
        assert (await api.get("/auth/me", headers=headers)).status_code == 401

    async def test_cannot_delete_someone_else(self, api, auth, patient, make_user):
        other = await make_user("ben@example.com")

        response = await api.post("/delete-account", headers=auth(patient), json={"userId": str(other.id)})

        assert response.status_code == 403
        assert "error" in response.json()

    async def test_admin_deletes_any_account(self, api, auth, patient, make_user):
        admin = await make_user("admin@example.com", role=UserRole.ADMIN)

        response = await api.post("/delete-account", headers=auth(admin), json={"userId": str(patient.id)})

        assert response.json() == {"success": True}

    async def test_admin_unknown_account(self, api, auth, make_user):
        admin = await make_user("admin@example.com", role=UserRole.ADMIN)

        response = await api.post(
            "/delete-account",
            headers=auth(admin),
            json={"userId": "00000000-0000-0000-0000-000000000000"},
        )

        assert response.status_code == 404
        assert "error" in response.json()

    async def test_requires_authentication(self, api, patient):
        response = await api.post("/delete-account", json={"userId": str(patient.id)})

        assert response.status_code in (401, 403)


class TestParseRecord:
    def _body(self, target="ana@example.com", **extra):
        return {
            "targetPatientEmail": target,
            "parsed": {"provider": "City Clinic", "medications": ["Metformin"], "allergies": ["Penicillin"]},
            "fileName": "labs.pdf",
            "filePath": f"{target}/abc123_labs.pdf",
            **extra,
        }

    async def test_patient_self_upload_is_private(self, api, auth, patient):
        response = await api.post("/parse-record", headers=auth(patient), json=self._body(userEmail="x@example.com"))

        data = response.json()
        assert data["success"] is True
        assert data["is_shared"] is False
        assert data["counts"]["medications"] == 1

    async def test_patient_cannot_target_someone_else(self, api, auth, patient):
        response = await api.post("/parse-record", headers=auth(patient), json=self._body("ben@example.com"))

        assert response.status_code == 403
        assert response.json()["success"] is False

    async def test_unlinked_provider_refused(self, api, auth, patient, provider):
        response = await api.post("/parse-record", headers=auth(provider), json=self._body())

        assert response.status_code == 403

    async def test_linked_provider_upload_is_shared(self, api, auth, patient, provider):
        """Should share a provider's parsed upload and make it visible to them"""
        await api.post("/providers", headers=auth(patient), json={"provider_email": provider.email})

        response = await api.post("/parse-record", headers=auth(provider), json=self._body())

        assert response.json()["is_shared"] is True
        visible = (await api.get(f"/access/patients/{patient.id}/documents", headers=auth(provider))).json()
        assert [d["file_name"] for d in visible] == ["labs.pdf"]

    async def test_duplicate_file_path_conflicts(self, api, auth, patient):
        headers = auth(patient)
        await api.post("/parse-record", headers=headers, json=self._body())

        response = await api.post("/parse-record", headers=headers, json=self._body())

        assert response.status_code == 409
        assert response.json()["success"] is False


class TestAuth:
    async def test_register_login_me(self, api):
        registered = await api.post(
            "/auth/register",
            json={"email": "Cara@Example.com", "password": "correct horse", "full_name": "Cara Diaz"},
        )
        assert registered.status_code == 201
        assert registered.json()["email"] == "cara@example.com"

        login = await api.post("/auth/login", json={"email": "cara@example.com", "password": "correct horse"})
        assert login.status_code == 200
        token = login.json()["access_token"]

        me = await api.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json()["full_name"] == "Cara Diaz"
        assert me.json()["role"] == "patient"

    async def test_wrong_password(self, api):
        await api.post("/auth/register", json={"email": "cara@example.com", "password": "correct horse"})

        response = await api.post("/auth/login", json={"email": "cara@example.com", "password": "wrong horse"})

        assert response.status_code == 401

    async def test_duplicate_registration(self, api):
        body = {"email": "cara@example.com", "password": "correct horse"}
        await api.post("/auth/register", json=body)

        response = await api.post("/auth/register", json=body)

        assert response.status_code == 409

    async def test_admin_cannot_self_register(self, api):
        response = await api.post(
            "/auth/register",
            json={"email": "root@example.com", "password": "correct horse", "role": "admin"},
        )

        assert response.status_code == 403

    async def test_provider_token_carries_profile(self, api):
        """Should return and sign the provider's display name and specialty"""
        await api.post(
            "/auth/register",
            json={
                "email": "dr.smith@example.com",
                "password": "correct horse",
                "full_name": "Dr. Jane Smith",
                "role": "provider",
                "specialty": "Cardiology",
            },
        )

        login = (await api.post("/auth/login", json={"email": "dr.smith@example.com", "password": "correct horse"})).json()

        assert login["display_name"] == "Dr. Jane Smith"
        assert login["specialty"] == "Cardiology"
        claims = jwt.get_unverified_claims(login["access_token"])
        assert claims["name"] == "Dr. Jane Smith"
        assert claims["specialty"] == "Cardiology"

    async def test_patient_token_has_no_specialty(self, api):
        registered = await api.post(
            "/auth/register",
            json={"email": "cara@example.com", "password": "correct horse", "specialty": "Cardiology"},
        )

        body = registered.json()
        assert body["display_name"] == "cara@example.com"
        assert body["specialty"] is None
        assert "specialty" not in jwt.get_unverified_claims(body["access_token"])

    async def test_expired_token(self, api, patient):
        token = create_access_token(patient, expires_delta=timedelta(seconds=-5))

        response = await api.get("/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    async def test_role_change_invalidates_token(self, api, auth, db, patient):
        """Should refuse a token issued before the account's role changed"""
        headers = auth(patient)
        patient.role = UserRole.PROVIDER
        await db.commit()

        response = await api.get("/auth/me", headers=headers)

        assert response.status_code == 401
        assert response.json()["detail"] == "Token no longer matches account"

    async def test_garbage_subject(self, api):
        token = jwt.encode(
            {"sub": "not-a-uuid", "email": "x@example.com", "role": "patient"},
            settings.JWT_SECRET,
            algorithm=settings.JWT_ALGORITHM,
        )

        response = await api.get("/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
