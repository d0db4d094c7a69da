"""
Async client for the portal API, holding the state a patient UI renders.

Destructive calls ask ``confirm`` twice and send nothing unless both
answers are yes. Document listing and previews can be abandoned: a response
that arrives after ``abandon_*`` is dropped instead of published.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import httpx

from health_portal.client.toggle import RelevanceGuard, SharingToggle, ToggleState
from health_portal.errors import (
    AlreadyLinked,
    Conflict,
    NotFound,
    PortalError,
    ProviderNotFound,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]


def _deny(message: str) -> bool:
    return False


class PortalClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        confirm: Optional[ConfirmCallback] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport, timeout=timeout)
        self.confirm = confirm or _deny
        self.documents: list[dict[str, Any]] = []
        self.preview: Optional[dict[str, Any]] = None
        self.toggles: dict[str, SharingToggle] = {}
        self._documents_guard = RelevanceGuard()
        self._preview_guard = RelevanceGuard()

    async def __aenter__(self) -> "PortalClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            detail = body.get("detail", body.get("error"))
            if isinstance(detail, dict):
                detail = detail.get("error")
            if detail:
                return str(detail)
        return response.reason_phrase

    def _raise_for_error(self, response: httpx.Response, not_found=NotFound, conflict=Conflict) -> None:
        if response.is_success:
            return
        message = self._error_message(response)
        if response.status_code == 404:
            raise not_found(message)
        if response.status_code == 409:
            raise conflict(message)
        if response.status_code == 503:
            raise StoreUnavailable(message)
        error = PortalError(message)
        error.status_code = response.status_code
        raise error

    def _confirm_twice(self, action: str) -> bool:
        if not self.confirm(f"{action}?"):
            return False
        return bool(self.confirm(f"{action}: this cannot be undone. Are you sure?"))

    def _document(self, document_id: str) -> dict[str, Any]:
        for doc in self.documents:
            if doc["id"] == document_id:
                return doc
        raise NotFound(f"Document {document_id} is not loaded")

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> dict[str, Any]:
        response = await self._client.post("/auth/login", json={"email": email, "password": password})
        self._raise_for_error(response)
        data = response.json()
        self._client.headers["Authorization"] = f"Bearer {data['access_token']}"
        return data

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def refresh_documents(self) -> Optional[list[dict[str, Any]]]:
        """Reload ``documents``. Returns None if the refresh was abandoned meanwhile."""
        token = self._documents_guard.issue()
        response = await self._client.get("/documents")
        if not self._documents_guard.is_current(token):
            logger.debug("Dropping abandoned document listing")
            return None
        self._raise_for_error(response)
        self.documents = response.json()
        return self.documents

    def abandon_documents(self) -> None:
        self._documents_guard.abandon()

    async def open_preview(self, document_id: str) -> Optional[dict[str, Any]]:
        """Fetch a signed URL for *document_id* into ``preview`` unless closed meanwhile."""
        token = self._preview_guard.issue()
        response = await self._client.get(f"/documents/{document_id}/url")
        if not self._preview_guard.is_current(token):
            logger.debug("Dropping signed URL for closed preview %s", document_id)
            return None
        self._raise_for_error(response)
        self.preview = response.json()
        return self.preview

    def close_preview(self) -> None:
        self._preview_guard.abandon()
        self.preview = None

    async def toggle_sharing(self, document_id: str, shared: bool) -> bool:
        """Flip a loaded document's flag optimistically; restored if the server refuses.

        One change per document is in flight at a time; a second one while the
        first is pending raises ``Conflict`` and sends nothing.
        """
        doc = self._document(document_id)
        toggle = self.toggles.get(document_id)
        if toggle is None:
            toggle = SharingToggle(record_id=document_id, value=bool(doc["is_shared"]))
            self.toggles[document_id] = toggle
        elif toggle.state == ToggleState.PENDING:
            raise Conflict(f"Sharing change for {document_id} is still pending")
        else:
            # the listing may have been reloaded since the last change
            toggle.value = bool(doc["is_shared"])
        toggle.on_change = lambda value: doc.__setitem__("is_shared", value)

        async def persist(value: bool) -> bool:
            response = await self._client.put(f"/consent/{document_id}", json={"shared": value})
            self._raise_for_error(response)
            return bool(response.json()["consent_given"])

        return await toggle.run(shared, persist)

    async def delete_document(self, document_id: str) -> bool:
        if not self._confirm_twice("Delete this document"):
            return False
        response = await self._client.delete(f"/documents/{document_id}")
        self._raise_for_error(response)
        self.documents = [doc for doc in self.documents if doc["id"] != document_id]
        return True

    # ------------------------------------------------------------------
    # Providers and account
    # ------------------------------------------------------------------

    async def list_providers(self) -> list[dict[str, Any]]:
        response = await self._client.get("/providers")
        self._raise_for_error(response)
        return response.json()

    async def link_provider(self, provider_email: str) -> dict[str, Any]:
        response = await self._client.post("/providers", json={"provider_email": provider_email})
        self._raise_for_error(response, not_found=ProviderNotFound, conflict=AlreadyLinked)
        return response.json()

    async def unlink_provider(self, provider_id: str) -> bool:
        if not self._confirm_twice("Revoke this provider's access"):
            return False
        response = await self._client.delete(f"/providers/{provider_id}")
        self._raise_for_error(response)
        return True

    async def delete_account(self, user_id: str) -> bool:
        if not self._confirm_twice("Delete your account"):
            return False
        response = await self._client.post("/delete-account", json={"userId": user_id})
        self._raise_for_error(response)
        return True
