"""
Object storage for uploaded documents (MinIO / any S3-compatible endpoint).

All object keys are namespaced by the owner's identity
(``<owner>/<uuid>_<file name>``) so that listing by prefix never crosses
patients. Presigned GET URLs are minted per request and expire after
``SIGNED_URL_EXPIRY_SECONDS``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from health_portal.config import get_settings
from health_portal.db.postgres import utcnow
from health_portal.errors import StoreUnavailable

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class SignedUrl:
    url: str
    expires_at: datetime


def generate_object_key(owner_identity: str, filename: str) -> str:
    """Unique, owner-namespaced object key for an uploaded file."""
    unique_id = uuid.uuid4().hex[:12]
    safe_filename = "".join(c for c in filename if c.isalnum() or c in "._-") or "file"
    safe_owner = "".join(c for c in owner_identity if c.isalnum() or c in "@._-")
    return f"{safe_owner}/{unique_id}_{safe_filename}"


class BlobStorage:
    """Thin async wrapper around the MinIO client.

    The MinIO SDK is blocking, so every call runs in a worker thread.
    """

    def __init__(self, client: Minio, bucket: str):
        self.client = client
        self.bucket = bucket

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (S3Error, HTTPError) as exc:
            raise StoreUnavailable(f"Object storage error: {exc}") from exc

    async def ensure_bucket(self) -> None:
        if not await self._call(self.client.bucket_exists, self.bucket):
            await self._call(self.client.make_bucket, self.bucket)
            logger.info("Created storage bucket %s", self.bucket)

    async def upload(self, object_key: str, data: bytes, content_type: str) -> None:
        await self._call(
            self.client.put_object,
            self.bucket,
            object_key,
            io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    async def remove(self, object_key: str) -> None:
        await self._call(self.client.remove_object, self.bucket, object_key)

    async def list(self, prefix: str) -> list[str]:
        def _list():
            return [
                obj.object_name
                for obj in self.client.list_objects(self.bucket, prefix=prefix, recursive=True)
            ]

        return await self._call(_list)

    async def signed_url(self, object_key: str, expires_in: int | None = None) -> SignedUrl:
        seconds = expires_in or settings.SIGNED_URL_EXPIRY_SECONDS
        url = await self._call(
            self.client.presigned_get_object,
            self.bucket,
            object_key,
            expires=timedelta(seconds=seconds),
        )
        return SignedUrl(url=url, expires_at=utcnow() + timedelta(seconds=seconds))


def get_minio_client() -> Minio:
    return Minio(
        settings.MINIO_ENDPOINT,
        access_key=settings.MINIO_ACCESS_KEY,
        secret_key=settings.MINIO_SECRET_KEY,
        secure=settings.MINIO_USE_SSL,
    )


_storage: BlobStorage | None = None


def get_storage() -> BlobStorage:
    global _storage
    if _storage is None:
        _storage = BlobStorage(get_minio_client(), settings.STORAGE_BUCKET)
    return _storage
