"""Shared FastAPI dependencies; overridden in tests."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from health_portal.db.postgres import async_session, get_db
from health_portal.db.storage import BlobStorage, get_storage
from health_portal.repositories.records import RecordRepository
from health_portal.services import record_store


def get_repository(db: AsyncSession = Depends(get_db)) -> RecordRepository:
    return record_store.get_record_repository(db)


def get_blob_storage() -> BlobStorage:
    return get_storage()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session
