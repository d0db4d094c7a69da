"""
Shared fixtures.

Each test gets its own SQLite file (through aiosqlite) with the full schema,
a mocked object store, and factories for accounts and records.
"""

import itertools
import os
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

# Settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEBUG"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["RECORD_BACKEND"] = "sql"

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import health_portal.models  # noqa: F401
from health_portal.db.postgres import Base, get_db, utcnow
from health_portal.db.storage import BlobStorage, SignedUrl
from health_portal.models.profile import Profile
from health_portal.models.user import User, UserRole
from health_portal.repositories.records import SqlRecordRepository
from health_portal.schemas.fhir import parse_resource
from health_portal.schemas.records import StoredRecord
from health_portal.api.middleware import rate_limit
from health_portal.api.middleware.auth import create_access_token


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}")

    # pysqlite defers BEGIN on its own; take it over so SAVEPOINT works
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def repo(db):
    return SqlRecordRepository(db)


@pytest.fixture
def storage():
    counter = itertools.count(1)

    def _sign(object_key, expires_in=None):
        return SignedUrl(
            url=f"https://storage.test/health-records/{object_key}?X-Amz-Signature={next(counter)}",
            expires_at=utcnow() + timedelta(seconds=expires_in or 60),
        )

    storage = Mock(spec=BlobStorage)
    storage.bucket = "health-records"
    storage.ensure_bucket = AsyncMock()
    storage.upload = AsyncMock()
    storage.remove = AsyncMock()
    storage.list = AsyncMock(return_value=[])
    storage.signed_url = AsyncMock(side_effect=_sign)
    return storage


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    rate_limit._memory_store.clear()
    yield
    rate_limit._memory_store.clear()


@pytest.fixture
def make_user(db):
    async def _make_user(email, role=UserRole.PATIENT, full_name=None, specialty=None, with_profile=True):
        user = User(id=uuid.uuid4(), email=email, hashed_password="not-a-real-hash", role=role)
        db.add(user)
        if with_profile:
            db.add(Profile(id=user.id, email=email, full_name=full_name, role=role, specialty=specialty))
        await db.commit()
        return user

    return _make_user


def build_record(record_id, owner, category, resource, **fields):
    """StoredRecord with a validated resource for *category*."""
    payload = dict(resource)
    payload["id"] = record_id
    return StoredRecord(
        id=record_id,
        owner_identity=owner,
        category=category,
        resource=parse_resource(category, payload),
        **fields,
    )


@pytest.fixture
def medication_record():
    def _medication(record_id, owner, text="Lisinopril 10mg", **fields):
        return build_record(record_id, owner, "medication", {"medicationCodeableConcept": {"text": text}}, **fields)

    return _medication


@pytest.fixture
async def api(session_factory, storage):
    """HTTP client bound to the app, with the test database and mocked storage."""
    from health_portal.main import app
    from health_portal.api.dependencies import get_blob_storage, get_session_factory

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_blob_storage] = lambda: storage
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test/api/v1") as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def record_factory():
    return build_record


@pytest.fixture
def auth():
    return auth_headers
