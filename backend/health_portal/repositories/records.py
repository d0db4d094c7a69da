"""
Keyed storage for clinical records.

Callers talk to ``RecordRepository`` only; the backing store (SQL table,
process memory, JSON file on disk) is picked by configuration.
Every backend enforces the same rules on ``save``: upsert by id, refresh
``last_modified`` unconditionally, keep the original ``date_added``, and
refuse to overwrite a record that belongs to another owner.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import weakref
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import dialect_insert, utcnow
from health_portal.errors import Conflict, StoreUnavailable
from health_portal.models.clinical_record import ClinicalRecord
from health_portal.schemas.fhir import dump_resource
from health_portal.schemas.records import StoredRecord

logger = logging.getLogger(__name__)


class RecordRepository(ABC):
    @abstractmethod
    async def list_all(self, owner_identity: str) -> list[StoredRecord]:
        ...

    @abstractmethod
    async def get(self, record_id: str) -> StoredRecord | None:
        ...

    @abstractmethod
    async def save(self, record: StoredRecord) -> StoredRecord:
        """Insert or replace *record*. Raises ``Conflict`` if the id is owned by someone else."""

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_derived(self, source_record_id: str) -> list[str]:
        """Delete every record parsed from *source_record_id*; return their ids."""

    @abstractmethod
    async def clear(self, owner_identity: str) -> int:
        ...


def _stamp(record: StoredRecord, existing: StoredRecord | None) -> StoredRecord:
    if existing is not None and existing.owner_identity != record.owner_identity:
        raise Conflict(f"Record {record.id} belongs to another owner")
    now = utcnow()
    if existing is not None:
        date_added = existing.date_added
    else:
        date_added = record.date_added or now
    return record.model_copy(update={"date_added": date_added, "last_modified": now})


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryRecordRepository(RecordRepository):
    def __init__(self):
        self._records: dict[str, StoredRecord] = {}

    async def list_all(self, owner_identity: str) -> list[StoredRecord]:
        return [r for r in self._records.values() if r.owner_identity == owner_identity]

    async def get(self, record_id: str) -> StoredRecord | None:
        return self._records.get(record_id)

    async def save(self, record: StoredRecord) -> StoredRecord:
        stored = _stamp(record, self._records.get(record.id))
        self._records[stored.id] = stored
        return stored

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def delete_derived(self, source_record_id: str) -> list[str]:
        ids = [r.id for r in self._records.values() if r.source_record_id == source_record_id]
        for record_id in ids:
            del self._records[record_id]
        return ids

    async def clear(self, owner_identity: str) -> int:
        ids = [r.id for r in self._records.values() if r.owner_identity == owner_identity]
        for record_id in ids:
            del self._records[record_id]
        return len(ids)


# ---------------------------------------------------------------------------
# JSON file
# ---------------------------------------------------------------------------

# One write lock per cache file, shared by every repository on that path.
# asyncio locks belong to a loop, so they are kept per running loop.
_file_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[Path, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _file_lock(path: Path) -> asyncio.Lock:
    locks = _file_locks.setdefault(asyncio.get_running_loop(), {})
    if path not in locks:
        locks[path] = asyncio.Lock()
    return locks[path]


class JsonFileRecordRepository(RecordRepository):
    """Records kept in a single JSON document: ``{"records": {id: record}}``.

    Files written by older builds hold a flat list of records (optionally
    under ``"records"``); those are read as well and rewritten keyed on the
    next save. An unreadable file is treated as empty and logged.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).resolve()

    def _load(self) -> dict[str, StoredRecord]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StoreUnavailable(f"Cannot read record cache {self.path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Record cache %s is malformed, treating as empty: %s", self.path, exc)
            return {}

        items = data.get("records", {}) if isinstance(data, dict) else data
        if isinstance(items, dict):
            items = list(items.values())
        if not isinstance(items, list):
            logger.warning("Record cache %s has unexpected shape, treating as empty", self.path)
            return {}

        records: dict[str, StoredRecord] = {}
        for item in items:
            try:
                record = StoredRecord.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid cached record in %s: %s", self.path, exc.errors()[:1])
                continue
            records[record.id] = record
        return records

    def _dump(self, records: dict[str, StoredRecord]) -> None:
        payload = {"records": {rid: r.model_dump(mode="json", exclude_none=True) for rid, r in records.items()}}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".records-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StoreUnavailable(f"Cannot write record cache {self.path}: {exc}") from exc

    async def _read(self) -> dict[str, StoredRecord]:
        return await asyncio.to_thread(self._load)

    async def _write(self, records: dict[str, StoredRecord]) -> None:
        await asyncio.to_thread(self._dump, records)

    async def list_all(self, owner_identity: str) -> list[StoredRecord]:
        records = await self._read()
        return [r for r in records.values() if r.owner_identity == owner_identity]

    async def get(self, record_id: str) -> StoredRecord | None:
        return (await self._read()).get(record_id)

    async def save(self, record: StoredRecord) -> StoredRecord:
        async with _file_lock(self.path):
            records = await self._read()
            stored = _stamp(record, records.get(record.id))
            records[stored.id] = stored
            await self._write(records)
        return stored

    async def delete(self, record_id: str) -> bool:
        async with _file_lock(self.path):
            records = await self._read()
            if records.pop(record_id, None) is None:
                return False
            await self._write(records)
        return True

    async def delete_derived(self, source_record_id: str) -> list[str]:
        async with _file_lock(self.path):
            records = await self._read()
            ids = [rid for rid, r in records.items() if r.source_record_id == source_record_id]
            if ids:
                for rid in ids:
                    del records[rid]
                await self._write(records)
        return ids

    async def clear(self, owner_identity: str) -> int:
        async with _file_lock(self.path):
            records = await self._read()
            kept = {rid: r for rid, r in records.items() if r.owner_identity != owner_identity}
            removed = len(records) - len(kept)
            if removed:
                await self._write(kept)
        return removed


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

class SqlRecordRepository(RecordRepository):
    """Records in the ``clinical_records`` table, sharing the request's session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_all(self, owner_identity: str) -> list[StoredRecord]:
        result = await self.db.execute(
            select(ClinicalRecord)
            .where(ClinicalRecord.owner_identity == owner_identity)
            .order_by(ClinicalRecord.date_added, ClinicalRecord.id)
            .execution_options(populate_existing=True)
        )
        return [StoredRecord.model_validate(row) for row in result.scalars().all()]

    async def get(self, record_id: str) -> StoredRecord | None:
        result = await self.db.execute(
            select(ClinicalRecord)
            .where(ClinicalRecord.id == record_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return StoredRecord.model_validate(row) if row is not None else None

    async def save(self, record: StoredRecord) -> StoredRecord:
        now = utcnow()
        values = {
            "id": record.id,
            "owner_identity": record.owner_identity,
            "category": record.category,
            "resource": dump_resource(record.resource),
            "source_record_id": record.source_record_id,
            "visit_date": record.visit_date,
            "provider": record.provider,
            "tags": list(record.tags),
            "date_added": record.date_added or now,
            "last_modified": now,
        }
        stmt = dialect_insert(self.db, ClinicalRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                key: getattr(stmt.excluded, key)
                for key in ("category", "resource", "source_record_id", "visit_date", "provider", "tags", "last_modified")
            },
            where=ClinicalRecord.owner_identity == stmt.excluded.owner_identity,
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            raise Conflict(f"Record {record.id} belongs to another owner")
        return await self.get(record.id)

    async def delete(self, record_id: str) -> bool:
        result = await self.db.execute(delete(ClinicalRecord).where(ClinicalRecord.id == record_id))
        return result.rowcount > 0

    async def delete_derived(self, source_record_id: str) -> list[str]:
        result = await self.db.execute(
            select(ClinicalRecord.id).where(ClinicalRecord.source_record_id == source_record_id)
        )
        ids = list(result.scalars().all())
        if ids:
            await self.db.execute(delete(ClinicalRecord).where(ClinicalRecord.id.in_(ids)))
        return ids

    async def clear(self, owner_identity: str) -> int:
        result = await self.db.execute(
            delete(ClinicalRecord).where(ClinicalRecord.owner_identity == owner_identity)
        )
        return result.rowcount
