from health_portal.repositories.records import (
    RecordRepository,
    InMemoryRecordRepository,
    JsonFileRecordRepository,
    SqlRecordRepository,
)

__all__ = [
    "RecordRepository",
    "InMemoryRecordRepository",
    "JsonFileRecordRepository",
    "SqlRecordRepository",
]
