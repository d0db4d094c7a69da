from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from health_portal.models.clinical_record import RecordCategory
from health_portal.schemas.fhir import RESOURCE_TYPE_BY_CATEGORY, Resource


class StoredRecord(BaseModel):
    """A clinical record as held by any record repository backend."""

    id: str
    owner_identity: str
    category: RecordCategory
    resource: Resource
    source_record_id: Optional[str] = None
    visit_date: Optional[str] = None
    provider: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    date_added: Optional[datetime] = None
    last_modified: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _resource_matches_category(self) -> "StoredRecord":
        expected = RESOURCE_TYPE_BY_CATEGORY[self.category]
        if self.resource.resourceType != expected:
            raise ValueError(f"Category {self.category.value} requires a {expected} resource")
        return self


class ConsentState(BaseModel):
    record_id: str
    consent_given: bool = False
    shared_with: list[str] = Field(default_factory=list)
    last_shared: Optional[datetime] = None


class DocumentOut(BaseModel):
    id: str
    email: str
    file_path: str
    file_name: str
    document_type: str
    content_type: Optional[str] = None
    size_bytes: int = 0
    provider_name: Optional[str] = None
    is_shared: bool = False
    last_shared: Optional[datetime] = None
    uploaded_at: Optional[datetime] = None
    signed_url: Optional[str] = None
    signed_url_expires_at: Optional[datetime] = None


class ProviderLinkOut(BaseModel):
    patient_id: str
    provider_id: str
    access_granted_at: Optional[datetime] = None


class LinkedProvider(BaseModel):
    provider_id: str
    display_name: str
    email: str
    specialty: Optional[str] = None
    access_granted_at: Optional[datetime] = None


class LinkedPatient(BaseModel):
    patient_id: str
    display_name: str
    email: str
    access_granted_at: Optional[datetime] = None


class RecordStats(BaseModel):
    total_records: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    documents: int = 0
    shared_documents: int = 0
    remote: dict[str, int] = Field(default_factory=dict)
    size_in_bytes: int = 0
    storage_size: str = "0.00 KB"
