import enum
import uuid

from sqlalchemy import Column, String, DateTime, Boolean, Integer, Uuid

from health_portal.db.postgres import Base, utcnow


class DocumentType(str, enum.Enum):
    LAB_REPORT = "lab_report"
    IMAGING = "imaging"
    PRESCRIPTION = "prescription"
    VISIT_SUMMARY = "visit_summary"
    MEDICATION = "medication"
    ALLERGY = "allergy"
    LAB_RESULT = "lab_result"
    IMMUNIZATION = "immunization"
    OBSERVATION = "observation"
    OTHER = "other"


class HealthRecord(Base):
    """An uploaded document: metadata row plus a binary in object storage."""

    __tablename__ = "health_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String, nullable=False, index=True)  # owner identity
    file_path = Column(String, unique=True, nullable=False)  # "<owner>/<key>_<name>"
    file_name = Column(String, nullable=False)
    document_type = Column(String, nullable=False, default=DocumentType.OTHER.value)
    content_type = Column(String, nullable=True)
    size_bytes = Column(Integer, default=0)
    provider_name = Column(String, nullable=True)
    uploaded_by = Column(String, nullable=True)  # provider email for provider-initiated uploads
    is_shared = Column(Boolean, nullable=False, default=False)
    last_shared = Column(DateTime, nullable=True)
    uploaded_at = Column(DateTime, default=utcnow)
