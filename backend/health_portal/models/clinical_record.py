import enum

from sqlalchemy import Column, String, Enum, DateTime

from health_portal.db.postgres import Base, JSONType, utcnow


class RecordCategory(str, enum.Enum):
    PATIENT = "patient"
    MEDICATION = "medication"
    ALLERGY = "allergy"
    IMMUNIZATION = "immunization"
    OBSERVATION = "observation"
    DOCUMENT = "document"


class ClinicalRecord(Base):
    __tablename__ = "clinical_records"

    id = Column(String, primary_key=True)
    owner_identity = Column(String, nullable=False, index=True)  # patient email
    category = Column(Enum(RecordCategory), nullable=False, index=True)
    resource = Column(JSONType, nullable=False)  # FHIR-shaped payload
    source_record_id = Column(String, nullable=True, index=True)  # health_records.id it was parsed from
    visit_date = Column(String, nullable=True)
    provider = Column(String, nullable=True)
    tags = Column(JSONType, default=list)
    date_added = Column(DateTime, default=utcnow)
    last_modified = Column(DateTime, default=utcnow)
