"""Structured rows parsed out of uploaded documents, keyed by patient email."""

from sqlalchemy import Column, String, DateTime, Integer, UniqueConstraint

from health_portal.db.postgres import Base, utcnow


class Medication(Base):
    __tablename__ = "medications"
    __table_args__ = (UniqueConstraint("email", "medication", name="uq_medication_per_patient"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, index=True)
    medication = Column(String, nullable=False)
    source_record_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)


class Allergy(Base):
    __tablename__ = "allergies"
    __table_args__ = (UniqueConstraint("email", "allergy", name="uq_allergy_per_patient"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, index=True)
    allergy = Column(String, nullable=False)
    source_record_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)


class LabResult(Base):
    __tablename__ = "lab_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, index=True)
    test_name = Column(String, nullable=False)
    result_value = Column(String, nullable=True)
    unit = Column(String, nullable=True)
    result_date = Column(String, nullable=True)
    source_record_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)


class Immunization(Base):
    __tablename__ = "immunizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, index=True)
    immunization = Column(String, nullable=False)
    date = Column(String, nullable=True)
    source_record_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)


# Table order used by cascades and stats
STRUCTURED_TABLES = (Medication, Allergy, LabResult, Immunization)
