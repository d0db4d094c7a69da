import uuid

from sqlalchemy import Column, DateTime, UniqueConstraint, Uuid

from health_portal.db.postgres import Base, utcnow


class PatientProvider(Base):
    """Durable grant linking one patient to one provider.

    Uniqueness of the pair is enforced here, not by the services.
    """

    __tablename__ = "patient_provider"
    __table_args__ = (UniqueConstraint("patient_id", "provider_id", name="uq_patient_provider"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, nullable=False, index=True)
    provider_id = Column(Uuid, nullable=False, index=True)
    access_granted_at = Column(DateTime, default=utcnow)
