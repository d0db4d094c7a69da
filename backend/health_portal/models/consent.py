from sqlalchemy import Column, String, DateTime, Boolean, Integer, UniqueConstraint

from health_portal.db.postgres import Base, utcnow


class ConsentRecord(Base):
    """Sharing flag for a clinical record.

    Uploaded documents keep their flag on ``health_records.is_shared``; this
    table covers the clinical records, whose content may live in a
    non-SQL backend.
    """

    __tablename__ = "consent_states"

    record_id = Column(String, primary_key=True)
    owner_identity = Column(String, nullable=False, index=True)
    consent_given = Column(Boolean, nullable=False, default=False)
    last_shared = Column(DateTime, nullable=True)


class ConsentGrantee(Base):
    """Free-text grantee ("Dr. Smith's clinic") attached to a record. Display only."""

    __tablename__ = "consent_grantees"
    __table_args__ = (UniqueConstraint("record_id", "grantee", name="uq_consent_grantee"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(String, nullable=False, index=True)
    grantee = Column(String, nullable=False)
    added_at = Column(DateTime, default=utcnow)
