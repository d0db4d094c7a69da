import uuid

from sqlalchemy import Column, String, DateTime, Uuid

from health_portal.db.postgres import Base, utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=True)
    action = Column(String, nullable=False)  # "read", "create", "update", "delete", "share", "link"
    resource = Column(String, nullable=False)  # "clinical_record", "health_record", "provider_link"
    resource_id = Column(String, nullable=True)
    details = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
