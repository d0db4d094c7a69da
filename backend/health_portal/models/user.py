import enum
import uuid

from sqlalchemy import Column, String, Enum, DateTime, Boolean, Uuid

from health_portal.db.postgres import Base, utcnow


class UserRole(str, enum.Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"


class User(Base):
    """Authentication identity. Display data lives on ``Profile``."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.PATIENT)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_provider(self):
        return self.role == UserRole.PROVIDER
