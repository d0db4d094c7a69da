from sqlalchemy import Column, String, Enum, DateTime, Uuid

from health_portal.db.postgres import Base, utcnow
from health_portal.models.user import UserRole


class Profile(Base):
    """Public profile of an account; ``id`` equals the owning ``User.id``.

    Kept separate from ``users`` so the directory can be joined without
    touching credentials, and so account deletion can remove it first.
    """

    __tablename__ = "profiles"

    id = Column(Uuid, primary_key=True)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.PATIENT)
    specialty = Column(String, nullable=True)  # providers only
    created_at = Column(DateTime, default=utcnow)
