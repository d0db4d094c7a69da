from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.models.audit_log import AuditLog
from health_portal.models.user import User


async def log_audit(
    db: AsyncSession,
    action: str,
    resource: str,
    resource_id=None,
    user: Optional[User] = None,
    details: Optional[str] = None,
    request: Optional[Request] = None,
):
    """Append an audit row in the caller's transaction."""
    ip = request.client.host if request and request.client else None
    user_agent = request.headers.get("user-agent") if request else None

    db.add(AuditLog(
        user_id=user.id if user else None,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id else None,
        details=details,
        ip_address=ip,
        user_agent=user_agent,
    ))
    await db.flush()
