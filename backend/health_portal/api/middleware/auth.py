"""
Bearer tokens for patients, providers and admins.

A token names the account (``sub``), its login email and role, plus the
profile fields a client shows without another round trip: the display name
and, for providers, the specialty. Tokens are checked against the account on
every request, so a deleted account or a changed role invalidates them.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.config import get_settings
from health_portal.db.postgres import get_db
from health_portal.models.profile import Profile
from health_portal.models.user import User, UserRole

settings = get_settings()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer()


class TokenData(BaseModel):
    user_id: str
    email: str
    role: UserRole
    display_name: Optional[str] = None
    specialty: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str
    user_id: str
    email: str
    display_name: Optional[str] = None
    specialty: Optional[str] = None


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def display_name(user: User, profile: Optional[Profile]) -> str:
    """Profile name, falling back to the login email."""
    if profile is not None and profile.full_name:
        return profile.full_name
    return user.email


def create_access_token(
    user: User,
    profile: Optional[Profile] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES))
    to_encode = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role.value,
        "name": display_name(user, profile),
        "exp": expire,
    }
    if user.role == UserRole.PROVIDER and profile is not None and profile.specialty:
        to_encode["specialty"] = profile.specialty
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def token_response(user: User, profile: Optional[Profile] = None) -> TokenResponse:
    token = create_access_token(user, profile)
    return TokenResponse(
        access_token=token,
        role=user.role.value,
        user_id=str(user.id),
        email=user.email,
        display_name=display_name(user, profile),
        specialty=profile.specialty if profile is not None and user.role == UserRole.PROVIDER else None,
    )


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return TokenData(
            user_id=payload["sub"],
            email=payload["email"],
            role=payload["role"],
            display_name=payload.get("name"),
            specialty=payload.get("specialty"),
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except (JWTError, KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    token_data = decode_token(credentials.credentials)
    try:
        user_id = UUID(token_data.user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if user.role != token_data.role:
        # role changed since the token was issued; sharing rules depend on it
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token no longer matches account")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return user


def require_role(*roles: UserRole):
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        # Admin passes every role check
        if current_user.role == UserRole.ADMIN:
            return current_user
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Only {' or '.join(r.value for r in roles)} accounts may do this",
            )
        return current_user
    return role_checker
