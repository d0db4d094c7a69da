"""
Authentication routes.

Endpoints:
    POST /auth/register  — Create an account (patient or provider) and its profile
    POST /auth/login     — Exchange email + password for a bearer token
    GET  /auth/me        — Current account
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from health_portal.db.postgres import get_db
from health_portal.models.profile import Profile
from health_portal.models.user import User, UserRole
from health_portal.api.middleware.auth import (
    TokenResponse,
    get_current_user,
    hash_password,
    token_response,
    verify_password,
)
from health_portal.api.middleware.rate_limit import rate_limit

router = APIRouter()


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=8)
    full_name: Optional[str] = None
    role: UserRole = UserRole.PATIENT
    specialty: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class MeResponse(BaseModel):
    user_id: str
    email: str
    role: str
    full_name: Optional[str] = None
    specialty: Optional[str] = None


@router.post("/auth/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterRequest, db: AsyncSession = Depends(get_db)):
    if payload.role == UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin accounts cannot self-register")

    email = payload.email.strip().lower()
    user = User(
        id=uuid.uuid4(),
        email=email,
        hashed_password=hash_password(payload.password),
        role=payload.role,
    )
    profile = Profile(
        id=user.id,
        email=email,
        full_name=payload.full_name,
        role=payload.role,
        specialty=payload.specialty if payload.role == UserRole.PROVIDER else None,
    )
    try:
        async with db.begin_nested():
            db.add_all([user, profile])
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")
    return token_response(user, profile)


@router.post("/auth/login", response_model=TokenResponse, dependencies=[rate_limit(max_requests=10, window_seconds=60)])
async def login(payload: LoginRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(func.lower(User.email) == payload.email.strip().lower()))
    user = result.scalar_one_or_none()

    if user is None or not verify_password(payload.password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated")
    return token_response(user, await db.get(Profile, user.id))


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    profile = await db.get(Profile, current_user.id)
    return MeResponse(
        user_id=str(current_user.id),
        email=current_user.email,
        role=current_user.role.value,
        full_name=profile.full_name if profile else None,
        specialty=profile.specialty if profile else None,
    )
