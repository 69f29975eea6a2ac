"""Authentication routes: signup, login, me, profile update.

Also hosts the bearer-token dependencies every other router uses.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from stazama.domain.enums import UserRole
from stazama.domain.models import Profile
from stazama.domain.schemas import (
    LoginRequest,
    ProfileResponse,
    ProfileUpdate,
    SignupRequest,
    TokenResponse,
)
from stazama.infra.database import get_db
from stazama.services.auth_service import (
    create_access_token,
    create_profile,
    decode_token,
    get_profile,
    get_profile_by_email,
    verify_password,
)
from stazama.services.monitoring import current_user_id
from stazama.services.permissions import GUEST, Caller, RolePermissions, permissions_for
from stazama.services.rate_limiter import RateLimits, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


async def _profile_from_token(token: str, db: AsyncSession) -> Profile:
    payload = decode_token(token)
    if not payload or "sub" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    profile = await get_profile(db, payload["sub"])
    if not profile or not profile.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    current_user_id.set(profile.id)
    return profile


async def get_current_user_dep(
    request: Request, db: AsyncSession = Depends(get_db)
) -> Profile:
    """Dependency: extract current profile from Bearer token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid token",
        )
    return await _profile_from_token(auth_header.removeprefix("Bearer "), db)


async def get_optional_user_dep(
    request: Request, db: AsyncSession = Depends(get_db)
) -> Optional[Profile]:
    """Dependency: like ``get_current_user_dep`` but anonymous callers get None."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return await _profile_from_token(auth_header.removeprefix("Bearer "), db)


def caller_from(profile: Optional[Profile]) -> Caller:
    if profile is None:
        return GUEST
    return Caller(user_id=profile.id, role=UserRole.parse(profile.role))


async def get_caller_dep(
    profile: Optional[Profile] = Depends(get_optional_user_dep),
) -> Caller:
    return caller_from(profile)


def require_permission(capability: str):
    """Factory: dependency that checks the caller's role grants ``capability``."""
    if not hasattr(RolePermissions, capability):
        raise ValueError(f"Unknown capability {capability}")

    async def checker(user: Profile = Depends(get_current_user_dep)):
        if not getattr(permissions_for(user.role), capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return checker


@router.post("/signup", response_model=TokenResponse)
async def signup(data: SignupRequest, db: AsyncSession = Depends(get_db)):
    existing = await get_profile_by_email(db, data.email)
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    profile = await create_profile(
        db, data.email, data.password, data.full_name, data.phone, data.address
    )
    logger.info("New account %s", profile.id)
    token = create_access_token(profile.id, profile.role)
    return TokenResponse(access_token=token, user=ProfileResponse.model_validate(profile))


@router.post("/login", response_model=TokenResponse)
@limiter.limit(RateLimits.LOGIN)
async def login(request: Request, data: LoginRequest, db: AsyncSession = Depends(get_db)):
    profile = await get_profile_by_email(db, data.email)
    if not profile or not verify_password(data.password, profile.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    profile.last_login_at = datetime.now(timezone.utc)
    await db.commit()
    token = create_access_token(profile.id, profile.role)
    return TokenResponse(access_token=token, user=ProfileResponse.model_validate(profile))


@router.get("/me", response_model=ProfileResponse)
async def me(user: Profile = Depends(get_current_user_dep)):
    return ProfileResponse.model_validate(user)


@router.patch("/profile", response_model=ProfileResponse)
async def update_profile(
    data: ProfileUpdate,
    user: Profile = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    if data.full_name is not None:
        user.full_name = data.full_name
    if data.phone is not None:
        user.phone = data.phone
    if data.address is not None:
        user.address = data.address
    await db.commit()
    await db.refresh(user)
    return ProfileResponse.model_validate(user)
