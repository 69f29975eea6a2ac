"""Authentication service: password hashing, JWT tokens and account records."""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stazama.app.config import get_settings
from stazama.domain.enums import UserRole
from stazama.domain.models import Profile, UserRoleAssignment

settings = get_settings()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(user_id: str, role: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload = {"sub": user_id, "role": role, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_profile_by_email(db: AsyncSession, email: str) -> Profile | None:
    result = await db.execute(select(Profile).where(Profile.email == email.lower()))
    return result.scalar_one_or_none()


async def get_profile(db: AsyncSession, user_id: str) -> Profile | None:
    result = await db.execute(select(Profile).where(Profile.id == user_id))
    return result.scalar_one_or_none()


async def create_profile(
    db: AsyncSession,
    email: str,
    password: str,
    full_name: str,
    phone: str | None = None,
    address: str | None = None,
    role: UserRole = UserRole.USER,
) -> Profile:
    """Create a profile and its single role row. Self-signup always passes USER."""
    profile = Profile(
        email=email.lower(),
        password_hash=hash_password(password),
        full_name=full_name,
        phone=phone,
        address=address,
    )
    profile.role_ref = UserRoleAssignment(role=UserRole.parse(role).value)
    db.add(profile)
    await db.commit()
    await db.refresh(profile)
    return profile


async def set_role(db: AsyncSession, profile: Profile, role: UserRole) -> Profile:
    """Replace the role held by ``profile``."""
    if profile.role_ref is None:
        profile.role_ref = UserRoleAssignment(user_id=profile.id, role=role.value)
    else:
        profile.role_ref.role = role.value
    await db.commit()
    await db.refresh(profile)
    return profile
