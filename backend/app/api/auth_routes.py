"""
JWT Authentication routes — register, login, me.

Rate limiting for these endpoints is enforced at the middleware level
(RateLimitMiddleware): 5 requests per minute per IP.
"""
import os
import re
from datetime import datetime, timedelta, timezone
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from passlib.context import CryptContext
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.api.deps import ALGORITHM, SECRET_KEY, get_current_user
from app.db import get_db
from app.models.orm_models import User, Role, Tenant

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")
_MIN_PASSWORD_LEN = 8

# First user of a new tenant administers it; later users capture in the field
DEFAULT_FIRST_ROLE = "Admin"
DEFAULT_MEMBER_ROLE = "Assessor"


def validate_email(email: str) -> str:
    """Normalise and validate email format. Raises HTTPException 422 on failure."""
    email = email.strip().lower()
    if not _EMAIL_RE.match(email):
        raise HTTPException(status_code=422, detail="Invalid email format")
    return email


def validate_password(password: str) -> None:
    if len(password) < _MIN_PASSWORD_LEN:
        raise HTTPException(
            status_code=422,
            detail=f"Password must be at least {_MIN_PASSWORD_LEN} characters"
        )


router = APIRouter(prefix="/api/auth", tags=["Authentication"])

ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "480"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class RegisterRequest(BaseModel):
    email: str
    password: str
    full_name: str = ""
    tenant_name: str


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    email: str
    role: str
    tenant_id: str
    full_name: str = ""


def create_access_token(data: dict, expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


async def _get_or_create_role(db: AsyncSession, name: str) -> Role:
    role = (await db.execute(select(Role).where(Role.name == name))).scalar_one_or_none()
    if role is None:
        role = Role(name=name)
        db.add(role)
        await db.flush()
    return role


@router.post("/register", response_model=TokenResponse)
async def register(req: RegisterRequest, db: AsyncSession = Depends(get_db)):
    email = validate_email(req.email)
    validate_password(req.password)

    result = await db.execute(select(User).where(User.email == email))
    if result.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    tenant = (await db.execute(select(Tenant).where(Tenant.name == req.tenant_name))).scalar_one_or_none()
    role_name = DEFAULT_MEMBER_ROLE
    if not tenant:
        tenant = Tenant(name=req.tenant_name)
        db.add(tenant)
        await db.flush()
        role_name = DEFAULT_FIRST_ROLE
    role = await _get_or_create_role(db, role_name)

    user = User(
        email=email,
        hashed_password=pwd_context.hash(req.password),
        full_name=req.full_name,
        tenant_id=tenant.id,
        role_id=role.id,
    )
    db.add(user)
    await db.flush()

    token = create_access_token({
        "sub": user.id,
        "email": user.email,
        "tenant_id": tenant.id,
        "role": role.name,
    })
    return TokenResponse(
        access_token=token,
        user_id=user.id,
        email=user.email,
        role=role.name,
        tenant_id=tenant.id,
        full_name=req.full_name,
    )


@router.post("/login", response_model=TokenResponse)
async def login(req: LoginRequest, db: AsyncSession = Depends(get_db)):
    email = validate_email(req.email)
    if len(req.password) < _MIN_PASSWORD_LEN:
        # Same error as a bad login so account existence is not confirmed
        raise HTTPException(status_code=401, detail="Incorrect email or password")

    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if not user or not pwd_context.verify(req.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
        )
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account deactivated")

    role_name = "Viewer"
    if user.role_id:
        role = (await db.execute(select(Role).where(Role.id == user.role_id))).scalar_one_or_none()
        if role:
            role_name = role.name

    token = create_access_token({
        "sub": user.id,
        "email": user.email,
        "tenant_id": user.tenant_id or "",
        "role": role_name,
    })
    return TokenResponse(
        access_token=token,
        user_id=user.id,
        email=user.email,
        role=role_name,
        tenant_id=user.tenant_id or "",
        full_name=user.full_name or "",
    )


@router.get("/me")
async def get_me(user: User = Depends(get_current_user)):
    return {
        "user_id": user.id,
        "email": user.email,
        "full_name": user.full_name or "",
        "tenant_id": user.tenant_id,
    }
