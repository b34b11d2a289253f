"""FastAPI dependency injection — auth guards, tenant scoping, app-state handles."""
import os
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.db import get_db
from app.models.orm_models import User, Role
from app.models.results import Err
from app.services.perf_monitor import PerformanceTracker

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "changethis_use_a_real_secret_in_production_64chars")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    if not user.tenant_id:
        raise HTTPException(status_code=400, detail="User has no tenant assigned")
    return user


def require_role(role_name: str):
    """
    Factory for role-gated dependencies. Admin passes every gate.

    Usage:
        user: User = Depends(require_role("Manager"))
    """
    async def _require_role(
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> User:
        if not current_user.role_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{role_name} role required",
            )
        result = await db.execute(select(Role).where(Role.id == current_user.role_id))
        role = result.scalar_one_or_none()
        if not role or role.name not in (role_name, "Admin"):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{role_name} role required",
            )
        return current_user

    return _require_role


def get_tenant_id(user: User = Depends(get_current_user)) -> str:
    return user.tenant_id


def get_tracker(request: Request) -> PerformanceTracker:
    tracker = getattr(request.app.state, "perf_tracker", None)
    if tracker is None:
        tracker = PerformanceTracker()
        request.app.state.perf_tracker = tracker
    return tracker


def raise_for_error(error: Err) -> None:
    """Translate a service-layer Err into the matching HTTPException."""
    raise HTTPException(status_code=error.status_code, detail=error.message or error.kind.value)
