from __future__ import annotations

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import UserRole
from app.core.errors import ReconciliationError
from app.core.security import bearer_scheme, decode_access_token
from app.db.session import get_db
from app.models.company import Company
from app.models.user import User


async def get_current_user(
    credentials=Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Dependency for protected endpoints.
    """
    claims = decode_access_token(credentials.credentials)

    user = await db.get(User, claims.user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User inactive")
    if claims.company_id is not None and claims.company_id != user.company_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token tenant mismatch")

    return user


async def get_current_company(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Company:
    """
    Every manual endpoint is scoped to the acting user's company.
    """
    company = await db.get(Company, user.company_id)
    if not company or not company.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Company is inactive")
    return company


def is_admin(user: User) -> bool:
    return (user.role or "").lower() == UserRole.ADMIN.value


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "admin_required", "message": "Admin role required."},
        )
    return user


def http_error(error: ReconciliationError) -> HTTPException:
    """Domain error -> HTTPException carrying the specific reason."""
    return HTTPException(status_code=error.status_code, detail=error.message)
