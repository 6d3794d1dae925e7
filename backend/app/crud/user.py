# app/crud/user.py
from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User


async def get_user_by_email(db: AsyncSession, company_id: uuid.UUID, email: Optional[str]) -> Optional[User]:
    if not email:
        return None
    stmt = (
        select(User)
        .where(User.company_id == company_id)
        .where(func.lower(User.email) == email.strip().lower())
        .where(User.is_active.is_(True))
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_user_by_crm_id(db: AsyncSession, company_id: uuid.UUID, ghl_user_id: Optional[str]) -> Optional[User]:
    if not ghl_user_id:
        return None
    stmt = (
        select(User)
        .where(User.company_id == company_id)
        .where(User.ghl_user_id == ghl_user_id)
        .where(User.is_active.is_(True))
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def find_companies_for_email(db: AsyncSession, email: Optional[str]) -> list[uuid.UUID]:
    """Distinct tenants with an active user at this email (used to place tenant-less payments)."""
    if not email:
        return []
    stmt = (
        select(User.company_id)
        .where(func.lower(User.email) == email.strip().lower())
        .where(User.is_active.is_(True))
        .distinct()
    )
    return list((await db.execute(stmt)).scalars().all())
