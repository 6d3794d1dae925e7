# app/api/v1/commission_roles.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.auth import get_current_company, require_admin
from app.core.commission import get_effective_rate
from app.db.session import get_db
from app.models.commission_role import CommissionRole
from app.models.company import Company
from app.models.user import User
from app.schemas.commission_role import (
    CommissionRoleCreate,
    CommissionRoleListOut,
    CommissionRoleOut,
    CommissionRoleUpdate,
    RepCommissionIn,
    RepCommissionOut,
)

router = APIRouter(prefix="/commission-roles", tags=["commission-roles"])

DUPLICATE_ROLE = "Role with this name already exists"


def _to_out(role: CommissionRole, user_count: int = 0) -> CommissionRoleOut:
    return CommissionRoleOut(
        id=role.id,
        name=role.name,
        default_rate=role.default_rate,
        description=role.description,
        user_count=user_count,
        created_at=role.created_at,
    )


async def _get_company_role(db: AsyncSession, company: Company, role_id: uuid.UUID) -> CommissionRole:
    role = await db.get(CommissionRole, role_id)
    if not role or role.company_id != company.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Commission role not found")
    return role


async def _assigned_users(db: AsyncSession, role_id: uuid.UUID) -> int:
    stmt = select(func.count()).select_from(User).where(User.commission_role_id == role_id)
    return int((await db.execute(stmt)).scalar_one())


@router.get("", response_model=CommissionRoleListOut)
async def list_commission_roles(
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    stmt = (
        select(CommissionRole, func.count(User.id))
        .outerjoin(User, User.commission_role_id == CommissionRole.id)
        .where(CommissionRole.company_id == company.id)
        .group_by(CommissionRole.id)
        .order_by(CommissionRole.name.asc())
    )
    rows = (await db.execute(stmt)).all()
    return CommissionRoleListOut(items=[_to_out(role, int(count)) for role, count in rows])


@router.post("", response_model=CommissionRoleOut, status_code=status.HTTP_201_CREATED)
async def create_commission_role(
    payload: CommissionRoleCreate,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    role = CommissionRole(
        company_id=company.id,
        name=payload.name,
        default_rate=payload.default_rate,
        description=payload.description,
    )
    db.add(role)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=DUPLICATE_ROLE)
    await db.refresh(role)
    return _to_out(role)


@router.patch("/{role_id}", response_model=CommissionRoleOut)
async def update_commission_role(
    role_id: uuid.UUID,
    payload: CommissionRoleUpdate,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    """
    Changing default_rate affects commissions booked from now on; existing
    Commission rows keep the rate they were calculated with.
    """
    role = await _get_company_role(db, company, role_id)
    data = payload.model_dump(exclude_unset=True)
    if data.get("name") is not None:
        data["name"] = data["name"].strip()
    for key, value in data.items():
        if key in ("name", "default_rate") and value is None:
            continue
        setattr(role, key, value)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=DUPLICATE_ROLE)
    await db.refresh(role)
    return _to_out(role, await _assigned_users(db, role.id))


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_commission_role(
    role_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    role = await _get_company_role(db, company, role_id)
    assigned = await _assigned_users(db, role.id)
    if assigned:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot delete role with {assigned} assigned users",
        )
    await db.delete(role)
    await db.commit()


@router.put("/users/{user_id}", response_model=RepCommissionOut)
async def assign_rep_commission(
    user_id: uuid.UUID,
    payload: RepCommissionIn,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    """Set a rep's commission role and custom rate (null clears either)."""
    rep: Optional[User] = await db.get(User, user_id)
    if not rep or rep.company_id != company.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if payload.commission_role_id is not None:
        await _get_company_role(db, company, payload.commission_role_id)

    rep.commission_role_id = payload.commission_role_id
    rep.custom_commission_rate = payload.custom_commission_rate
    await db.commit()

    return RepCommissionOut(
        user_id=rep.id,
        commission_role_id=rep.commission_role_id,
        custom_commission_rate=rep.custom_commission_rate,
        effective_rate=await get_effective_rate(db, rep),
    )
