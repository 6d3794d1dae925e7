# app/api/v1/commissions.py
from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.auth import get_current_company, get_current_user, http_error, require_admin
from app.core.commission import calculate_commission, mark_paid, release_amount
from app.core.enums import ReleaseStatus, UserRole
from app.core.errors import ReconciliationError
from app.db.session import get_db
from app.models.commission import Commission
from app.models.company import Company
from app.models.user import User
from app.schemas.commission import CommissionCalcIn, CommissionCalcOut, CommissionOut, CommissionPageOut, ReleaseIn

router = APIRouter(prefix="/commissions", tags=["commissions"])


async def _get_company_commission(db: AsyncSession, company: Company, commission_id: uuid.UUID) -> Commission:
    stmt = select(Commission).where(
        Commission.id == commission_id,
        Commission.company_id == company.id,
    ).with_for_update()
    commission = (await db.execute(stmt)).scalar_one_or_none()
    if not commission:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Commission not found")
    return commission


@router.get("", response_model=CommissionPageOut)
async def list_commissions(
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    user: User = Depends(get_current_user),
    rep_id: Optional[uuid.UUID] = Query(default=None),
    release_status: Optional[ReleaseStatus] = Query(default=None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """
    Commissions within the tenant. Non-admins only ever see their own.
    """
    if user.role != UserRole.ADMIN.value:
        rep_id = user.id

    filters = [Commission.company_id == company.id]
    if rep_id is not None:
        filters.append(Commission.rep_id == rep_id)
    if release_status is not None:
        filters.append(Commission.release_status == release_status.value)

    totals_stmt = select(
        func.count(Commission.id),
        func.coalesce(func.sum(Commission.total_amount), 0),
        func.coalesce(func.sum(Commission.released_amount), 0),
    ).where(*filters)
    total, total_commission, total_released = (await db.execute(totals_stmt)).one()

    stmt = (
        select(Commission)
        .where(*filters)
        .order_by(Commission.calculated_at.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = (await db.execute(stmt)).scalars().all()

    return CommissionPageOut(
        items=[CommissionOut.model_validate(c) for c in rows],
        limit=limit,
        offset=offset,
        total=int(total or 0),
        total_commission=Decimal(total_commission),
        total_released=Decimal(total_released),
    )


@router.post("/{commission_id}/release", response_model=CommissionOut)
async def release_commission(
    commission_id: uuid.UUID,
    payload: ReleaseIn,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    """Release an additional amount; clamped at the commission total."""
    commission = await _get_company_commission(db, company, commission_id)
    try:
        release_amount(commission, payload.amount)
        await db.commit()
    except ReconciliationError as e:
        await db.rollback()
        raise http_error(e)
    await db.refresh(commission)
    return commission


@router.post("/{commission_id}/mark-paid", response_model=CommissionOut)
async def mark_commission_paid(
    commission_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    commission = await _get_company_commission(db, company, commission_id)
    try:
        mark_paid(commission)
        await db.commit()
    except ReconciliationError as e:
        await db.rollback()
        raise http_error(e)
    await db.refresh(commission)
    return commission


@router.post("/calculate", response_model=CommissionCalcOut)
async def preview_commission(
    payload: CommissionCalcIn,
    _user: User = Depends(get_current_user),
):
    """Pure calculation preview; nothing is stored."""
    try:
        amounts = calculate_commission(payload.sale_amount, payload.rate, payload.payment_amount)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return CommissionCalcOut(
        total_commission=amounts.total_amount,
        released_commission=amounts.released_amount,
        release_status=amounts.release_status.value,
    )
