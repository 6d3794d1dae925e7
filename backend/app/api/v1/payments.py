# app/api/v1/payments.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.auth import get_current_company, http_error, require_admin
from app.core.enums import ReviewStatus
from app.core.errors import ReconciliationError
from app.core.payment_matching import manual_match
from app.db.session import get_db
from app.models.company import Company
from app.models.sale import Sale
from app.models.unmatched_payment import UnmatchedPayment
from app.models.user import User
from app.schemas.payments import (
    BulkMatchIn,
    BulkMatchItemOut,
    BulkMatchOut,
    ManualMatchIn,
    MatchResultOut,
    SaleOut,
    UnmatchedPageOut,
    UnmatchedPaymentOut,
)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/unmatched", response_model=UnmatchedPageOut)
async def list_unmatched_payments(
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
    status_filter: Optional[ReviewStatus] = Query(ReviewStatus.PENDING, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """
    Review queue. Suggestions are advisory: nothing is linked until a human
    calls the match endpoint.
    """
    filters = [UnmatchedPayment.company_id == company.id]
    if status_filter is not None:
        filters.append(UnmatchedPayment.status == status_filter.value)

    total_stmt = select(func.count()).select_from(UnmatchedPayment).where(*filters)
    total = (await db.execute(total_stmt)).scalar_one()

    stmt = (
        select(UnmatchedPayment, Sale)
        .join(Sale, Sale.id == UnmatchedPayment.sale_id)
        .where(*filters)
        .order_by(UnmatchedPayment.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = (await db.execute(stmt)).all()

    items = [
        UnmatchedPaymentOut(
            id=unmatched.id,
            status=unmatched.status,
            sale=SaleOut.model_validate(sale),
            suggested_matches=unmatched.suggested_matches or [],
            created_at=unmatched.created_at,
            reviewed_at=unmatched.reviewed_at,
        )
        for unmatched, sale in rows
    ]
    return UnmatchedPageOut(items=items, limit=limit, offset=offset, total=int(total))


@router.post("/unmatched/{unmatched_payment_id}/match", response_model=MatchResultOut)
async def match_unmatched_payment(
    unmatched_payment_id: uuid.UUID,
    payload: ManualMatchIn,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    admin: User = Depends(require_admin),
):
    """
    Manual match: the supplied appointment overrides automatic matching
    (matched_by=manual, confidence 1.0) and books the commission.
    """
    try:
        result = await manual_match(
            db,
            company,
            unmatched_payment_id=unmatched_payment_id,
            appointment_id=payload.appointment_id,
            user=admin,
        )
        await db.commit()
    except ReconciliationError as e:
        await db.rollback()
        raise http_error(e)

    return MatchResultOut(**result.to_response())


@router.post("/unmatched/bulk-match", response_model=BulkMatchOut)
async def bulk_match_unmatched_payments(
    payload: BulkMatchIn,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    admin: User = Depends(require_admin),
):
    """
    Several manual matches in one call. Each pair runs in its own savepoint:
    a failed pair is reported and the others still apply.
    """
    results: list[BulkMatchItemOut] = []
    for item in payload.matches:
        try:
            async with db.begin_nested():
                await manual_match(
                    db,
                    company,
                    unmatched_payment_id=item.payment_id,
                    appointment_id=item.appointment_id,
                    user=admin,
                )
        except ReconciliationError as e:
            results.append(BulkMatchItemOut(payment_id=item.payment_id, success=False, error=e.message))
            continue
        results.append(BulkMatchItemOut(payment_id=item.payment_id, success=True))

    await db.commit()
    matched = sum(1 for r in results if r.success)
    return BulkMatchOut(results=results, matched=matched, failed=len(results) - matched)


@router.get("/sales/{sale_id}", response_model=SaleOut)
async def get_sale(
    sale_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
):
    sale = await db.get(Sale, sale_id)
    if not sale or sale.company_id != company.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return sale
