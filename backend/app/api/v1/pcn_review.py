# app/api/v1/pcn_review.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.auth import get_current_company, http_error, require_admin
from app.core.errors import ReconciliationError
from app.core.pcn_submission import review_candidate
from app.db.session import get_db
from app.models.appointment import Appointment
from app.models.company import Company
from app.models.user import User
from app.schemas.pcn import PCNResultOut, PCNReviewIn

router = APIRouter(prefix="/pcn-review", tags=["pcn-review"])


@router.get("")
async def list_pending_drafts(
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Appointments holding a drafted PCN, oldest draft first."""
    filters = [Appointment.company_id == company.id, Appointment.pcn_candidate.is_not(None)]
    total = (await db.execute(select(func.count()).select_from(Appointment).where(*filters))).scalar_one()

    stmt = (
        select(Appointment)
        .where(*filters)
        .order_by(Appointment.pcn_candidate_at.asc())
        .limit(limit)
        .offset(offset)
    )
    rows = (await db.execute(stmt)).scalars().all()
    items = [
        {
            "appointment_id": str(a.id),
            "external_id": a.external_id,
            "status": a.status,
            "scheduled_at": a.scheduled_at,
            "candidate": a.pcn_candidate,
            "candidate_source": a.pcn_candidate_source,
            "candidate_at": a.pcn_candidate_at,
        }
        for a in rows
    ]
    return {"items": items, "limit": limit, "offset": offset, "total": int(total)}


@router.post("", response_model=PCNResultOut)
async def review_pcn_draft(
    payload: PCNReviewIn,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    admin: User = Depends(require_admin),
):
    """
    approve -> normal submission path with the drafted values, plus an
    `approved` changelog entry. reject -> draft discarded with a reason.
    """
    try:
        outcome = await review_candidate(
            db, company, payload.appointment_id, payload.decision,
            reviewer=admin, reason=payload.reason,
        )
        await db.commit()
    except ReconciliationError as e:
        await db.rollback()
        raise http_error(e)

    appointment = outcome.appointment
    return PCNResultOut(
        appointment_id=appointment.id,
        status=appointment.status,
        pcn_submitted=bool(appointment.pcn_submitted),
        pcn_submitted_at=appointment.pcn_submitted_at,
        action=outcome.action.value,
        changelog_id=outcome.entry.id,
        linked_sale_id=outcome.linked.sale.id if outcome.linked and outcome.linked.sale else None,
    )
