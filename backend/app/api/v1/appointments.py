# app/api/v1/appointments.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.auth import get_current_company, get_current_user, http_error, is_admin, require_admin
from app.core.attribution import apply_attribution
from app.core.enums import SubmissionSource
from app.core.errors import ReconciliationError
from app.core.pcn_changelog import list_entries
from app.core.pcn_submission import PCNOutcome, correct_pcn, store_candidate, submit_pcn
from app.crud.appointment import get_company_appointment
from app.db.session import get_db
from app.models.appointment import Appointment
from app.models.company import Company
from app.models.user import User
from app.schemas.attribution import AttributionOut
from app.schemas.pcn import ChangelogEntryOut, ChangelogPageOut, PCNCorrection, PCNDraftIn, PCNResultOut, PCNSubmission

router = APIRouter(prefix="/appointments", tags=["appointments"])


def _result_out(outcome: PCNOutcome) -> PCNResultOut:
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


async def _require_pcn_editor(db: AsyncSession, company: Company, appointment_id: str, user: User) -> Appointment:
    """Admins edit any PCN in the tenant; everyone else only their own as closer."""
    appointment = await get_company_appointment(db, company.id, appointment_id)
    if appointment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    if not is_admin(user) and appointment.closer_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the closer of this appointment")
    return appointment


@router.post("/{appointment_id}/pcn", response_model=PCNResultOut)
async def submit_appointment_pcn(
    appointment_id: str,
    payload: PCNSubmission,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    user: User = Depends(get_current_user),
):
    """
    Human PCN form. Strict: per-outcome required fields must be present.
    A PCN can be submitted once; use /pcn/correct afterwards.
    """
    await _require_pcn_editor(db, company, appointment_id, user)
    try:
        outcome = await submit_pcn(
            db, company, appointment_id, payload,
            source=SubmissionSource.MANUAL, actor_user=user, strict=True,
        )
        await db.commit()
    except ReconciliationError as e:
        await db.rollback()
        raise http_error(e)
    return _result_out(outcome)


@router.post("/{appointment_id}/pcn/correct", response_model=PCNResultOut)
async def correct_appointment_pcn(
    appointment_id: str,
    payload: PCNCorrection,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    user: User = Depends(get_current_user),
):
    """Rewrite a submitted PCN. Admins or the appointment's closer."""
    await _require_pcn_editor(db, company, appointment_id, user)
    try:
        outcome = await correct_pcn(
            db, company, appointment_id, PCNSubmission(**payload.model_dump(exclude={"reason"})),
            actor_user=user, reason=payload.reason,
        )
        await db.commit()
    except ReconciliationError as e:
        await db.rollback()
        raise http_error(e)
    return _result_out(outcome)


@router.post("/{appointment_id}/pcn/draft", response_model=PCNResultOut, status_code=status.HTTP_201_CREATED)
async def draft_appointment_pcn(
    appointment_id: str,
    payload: PCNDraftIn,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    """Store a drafted PCN for review. Appointment status does not change."""
    try:
        source = SubmissionSource(payload.source)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Unknown draft source")
    if source not in (SubmissionSource.AI, SubmissionSource.SURVEY):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Drafts come from ai or survey")

    try:
        outcome = await store_candidate(
            db, company, appointment_id, PCNSubmission(**payload.model_dump(exclude={"source"})),
            source=source,
        )
        await db.commit()
    except ReconciliationError as e:
        await db.rollback()
        raise http_error(e)
    return _result_out(outcome)


@router.get("/{appointment_id}/pcn/changelog", response_model=ChangelogPageOut)
async def list_appointment_changelog(
    appointment_id: str,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    appointment = await get_company_appointment(db, company.id, appointment_id)
    if appointment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")

    items, total = await list_entries(db, appointment, limit=limit, offset=offset)
    return ChangelogPageOut(items=[ChangelogEntryOut.model_validate(e) for e in items], total=total)


@router.post("/{appointment_id}/attribution", response_model=AttributionOut)
async def resolve_appointment_attribution(
    appointment_id: str,
    db: AsyncSession = Depends(get_db),
    company: Company = Depends(get_current_company),
    _admin: User = Depends(require_admin),
):
    """Re-run the tenant's attribution strategy and store the result."""
    appointment = await get_company_appointment(db, company.id, appointment_id)
    if appointment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")

    result = await apply_attribution(db, appointment, company)
    await db.commit()
    return AttributionOut(
        appointment_id=appointment.id,
        strategy=company.attribution_strategy,
        traffic_source=result.traffic_source,
        lead_source=result.lead_source,
        confidence=result.confidence,
    )
