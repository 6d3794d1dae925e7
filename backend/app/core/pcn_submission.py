# app/core/pcn_submission.py
"""
PCN submission state machine over Appointment.status x pcn_submitted.

Producers:
  - a human form (strict validation)
  - the survey webhook (lenient)
  - AI drafts, stored as a candidate until reviewed

Rules:
  - pcn_submitted only moves false -> true
  - a second submission is rejected with AlreadyProcessed; rewriting a
    submitted PCN goes through correct_pcn
  - every action appends exactly one changelog entry (approval appends the
    submitted entry plus the approved entry)

Nothing here commits: callers own the transaction.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import (
    AppointmentStatus,
    CallOutcome,
    ChangelogAction,
    Processor,
    ReviewDecision,
    SubmissionSource,
)
from app.core.errors import AlreadyProcessed, EntityNotFound, InvalidTransition, SubmissionInvalid
from app.core.logging import build_log_context
from app.core.payment_matching import PaymentResult, link_pending_payment_for_contact
from app.core.pcn_changelog import append_entry, snapshot_appointment
from app.crud.appointment import get_company_appointment
from app.models.appointment import Appointment
from app.models.company import Company
from app.models.contact import Contact
from app.models.pcn_changelog import PCNChangelog
from app.models.user import User
from app.models.webhook_event import WebhookEvent
from app.schemas.pcn import PCNSubmission

logger = logging.getLogger(__name__)

SURVEY_ACTOR = "GHL Survey Automation"
AI_ACTOR = "AI Transcript Analyzer"
SYSTEM_ACTOR = "System"

DEFAULT_ACTOR_NAMES: dict[SubmissionSource, str] = {
    SubmissionSource.SURVEY: SURVEY_ACTOR,
    SubmissionSource.AI: AI_ACTOR,
    SubmissionSource.SYSTEM: SYSTEM_ACTOR,
    SubmissionSource.MANUAL: SYSTEM_ACTOR,
    SubmissionSource.REVIEW: SYSTEM_ACTOR,
}

OUTCOME_STATUS: dict[CallOutcome, AppointmentStatus] = {
    CallOutcome.SHOWED: AppointmentStatus.SHOWED,
    CallOutcome.NO_SHOW: AppointmentStatus.NO_SHOW,
    CallOutcome.SIGNED: AppointmentStatus.SIGNED,
    CallOutcome.CANCELLED: AppointmentStatus.CANCELLED,
}

# Detail fields written for each outcome; every other detail field is cleared.
OUTCOME_FIELDS: dict[CallOutcome, tuple[str, ...]] = {
    CallOutcome.SHOWED: (
        "first_call_or_follow_up",
        "qualification_status",
        "was_offer_made",
        "why_didnt_move_forward",
        "not_moving_forward_notes",
        "objection_type",
        "objection_notes",
        "follow_up_scheduled",
        "follow_up_date",
        "nurture_type",
        "disqualification_reason",
    ),
    CallOutcome.SIGNED: (
        "first_call_or_follow_up",
        "cash_collected",
        "payment_plan_or_pif",
        "total_price",
        "number_of_payments",
    ),
    CallOutcome.NO_SHOW: ("no_show_communicative",),
    CallOutcome.CANCELLED: ("cancellation_reason",),
}

PCN_DETAIL_FIELDS: tuple[str, ...] = tuple(
    dict.fromkeys(name for names in OUTCOME_FIELDS.values() for name in names)
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Validation
# -----------------------------
def submission_errors(submission: PCNSubmission) -> list[str]:
    """Per-outcome required fields for human-entered PCNs."""
    errors: list[str] = []
    outcome = submission.call_outcome

    if outcome == CallOutcome.SHOWED:
        if not submission.first_call_or_follow_up:
            errors.append("Please indicate if this was a first call or follow-up")
        if not submission.qualification_status:
            errors.append("Please select the prospect's qualification status")
        elif submission.qualification_status == "qualified_to_purchase":
            if submission.was_offer_made is None:
                errors.append("Please indicate if an offer was made")
            elif submission.was_offer_made and not submission.why_didnt_move_forward:
                errors.append("Please provide a reason why the prospect didn't move forward")
        elif submission.qualification_status == "disqualified" and not submission.disqualification_reason:
            errors.append("Please provide a disqualification reason")
        if submission.follow_up_scheduled and not submission.nurture_type:
            errors.append("Please select nurture type for follow-up")

    elif outcome == CallOutcome.SIGNED:
        if submission.cash_collected is None or submission.cash_collected <= 0:
            errors.append("Please enter the cash collected amount")
        if not submission.payment_plan_or_pif:
            errors.append("Please indicate if this is a payment plan or paid in full")
        elif submission.payment_plan_or_pif == "payment_plan":
            if submission.total_price is None or submission.total_price <= 0:
                errors.append("Please enter the total price for the payment plan")
            if not submission.number_of_payments:
                errors.append("Please enter the number of payments")

    elif outcome == CallOutcome.NO_SHOW:
        if not submission.no_show_communicative:
            errors.append("Please indicate if the no-show was communicative")

    elif outcome == CallOutcome.CANCELLED:
        if not submission.cancellation_reason:
            errors.append("Please provide a cancellation reason")

    return errors


def validate_submission(submission: PCNSubmission, *, strict: bool) -> None:
    if not strict:
        return
    errors = submission_errors(submission)
    if errors:
        raise SubmissionInvalid(errors[0], errors=errors, outcome=submission.call_outcome.value)


def apply_submission(appointment: Appointment, submission: PCNSubmission) -> None:
    outcome = submission.call_outcome
    appointment.status = OUTCOME_STATUS[outcome].value
    appointment.outcome = outcome.value
    appointment.notes = submission.notes

    active = set(OUTCOME_FIELDS[outcome])
    for name in PCN_DETAIL_FIELDS:
        setattr(appointment, name, getattr(submission, name) if name in active else None)

    if outcome == CallOutcome.SHOWED and appointment.follow_up_scheduled is None:
        appointment.follow_up_scheduled = False
    if outcome == CallOutcome.SIGNED:
        appointment.qualification_status = "qualified_to_purchase"


def should_auto_submit(company: Company, source: SubmissionSource) -> bool:
    """Tenants opt individual automated sources into immediate submission."""
    return source.value in (company.pcn_auto_submit_sources or [])


# -----------------------------
# Result
# -----------------------------
@dataclass
class PCNOutcome:
    appointment: Appointment
    action: ChangelogAction
    entry: PCNChangelog
    linked: Optional[PaymentResult] = None

    def to_response(self) -> dict[str, Any]:
        return {
            "status": self.action.value,
            "appointment_id": str(self.appointment.id),
            "appointment_status": self.appointment.status,
            "pcn_submitted": bool(self.appointment.pcn_submitted),
            "changelog_id": str(self.entry.id),
            "linked_sale_id": str(self.linked.sale.id) if self.linked and self.linked.sale else None,
        }


# -----------------------------
# Internals
# -----------------------------
async def _load_appointment(db: AsyncSession, company: Company, appointment_ref: Any) -> Appointment:
    appointment = await get_company_appointment(db, company.id, appointment_ref, for_update=True)
    if appointment is None:
        raise EntityNotFound("Appointment not found", appointment_id=str(appointment_ref))
    return appointment


def _clear_candidate(appointment: Appointment) -> None:
    appointment.pcn_candidate = None
    appointment.pcn_candidate_source = None
    appointment.pcn_candidate_at = None


async def _link_signed_payment(db: AsyncSession, appointment: Appointment) -> Optional[PaymentResult]:
    if appointment.status != AppointmentStatus.SIGNED.value or appointment.contact_id is None:
        return None
    contact = await db.get(Contact, appointment.contact_id)
    if contact is None:
        return None
    return await link_pending_payment_for_contact(db, appointment, contact.email)


def _record_internal_event(appointment: Appointment, event_type: str, data: dict[str, Any]) -> WebhookEvent:
    body = {"appointment_id": str(appointment.id), **data}
    return WebhookEvent(
        company_id=appointment.company_id,
        processor=Processor.INTERNAL.value,
        event_type=event_type,
        raw_body=json.dumps(body, default=str),
        payload=body,
        processed=True,
        processed_at=utcnow(),
    )


# -----------------------------
# Operations
# -----------------------------
async def submit_pcn(
    db: AsyncSession,
    company: Company,
    appointment_ref: Any,
    submission: PCNSubmission,
    *,
    source: SubmissionSource,
    actor_user: Optional[User] = None,
    actor_name: Optional[str] = None,
    strict: bool = False,
    notes: Optional[str] = None,
) -> PCNOutcome:
    validate_submission(submission, strict=strict)
    appointment = await _load_appointment(db, company, appointment_ref)

    if appointment.pcn_submitted:
        raise AlreadyProcessed(
            "PCN already submitted for this appointment",
            appointment_id=str(appointment.id),
            source=source.value,
        )

    previous = snapshot_appointment(appointment)
    apply_submission(appointment, submission)
    appointment.pcn_submitted = True
    appointment.pcn_submitted_at = utcnow()
    appointment.pcn_submitted_by_id = actor_user.id if actor_user is not None else None
    _clear_candidate(appointment)
    new = snapshot_appointment(appointment)

    entry = await append_entry(
        db,
        appointment,
        action=ChangelogAction.SUBMITTED,
        source=source,
        actor_user=actor_user,
        actor_name=actor_name or DEFAULT_ACTOR_NAMES[source],
        notes=notes,
        previous_data=previous,
        new_data=new,
    )
    linked = await _link_signed_payment(db, appointment)
    db.add(_record_internal_event(appointment, "pcn.submitted", {"source": source.value, "outcome": appointment.outcome}))
    await db.flush()

    logger.info(
        "PCN submitted outcome=%s source=%s",
        appointment.outcome,
        source.value,
        extra=build_log_context(company_id=company.id, appointment_id=appointment.id),
    )
    return PCNOutcome(appointment=appointment, action=ChangelogAction.SUBMITTED, entry=entry, linked=linked)


async def correct_pcn(
    db: AsyncSession,
    company: Company,
    appointment_ref: Any,
    submission: PCNSubmission,
    *,
    actor_user: User,
    reason: Optional[str] = None,
) -> PCNOutcome:
    """Explicit human rewrite of an already-submitted PCN."""
    validate_submission(submission, strict=True)
    appointment = await _load_appointment(db, company, appointment_ref)

    if not appointment.pcn_submitted:
        raise InvalidTransition("PCN has not been submitted yet", appointment_id=str(appointment.id))

    was_signed = appointment.status == AppointmentStatus.SIGNED.value
    previous = snapshot_appointment(appointment)
    apply_submission(appointment, submission)
    new = snapshot_appointment(appointment)

    entry = await append_entry(
        db,
        appointment,
        action=ChangelogAction.UPDATED,
        source=SubmissionSource.MANUAL,
        actor_user=actor_user,
        actor_name=SYSTEM_ACTOR,
        notes=reason,
        previous_data=previous,
        new_data=new,
    )
    linked = None if was_signed else await _link_signed_payment(db, appointment)
    await db.flush()

    logger.info("PCN corrected", extra=build_log_context(company_id=company.id, appointment_id=appointment.id))
    return PCNOutcome(appointment=appointment, action=ChangelogAction.UPDATED, entry=entry, linked=linked)


async def store_candidate(
    db: AsyncSession,
    company: Company,
    appointment_ref: Any,
    submission: PCNSubmission,
    *,
    source: SubmissionSource,
    actor_name: Optional[str] = None,
    actor_user: Optional[User] = None,
    notes: Optional[str] = None,
) -> PCNOutcome:
    """Hold a drafted PCN for review. Status is not touched."""
    appointment = await _load_appointment(db, company, appointment_ref)
    if appointment.pcn_submitted:
        raise AlreadyProcessed(
            "PCN already submitted for this appointment",
            appointment_id=str(appointment.id),
            source=source.value,
        )

    candidate = submission.to_record()
    previous_candidate = appointment.pcn_candidate
    appointment.pcn_candidate = candidate
    appointment.pcn_candidate_source = source.value
    appointment.pcn_candidate_at = utcnow()

    entry = await append_entry(
        db,
        appointment,
        action=ChangelogAction.DRAFTED,
        source=source,
        actor_user=actor_user,
        actor_name=actor_name or DEFAULT_ACTOR_NAMES[source],
        notes=notes,
        previous_data=previous_candidate,
        new_data=candidate,
    )
    logger.info(
        "PCN candidate stored source=%s",
        source.value,
        extra=build_log_context(company_id=company.id, appointment_id=appointment.id),
    )
    return PCNOutcome(appointment=appointment, action=ChangelogAction.DRAFTED, entry=entry)


async def submit_or_draft(
    db: AsyncSession,
    company: Company,
    appointment_ref: Any,
    submission: PCNSubmission,
    *,
    source: SubmissionSource,
    actor_name: Optional[str] = None,
    notes: Optional[str] = None,
) -> PCNOutcome:
    """Automated producers: submit when the tenant opted the source in, else draft."""
    if should_auto_submit(company, source):
        return await submit_pcn(
            db, company, appointment_ref, submission,
            source=source, actor_name=actor_name, strict=False, notes=notes,
        )
    return await store_candidate(
        db, company, appointment_ref, submission,
        source=source, actor_name=actor_name, notes=notes,
    )


async def review_candidate(
    db: AsyncSession,
    company: Company,
    appointment_ref: Any,
    decision: ReviewDecision,
    *,
    reviewer: User,
    reason: Optional[str] = None,
) -> PCNOutcome:
    appointment = await _load_appointment(db, company, appointment_ref)
    candidate = appointment.pcn_candidate
    if not candidate:
        raise EntityNotFound("No drafted PCN to review", appointment_id=str(appointment.id))

    if decision == ReviewDecision.REJECT:
        if not reason or not reason.strip():
            raise SubmissionInvalid("A reason is required to reject a drafted PCN")
        _clear_candidate(appointment)
        entry = await append_entry(
            db,
            appointment,
            action=ChangelogAction.REJECTED,
            source=SubmissionSource.REVIEW,
            actor_user=reviewer,
            actor_name=SYSTEM_ACTOR,
            notes=reason.strip(),
            previous_data=candidate,
        )
        logger.info("PCN candidate rejected", extra=build_log_context(company_id=company.id, appointment_id=appointment.id))
        return PCNOutcome(appointment=appointment, action=ChangelogAction.REJECTED, entry=entry)

    try:
        submission = PCNSubmission.model_validate(candidate)
    except ValidationError as e:
        raise SubmissionInvalid("Drafted PCN is not a valid submission", errors=e.errors(include_url=False)) from e

    drafted_by = appointment.pcn_candidate_source
    result = await submit_pcn(
        db, company, appointment.id, submission,
        source=SubmissionSource.REVIEW, actor_user=reviewer, strict=False, notes=reason,
    )
    entry = await append_entry(
        db,
        appointment,
        action=ChangelogAction.APPROVED,
        source=SubmissionSource.REVIEW,
        actor_user=reviewer,
        actor_name=SYSTEM_ACTOR,
        notes=reason or (f"Approved {drafted_by} draft" if drafted_by else None),
        new_data=candidate,
    )
    logger.info("PCN candidate approved", extra=build_log_context(company_id=company.id, appointment_id=appointment.id))
    return PCNOutcome(appointment=appointment, action=ChangelogAction.APPROVED, entry=entry, linked=result.linked)
