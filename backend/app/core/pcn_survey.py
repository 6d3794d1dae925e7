# app/core/pcn_survey.py
"""
Survey-tool PCN webhook.

Authenticated by a `company` + `secret` query pair matched against either of
the tenant's webhook secrets. Fields are resolved through the alias table and
coerced leniently: the survey cannot be sent back to the closer, so missing
supporting fields get defaults. The outcome itself is never defaulted.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import CallOutcome, Processor, SubmissionSource
from app.core.errors import EntityNotFound, PayloadMalformed, SignatureInvalid, TenantUnresolved
from app.core.event_log import parse_json_object, record_event
from app.core.field_normalizer import (
    FieldLookup,
    PCNField,
    coerce_bool,
    coerce_currency,
    coerce_outcome,
    normalize_first_call_or_follow_up,
    normalize_no_show_communicative,
    normalize_nurture_type,
    normalize_qualification_status,
    normalize_string,
    parse_crm_datetime,
)
from app.core.logging import build_log_context
from app.core.pcn_submission import SURVEY_ACTOR, submit_or_draft
from app.core.webhook_dispatch import process_event, record_malformed
from app.core.webhook_signature import verify_shared_secret
from app.crud.company import get_company
from app.models.company import Company
from app.schemas.pcn import PCNSubmission

logger = logging.getLogger(__name__)

NOT_SPECIFIED = "Not specified"


def survey_appointment_id(lookup: FieldLookup) -> Optional[str]:
    return normalize_string(lookup.field(PCNField.APPOINTMENT_ID))


def build_survey_submission(payload: Mapping[str, Any] | FieldLookup) -> PCNSubmission:
    """
    Canonical submission from a survey payload.

    Raises UnsupportedOutcome when the outcome is missing or unknown.
    """
    lookup = payload if isinstance(payload, FieldLookup) else FieldLookup(payload)
    outcome = coerce_outcome(lookup.field(PCNField.CALL_OUTCOME))

    follow_up_date = parse_crm_datetime(lookup.field(PCNField.FOLLOW_UP_DATE))
    follow_up_scheduled = bool(coerce_bool(lookup.field(PCNField.FOLLOW_UP_SCHEDULED)))
    was_offer_made = coerce_bool(lookup.field(PCNField.WAS_OFFER_MADE))

    data: dict[str, Any] = {
        "call_outcome": outcome,
        "notes": normalize_string(lookup.field(PCNField.NOTES)),
        "why_didnt_move_forward": normalize_string(lookup.field(PCNField.WHY_DIDNT_MOVE_FORWARD)),
        "not_moving_forward_notes": normalize_string(lookup.field(PCNField.NOT_MOVING_FORWARD_NOTES)),
        "objection_type": normalize_string(lookup.field(PCNField.OBJECTION_TYPE)),
        "objection_notes": normalize_string(lookup.field(PCNField.OBJECTION_NOTES)),
        "nurture_type": normalize_nurture_type(lookup.field(PCNField.NURTURE_TYPE)),
        "follow_up_scheduled": follow_up_scheduled,
        "follow_up_date": follow_up_date,
        "was_offer_made": was_offer_made,
        "cash_collected": coerce_currency(lookup.field(PCNField.CASH_COLLECTED)),
        "cancellation_reason": normalize_string(lookup.field(PCNField.CANCELLATION_REASON)),
        "disqualification_reason": normalize_string(lookup.field(PCNField.DISQUALIFICATION_REASON)),
        "qualification_status": normalize_qualification_status(lookup.field(PCNField.QUALIFICATION_STATUS)),
        "no_show_communicative": normalize_no_show_communicative(lookup.field(PCNField.NO_SHOW_COMMUNICATIVE)),
        "first_call_or_follow_up": normalize_first_call_or_follow_up(lookup.field(PCNField.FIRST_CALL_OR_FOLLOW_UP)),
    }

    if outcome == CallOutcome.SHOWED:
        if not data["first_call_or_follow_up"]:
            data["first_call_or_follow_up"] = "follow_up" if follow_up_scheduled else "first_call"
        if was_offer_made is None:
            data["was_offer_made"] = False
        if data["was_offer_made"] and not data["why_didnt_move_forward"]:
            data["why_didnt_move_forward"] = NOT_SPECIFIED
        if follow_up_scheduled and follow_up_date is None:
            data["follow_up_scheduled"] = False
        if data["follow_up_scheduled"] and not data["nurture_type"]:
            data["nurture_type"] = "other"

    elif outcome == CallOutcome.CANCELLED:
        if not data["cancellation_reason"]:
            data["cancellation_reason"] = NOT_SPECIFIED

    elif outcome == CallOutcome.SIGNED:
        cash = data["cash_collected"]
        if cash is None or cash <= 0:
            fallback = coerce_currency(lookup.field(PCNField.PAYMENT_AMOUNT))
            data["cash_collected"] = fallback if fallback is not None and fallback > 0 else coerce_currency(0)

    return PCNSubmission(**data)


async def authenticate_survey(db: AsyncSession, company_ref: Optional[str], secret: Optional[str]) -> Company:
    if not company_ref or not secret:
        raise SignatureInvalid("Missing company or secret query parameters")
    company = await get_company(db, company_ref)
    if company is None or not company.is_active:
        raise TenantUnresolved("Company not found", company_id=company_ref)
    if not verify_shared_secret(secret, company.webhook_secret, company.marketplace_webhook_secret):
        logger.warning("Survey webhook secret mismatch", extra=build_log_context(company_id=company.id))
        raise SignatureInvalid("Invalid webhook secret")
    return company


async def handle_survey_webhook(
    db: AsyncSession,
    *,
    company_ref: Optional[str],
    secret: Optional[str],
    raw_body: bytes,
) -> dict[str, Any]:
    """
    SignatureInvalid / TenantUnresolved propagate (transport rejects them);
    everything after authentication is recorded on the event and answered 200.
    """
    company = await authenticate_survey(db, company_ref, secret)
    company_id = company.id

    try:
        payload = parse_json_object(raw_body)
    except PayloadMalformed as e:
        return await record_malformed(db, processor=Processor.PCN_SURVEY.value, raw_body=raw_body, error=e)

    event = await record_event(
        db,
        processor=Processor.PCN_SURVEY.value,
        event_type="pcn.survey.received",
        raw_body=raw_body,
        payload=payload,
        company_id=company_id,
    )

    async def work() -> dict[str, Any]:
        lookup = FieldLookup(payload)
        appointment_id = survey_appointment_id(lookup)
        if not appointment_id:
            raise EntityNotFound("Appointment ID not found in payload")
        submission = build_survey_submission(lookup)
        outcome = await submit_or_draft(
            db, company, appointment_id, submission,
            source=SubmissionSource.SURVEY, actor_name=SURVEY_ACTOR,
        )
        return outcome.to_response()

    return await process_event(db, event.id, work, company_id=company_id)
