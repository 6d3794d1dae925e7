# app/core/recording_analysis.py
"""
Video-meeting recordings -> drafted PCNs.

The webhook only records the delivery and enqueues a job; the job matches the
meeting to an appointment and asks the configured drafter for a candidate.
Drafting is pluggable: the default drafter produces nothing, so without an
analyzer installed recordings are logged and left alone.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional

from fastapi import BackgroundTasks
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.background import enqueue
from app.core.config import settings
from app.core.enums import Processor, SubmissionSource
from app.core.errors import PayloadMalformed, SignatureInvalid, TenantUnresolved
from app.core.event_log import mark_processed, parse_json_object, record_event
from app.core.field_normalizer import normalize_email, normalize_string, parse_crm_datetime
from app.core.logging import build_log_context
from app.core.pcn_submission import AI_ACTOR, submit_or_draft
from app.core.webhook_dispatch import error_response, record_malformed
from app.core.webhook_signature import verify_zoom_signature, zoom_url_validation_token
from app.crud.company import get_company, resolve_company_by_zoom_account
from app.models.appointment import Appointment
from app.models.user import User
from app.schemas.pcn import PCNSubmission

logger = logging.getLogger(__name__)

URL_VALIDATION = "endpoint.url_validation"
RECORDING_COMPLETED = "recording.completed"
MATCH_WINDOW = timedelta(hours=2)


@dataclass
class RecordingContext:
    company_id: uuid.UUID
    meeting_id: str
    topic: Optional[str] = None
    host_email: Optional[str] = None
    start_time: Optional[datetime] = None
    transcript_url: Optional[str] = None
    download_token: Optional[str] = None
    appointment: Optional[Appointment] = None


PCNDrafter = Callable[[RecordingContext], Awaitable[Optional[PCNSubmission]]]


async def no_draft(context: RecordingContext) -> Optional[PCNSubmission]:
    return None


_drafter: PCNDrafter = no_draft


def set_pcn_drafter(drafter: Optional[PCNDrafter]) -> None:
    """Install the transcript analyzer; None restores the no-op default."""
    global _drafter
    _drafter = drafter or no_draft


def get_pcn_drafter() -> PCNDrafter:
    return _drafter


# -----------------------------
# Payload parsing
# -----------------------------
def transcript_file(recording_files: Any) -> Optional[Mapping[str, Any]]:
    if not isinstance(recording_files, list):
        return None
    for item in recording_files:
        if not isinstance(item, Mapping):
            continue
        if str(item.get("file_type", "")).upper() == "TRANSCRIPT" or str(item.get("file_extension", "")).lower() == "vtt":
            return item
    return None


def parse_recording(company_id: uuid.UUID, body: Mapping[str, Any]) -> RecordingContext:
    payload = body.get("payload") if isinstance(body.get("payload"), Mapping) else {}
    obj = payload.get("object") if isinstance(payload.get("object"), Mapping) else {}
    meeting_id = normalize_string(obj.get("id") or obj.get("meeting_id") or obj.get("uuid"))
    if not meeting_id:
        raise PayloadMalformed("No meeting ID in payload")

    transcript = transcript_file(obj.get("recording_files"))
    return RecordingContext(
        company_id=company_id,
        meeting_id=meeting_id,
        topic=normalize_string(obj.get("topic")),
        host_email=normalize_email(obj.get("host_email")),
        start_time=parse_crm_datetime(obj.get("start_time")),
        transcript_url=normalize_string(transcript.get("download_url")) if transcript else None,
        download_token=normalize_string(body.get("download_token")),
    )


# -----------------------------
# Appointment matching
# -----------------------------
async def find_appointment_for_meeting(db: AsyncSession, context: RecordingContext) -> Optional[Appointment]:
    """
    1) appointment already linked to the meeting id
    2) closer is the meeting host, scheduled within +/- 2h of the meeting start
    3) appointment title equals the meeting topic, within the same window
    A match by 2) or 3) is linked to the meeting id for next time.
    """
    stmt = select(Appointment).where(
        Appointment.company_id == context.company_id,
        Appointment.zoom_meeting_id == context.meeting_id,
    ).limit(1)
    appointment = (await db.execute(stmt)).scalar_one_or_none()
    if appointment is not None:
        return appointment

    if context.start_time is None:
        return None

    window = (
        select(Appointment)
        .where(Appointment.company_id == context.company_id)
        .where(Appointment.scheduled_at >= context.start_time - MATCH_WINDOW)
        .where(Appointment.scheduled_at <= context.start_time + MATCH_WINDOW)
        .order_by(Appointment.scheduled_at.desc())
        .limit(1)
    )

    if context.host_email:
        stmt = window.join(User, User.id == Appointment.closer_id).where(func.lower(User.email) == context.host_email)
        appointment = (await db.execute(stmt)).scalar_one_or_none()

    if appointment is None and context.topic:
        stmt = window.where(func.lower(Appointment.title) == context.topic.lower())
        appointment = (await db.execute(stmt)).scalar_one_or_none()

    if appointment is not None:
        appointment.zoom_meeting_id = context.meeting_id
        await db.flush()
    return appointment


async def analyze_recording(db: AsyncSession, context: RecordingContext, drafter: Optional[PCNDrafter] = None) -> dict[str, Any]:
    """Background job body. Caller (the job runner) commits."""
    log_ctx = build_log_context(company_id=context.company_id, processor=Processor.ZOOM.value)
    company = await get_company(db, context.company_id)
    if company is None:
        logger.warning("Recording job for unknown company", extra=log_ctx)
        return {"status": "ignored"}

    appointment = await find_appointment_for_meeting(db, context)
    if appointment is None:
        logger.info("Could not match meeting %s to an appointment", context.meeting_id, extra=log_ctx)
        return {"status": "unmatched"}
    if appointment.pcn_submitted:
        return {"status": "skipped", "appointment_id": str(appointment.id)}

    context.appointment = appointment
    submission = await (drafter or get_pcn_drafter())(context)
    if submission is None:
        logger.info("No PCN drafted for meeting %s", context.meeting_id, extra=log_ctx)
        return {"status": "no_draft", "appointment_id": str(appointment.id)}

    outcome = await submit_or_draft(
        db, company, appointment.id, submission,
        source=SubmissionSource.AI, actor_name=AI_ACTOR, notes=f"Drafted from meeting {context.meeting_id}",
    )
    return outcome.to_response()


# -----------------------------
# Webhook
# -----------------------------
def url_validation_response(body: Mapping[str, Any]) -> dict[str, str]:
    payload = body.get("payload") if isinstance(body.get("payload"), Mapping) else {}
    plain_token = normalize_string(payload.get("plainToken"))
    if not plain_token:
        raise PayloadMalformed("Missing plainToken")
    if not settings.ZOOM_WEBHOOK_SECRET:
        raise SignatureInvalid("Zoom webhook secret not configured")
    return {"plainToken": plain_token, "encryptedToken": zoom_url_validation_token(plain_token)}


async def handle_zoom_webhook(
    db: AsyncSession,
    *,
    raw_body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    try:
        body: Optional[dict[str, Any]] = parse_json_object(raw_body)
        parse_error: Optional[PayloadMalformed] = None
    except PayloadMalformed as e:
        body, parse_error = None, e

    if body is not None and body.get("event") == URL_VALIDATION:
        return url_validation_response(body)

    verify_zoom_signature(raw_body, signature, timestamp)
    if body is None:
        return await record_malformed(db, processor=Processor.ZOOM.value, raw_body=raw_body, error=parse_error)

    event_type = normalize_string(body.get("event")) or "unknown"
    event = await record_event(db, processor=Processor.ZOOM.value, event_type=event_type, raw_body=raw_body, payload=body)

    if event_type != RECORDING_COMPLETED:
        await mark_processed(db, event.id, error=f"Unhandled event type: {event_type}")
        return {"received": True, "status": "ignored", "event_type": event_type}

    payload = body.get("payload") if isinstance(body.get("payload"), Mapping) else {}
    account_id = normalize_string(payload.get("account_id"))
    company = await resolve_company_by_zoom_account(db, account_id)
    if company is None:
        err = TenantUnresolved("No account_id in payload" if not account_id else f"Company not found for account_id={account_id}")
        await mark_processed(db, event.id, error=f"{err.code}: {err.message}")
        return error_response(err)

    try:
        context = parse_recording(company.id, body)
    except PayloadMalformed as e:
        await mark_processed(db, event.id, error=f"{e.code}: {e.message}", company_id=company.id)
        return error_response(e)

    if context.transcript_url is None:
        await mark_processed(db, event.id, company_id=company.id)
        return {"received": True, "status": "no_transcript", "meeting_id": context.meeting_id}

    enqueue(background_tasks, f"recording_analysis:{context.meeting_id}", analyze_recording, context)
    await mark_processed(db, event.id, company_id=company.id)
    logger.info(
        "Recording analysis queued for meeting %s",
        context.meeting_id,
        extra=build_log_context(company_id=company.id, event_id=event.id, processor=Processor.ZOOM.value),
    )
    return {"received": True, "status": "queued", "meeting_id": context.meeting_id}
