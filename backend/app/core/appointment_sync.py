# app/core/appointment_sync.py
"""
CRM appointment webhooks -> Appointment rows.

Every handler is an idempotent upsert keyed on (company_id, external appointment
id), so deliveries may arrive twice or out of order:
  - cancelled is terminal; later created/updated/rescheduled never revive it
  - a PCN-finalized appointment keeps its outcome status
  - a cancel arriving before the create creates the appointment as cancelled
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.attribution import apply_attribution
from app.core.enums import AppointmentStatus, CallOutcome, UserRole
from app.core.errors import PayloadMalformed
from app.core.event_log import utcnow
from app.core.field_normalizer import (
    LabelStrategy,
    PathStrategy,
    extract_by_strategies,
    flatten_payload,
    normalize_email,
    normalize_string,
    parse_crm_datetime,
)
from app.crud.user import get_user_by_crm_id
from app.models.appointment import Appointment
from app.models.calendar import Calendar
from app.models.company import Company
from app.models.contact import Contact
from app.models.user import User

logger = logging.getLogger(__name__)

_NESTED_APPOINTMENT = ("appointment.", "triggerData.appointment.", "data.appointment.")

APPOINTMENT_FIELD_STRATEGIES: dict[str, tuple[PathStrategy | LabelStrategy, ...]] = {
    "external_id": (
        PathStrategy(("appointmentId", "appointment_id")),
        PathStrategy(("id",), _NESTED_APPOINTMENT),
        PathStrategy(("appointmentId",), ("calendar.",)),
        LabelStrategy(("pcn appointment id", "appointment id")),
    ),
    "status": (
        PathStrategy(("appointmentStatus", "appointment_status")),
        PathStrategy(("appointmentStatus", "status"), ("calendar.",) + _NESTED_APPOINTMENT),
    ),
    "start_time": (
        PathStrategy(("startTime", "start_time", "scheduledAt", "scheduled_at", "startAt")),
        PathStrategy(("startTime",), ("calendar.",)),
        LabelStrategy(("appointment start time", "appointment date")),
    ),
    "end_time": (
        PathStrategy(("endTime", "end_time", "endAt", "end_at")),
        PathStrategy(("endTime",), ("calendar.",)),
    ),
    "title": (
        PathStrategy(("title", "subject")),
        PathStrategy(("title",), ("calendar.",)),
    ),
    "notes": (PathStrategy(("notes", "description", "note"), _NESTED_APPOINTMENT + ("",)),),
    "calendar_id": (
        PathStrategy(("calendarId", "calendar_id", "calendar.id")),
        PathStrategy(("id",), ("calendar.",)),
    ),
    "calendar_name": (
        PathStrategy(("calendarName", "calendar_name", "calendar.name")),
        PathStrategy(("calendarName", "name"), ("calendar.",)),
    ),
    "assigned_user_id": (
        PathStrategy(("assignedUserId", "assigned_user_id", "userId", "user_id")),
        PathStrategy(("assignedUserId",), ("calendar.",)),
    ),
    "contact_id": (
        PathStrategy(("contactId", "contact_id", "contact.id")),
        PathStrategy(("id",), ("contact.",)),
    ),
    "contact_name": (
        PathStrategy(("contactName", "full_name", "fullName"), ("", "contact.", "data.")),
        PathStrategy(("name",), ("contact.",)),
    ),
    "contact_email": (PathStrategy(("email", "contactEmail"), ("", "contact.", "data.", "customData.")),),
    "contact_phone": (PathStrategy(("phone", "contactPhone"), ("", "contact.", "data.", "customData.")),),
}


@dataclass
class AppointmentPayload:
    external_id: Optional[str]
    status: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    calendar_id: Optional[str] = None
    calendar_name: Optional[str] = None
    assigned_user_id: Optional[str] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_custom_fields: dict[str, Any] = field(default_factory=dict)
    contact_tags: list[str] = field(default_factory=list)


def _custom_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    """customFields may be a dict or a list of {key|id|name, value}; customData is merged in."""
    merged: dict[str, Any] = {}
    sources: list[Any] = []
    contact = payload.get("contact")
    if isinstance(contact, Mapping):
        sources.append(contact.get("customFields") or contact.get("custom_fields"))
    sources.append(payload.get("customFields") or payload.get("custom_fields"))
    sources.append(payload.get("customData"))

    for source in sources:
        if isinstance(source, Mapping):
            for key, value in source.items():
                merged.setdefault(str(key), value)
        elif isinstance(source, list):
            for item in source:
                if not isinstance(item, Mapping):
                    continue
                key = item.get("key") or item.get("name") or item.get("id")
                if key and "value" in item:
                    merged.setdefault(str(key), item.get("value"))
    return merged


def _tags(payload: Mapping[str, Any]) -> list[str]:
    contact = payload.get("contact")
    raw = payload.get("tags")
    if raw is None and isinstance(contact, Mapping):
        raw = contact.get("tags")
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return []
    return [str(t).strip() for t in raw if str(t).strip()]


def parse_appointment_payload(payload: Mapping[str, Any]) -> AppointmentPayload:
    flat = flatten_payload(payload)

    def _get(name: str) -> Optional[str]:
        value = extract_by_strategies(flat, APPOINTMENT_FIELD_STRATEGIES[name])
        return normalize_string(value)

    def _get_dt(name: str) -> Optional[datetime]:
        return parse_crm_datetime(extract_by_strategies(flat, APPOINTMENT_FIELD_STRATEGIES[name]))

    return AppointmentPayload(
        external_id=_get("external_id"),
        status=_get("status"),
        start_time=_get_dt("start_time"),
        end_time=_get_dt("end_time"),
        title=_get("title"),
        notes=_get("notes"),
        calendar_id=_get("calendar_id"),
        calendar_name=_get("calendar_name"),
        assigned_user_id=_get("assigned_user_id"),
        contact_id=_get("contact_id"),
        contact_name=_get("contact_name"),
        contact_email=normalize_email(_get("contact_email")),
        contact_phone=_get("contact_phone"),
        contact_custom_fields=_custom_fields(payload),
        contact_tags=_tags(payload),
    )


# -----------------------------
# Upserts
# -----------------------------
async def upsert_contact(db: AsyncSession, company: Company, data: AppointmentPayload) -> Optional[Contact]:
    if not data.contact_id and not (data.contact_email or data.contact_name or data.contact_phone):
        return None

    contact: Optional[Contact] = None
    if data.contact_id:
        stmt = select(Contact).where(Contact.company_id == company.id, Contact.external_id == data.contact_id)
        contact = (await db.execute(stmt)).scalar_one_or_none()

    if contact is None:
        contact = Contact(company_id=company.id, external_id=data.contact_id, custom_fields={}, tags=[])
        contact.set_phone(data.contact_phone)
        contact.name = data.contact_name
        contact.email = data.contact_email
        contact.custom_fields = dict(data.contact_custom_fields)
        contact.tags = list(data.contact_tags)
        try:
            async with db.begin_nested():
                db.add(contact)
                await db.flush()
            return contact
        except IntegrityError:
            stmt = select(Contact).where(Contact.company_id == company.id, Contact.external_id == data.contact_id)
            contact = (await db.execute(stmt)).scalar_one()

    # Fill gaps only; never blank out what an earlier delivery provided
    if data.contact_name and (not contact.name or contact.name == "Unknown"):
        contact.name = data.contact_name
    if data.contact_email and not contact.email:
        contact.email = data.contact_email
    if data.contact_phone and not contact.phone:
        contact.set_phone(data.contact_phone)
    if data.contact_custom_fields:
        contact.custom_fields = {**(contact.custom_fields or {}), **data.contact_custom_fields}
    if data.contact_tags:
        contact.tags = sorted(set(contact.tags or []) | set(data.contact_tags))
    return contact


async def get_or_create_calendar(db: AsyncSession, company: Company, data: AppointmentPayload) -> Optional[Calendar]:
    if not data.calendar_id:
        return None

    stmt = select(Calendar).where(Calendar.company_id == company.id, Calendar.external_id == data.calendar_id)
    calendar = (await db.execute(stmt)).scalar_one_or_none()
    if calendar is not None or not data.calendar_name:
        if calendar is None:
            logger.info("Calendar %s not synced and no name in payload; not linking", data.calendar_id)
        return calendar

    calendar = Calendar(company_id=company.id, external_id=data.calendar_id, name=data.calendar_name)
    try:
        async with db.begin_nested():
            db.add(calendar)
            await db.flush()
    except IntegrityError:
        calendar = (await db.execute(stmt)).scalar_one()
    logger.info("Auto-created calendar %s for company %s", data.calendar_id, company.id)
    return calendar


async def assign_reps(
    db: AsyncSession,
    company: Company,
    data: AppointmentPayload,
    calendar: Optional[Calendar],
    contact: Optional[Contact],
) -> tuple[Optional[User], Optional[User]]:
    """(closer, setter) for a new appointment."""
    closer: Optional[User] = None
    setter: Optional[User] = None

    assigned = await get_user_by_crm_id(db, company.id, data.assigned_user_id)
    if assigned is not None:
        calendar_name = (calendar.name if calendar else data.calendar_name or "").lower()
        if assigned.role == UserRole.SETTER.value or "setter" in calendar_name:
            setter = assigned
        else:
            closer = assigned

    if closer is None and setter is None and calendar is not None and calendar.default_closer_id:
        closer = await db.get(User, calendar.default_closer_id)

    if closer is None and contact is not None:
        stmt = (
            select(Appointment.closer_id)
            .where(Appointment.company_id == company.id)
            .where(Appointment.contact_id == contact.id)
            .where(Appointment.closer_id.is_not(None))
            .order_by(Appointment.scheduled_at.desc().nulls_last())
            .limit(1)
        )
        recent_closer_id = (await db.execute(stmt)).scalar_one_or_none()
        if recent_closer_id is not None:
            closer = await db.get(User, recent_closer_id)

    return closer, setter


async def get_appointment_by_external_id(db: AsyncSession, company: Company, external_id: str) -> Optional[Appointment]:
    stmt = select(Appointment).where(Appointment.company_id == company.id, Appointment.external_id == external_id)
    return (await db.execute(stmt)).scalar_one_or_none()


def _require_external_id(data: AppointmentPayload) -> str:
    if not data.external_id:
        raise PayloadMalformed("Appointment id not found in payload")
    return data.external_id


async def _create_appointment(
    db: AsyncSession,
    company: Company,
    data: AppointmentPayload,
    *,
    status: AppointmentStatus,
) -> tuple[Appointment, bool]:
    """Insert-if-absent. Returns (appointment, created)."""
    external_id = _require_external_id(data)
    existing = await get_appointment_by_external_id(db, company, external_id)
    if existing is not None:
        return existing, False

    contact = await upsert_contact(db, company, data)
    calendar = await get_or_create_calendar(db, company, data)
    closer, setter = await assign_reps(db, company, data, calendar, contact)

    appointment = Appointment(
        company_id=company.id,
        external_id=external_id,
        contact_id=contact.id if contact else None,
        calendar_id=calendar.id if calendar else None,
        closer_id=closer.id if closer else None,
        setter_id=setter.id if setter else None,
        title=data.title,
        notes=data.notes,
        scheduled_at=data.start_time,
        start_time=data.start_time,
        end_time=data.end_time,
        status=status.value,
        reschedule_count=0,
        pcn_submitted=False,
    )
    if status == AppointmentStatus.CANCELLED:
        # Cancelled before we ever saw it: nothing left to report on
        appointment.outcome = CallOutcome.CANCELLED.value
        appointment.pcn_submitted = True
        appointment.pcn_submitted_at = utcnow()

    try:
        async with db.begin_nested():
            db.add(appointment)
            await db.flush()
    except IntegrityError:
        existing = await get_appointment_by_external_id(db, company, external_id)
        if existing is None:
            raise
        return existing, False

    await apply_attribution(db, appointment, company)
    return appointment, True


def _apply_schedule(appointment: Appointment, data: AppointmentPayload) -> None:
    if data.start_time:
        appointment.scheduled_at = data.start_time
        appointment.start_time = data.start_time
    if data.end_time:
        appointment.end_time = data.end_time
    if data.title:
        appointment.title = data.title


async def handle_appointment_created(db: AsyncSession, company: Company, payload: Mapping[str, Any]) -> dict[str, Any]:
    data = parse_appointment_payload(payload)
    # Create if absent, else no-op: a late create must not undo a reschedule
    appointment, created = await _create_appointment(db, company, data, status=AppointmentStatus.SCHEDULED)
    logger.info("Appointment %s %s", appointment.id, "created" if created else "already exists")
    return {"status": "created" if created else "duplicate", "appointment_id": str(appointment.id)}


async def handle_appointment_updated(db: AsyncSession, company: Company, payload: Mapping[str, Any]) -> dict[str, Any]:
    data = parse_appointment_payload(payload)
    appointment, created = await _create_appointment(db, company, data, status=AppointmentStatus.SCHEDULED)
    if created:
        return {"status": "created", "appointment_id": str(appointment.id)}
    if appointment.is_terminal:
        return {"status": "ignored", "appointment_id": str(appointment.id), "reason": "terminal"}

    _apply_schedule(appointment, data)
    if data.notes:
        appointment.notes = data.notes
    return {"status": "updated", "appointment_id": str(appointment.id)}


async def handle_appointment_cancelled(db: AsyncSession, company: Company, payload: Mapping[str, Any]) -> dict[str, Any]:
    data = parse_appointment_payload(payload)
    appointment, created = await _create_appointment(db, company, data, status=AppointmentStatus.CANCELLED)
    if created:
        return {"status": "cancelled", "appointment_id": str(appointment.id)}
    if appointment.pcn_submitted and appointment.status != AppointmentStatus.CANCELLED.value:
        return {"status": "ignored", "appointment_id": str(appointment.id), "reason": "pcn_submitted"}

    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.outcome = CallOutcome.CANCELLED.value
    if not appointment.pcn_submitted:
        appointment.pcn_submitted = True
        appointment.pcn_submitted_at = utcnow()
    return {"status": "cancelled", "appointment_id": str(appointment.id)}


async def handle_appointment_rescheduled(db: AsyncSession, company: Company, payload: Mapping[str, Any]) -> dict[str, Any]:
    data = parse_appointment_payload(payload)
    appointment, created = await _create_appointment(db, company, data, status=AppointmentStatus.SCHEDULED)
    if created:
        return {"status": "created", "appointment_id": str(appointment.id)}
    if appointment.is_terminal:
        return {"status": "ignored", "appointment_id": str(appointment.id), "reason": "terminal"}

    # Replays carry the start time already stored and do not count again
    moved = data.start_time is not None and data.start_time != appointment.start_time
    _apply_schedule(appointment, data)
    if moved:
        appointment.reschedule_count = (appointment.reschedule_count or 0) + 1
    appointment.status = AppointmentStatus.SCHEDULED.value
    return {"status": "rescheduled", "appointment_id": str(appointment.id)}
