# app/core/webhook_dispatch.py
"""
Webhook dispatcher.

Order of operations for every delivery:
  1) authenticate (SignatureInvalid propagates -> 401)
  2) record the raw delivery in the event log
  3) resolve the tenant (unresolvable -> processed with error, 200)
  4) route through the alias-tolerant event-type map
  5) mark processed, recording any handler error; the sender always gets 200
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from fastapi import BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import appointment_sync
from app.core.enums import Processor
from app.core.errors import PayloadMalformed, ReconciliationError, TenantUnresolved
from app.core.event_log import mark_processed, parse_json_object, record_event
from app.core.logging import build_log_context
from app.core.webhook_signature import verify_ghl_signature
from app.crud.company import crm_tenant_identifiers, resolve_company_by_crm_ids
from app.models.company import Company
from app.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

APPOINTMENT_CREATED = "appointment.created"
APPOINTMENT_UPDATED = "appointment.updated"
APPOINTMENT_CANCELLED = "appointment.cancelled"
APPOINTMENT_RESCHEDULED = "appointment.rescheduled"
APP_INSTALLED = "app.installed"
APP_UNINSTALLED = "app.uninstalled"

EVENT_TYPE_ALIASES: dict[str, tuple[str, ...]] = {
    APPOINTMENT_CREATED: (
        "appointment.created", "appointmentcreate", "appointment_create", "appointment_created",
        "AppointmentCreate", "appointment.booked",
    ),
    APPOINTMENT_UPDATED: ("appointment.updated", "appointmentupdate", "appointment_update", "AppointmentUpdate"),
    APPOINTMENT_CANCELLED: (
        "appointment.cancelled", "appointment.canceled", "appointmentcancel", "appointment_cancelled",
        "appointment_canceled", "AppointmentCancel",
    ),
    APPOINTMENT_RESCHEDULED: (
        "appointment.rescheduled", "appointmentreschedule", "appointment_rescheduled", "AppointmentReschedule",
    ),
    APP_INSTALLED: ("app.installed", "install", "INSTALL"),
    APP_UNINSTALLED: ("app.uninstalled", "uninstall", "UNINSTALL"),
}

_EVENT_KEY_RE = re.compile(r"[^a-z0-9]+")


def normalize_event_key(value: str) -> str:
    """"Appointment_Create" / "appointment.create" / "AppointmentCreate" -> "appointmentcreate"."""
    return _EVENT_KEY_RE.sub("", value.lower())


_ALIAS_INDEX: dict[str, str] = {}
for _canonical, _aliases in EVENT_TYPE_ALIASES.items():
    for _alias in _aliases:
        _ALIAS_INDEX[normalize_event_key(_alias)] = _canonical


def canonical_event_type(raw: Optional[str]) -> Optional[str]:
    if not raw or not isinstance(raw, str):
        return None
    return _ALIAS_INDEX.get(normalize_event_key(raw))


def event_type_from_status(status: Optional[str]) -> str:
    s = (status or "").strip().lower()
    if s in {"confirmed", "scheduled", "booked", "new"}:
        return APPOINTMENT_CREATED
    if s in {"cancelled", "canceled"}:
        return APPOINTMENT_CANCELLED
    if s == "rescheduled":
        return APPOINTMENT_RESCHEDULED
    return APPOINTMENT_UPDATED


def crm_event_type(payload: Mapping[str, Any]) -> tuple[str, Optional[str]]:
    """(raw type as sent, canonical handler key or None)."""
    raw = payload.get("type") if isinstance(payload.get("type"), str) else payload.get("event")
    raw = raw if isinstance(raw, str) else ""
    canonical = canonical_event_type(raw)
    if canonical is None:
        status = appointment_sync.parse_appointment_payload(payload).status
        if status or raw.strip().lower() == "appointment":
            canonical = event_type_from_status(status)
    return raw or "unknown", canonical


# -----------------------------
# Handler registry
# -----------------------------
@dataclass
class DispatchContext:
    db: AsyncSession
    company: Company
    event_id: uuid.UUID
    payload: dict[str, Any]
    background_tasks: Optional[BackgroundTasks] = None


Handler = Callable[[DispatchContext], Awaitable[dict[str, Any]]]


async def _on_created(ctx: DispatchContext) -> dict[str, Any]:
    return await appointment_sync.handle_appointment_created(ctx.db, ctx.company, ctx.payload)


async def _on_updated(ctx: DispatchContext) -> dict[str, Any]:
    return await appointment_sync.handle_appointment_updated(ctx.db, ctx.company, ctx.payload)


async def _on_cancelled(ctx: DispatchContext) -> dict[str, Any]:
    return await appointment_sync.handle_appointment_cancelled(ctx.db, ctx.company, ctx.payload)


async def _on_rescheduled(ctx: DispatchContext) -> dict[str, Any]:
    return await appointment_sync.handle_appointment_rescheduled(ctx.db, ctx.company, ctx.payload)


async def _acknowledge(ctx: DispatchContext) -> dict[str, Any]:
    logger.info("Acknowledged lifecycle event", extra=build_log_context(company_id=ctx.company.id, event_id=ctx.event_id))
    return {"status": "acknowledged"}


_HANDLERS: dict[str, Handler] = {
    APPOINTMENT_CREATED: _on_created,
    APPOINTMENT_UPDATED: _on_updated,
    APPOINTMENT_CANCELLED: _on_cancelled,
    APPOINTMENT_RESCHEDULED: _on_rescheduled,
    APP_INSTALLED: _acknowledge,
    APP_UNINSTALLED: _acknowledge,
}


def get_handler(event_type: str) -> Handler:
    handler = _HANDLERS.get(event_type)
    if not handler:
        raise KeyError(f"Unknown webhook handler: {event_type}")
    return handler


# -----------------------------
# Processing
# -----------------------------
def error_response(error: ReconciliationError) -> dict[str, Any]:
    return {"received": True, "status": "error", "error": error.code, "message": error.message}


async def process_event(
    db: AsyncSession,
    event_id: uuid.UUID,
    work: Callable[[], Awaitable[dict[str, Any]]],
    *,
    company_id: Optional[uuid.UUID] = None,
) -> dict[str, Any]:
    """
    Run a handler inside the request transaction and close out the event.

    Failures are absorbed: the event is marked processed with the error and
    the caller answers 200, since a retry cannot repair the payload.
    """
    try:
        result = await work()
        await db.commit()
    except ReconciliationError as e:
        await db.rollback()
        await mark_processed(db, event_id, error=f"{e.code}: {e.message}", company_id=company_id)
        return error_response(e)
    except Exception as e:
        await db.rollback()
        logger.exception("Webhook handler failed", extra=build_log_context(event_id=event_id, company_id=company_id))
        await mark_processed(db, event_id, error=f"INTERNAL_ERROR: {type(e).__name__}: {e}", company_id=company_id)
        return {"received": True, "status": "error", "error": "INTERNAL_ERROR"}

    await mark_processed(db, event_id, error=result.get("error"), company_id=company_id)
    return {"received": True, **result}


async def record_malformed(db: AsyncSession, *, processor: str, raw_body: bytes, error: PayloadMalformed) -> dict[str, Any]:
    event = await record_event(db, processor=processor, event_type="malformed", raw_body=raw_body)
    await mark_processed(db, event.id, error=f"{error.code}: {error.message}")
    return error_response(error)


async def handle_crm_webhook(
    db: AsyncSession,
    *,
    raw_body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    background_tasks: Optional[BackgroundTasks] = None,
) -> dict[str, Any]:
    verify_ghl_signature(raw_body, signature, timestamp)

    try:
        payload = parse_json_object(raw_body)
    except PayloadMalformed as e:
        return await record_malformed(db, processor=Processor.GHL.value, raw_body=raw_body, error=e)

    raw_type, canonical = crm_event_type(payload)
    event: WebhookEvent = await record_event(
        db, processor=Processor.GHL.value, event_type=raw_type, raw_body=raw_body, payload=payload
    )
    event_id = event.id

    location_id, account_id = crm_tenant_identifiers(payload)
    company = await resolve_company_by_crm_ids(db, location_id=location_id, account_id=account_id)
    if company is None:
        if not location_id and not account_id:
            err = TenantUnresolved("No locationId or accountId in payload")
        else:
            err = TenantUnresolved(f"Company not found for locationId={location_id} accountId={account_id}")
        await mark_processed(db, event_id, error=f"{err.code}: {err.message}")
        return error_response(err)

    if canonical is None:
        await mark_processed(db, event_id, error=f"Unhandled event type: {raw_type}", company_id=company.id)
        return {"received": True, "status": "ignored", "event_type": raw_type}

    handler = get_handler(canonical)
    ctx = DispatchContext(db=db, company=company, event_id=event_id, payload=payload, background_tasks=background_tasks)
    logger.info(
        "Dispatching webhook",
        extra=build_log_context(company_id=company.id, event_id=event_id, processor=Processor.GHL.value, event_type=canonical),
    )
    result = await process_event(db, event_id, lambda: handler(ctx), company_id=company.id)
    result.setdefault("event_type", canonical)
    return result
