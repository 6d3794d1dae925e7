# app/core/payment_webhooks.py
"""
Payment notification channels.

Generic processor endpoint:
  - `x-webhook-secret` header checked against PAYMENT_WEBHOOK_SECRET
  - tenant from companyId (top level or metadata), else the appointment
    hint's owner, else the closer email's single tenant

Whop endpoint:
  - `company` + `secret` query pair checked against the tenant's
    processor_account_secret
  - only payment.succeeded creates a sale; amounts arrive in cents
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import PaymentType, Processor
from app.core.errors import PayloadMalformed, SignatureInvalid, TenantUnresolved
from app.core.event_log import mark_processed, parse_json_object, record_event
from app.core.field_normalizer import coerce_currency, normalize_email, normalize_string, parse_crm_datetime
from app.core.logging import build_log_context
from app.core.payment_matching import IncomingPayment, record_payment
from app.core.webhook_dispatch import error_response, process_event, record_malformed
from app.core.webhook_signature import verify_payment_secret, verify_shared_secret
from app.crud.appointment import get_appointment_company_id
from app.crud.company import get_company
from app.crud.user import find_companies_for_email
from app.models.company import Company

logger = logging.getLogger(__name__)

WHOP_PAYMENT_SUCCEEDED = "payment.succeeded"


# -----------------------------
# Payload parsing
# -----------------------------
def _metadata(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    metadata = payload.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def payment_company_ref(payload: Mapping[str, Any]) -> Optional[str]:
    metadata = _metadata(payload)
    for source in (payload, metadata):
        for key in ("companyId", "company_id", "company"):
            value = normalize_string(source.get(key))
            if value:
                return value
    return None


def normalize_payment_type(value: Any) -> str:
    text = (normalize_string(value) or "").lower().replace("-", "_").replace(" ", "_")
    if text in {"payment_plan", "plan", "installment", "installments"}:
        return PaymentType.PAYMENT_PLAN.value
    return PaymentType.PAID_IN_FULL.value


def parse_generic_payment(payload: Mapping[str, Any]) -> IncomingPayment:
    """Raises PayloadMalformed when processor, paymentId, amount or customerEmail is missing."""
    metadata = _metadata(payload)
    processor = normalize_string(payload.get("processor"))
    payment_id = normalize_string(payload.get("paymentId"))
    amount = coerce_currency(payload.get("amount"))
    customer_email = normalize_email(payload.get("customerEmail"))

    missing = [
        name
        for name, value in (
            ("processor", processor),
            ("paymentId", payment_id),
            ("amount", amount),
            ("customerEmail", customer_email),
        )
        if value is None
    ]
    if missing:
        raise PayloadMalformed(
            "processor, paymentId, amount, and customerEmail are required", missing=missing
        )

    return IncomingPayment(
        processor=processor.lower(),
        external_id=payment_id,
        amount=amount,
        currency=(normalize_string(payload.get("currency")) or "USD").upper(),
        customer_email=customer_email,
        customer_name=normalize_string(payload.get("customerName") or payload.get("contactName")),
        customer_phone=normalize_string(payload.get("contactPhone")),
        closer_email=normalize_email(payload.get("closerEmail")),
        appointment_hint=normalize_string(payload.get("appointmentId") or metadata.get("appointmentId")),
        payment_type=normalize_payment_type(payload.get("paymentType")),
        total_amount=coerce_currency(payload.get("totalAmount")),
        paid_at=parse_crm_datetime(payload.get("paidAt")),
        raw=dict(payload),
    )


def cents_to_amount(value: Any) -> Optional[Decimal]:
    cents = coerce_currency(value)
    if cents is None:
        return None
    return (cents / 100).quantize(Decimal("1.00"))


def parse_whop_payment(payload: Mapping[str, Any]) -> IncomingPayment:
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
    metadata = _metadata(data)
    external_id = normalize_string(data.get("id"))
    amount = cents_to_amount(data.get("amount"))
    if external_id is None or amount is None:
        raise PayloadMalformed("Whop payment requires id and amount", missing=[
            name for name, value in (("id", external_id), ("amount", amount)) if value is None
        ])

    return IncomingPayment(
        processor=Processor.WHOP.value,
        external_id=external_id,
        amount=amount,
        currency=(normalize_string(data.get("currency")) or "USD").upper(),
        customer_email=normalize_email(data.get("customer_email")),
        customer_name=normalize_string(data.get("customer_name")),
        closer_email=normalize_email(metadata.get("closerEmail") or metadata.get("closer_email")),
        appointment_hint=normalize_string(metadata.get("appointmentId") or metadata.get("appointment_id")),
        paid_at=parse_crm_datetime(data.get("paid_at") or data.get("created_at")),
        raw=dict(payload),
    )


# -----------------------------
# Tenant resolution
# -----------------------------
async def resolve_payment_company(db: AsyncSession, payload: Mapping[str, Any], payment: IncomingPayment) -> Company:
    ref = payment_company_ref(payload)
    if ref:
        company = await get_company(db, ref)
        if company is None or not company.is_active:
            raise TenantUnresolved("Company not found", company_id=ref)
        return company

    if payment.appointment_hint:
        company_id = await get_appointment_company_id(db, payment.appointment_hint)
        if company_id is not None:
            company = await get_company(db, company_id)
            if company is not None:
                return company

    if payment.closer_email:
        company_ids = await find_companies_for_email(db, payment.closer_email)
        if len(company_ids) == 1:
            company = await get_company(db, company_ids[0])
            if company is not None:
                return company

    raise TenantUnresolved("Unable to determine company for payment")


# -----------------------------
# Handlers
# -----------------------------
async def handle_payment_webhook(
    db: AsyncSession,
    *,
    raw_body: bytes,
    provided_secret: Optional[str],
) -> dict[str, Any]:
    verify_payment_secret(provided_secret)

    try:
        payload = parse_json_object(raw_body)
    except PayloadMalformed as e:
        return await record_malformed(db, processor=Processor.PAYMENTS.value, raw_body=raw_body, error=e)

    event = await record_event(
        db, processor=Processor.PAYMENTS.value, event_type="payment.received", raw_body=raw_body, payload=payload
    )

    try:
        payment = parse_generic_payment(payload)
        company = await resolve_payment_company(db, payload, payment)
    except (PayloadMalformed, TenantUnresolved) as e:
        await mark_processed(db, event.id, error=f"{e.code}: {e.message}")
        return error_response(e)

    logger.info(
        "Payment webhook received",
        extra=build_log_context(company_id=company.id, event_id=event.id, processor=payment.processor),
    )

    async def work() -> dict[str, Any]:
        result = await record_payment(db, company, payment)
        return result.to_response()

    return await process_event(db, event.id, work, company_id=company.id)


async def authenticate_whop(db: AsyncSession, company_ref: Optional[str], secret: Optional[str]) -> Company:
    if not company_ref or not secret:
        raise SignatureInvalid("Missing company ID or secret")
    company = await get_company(db, company_ref)
    if company is None or not verify_shared_secret(secret, company.processor_account_secret):
        raise SignatureInvalid("Invalid company or secret")
    return company


async def handle_whop_webhook(
    db: AsyncSession,
    *,
    company_ref: Optional[str],
    secret: Optional[str],
    raw_body: bytes,
) -> dict[str, Any]:
    company = await authenticate_whop(db, company_ref, secret)
    company_id = company.id

    try:
        payload = parse_json_object(raw_body)
    except PayloadMalformed as e:
        return await record_malformed(db, processor=Processor.WHOP.value, raw_body=raw_body, error=e)

    event_type = normalize_string(payload.get("type")) or "unknown"
    event = await record_event(
        db, processor=Processor.WHOP.value, event_type=event_type, raw_body=raw_body, payload=payload,
        company_id=company_id,
    )

    if event_type != WHOP_PAYMENT_SUCCEEDED:
        await mark_processed(db, event.id, company_id=company_id)
        return {"received": True, "status": "ignored", "event_type": event_type}

    async def work() -> dict[str, Any]:
        result = await record_payment(db, company, parse_whop_payment(payload))
        return result.to_response()

    return await process_event(db, event.id, work, company_id=company_id)
