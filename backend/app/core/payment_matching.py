# app/core/payment_matching.py
"""
Payment -> appointment matching.

Flow for one incoming payment:
  1) (processor, external_id) already recorded -> duplicate, nothing else happens
  2) create the Sale
  3) explicit appointment hint owned by the tenant -> auto match at 1.0
  4) otherwise OR-search contacts by email / phone digits / name, newest
     scheduled appointment first; confidence comes from how many signals agree
  5) below the tenant threshold (or nothing found) -> UnmatchedPayment with
     advisory suggestions; never a forced match
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.commission import apply_installment, create_commission_for_sale
from app.core.config import settings
from app.core.enums import AppointmentStatus, MatchedBy, PaymentType, ReviewStatus
from app.core.errors import AlreadyProcessed, EntityNotFound
from app.core.field_normalizer import digits_only, normalize_email, normalize_string
from app.crud.appointment import get_company_appointment
from app.crud.user import get_user_by_email
from app.models.appointment import Appointment
from app.models.commission import Commission
from app.models.company import Company
from app.models.contact import Contact
from app.models.sale import Sale
from app.models.unmatched_payment import UnmatchedPayment
from app.models.user import User

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 10
SUGGESTION_POOL_SIZE = 50
SUGGESTION_WINDOW_DAYS = 60
AUTO_MATCH_CAP = 0.95


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IncomingPayment:
    processor: str
    external_id: str
    amount: Decimal
    currency: str = "USD"
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    closer_email: Optional[str] = None
    appointment_hint: Optional[str] = None
    payment_type: str = PaymentType.PAID_IN_FULL.value
    total_amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentResult:
    status: str  # matched | unmatched | duplicate | ignored | installment
    sale: Optional[Sale] = None
    appointment: Optional[Appointment] = None
    commission: Optional[Commission] = None
    unmatched: Optional[UnmatchedPayment] = None
    confidence: float = 0.0
    error: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status}
        if self.sale is not None:
            out["sale_id"] = str(self.sale.id)
        if self.appointment is not None:
            out["appointment_id"] = str(self.appointment.id)
        if self.commission is not None:
            out["commission_id"] = str(self.commission.id)
        if self.unmatched is not None:
            out["unmatched_payment_id"] = str(self.unmatched.id)
        if self.confidence:
            out["confidence"] = self.confidence
        if self.error:
            out["error"] = self.error
        return out


# -----------------------------
# Pure scoring
# -----------------------------
def match_confidence(signals: set[str], *, closer_agrees: bool = False) -> float:
    """
    Confidence of an automatic match from the signals that agreed.

    hint -> 1.0; email -> 0.9 (0.95 with phone too); phone -> 0.85 (0.9 with
    name); name only -> 0.5. A closer attributed by the payment that owns the
    appointment adds 0.05. Anything short of a hint is capped at 0.95.
    """
    if "hint" in signals:
        return 1.0
    if "email" in signals:
        score = 0.95 if "phone" in signals else 0.9
    elif "phone" in signals:
        score = 0.9 if "name" in signals else 0.85
    elif "name" in signals:
        score = 0.5
    else:
        return 0.0
    if closer_agrees:
        score += 0.05
    return round(min(score, AUTO_MATCH_CAP), 4)


def signals_for(payment: IncomingPayment, contact: Optional[Contact]) -> set[str]:
    if contact is None:
        return set()
    signals: set[str] = set()
    email = normalize_email(payment.customer_email)
    if email and contact.email and contact.email.strip().lower() == email:
        signals.add("email")
    phone = digits_only(payment.customer_phone)
    if phone and contact.phone_digits and contact.phone_digits == phone:
        signals.add("phone")
    name = normalize_string(payment.customer_name)
    if name and contact.name and contact.name.strip().lower() == name.lower():
        signals.add("name")
    return signals


def name_similarity(a: Optional[str], b: Optional[str]) -> float:
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a.strip().lower(), b.strip().lower()).ratio()


def score_suggestion(
    payment: IncomingPayment,
    appointment: Appointment,
    contact: Optional[Contact],
    *,
    now: Optional[datetime] = None,
) -> tuple[float, list[str]]:
    """Advisory multi-criteria score (name, email, amount, recency), capped at 0.95."""
    score = 0.0
    reasons: list[str] = []

    similarity = name_similarity(payment.customer_name, contact.name if contact else None)
    if similarity >= 0.9:
        score += 0.4
        reasons.append("Name matches")
    elif similarity >= 0.7:
        score += 0.3
        reasons.append(f"Name similarity: {round(similarity * 100)}%")
    elif similarity >= 0.5:
        score += 0.2
        reasons.append(f"Name similarity: {round(similarity * 100)}%")

    email = normalize_email(payment.customer_email)
    contact_email = normalize_email(contact.email) if contact else None
    if email and contact_email:
        if email == contact_email:
            score += 0.3
            reasons.append("Email matches")
        elif name_similarity(email, contact_email) >= 0.8:
            score += 0.15
            reasons.append("Email similar")

    if appointment.cash_collected and payment.amount:
        diff = abs(Decimal(appointment.cash_collected) - Decimal(payment.amount)) / Decimal(payment.amount)
        if diff <= Decimal("0.01"):
            score += 0.2
            reasons.append("Amount matches")
        elif diff <= Decimal("0.05"):
            score += 0.15
            reasons.append("Amount within 5%")
        elif diff <= Decimal("0.10"):
            score += 0.1
            reasons.append("Amount within 10%")

    if appointment.scheduled_at:
        reference = now or utcnow()
        days = abs((reference - appointment.scheduled_at).total_seconds()) / 86400
        if days <= 7:
            score += 0.1
            reasons.append("Appointment within 7 days")
        elif days <= 30:
            score += 0.05
            reasons.append("Appointment within 30 days")

    return round(min(score, AUTO_MATCH_CAP), 4), reasons


def match_threshold(company: Company) -> float:
    if company.match_confidence_threshold is not None:
        return float(company.match_confidence_threshold)
    return settings.DEFAULT_MATCH_THRESHOLD


# -----------------------------
# Candidate search
# -----------------------------
async def find_candidates(
    db: AsyncSession,
    company_id: uuid.UUID,
    payment: IncomingPayment,
    *,
    closer: Optional[User] = None,
) -> list[tuple[Appointment, Contact]]:
    """
    Appointments whose contact agrees on email, phone digits or name, newest
    scheduled first. When a closer is attributed, that closer's appointments
    are preferred if any exist.
    """
    clauses = []
    email = normalize_email(payment.customer_email)
    if email:
        clauses.append(func.lower(Contact.email) == email)
    phone = digits_only(payment.customer_phone)
    if phone:
        clauses.append(Contact.phone_digits == phone)
    name = normalize_string(payment.customer_name)
    if name:
        clauses.append(func.lower(Contact.name) == name.lower())
    if not clauses:
        return []

    stmt = (
        select(Appointment, Contact)
        .join(Contact, Contact.id == Appointment.contact_id)
        .where(Appointment.company_id == company_id)
        .where(Contact.company_id == company_id)
        .where(Appointment.status != AppointmentStatus.CANCELLED.value)
        .where(or_(*clauses))
        .order_by(Appointment.scheduled_at.desc().nulls_last(), Appointment.created_at.desc())
    )
    rows = [(a, c) for a, c in (await db.execute(stmt)).all()]

    if closer is not None:
        preferred = [(a, c) for a, c in rows if a.closer_id == closer.id]
        if preferred:
            return preferred
    return rows


def best_candidate(
    payment: IncomingPayment,
    candidates: list[tuple[Appointment, Contact]],
    *,
    closer: Optional[User] = None,
) -> Optional[tuple[Appointment, Contact, float]]:
    """Highest-confidence candidate; ties go to the newest scheduled (candidates arrive newest first)."""
    best: Optional[tuple[Appointment, Contact, float]] = None
    for appointment, contact in candidates:
        confidence = match_confidence(
            signals_for(payment, contact),
            closer_agrees=closer is not None and appointment.closer_id == closer.id,
        )
        if best is None or confidence > best[2]:
            best = (appointment, contact, confidence)
    return best


async def build_suggestions(
    db: AsyncSession,
    company_id: uuid.UUID,
    payment: IncomingPayment,
    candidates: list[tuple[Appointment, Contact]],
) -> list[dict[str, Any]]:
    since = utcnow() - timedelta(days=SUGGESTION_WINDOW_DAYS)
    stmt = (
        select(Appointment, Contact)
        .outerjoin(Contact, Contact.id == Appointment.contact_id)
        .where(Appointment.company_id == company_id)
        .where(Appointment.status != AppointmentStatus.CANCELLED.value)
        .where(Appointment.scheduled_at >= since)
        .order_by(Appointment.scheduled_at.desc())
        .limit(SUGGESTION_POOL_SIZE)
    )
    pool: dict[uuid.UUID, tuple[Appointment, Optional[Contact]]] = {a.id: (a, c) for a, c in candidates}
    for appointment, contact in (await db.execute(stmt)).all():
        pool.setdefault(appointment.id, (appointment, contact))

    suggestions = []
    for appointment, contact in pool.values():
        score, reasons = score_suggestion(payment, appointment, contact)
        if score <= 0:
            continue
        suggestions.append(
            {
                "appointment_id": str(appointment.id),
                "contact_name": contact.name if contact else None,
                "scheduled_at": appointment.scheduled_at.isoformat() if appointment.scheduled_at else None,
                "score": score,
                "reasons": reasons,
            }
        )
    suggestions.sort(key=lambda s: s["score"], reverse=True)
    return suggestions[:MAX_SUGGESTIONS]


# -----------------------------
# Persistence
# -----------------------------
async def get_sale_by_external_id(db: AsyncSession, processor: str, external_id: str) -> Optional[Sale]:
    stmt = select(Sale).where(Sale.processor == processor, Sale.external_id == external_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def _find_plan_sale(db: AsyncSession, sale: Sale) -> Optional[Sale]:
    stmt = (
        select(Sale)
        .where(Sale.company_id == sale.company_id)
        .where(Sale.appointment_id == sale.appointment_id)
        .where(Sale.payment_type == PaymentType.PAYMENT_PLAN.value)
        .where(Sale.plan_sale_id.is_(None))
        .where(Sale.id != sale.id)
        .order_by(Sale.created_at.asc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def _link_sale(
    db: AsyncSession,
    sale: Sale,
    appointment: Appointment,
    *,
    matched_by: MatchedBy,
    confidence: float,
    user: Optional[User] = None,
) -> tuple[Optional[Commission], bool]:
    """Attach sale to appointment and book its commission. Returns (commission, is_installment)."""
    sale.appointment_id = appointment.id
    sale.contact_id = sale.contact_id or appointment.contact_id
    sale.matched_by = matched_by.value
    sale.match_confidence = confidence
    if matched_by == MatchedBy.MANUAL:
        sale.manually_matched = True
        sale.matched_by_user_id = user.id if user else None
    if sale.rep_id is None:
        sale.rep_id = appointment.closer_id
    await db.flush()

    if sale.payment_type == PaymentType.PAYMENT_PLAN.value:
        plan_sale = await _find_plan_sale(db, sale)
        if plan_sale is not None:
            commissions = await apply_installment(db, plan_sale, sale)
            return (commissions[0] if commissions else None), True

    if sale.rep_id is None:
        logger.info("Sale %s matched to appointment %s without a rep; no commission", sale.id, appointment.id)
        return None, False

    rep = await db.get(User, sale.rep_id)
    if rep is None:
        return None, False
    return await create_commission_for_sale(db, sale, rep), False


async def record_payment(db: AsyncSession, company: Company, payment: IncomingPayment) -> PaymentResult:
    """Ingest one payment notification. Caller commits."""
    existing = await get_sale_by_external_id(db, payment.processor, payment.external_id)
    if existing is not None:
        logger.info("Duplicate payment %s/%s", payment.processor, payment.external_id)
        return PaymentResult(status="duplicate", sale=existing)

    closer: Optional[User] = None
    if payment.closer_email:
        closer = await get_user_by_email(db, company.id, payment.closer_email)
        if closer is None:
            return PaymentResult(status="ignored", error=f"Closer not found for email {payment.closer_email}")

    sale = Sale(
        company_id=company.id,
        processor=payment.processor,
        external_id=payment.external_id,
        amount=payment.amount,
        currency=payment.currency or "USD",
        payment_type=payment.payment_type,
        total_amount=payment.total_amount,
        collected_amount=payment.amount,
        customer_email=normalize_email(payment.customer_email),
        customer_name=normalize_string(payment.customer_name),
        customer_phone=normalize_string(payment.customer_phone),
        paid_at=payment.paid_at or utcnow(),
        rep_id=closer.id if closer else None,
        raw_data=payment.raw or {},
    )
    try:
        async with db.begin_nested():
            db.add(sale)
            await db.flush()
    except IntegrityError:
        existing = await get_sale_by_external_id(db, payment.processor, payment.external_id)
        return PaymentResult(status="duplicate", sale=existing)

    # Explicit hint (payment link metadata)
    if payment.appointment_hint:
        appointment = await get_company_appointment(db, company.id, payment.appointment_hint)
        if appointment is not None:
            commission, installment = await _link_sale(db, sale, appointment, matched_by=MatchedBy.AUTO, confidence=1.0)
            return PaymentResult(
                status="installment" if installment else "matched",
                sale=sale, appointment=appointment, commission=commission, confidence=1.0,
            )
        logger.info("Appointment hint %s not found for company %s", payment.appointment_hint, company.id)

    candidates = await find_candidates(db, company.id, payment, closer=closer)
    best = best_candidate(payment, candidates, closer=closer)
    if best is not None:
        appointment, contact, confidence = best
        if confidence >= match_threshold(company):
            sale.contact_id = contact.id
            commission, installment = await _link_sale(
                db, sale, appointment, matched_by=MatchedBy.AUTO, confidence=confidence
            )
            return PaymentResult(
                status="installment" if installment else "matched",
                sale=sale, appointment=appointment, commission=commission, confidence=confidence,
            )
        logger.info("Best candidate for sale %s below threshold (%.2f)", sale.id, confidence)

    unmatched = UnmatchedPayment(
        company_id=company.id,
        sale_id=sale.id,
        suggested_matches=await build_suggestions(db, company.id, payment, candidates),
        status=ReviewStatus.PENDING.value,
    )
    db.add(unmatched)
    await db.flush()
    return PaymentResult(status="unmatched", sale=sale, unmatched=unmatched)


async def manual_match(
    db: AsyncSession,
    company: Company,
    *,
    unmatched_payment_id: uuid.UUID,
    appointment_id: Any,
    user: User,
) -> PaymentResult:
    """Human override: link the sale to the given appointment at confidence 1.0. Caller commits."""
    stmt = select(UnmatchedPayment).where(
        UnmatchedPayment.id == unmatched_payment_id,
        UnmatchedPayment.company_id == company.id,
    ).with_for_update()
    unmatched = (await db.execute(stmt)).scalar_one_or_none()
    if unmatched is None:
        raise EntityNotFound("Payment not found")
    if unmatched.status == ReviewStatus.MATCHED.value:
        raise AlreadyProcessed("Payment already matched")

    sale = await db.get(Sale, unmatched.sale_id)
    if sale is None or sale.company_id != company.id:
        raise EntityNotFound("Payment not found")

    appointment = await get_company_appointment(db, company.id, appointment_id)
    if appointment is None:
        raise EntityNotFound("Appointment not found")

    commission, installment = await _link_sale(
        db, sale, appointment, matched_by=MatchedBy.MANUAL, confidence=1.0, user=user
    )
    unmatched.status = ReviewStatus.MATCHED.value
    unmatched.reviewed_at = utcnow()
    unmatched.reviewed_by_user_id = user.id
    await db.flush()

    logger.info("Manual match sale=%s appointment=%s by user=%s", sale.id, appointment.id, user.id)
    return PaymentResult(
        status="installment" if installment else "matched",
        sale=sale, appointment=appointment, commission=commission, unmatched=unmatched, confidence=1.0,
    )


async def link_pending_payment_for_contact(
    db: AsyncSession,
    appointment: Appointment,
    contact_email: Optional[str],
) -> Optional[PaymentResult]:
    """
    After a signed PCN: claim the newest pending unmatched payment paid by the
    same customer email.
    """
    email = normalize_email(contact_email)
    if not email:
        return None

    stmt = (
        select(UnmatchedPayment, Sale)
        .join(Sale, Sale.id == UnmatchedPayment.sale_id)
        .where(UnmatchedPayment.company_id == appointment.company_id)
        .where(UnmatchedPayment.status == ReviewStatus.PENDING.value)
        .where(func.lower(Sale.customer_email) == email)
        .order_by(Sale.created_at.desc())
        .limit(1)
    )
    row = (await db.execute(stmt)).first()
    if row is None:
        return None
    unmatched, sale = row

    commission, installment = await _link_sale(db, sale, appointment, matched_by=MatchedBy.AUTO, confidence=0.9)
    unmatched.status = ReviewStatus.MATCHED.value
    unmatched.reviewed_at = utcnow()
    await db.flush()

    logger.info("Linked pending payment sale=%s to signed appointment=%s", sale.id, appointment.id)
    return PaymentResult(
        status="installment" if installment else "matched",
        sale=sale, appointment=appointment, commission=commission, unmatched=unmatched, confidence=0.9,
    )
