# app/core/commission.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.enums import RELEASE_STATUS_ORDER, PaymentType, ReleaseStatus
from app.core.errors import InvalidTransition
from app.models.commission import Commission
from app.models.commission_role import CommissionRole
from app.models.sale import Sale
from app.models.user import User

logger = logging.getLogger(__name__)

CENT = Decimal("1.00")
ZERO = Decimal("0.00")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionAmounts:
    rate: Decimal
    total_amount: Decimal
    released_amount: Decimal
    release_status: ReleaseStatus


def resolve_commission_rate(
    custom_rate: Optional[Decimal],
    role_default_rate: Optional[Decimal],
    fallback: Optional[Decimal] = None,
) -> Decimal:
    """
    Strict precedence: per-user custom rate, then commission role default,
    then the system fallback (DEFAULT_COMMISSION_RATE).
    """
    if custom_rate is not None:
        return Decimal(str(custom_rate))
    if role_default_rate is not None:
        return Decimal(str(role_default_rate))
    return Decimal(str(settings.DEFAULT_COMMISSION_RATE if fallback is None else fallback))


async def get_effective_rate(db: AsyncSession, rep: User) -> Decimal:
    role_rate = None
    if rep.custom_commission_rate is None and rep.commission_role_id is not None:
        role = await db.get(CommissionRole, rep.commission_role_id)
        role_rate = role.default_rate if role else None
    return resolve_commission_rate(rep.custom_commission_rate, role_rate)


def release_status_for(released: Decimal, total: Decimal) -> ReleaseStatus:
    if released >= total:
        return ReleaseStatus.RELEASED
    if released > ZERO:
        return ReleaseStatus.PARTIAL
    return ReleaseStatus.PENDING


def calculate_commission(
    sale_amount: Decimal,
    rate: Decimal,
    payment_amount: Optional[Decimal] = None,
) -> CommissionAmounts:
    """
    total = sale_amount x rate. With no payment_amount (or a payment covering
    the whole sale) everything is released; otherwise the released share is
    payment_amount / sale_amount of the total, never more than the total.
    """
    sale_amount = Decimal(str(sale_amount))
    rate = Decimal(str(rate))
    if sale_amount < ZERO:
        raise ValueError("sale_amount must be >= 0")
    if not (Decimal("0") <= rate <= Decimal("1")):
        raise ValueError("rate must be between 0 and 1")

    total = quantize_money(sale_amount * rate)

    if payment_amount is None or sale_amount == ZERO or Decimal(str(payment_amount)) >= sale_amount:
        released = total
    else:
        paid = max(Decimal(str(payment_amount)), ZERO)
        released = min(quantize_money(total * paid / sale_amount), total)

    return CommissionAmounts(
        rate=rate,
        total_amount=total,
        released_amount=released,
        release_status=release_status_for(released, total),
    )


# -----------------------------
# Release lifecycle
# -----------------------------
def _advance_status(commission: Commission, target: ReleaseStatus) -> None:
    current = ReleaseStatus(commission.release_status)
    if RELEASE_STATUS_ORDER[target] > RELEASE_STATUS_ORDER[current]:
        commission.release_status = target.value


def release_amount(commission: Commission, additional: Decimal) -> Decimal:
    """Release `additional` more, clamped at total. Returns the amount actually released."""
    additional = quantize_money(additional)
    if additional < ZERO:
        raise InvalidTransition("Released amount can never decrease", commission_id=str(commission.id))
    if commission.release_status == ReleaseStatus.PAID.value:
        raise InvalidTransition("Commission already paid", commission_id=str(commission.id))

    current = Decimal(commission.released_amount or ZERO)
    new_released = min(current + additional, Decimal(commission.total_amount))
    commission.released_amount = new_released
    _advance_status(commission, release_status_for(new_released, Decimal(commission.total_amount)))
    return new_released - current


def release_to_fraction(commission: Commission, collected: Decimal, contract_value: Decimal) -> Decimal:
    """Raise released_amount to collected/contract of the total (never lowers it)."""
    total = Decimal(commission.total_amount)
    if contract_value <= ZERO:
        target = total
    else:
        target = min(quantize_money(total * Decimal(collected) / Decimal(contract_value)), total)
    current = Decimal(commission.released_amount or ZERO)
    if target <= current or commission.release_status == ReleaseStatus.PAID.value:
        return ZERO
    return release_amount(commission, target - current)


def mark_paid(commission: Commission) -> None:
    if commission.release_status != ReleaseStatus.RELEASED.value:
        raise InvalidTransition(
            f"Only released commissions can be marked paid (status={commission.release_status})",
            commission_id=str(commission.id),
        )
    commission.release_status = ReleaseStatus.PAID.value
    commission.paid_at = utcnow()


# -----------------------------
# Persistence
# -----------------------------
def sale_contract_value(sale: Sale) -> Decimal:
    if sale.payment_type == PaymentType.PAYMENT_PLAN.value and sale.total_amount:
        return Decimal(sale.total_amount)
    return Decimal(sale.amount)


async def get_commission(db: AsyncSession, sale_id, rep_id) -> Optional[Commission]:
    stmt = select(Commission).where(Commission.sale_id == sale_id, Commission.rep_id == rep_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def create_commission_for_sale(db: AsyncSession, sale: Sale, rep: User) -> Commission:
    """
    Create-if-absent on (sale_id, rep_id). A duplicate (including one created by
    a racing request) resolves to the existing row.
    """
    existing = await get_commission(db, sale.id, rep.id)
    if existing is not None:
        return existing

    rate = await get_effective_rate(db, rep)
    contract = sale_contract_value(sale)
    collected = Decimal(sale.collected_amount or sale.amount)
    amounts = calculate_commission(contract, rate, collected if collected < contract else None)

    commission = Commission(
        company_id=sale.company_id,
        sale_id=sale.id,
        rep_id=rep.id,
        rate=amounts.rate,
        total_amount=amounts.total_amount,
        released_amount=amounts.released_amount,
        release_status=amounts.release_status.value,
        calculated_at=utcnow(),
    )
    try:
        async with db.begin_nested():
            db.add(commission)
            await db.flush()
    except IntegrityError:
        logger.info("Commission for sale %s rep %s already exists", sale.id, rep.id)
        existing = await get_commission(db, sale.id, rep.id)
        if existing is None:
            raise
        return existing

    logger.info(
        "Commission created sale=%s rep=%s total=%s released=%s status=%s",
        sale.id, rep.id, amounts.total_amount, amounts.released_amount, amounts.release_status.value,
    )
    return commission


async def apply_installment(db: AsyncSession, plan_sale: Sale, installment: Sale) -> list[Commission]:
    """Book an installment against the plan's first sale and advance its commissions."""
    installment.plan_sale_id = plan_sale.id
    plan_sale.collected_amount = quantize_money(Decimal(plan_sale.collected_amount or ZERO) + Decimal(installment.amount))
    contract = sale_contract_value(plan_sale)

    stmt = select(Commission).where(Commission.sale_id == plan_sale.id)
    commissions = list((await db.execute(stmt)).scalars().all())
    for commission in commissions:
        release_to_fraction(commission, Decimal(plan_sale.collected_amount), contract)
    return commissions
