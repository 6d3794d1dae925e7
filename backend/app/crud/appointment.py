# app/crud/appointment.py
from __future__ import annotations

import uuid
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.appointment import Appointment


async def get_company_appointment(
    db: AsyncSession,
    company_id: uuid.UUID,
    reference: Any,
    *,
    for_update: bool = False,
) -> Optional[Appointment]:
    """
    Find a tenant's appointment by external (CRM) id first, then by internal id.
    Appointments of other tenants are never returned.
    """
    if reference is None or str(reference).strip() == "":
        return None
    ref = str(reference).strip()

    stmt = select(Appointment).where(Appointment.company_id == company_id, Appointment.external_id == ref)
    if for_update:
        stmt = stmt.with_for_update()
    appointment = (await db.execute(stmt)).scalar_one_or_none()
    if appointment is not None:
        return appointment

    try:
        internal_id = uuid.UUID(ref)
    except ValueError:
        return None

    stmt = select(Appointment).where(Appointment.company_id == company_id, Appointment.id == internal_id)
    if for_update:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_appointment_company_id(db: AsyncSession, reference: Any) -> Optional[uuid.UUID]:
    """Owning tenant of an appointment given only its internal id."""
    try:
        internal_id = uuid.UUID(str(reference).strip())
    except (TypeError, ValueError):
        return None
    stmt = select(Appointment.company_id).where(Appointment.id == internal_id)
    return (await db.execute(stmt)).scalar_one_or_none()
