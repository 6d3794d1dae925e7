# app/core/pcn_changelog.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import ChangelogAction, SubmissionSource
from app.models.appointment import Appointment
from app.models.pcn_changelog import PCNChangelog
from app.models.user import User

# Appointment columns captured in changelog snapshots
PCN_SNAPSHOT_FIELDS: tuple[str, ...] = (
    "status",
    "outcome",
    "notes",
    "cash_collected",
    "first_call_or_follow_up",
    "was_offer_made",
    "why_didnt_move_forward",
    "not_moving_forward_notes",
    "objection_type",
    "objection_notes",
    "follow_up_scheduled",
    "follow_up_date",
    "nurture_type",
    "qualification_status",
    "disqualification_reason",
    "no_show_communicative",
    "cancellation_reason",
    "payment_plan_or_pif",
    "total_price",
    "number_of_payments",
    "pcn_submitted",
)


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def snapshot_appointment(appointment: Appointment) -> dict[str, Any]:
    return {name: _json_value(getattr(appointment, name)) for name in PCN_SNAPSHOT_FIELDS}


def diff_snapshots(previous: Mapping[str, Any], new: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """{field: {"from": old, "to": new}} for every field whose value changed."""
    changes: dict[str, dict[str, Any]] = {}
    for key in sorted(set(previous) | set(new)):
        before, after = previous.get(key), new.get(key)
        if before != after:
            changes[key] = {"from": before, "to": after}
    return changes


def actor_display_name(user: Optional[User], fallback: str) -> str:
    if user is not None:
        return user.name or user.email
    return fallback


async def append_entry(
    db: AsyncSession,
    appointment: Appointment,
    *,
    action: ChangelogAction,
    source: SubmissionSource,
    actor_name: str,
    actor_user: Optional[User] = None,
    notes: Optional[str] = None,
    previous_data: Optional[dict[str, Any]] = None,
    new_data: Optional[dict[str, Any]] = None,
) -> PCNChangelog:
    """Insert one changelog row. Entries are never updated or deleted."""
    changes = None
    if previous_data is not None and new_data is not None:
        changes = diff_snapshots(previous_data, new_data)

    entry = PCNChangelog(
        company_id=appointment.company_id,
        appointment_id=appointment.id,
        action=action.value,
        source=source.value,
        actor_user_id=actor_user.id if actor_user is not None else None,
        actor_name=actor_display_name(actor_user, actor_name)[:200],
        notes=notes,
        previous_data=previous_data,
        new_data=new_data,
        changes=changes,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_entries(
    db: AsyncSession,
    appointment: Appointment,
    *,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[PCNChangelog], int]:
    base = select(PCNChangelog).where(
        PCNChangelog.company_id == appointment.company_id,
        PCNChangelog.appointment_id == appointment.id,
    )
    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar_one()
    stmt = base.order_by(PCNChangelog.created_at.asc(), PCNChangelog.id.asc()).limit(limit).offset(offset)
    items = list((await db.execute(stmt)).scalars().all())
    return items, int(total)
