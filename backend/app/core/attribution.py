# app/core/attribution.py
"""
Traffic-source attribution.

Exactly one strategy is active per company; there is no blending. A zero
confidence result is a normal outcome, not an error.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import AttributionStrategy
from app.models.appointment import Appointment
from app.models.calendar import Calendar
from app.models.company import Company
from app.models.contact import Contact
from app.models.hyros_attribution import HyrosAttribution

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributionResult:
    traffic_source: Optional[str]
    lead_source: Optional[str]
    confidence: float


NO_ATTRIBUTION = AttributionResult(traffic_source=None, lead_source=None, confidence=0.0)

COMMON_SOURCE_FIELDS = ("source", "lead_source", "traffic_source", "utm_source", "leadSource")

CALENDAR_NAME_PATTERNS = (
    re.compile(r"\(([^)]+)\)$"),  # "Sales Call (META)"
    re.compile(r"\[([^\]]+)\]$"),  # "Sales Call [META]"
    re.compile(r"[-_]\s*([A-Z0-9-]+)$"),  # "Sales Call - META", "Sales_META"
)

TAG_PATTERNS = (
    re.compile(r"^source[:\-\s](.+)$", re.IGNORECASE),
    re.compile(r"^traffic[:\-\s](.+)$", re.IGNORECASE),
    re.compile(r"^(meta|facebook|google|youtube|organic|email|instagram|linkedin|twitter|tiktok)$", re.IGNORECASE),
)


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def attribute_from_fields(custom_fields: Optional[Mapping[str, Any]], source_field: Optional[str]) -> AttributionResult:
    """Configured field path (confidence 1.0), then common field names (0.8)."""
    if not custom_fields:
        return NO_ATTRIBUTION

    if source_field:
        value: Any = custom_fields
        for key in source_field.split("."):
            if key == "contact":
                continue
            value = value.get(key) if isinstance(value, Mapping) else None
        found = _clean(value)
        if found:
            return AttributionResult(found, "ghl_field", 1.0)

    for name in COMMON_SOURCE_FIELDS:
        found = _clean(custom_fields.get(name))
        if found:
            return AttributionResult(found, "ghl_field", 0.8)

    return NO_ATTRIBUTION


def attribute_from_calendar(calendar: Optional[Calendar]) -> AttributionResult:
    """A manually assigned source always wins over anything parsed from the name."""
    if calendar is None:
        return NO_ATTRIBUTION

    manual = _clean(calendar.traffic_source)
    if manual:
        return AttributionResult(manual, "calendar", 1.0)

    name = (calendar.name or "").strip()
    for pattern in CALENDAR_NAME_PATTERNS:
        match = pattern.search(name)
        if match:
            return AttributionResult(match.group(1).strip(), "calendar", 0.8)

    return NO_ATTRIBUTION


def attribute_from_hyros(record: Optional[HyrosAttribution]) -> AttributionResult:
    if record is None:
        return NO_ATTRIBUTION
    last_source = _clean(record.last_source)
    if last_source:
        return AttributionResult(last_source, "hyros", 1.0)
    return NO_ATTRIBUTION


def attribute_from_tags(tags: Optional[Iterable[Any]]) -> AttributionResult:
    for tag in tags or ():
        text = _clean(tag)
        if not text:
            continue
        for pattern in TAG_PATTERNS:
            match = pattern.match(text)
            if match:
                return AttributionResult(match.group(1).strip() or text, "tag", 0.8)
    return NO_ATTRIBUTION


async def resolve_attribution(db: AsyncSession, appointment: Appointment, company: Company) -> AttributionResult:
    strategy = (company.attribution_strategy or AttributionStrategy.NONE.value).strip().lower()

    contact = await db.get(Contact, appointment.contact_id) if appointment.contact_id else None

    if strategy == AttributionStrategy.GHL_FIELDS.value:
        if contact is None:
            return NO_ATTRIBUTION
        return attribute_from_fields(contact.custom_fields, company.attribution_source_field)

    if strategy == AttributionStrategy.CALENDARS.value:
        calendar = await db.get(Calendar, appointment.calendar_id) if appointment.calendar_id else None
        return attribute_from_calendar(calendar)

    if strategy == AttributionStrategy.HYROS.value:
        if contact is None:
            return NO_ATTRIBUTION
        stmt = select(HyrosAttribution).where(
            HyrosAttribution.company_id == company.id,
            HyrosAttribution.contact_id == contact.id,
        )
        return attribute_from_hyros((await db.execute(stmt)).scalar_one_or_none())

    if strategy == AttributionStrategy.TAGS.value:
        if contact is None:
            return NO_ATTRIBUTION
        return attribute_from_tags(contact.tags)

    if strategy != AttributionStrategy.NONE.value:
        logger.warning("Unknown attribution strategy %r for company %s", strategy, company.id)
    return NO_ATTRIBUTION


async def apply_attribution(db: AsyncSession, appointment: Appointment, company: Company) -> AttributionResult:
    """Resolve and snapshot the result onto the appointment (caller commits)."""
    result = await resolve_attribution(db, appointment, company)
    appointment.attribution_source = result.traffic_source
    appointment.lead_source = result.lead_source
    appointment.attribution_confidence = result.confidence
    return result
