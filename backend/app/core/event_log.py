# app/core/event_log.py
"""
Append-only webhook event log.

record_event commits on its own so the raw delivery survives whatever the
handler does afterwards; mark_processed flips `processed` exactly once.
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PayloadMalformed
from app.core.logging import build_log_context
from app.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def decode_body(raw_body: bytes | str) -> str:
    if isinstance(raw_body, bytes):
        return raw_body.decode("utf-8", errors="replace")
    return raw_body


def parse_json_object(raw_body: bytes | str) -> dict[str, Any]:
    """Parse a webhook body that must be a JSON object."""
    text = decode_body(raw_body)
    if not text.strip():
        raise PayloadMalformed("Empty payload")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise PayloadMalformed(f"Invalid JSON payload: {e.msg}") from e
    if not isinstance(payload, dict):
        raise PayloadMalformed("Payload must be a JSON object")
    return payload


async def record_event(
    db: AsyncSession,
    *,
    processor: str,
    event_type: str,
    raw_body: bytes | str,
    payload: Optional[dict[str, Any]] = None,
    company_id: Optional[uuid.UUID] = None,
) -> WebhookEvent:
    event = WebhookEvent(
        processor=processor,
        event_type=(event_type or "unknown")[:100],
        raw_body=decode_body(raw_body),
        payload=payload,
        company_id=company_id,
        processed=False,
    )
    db.add(event)
    await db.commit()

    logger.info(
        "Webhook event recorded",
        extra=build_log_context(event_id=event.id, processor=processor, event_type=event.event_type, company_id=company_id),
    )
    return event


async def mark_processed(
    db: AsyncSession,
    event_id: uuid.UUID,
    *,
    error: Optional[str] = None,
    company_id: Optional[uuid.UUID] = None,
) -> bool:
    """
    processed false -> true. Returns False if the event was already processed
    (the conditional UPDATE matched nothing), so a second caller never
    overwrites the first outcome.
    """
    values: dict[str, Any] = {
        "processed": True,
        "processed_at": utcnow(),
        "error": error[:MAX_ERROR_LENGTH] if error else None,
    }
    if company_id is not None:
        values["company_id"] = company_id

    stmt = (
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .where(WebhookEvent.processed.is_(False))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()

    if result.rowcount != 1:
        logger.warning("Webhook event %s was already processed", event_id)
        return False
    if error:
        logger.warning("Webhook event %s processed with error: %s", event_id, error)
    return True
