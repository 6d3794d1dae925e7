"""Logging setup and PII-safe log context helpers."""

from __future__ import annotations

import logging
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


def build_log_context(
    *,
    company_id: Any = None,
    event_id: Any = None,
    processor: str | None = None,
    event_type: str | None = None,
    appointment_id: Any = None,
    sale_id: Any = None,
) -> dict[str, Any]:
    """Return a log context dict carrying identifiers only (never payload content)."""
    context: dict[str, Any] = {}
    if company_id:
        context["company_id"] = str(company_id)
    if event_id:
        context["event_id"] = str(event_id)
    if processor:
        context["processor"] = processor
    if event_type:
        context["event_type"] = event_type
    if appointment_id:
        context["appointment_id"] = str(appointment_id)
    if sale_id:
        context["sale_id"] = str(sale_id)
    return context
