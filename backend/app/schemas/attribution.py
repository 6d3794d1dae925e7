# app/schemas/attribution.py
from __future__ import annotations

from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class AttributionOut(BaseModel):
    appointment_id: UUID
    strategy: str
    traffic_source: Optional[str] = None
    lead_source: Optional[str] = None
    confidence: float
