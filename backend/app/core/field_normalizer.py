# app/core/field_normalizer.py
"""
Alias resolution and type coercion for heterogeneous webhook payloads.

Everything here is pure: no DB, no settings, no logging side effects.

Payloads are flattened (nested dicts become dot-joined keys) and every key is
normalized (HTML entities decoded, lower-cased, separators/punctuation
dropped) so that "PCN - Call Outcome", "pcn_call_outcome" and
"data.PCN Call-Outcome" all resolve through the same alias.
"""
from __future__ import annotations

import enum
import html
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Sequence

from dateutil import parser as date_parser

from app.core.enums import CallOutcome
from app.core.errors import UnsupportedOutcome


class PCNField(str, enum.Enum):
    APPOINTMENT_ID = "appointment_id"
    CALL_OUTCOME = "call_outcome"
    NOTES = "notes"
    WHY_DIDNT_MOVE_FORWARD = "why_didnt_move_forward"
    NURTURE_TYPE = "nurture_type"
    FOLLOW_UP_SCHEDULED = "follow_up_scheduled"
    FOLLOW_UP_DATE = "follow_up_date"
    CASH_COLLECTED = "cash_collected"
    WAS_OFFER_MADE = "was_offer_made"
    NO_SHOW_COMMUNICATIVE = "no_show_communicative"
    CANCELLATION_REASON = "cancellation_reason"
    DISQUALIFICATION_REASON = "disqualification_reason"
    QUALIFICATION_STATUS = "qualification_status"
    FIRST_CALL_OR_FOLLOW_UP = "first_call_or_follow_up"
    NOT_MOVING_FORWARD_NOTES = "not_moving_forward_notes"
    OBJECTION_TYPE = "objection_type"
    OBJECTION_NOTES = "objection_notes"
    PAYMENT_AMOUNT = "payment_amount"


# Ordered: the first alias present in a payload wins.
PCN_FIELD_ALIASES: dict[PCNField, tuple[str, ...]] = {
    PCNField.APPOINTMENT_ID: (
        "pcn-appointment-id",
        "pcn appointment id",
        "call notes - appointment id",
        "appointment_id",
        "appointment.id",
        "data.appointmentId",
        "calendar.appointmentid",
    ),
    PCNField.CALL_OUTCOME: (
        "pcn - call outcome",
        "call outcome",
        "callnotes-calloutcome",
        "outcome",
        "status",
    ),
    PCNField.NOTES: (
        "notes",
        "pcn - notes",
        "call notes - signed notes",
        "pcn - fathom notes",
        "call notes - fathom notes",
    ),
    PCNField.WHY_DIDNT_MOVE_FORWARD: (
        "pcn - why didn't the prospect move forward?",
        "call notes - why didn't the prospect move forward?",
        "why didn't the prospect move forward?",
        "why didn't move forward",
        "pcn_why_didnt_move_forward",
    ),
    PCNField.NURTURE_TYPE: (
        "pcn - nurture type",
        "call notes - nurture type",
        "nurture type",
    ),
    PCNField.FOLLOW_UP_SCHEDULED: (
        "pcn - was a follow up scheduled?",
        "pcn_was_follow_up_scheduled",
        "call notes - was a follow up scheduled?",
        "was a follow up scheduled",
        "follow up scheduled",
    ),
    PCNField.FOLLOW_UP_DATE: (
        "pcn - follow up date",
        "call notes - follow up date",
        "follow up date",
        "pcn - submission date",
        "call notes - submission date",
    ),
    PCNField.CASH_COLLECTED: (
        "pcn - cash collected",
        "call notes - cash collected",
        "cash collected",
    ),
    PCNField.WAS_OFFER_MADE: (
        "pcn - did you make an offer?",
        "call notes - did you make an offer?",
        "did you make an offer",
    ),
    PCNField.NO_SHOW_COMMUNICATIVE: (
        "pcn - was the no show communicative?",
        "pcn_was_no_show_communicative",
        "call notes - was the no show communicative?",
        "was the no show communicative",
    ),
    PCNField.CANCELLATION_REASON: (
        "pcn - cancellation reason",
        "call notes - cancellation reason",
        "cancellation reason",
    ),
    PCNField.DISQUALIFICATION_REASON: (
        "pcn - dq reason",
        "call notes - dq reason",
        "dq reason",
        "disqualification reason",
    ),
    PCNField.QUALIFICATION_STATUS: (
        "pcn - qualification status",
        "call notes - qualification status",
        "qualification status",
    ),
    PCNField.FIRST_CALL_OR_FOLLOW_UP: (
        "pcn - first call or follow up",
        "call notes - first call or follow up",
        "first call or follow up",
    ),
    PCNField.NOT_MOVING_FORWARD_NOTES: (
        "pcn - not moving forward notes",
        "call notes - not moving forward notes",
        "not moving forward notes",
    ),
    PCNField.OBJECTION_TYPE: (
        "pcn - objection type",
        "call notes - objection type",
        "objection type",
    ),
    PCNField.OBJECTION_NOTES: (
        "pcn - objection notes",
        "call notes - objection notes",
        "objection notes",
    ),
    # Fallback source of cash collected on signed surveys
    PCNField.PAYMENT_AMOUNT: (
        "payment amount",
        "charged amount",
        "deposit amount",
    ),
}

_KEY_STRIP_RE = re.compile(r"[^a-z0-9]+")


def normalize_key(key: str) -> str:
    """"PCN - Why didn&#39;t..." -> "pcnwhydidnt..."."""
    return _KEY_STRIP_RE.sub("", html.unescape(str(key)).lower())


def flatten_payload(payload: Any, prefix: str = "") -> dict[str, Any]:
    """Nested dicts become dot-joined keys; lists and scalars are leaves."""
    if not isinstance(payload, Mapping):
        return {}
    flat: dict[str, Any] = {}
    for key, value in payload.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten_payload(value, path))
        else:
            flat[path] = value
    return flat


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class FieldLookup:
    """
    Normalized view over a flattened payload.

    Each value is reachable by its full dotted path and by its leaf key. A
    full path always wins over a leaf, and among leaves the shallowest one
    wins. Blank values are treated as absent.
    """

    def __init__(self, payload: Mapping[str, Any]):
        self.flat = flatten_payload(payload)
        self._index: dict[str, Any] = {}

        for path, value in self.flat.items():
            if _is_blank(value):
                continue
            self._index.setdefault(normalize_key(path), value)

        for path, value in sorted(self.flat.items(), key=lambda kv: kv[0].count(".")):
            if _is_blank(value) or "." not in path:
                continue
            self._index.setdefault(normalize_key(path.rsplit(".", 1)[1]), value)

    def get(self, key: str) -> Any:
        return self._index.get(normalize_key(key))

    def first(self, aliases: Iterable[str]) -> Any:
        for alias in aliases:
            value = self.get(alias)
            if value is not None:
                return value
        return None

    def field(self, field: PCNField) -> Any:
        return self.first(PCN_FIELD_ALIASES[field])


def extract_field(payload: Mapping[str, Any] | FieldLookup, field: PCNField) -> Any:
    lookup = payload if isinstance(payload, FieldLookup) else FieldLookup(payload)
    return lookup.field(field)


# -----------------------------
# Ordered extraction strategies
# -----------------------------
# The same logical appointment arrives at root level, nested under
# appointment/triggerData/customData/data/event, or as labelled custom fields.
APPOINTMENT_PATH_PREFIXES: tuple[str, ...] = (
    "",
    "appointment.",
    "triggerData.appointment.",
    "data.appointment.",
    "customData.",
    "data.",
    "event.",
)


@dataclass(frozen=True)
class PathStrategy:
    """Look up each of `names` under each of `prefixes`, prefixes outermost."""

    names: tuple[str, ...]
    prefixes: tuple[str, ...] = APPOINTMENT_PATH_PREFIXES

    def find(self, flat: Mapping[str, Any]) -> Any:
        for prefix in self.prefixes:
            for name in self.names:
                value = flat.get(f"{prefix}{name}")
                if not _is_blank(value):
                    return value
        return None


@dataclass(frozen=True)
class LabelStrategy:
    """Match normalized custom-field labels anywhere in the payload."""

    labels: tuple[str, ...]

    def find(self, flat: Mapping[str, Any]) -> Any:
        normalized: dict[str, Any] = {}
        for path, value in flat.items():
            if _is_blank(value):
                continue
            normalized.setdefault(normalize_key(path), value)
            normalized.setdefault(normalize_key(path.rsplit(".", 1)[-1]), value)
        for label in self.labels:
            value = normalized.get(normalize_key(label))
            if value is not None:
                return value
        return None


def extract_by_strategies(flat: Mapping[str, Any], strategies: Sequence[PathStrategy | LabelStrategy]) -> Any:
    """First strategy returning a non-blank value wins."""
    for strategy in strategies:
        value = strategy.find(flat)
        if value is not None:
            return value
    return None


# -----------------------------
# Type coercion
# -----------------------------
BOOLEAN_TRUE_VALUES = {"yes", "true", "1", "y"}
BOOLEAN_FALSE_VALUES = {"no", "false", "0", "n"}


def coerce_bool(value: Any) -> Optional[bool]:
    """Unrecognized input is None (treated as absent), never an error."""
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        return value > 0
    text = str(value).strip().lower()
    if text in BOOLEAN_TRUE_VALUES:
        return True
    if text in BOOLEAN_FALSE_VALUES:
        return False
    return None


_CURRENCY_STRIP_RE = re.compile(r"[^\d.]")


def coerce_currency(value: Any) -> Optional[Decimal]:
    """
    "$1,500" -> Decimal("1500.00").

    Empty or non-numeric input is None, not zero: a missing amount must never
    read as "$0 collected".
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value)).quantize(Decimal("1.00"))
        except InvalidOperation:
            return None
    numeric = _CURRENCY_STRIP_RE.sub("", str(value))
    if not numeric:
        return None
    try:
        return Decimal(numeric).quantize(Decimal("1.00"))
    except InvalidOperation:
        return None


_OUTCOME_SEPARATOR_RE = re.compile(r"[\s_\-]+")

OUTCOME_SYNONYMS: dict[str, CallOutcome] = {
    "showed": CallOutcome.SHOWED,
    "show": CallOutcome.SHOWED,
    "showed won": CallOutcome.SHOWED,
    "signed": CallOutcome.SIGNED,
    "sale": CallOutcome.SIGNED,
    "closed": CallOutcome.SIGNED,
    "closed won": CallOutcome.SIGNED,
    "no show": CallOutcome.NO_SHOW,
    "noshow": CallOutcome.NO_SHOW,
    "no showed": CallOutcome.NO_SHOW,
    "noshowed": CallOutcome.NO_SHOW,
    "cancelled": CallOutcome.CANCELLED,
    "canceled": CallOutcome.CANCELLED,
}


def coerce_outcome(value: Any) -> CallOutcome:
    """
    Map raw outcome text through the synonym table.

    Raises UnsupportedOutcome for empty or unknown text; an outcome is never
    guessed.
    """
    if isinstance(value, CallOutcome):
        return value
    raw = "" if value is None else str(value)
    key = _OUTCOME_SEPARATOR_RE.sub(" ", raw.strip().lower()).strip()
    if not key:
        raise UnsupportedOutcome("Missing call outcome", outcome=raw)
    outcome = OUTCOME_SYNONYMS.get(key)
    if outcome is None:
        raise UnsupportedOutcome(f"Unsupported call outcome: {raw!r}", outcome=raw)
    return outcome


def normalize_string(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def normalize_first_call_or_follow_up(value: Any) -> Optional[str]:
    text = normalize_string(value)
    if not text:
        return None
    lower = text.lower()
    if "follow" in lower:
        return "follow_up"
    if "first" in lower:
        return "first_call"
    return None


def normalize_nurture_type(value: Any) -> Optional[str]:
    text = normalize_string(value)
    if not text:
        return None
    lower = text.lower()
    if "redzone" in lower or "within 7" in lower or "timing" in lower:
        return "timing"
    if "budget" in lower:
        return "budget"
    if "think" in lower or "follow up" in lower:
        return "thinking_it_over"
    if "not qualified" in lower:
        return "not_qualified_yet"
    return "other"


def normalize_qualification_status(value: Any) -> Optional[str]:
    text = normalize_string(value)
    if not text:
        return None
    lower = text.lower()
    # "disqualified" contains "qualified"
    if "disqual" in lower or "not qualified" in lower:
        return "disqualified"
    if "downsell" in lower:
        return "downsell_opportunity"
    if "qualified" in lower:
        return "qualified_to_purchase"
    return None


_WORD_RE = re.compile(r"[a-z]+")


def normalize_no_show_communicative(value: Any) -> Optional[str]:
    text = normalize_string(value)
    if not text:
        return None
    lower = text.lower()
    words = set(_WORD_RE.findall(lower))
    # "not communicative" contains "communicative"
    if "not communicative" in lower or "non communicative" in lower or "uncommunicative" in lower:
        return "not_communicative"
    if "communicative" in lower and "rescheduled" in lower:
        return "communicative_rescheduled"
    if "communicative" in lower or words & {"yes", "y"}:
        return "communicative_up_to_call"
    if words & {"no", "n", "not"}:
        return "not_communicative"
    return None


# -----------------------------
# Dates
# -----------------------------
_ORDINAL_RE = re.compile(r"(\d+)(st|nd|rd|th)\b", re.IGNORECASE)


def parse_crm_datetime(value: Any) -> Optional[datetime]:
    """
    Accepts datetimes, epoch seconds/milliseconds, ISO-8601 and the CRM display
    format "Thu, Oct 30th, 2025 | 2:00 pm". Naive results are taken as UTC.
    Unparseable input is None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = date_parser.isoparse(text)
        except (ValueError, OverflowError):
            cleaned = _ORDINAL_RE.sub(r"\1", text.replace("|", " "))
            try:
                parsed = date_parser.parse(cleaned)
            except (ValueError, OverflowError):
                return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def digits_only(value: Any) -> Optional[str]:
    if value is None:
        return None
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    return digits or None


def normalize_email(value: Any) -> Optional[str]:
    text = normalize_string(value)
    return text.lower() if text else None
