# app/core/enums.py

import enum


class AttributionStrategy(str, enum.Enum):
    GHL_FIELDS = "ghl_fields"
    CALENDARS = "calendars"
    HYROS = "hyros"
    TAGS = "tags"
    NONE = "none"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    SHOWED = "showed"
    NO_SHOW = "no_show"
    SIGNED = "signed"
    CANCELLED = "cancelled"


class CallOutcome(str, enum.Enum):
    SHOWED = "showed"
    NO_SHOW = "no_show"
    SIGNED = "signed"
    CANCELLED = "cancelled"


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    CLOSER = "closer"
    SETTER = "setter"


class MatchedBy(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


class ReviewStatus(str, enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"


class ReleaseStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    RELEASED = "released"
    PAID = "paid"


# Release status only moves forward along this order.
RELEASE_STATUS_ORDER = {
    ReleaseStatus.PENDING: 0,
    ReleaseStatus.PARTIAL: 1,
    ReleaseStatus.RELEASED: 2,
    ReleaseStatus.PAID: 3,
}


class PaymentType(str, enum.Enum):
    PAID_IN_FULL = "paid_in_full"
    PAYMENT_PLAN = "payment_plan"


class ChangelogAction(str, enum.Enum):
    SUBMITTED = "submitted"
    UPDATED = "updated"
    DRAFTED = "drafted"
    APPROVED = "approved"
    REJECTED = "rejected"


class SubmissionSource(str, enum.Enum):
    MANUAL = "manual"
    SURVEY = "survey"
    AI = "ai"
    REVIEW = "review"
    SYSTEM = "system"


class ReviewDecision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Processor(str, enum.Enum):
    GHL = "ghl"
    PAYMENTS = "payments"
    WHOP = "whop"
    ZOOM = "zoom"
    PCN_SURVEY = "pcn_survey"
    INTERNAL = "internal"
