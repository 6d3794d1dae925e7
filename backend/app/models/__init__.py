# Import models here so Alembic can discover metadata.
from app.models.company import Company  # noqa: F401
from app.models.commission_role import CommissionRole  # noqa: F401
from app.models.user import User  # noqa: F401

# CRM mirror
from app.models.contact import Contact  # noqa: F401
from app.models.calendar import Calendar  # noqa: F401
from app.models.appointment import Appointment  # noqa: F401
from app.models.hyros_attribution import HyrosAttribution  # noqa: F401

# Payments / commissions ledger
from app.models.sale import Sale  # noqa: F401
from app.models.unmatched_payment import UnmatchedPayment  # noqa: F401
from app.models.commission import Commission  # noqa: F401

# Audit
from app.models.webhook_event import WebhookEvent  # noqa: F401
from app.models.pcn_changelog import PCNChangelog  # noqa: F401
