"""reconciliation schema

Revision ID: 3f1c9a27d4e0
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f1c9a27d4e0"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _company_fk(ondelete: str = "CASCADE", nullable: bool = False) -> sa.Column:
    return sa.Column(
        "company_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("companies.id", ondelete=ondelete),
        nullable=nullable,
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    # -----------------------------
    # Tenants and people
    # -----------------------------
    op.create_table(
        "companies",
        _uuid_pk(),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("ghl_location_id", sa.String(length=100), nullable=True),
        sa.Column("ghl_account_id", sa.String(length=100), nullable=True),
        sa.Column("zoom_account_id", sa.String(length=100), nullable=True),
        sa.Column("attribution_strategy", sa.String(length=20), nullable=False, server_default="none"),
        sa.Column("attribution_source_field", sa.String(length=200), nullable=True),
        sa.Column("webhook_secret", sa.String(length=200), nullable=True),
        sa.Column("marketplace_webhook_secret", sa.String(length=200), nullable=True),
        sa.Column("processor_account_secret", sa.String(length=200), nullable=True),
        sa.Column("match_confidence_threshold", sa.Numeric(4, 3), nullable=True),
        sa.Column(
            "pcn_auto_submit_sources",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default='["survey"]',
        ),
        sa.Column("encrypted_ghl_api_key", sa.Text(), nullable=True),
        sa.Column("settings", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_companies_ghl_location_id", "companies", ["ghl_location_id"], unique=True)
    op.create_index("ix_companies_ghl_account_id", "companies", ["ghl_account_id"])
    op.create_index("ix_companies_zoom_account_id", "companies", ["zoom_account_id"])

    op.create_table(
        "commission_roles",
        _uuid_pk(),
        _company_fk(),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("default_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("company_id", "name", name="uq_commission_roles_company_name"),
    )
    op.create_index("ix_commission_roles_company_id", "commission_roles", ["company_id"])

    op.create_table(
        "users",
        _uuid_pk(),
        _company_fk(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="closer"),
        sa.Column("ghl_user_id", sa.String(length=100), nullable=True),
        sa.Column(
            "commission_role_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("commission_roles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("custom_commission_rate", sa.Numeric(5, 4), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("company_id", "email", name="uq_users_company_email"),
    )
    op.create_index("ix_users_company_id", "users", ["company_id"])
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_ghl_user_id", "users", ["ghl_user_id"])

    # -----------------------------
    # CRM mirror
    # -----------------------------
    op.create_table(
        "contacts",
        _uuid_pk(),
        _company_fk(),
        sa.Column("external_id", sa.String(length=100), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("phone_digits", sa.String(length=32), nullable=True),
        sa.Column("custom_fields", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("tags", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("company_id", "external_id", name="uq_contacts_company_external_id"),
    )
    op.create_index("ix_contacts_company_id", "contacts", ["company_id"])
    op.create_index("ix_contacts_email", "contacts", ["email"])
    op.create_index("ix_contacts_phone_digits", "contacts", ["phone_digits"])

    op.create_table(
        "calendars",
        _uuid_pk(),
        _company_fk(),
        sa.Column("external_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("traffic_source", sa.String(length=100), nullable=True),
        sa.Column(
            "default_closer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("company_id", "external_id", name="uq_calendars_company_external_id"),
    )
    op.create_index("ix_calendars_company_id", "calendars", ["company_id"])

    op.create_table(
        "hyros_attributions",
        _uuid_pk(),
        _company_fk(),
        sa.Column(
            "contact_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("first_source", sa.String(length=200), nullable=True),
        sa.Column("last_source", sa.String(length=200), nullable=True),
        _timestamp("synced_at"),
        sa.UniqueConstraint("company_id", "contact_id", name="uq_hyros_attributions_company_contact"),
    )
    op.create_index("ix_hyros_attributions_company_id", "hyros_attributions", ["company_id"])

    op.create_table(
        "appointments",
        _uuid_pk(),
        _company_fk(),
        sa.Column("external_id", sa.String(length=100), nullable=True),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True),
        sa.Column("calendar_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("calendars.id", ondelete="SET NULL"), nullable=True),
        sa.Column("closer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("setter_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("title", sa.String(length=300), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("zoom_meeting_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="scheduled"),
        sa.Column("reschedule_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attribution_source", sa.String(length=200), nullable=True),
        sa.Column("lead_source", sa.String(length=50), nullable=True),
        sa.Column("attribution_confidence", sa.Float(), nullable=True),
        # post-call notes
        sa.Column("outcome", sa.String(length=20), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("cash_collected", sa.Numeric(12, 2), nullable=True),
        sa.Column("first_call_or_follow_up", sa.String(length=20), nullable=True),
        sa.Column("was_offer_made", sa.Boolean(), nullable=True),
        sa.Column("why_didnt_move_forward", sa.Text(), nullable=True),
        sa.Column("not_moving_forward_notes", sa.Text(), nullable=True),
        sa.Column("objection_type", sa.String(length=100), nullable=True),
        sa.Column("objection_notes", sa.Text(), nullable=True),
        sa.Column("follow_up_scheduled", sa.Boolean(), nullable=True),
        sa.Column("follow_up_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("nurture_type", sa.String(length=50), nullable=True),
        sa.Column("qualification_status", sa.String(length=30), nullable=True),
        sa.Column("disqualification_reason", sa.Text(), nullable=True),
        sa.Column("no_show_communicative", sa.String(length=30), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("payment_plan_or_pif", sa.String(length=20), nullable=True),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("number_of_payments", sa.Integer(), nullable=True),
        sa.Column("pcn_submitted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("pcn_submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "pcn_submitted_by_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("pcn_candidate", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("pcn_candidate_source", sa.String(length=20), nullable=True),
        sa.Column("pcn_candidate_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("company_id", "external_id", name="uq_appointments_company_external_id"),
    )
    op.create_index("ix_appointments_company_id", "appointments", ["company_id"])
    op.create_index("ix_appointments_contact_id", "appointments", ["contact_id"])
    op.create_index("ix_appointments_closer_id", "appointments", ["closer_id"])
    op.create_index("ix_appointments_zoom_meeting_id", "appointments", ["zoom_meeting_id"])
    op.create_index("ix_appointments_company_scheduled", "appointments", ["company_id", "scheduled_at"])

    # -----------------------------
    # Payments and commissions
    # -----------------------------
    op.create_table(
        "sales",
        _uuid_pk(),
        _company_fk(),
        sa.Column("processor", sa.String(length=40), nullable=False),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default="USD"),
        sa.Column("payment_type", sa.String(length=20), nullable=False, server_default="paid_in_full"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("plan_sale_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("sales.id", ondelete="SET NULL"), nullable=True),
        sa.Column("collected_amount", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("customer_name", sa.String(length=200), nullable=True),
        sa.Column("customer_phone", sa.String(length=40), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "appointment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("appointments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True),
        sa.Column("rep_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("matched_by", sa.String(length=10), nullable=True),
        sa.Column("match_confidence", sa.Float(), nullable=True),
        sa.Column("manually_matched", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "matched_by_user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("processor", "external_id", name="uq_sales_processor_external_id"),
    )
    op.create_index("ix_sales_company_id", "sales", ["company_id"])
    op.create_index("ix_sales_plan_sale_id", "sales", ["plan_sale_id"])
    op.create_index("ix_sales_customer_email", "sales", ["customer_email"])
    op.create_index("ix_sales_appointment_id", "sales", ["appointment_id"])

    op.create_table(
        "unmatched_payments",
        _uuid_pk(),
        _company_fk(),
        sa.Column(
            "sale_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sales.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("suggested_matches", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "reviewed_by_user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _timestamp("created_at"),
    )
    op.create_index("ix_unmatched_payments_company_id", "unmatched_payments", ["company_id"])
    op.create_index("ix_unmatched_payments_status", "unmatched_payments", ["status"])

    op.create_table(
        "commissions",
        _uuid_pk(),
        _company_fk(),
        sa.Column("sale_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("sales.id", ondelete="CASCADE"), nullable=False),
        sa.Column("rep_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("released_amount", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("release_status", sa.String(length=20), nullable=False, server_default="pending"),
        _timestamp("calculated_at"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("updated_at"),
        sa.UniqueConstraint("sale_id", "rep_id", name="uq_commissions_sale_rep"),
        sa.CheckConstraint("released_amount <= total_amount", name="ck_commissions_released_le_total"),
    )
    op.create_index("ix_commissions_company_id", "commissions", ["company_id"])
    op.create_index("ix_commissions_sale_id", "commissions", ["sale_id"])
    op.create_index("ix_commissions_rep_id", "commissions", ["rep_id"])

    # -----------------------------
    # Audit
    # -----------------------------
    op.create_table(
        "webhook_events",
        _uuid_pk(),
        _company_fk(ondelete="SET NULL", nullable=True),
        sa.Column("processor", sa.String(length=40), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("raw_body", sa.Text(), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_webhook_events_company_id", "webhook_events", ["company_id"])
    op.create_index("ix_webhook_events_processor_type", "webhook_events", ["processor", "event_type"])

    op.create_table(
        "pcn_changelog",
        _uuid_pk(),
        _company_fk(),
        sa.Column(
            "appointment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("appointments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column(
            "actor_user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("actor_name", sa.String(length=200), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("previous_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("new_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("changes", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("clock_timestamp()"), nullable=False),
    )
    op.create_index("ix_pcn_changelog_company_id", "pcn_changelog", ["company_id"])
    op.create_index("ix_pcn_changelog_appointment_created", "pcn_changelog", ["appointment_id", "created_at"])


def downgrade() -> None:
    for table in (
        "pcn_changelog",
        "webhook_events",
        "commissions",
        "unmatched_payments",
        "sales",
        "appointments",
        "hyros_attributions",
        "calendars",
        "contacts",
        "users",
        "commission_roles",
        "companies",
    ):
        op.drop_table(table)
