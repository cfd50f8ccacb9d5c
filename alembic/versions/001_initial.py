"""Initial schema: MQL analytics, proformas, payments, reminders, Stripe sessions.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    # ── MQL analytics ──
    op.create_table(
        "mql_leads",
        _uuid_pk(),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("external_id", sa.String(128), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("username", sa.String(300), nullable=True),
        sa.Column("first_seen_month", sa.Date(), nullable=False),
        sa.Column("channel_bucket", sa.String(32), nullable=True),
        sa.Column("payload", JSON(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("source", "external_id", name="uq_mql_lead_source_external"),
    )

    op.create_table(
        "mql_monthly_snapshots",
        _uuid_pk(),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("sendpulse_mql", sa.Integer(), server_default="0"),
        sa.Column("pipedrive_mql", sa.Integer(), server_default="0"),
        sa.Column("combined_mql", sa.Integer(), server_default="0"),
        sa.Column("won_deals", sa.Integer(), server_default="0"),
        sa.Column("closed_deals", sa.Integer(), server_default="0"),
        sa.Column("repeat_deals", sa.Integer(), server_default="0"),
        sa.Column("retention_rate", sa.Float(), nullable=True),
        sa.Column("marketing_expense", sa.Float(), server_default="0"),
        sa.Column("subscribers", sa.Integer(), server_default="0"),
        sa.Column("new_subscribers", sa.Integer(), server_default="0"),
        sa.Column("cost_per_subscriber", sa.Float(), nullable=True),
        sa.Column("cost_per_mql", sa.Float(), nullable=True),
        sa.Column("cost_per_deal", sa.Float(), nullable=True),
        sa.Column("channel_breakdown", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("pipedrive_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sendpulse_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pnl_sync_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("year", "month", name="uq_mql_snapshot_year_month"),
    )

    # ── Invoicing ──
    op.create_table(
        "proformas",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("pipedrive_deal_id", sa.Integer(), nullable=True),
        sa.Column("fullnumber", sa.String(100), nullable=True),
        sa.Column("issued_at", sa.Date(), nullable=True),
        sa.Column("currency", sa.String(3), server_default="PLN"),
        sa.Column("total", sa.Float(), server_default="0"),
        sa.Column("buyer_name", sa.String(300), nullable=True),
        sa.Column("buyer_email", sa.String(320), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_proformas_pipedrive_deal_id", "proformas", ["pipedrive_deal_id"])

    op.create_table(
        "payments",
        _uuid_pk(),
        sa.Column("direction", sa.String(3), server_default="in"),
        sa.Column("proforma_id", sa.String(64), sa.ForeignKey("proformas.id"), nullable=True),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(3), server_default="PLN"),
        sa.Column("payment_date", sa.Date(), nullable=True),
        sa.Column("operation_date", sa.Date(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("expense_category_id", sa.Integer(), nullable=True),
        sa.Column("manual_status", sa.String(20), nullable=True),
        _created_at(),
    )
    op.create_index("ix_payments_proforma_id", "payments", ["proforma_id"])
    op.create_index("ix_payments_expense_category_id", "payments", ["expense_category_id"])

    op.create_table(
        "pnl_manual_entries",
        _uuid_pk(),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(20), server_default="expense"),
        sa.Column("expense_category_id", sa.Integer(), nullable=True),
        sa.Column("amount_pln", sa.Float(), server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
    )

    # ── Reminders ──
    op.create_table(
        "google_meet_reminders",
        _uuid_pk(),
        sa.Column("task_id", sa.String(500), unique=True, nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_summary", sa.String(500), nullable=True),
        sa.Column("client_email", sa.String(320), nullable=False),
        sa.Column("sendpulse_id", sa.String(64), nullable=True),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("contact_type", sa.String(16), nullable=False),
        sa.Column("meet_link", sa.Text(), nullable=False),
        sa.Column("meeting_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reminder_type", sa.String(8), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_google_meet_reminders_scheduled_time", "google_meet_reminders", ["scheduled_time"]
    )

    # ── Stripe ──
    op.create_table(
        "stripe_payments",
        _uuid_pk(),
        sa.Column("deal_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(255), unique=True, nullable=False),
        sa.Column("checkout_url", sa.Text(), nullable=True),
        sa.Column("payment_type", sa.String(20), nullable=True),
        sa.Column("payment_schedule", sa.String(10), nullable=True),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), server_default="created"),
        sa.Column("payment_status", sa.String(20), server_default="unpaid"),
        sa.Column("trigger", sa.String(50), nullable=True),
        sa.Column("metadata_json", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_stripe_payments_deal_id", "stripe_payments", ["deal_id"])


def downgrade() -> None:
    op.drop_table("stripe_payments")
    op.drop_table("google_meet_reminders")
    op.drop_table("pnl_manual_entries")
    op.drop_table("payments")
    op.drop_table("proformas")
    op.drop_table("mql_monthly_snapshots")
    op.drop_table("mql_leads")
