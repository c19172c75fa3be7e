"""webhook ingestion and outbound fan-out pipeline

Revision ID: 0001_webhook_pipeline
Revises:
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_webhook_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("tier", sa.String(length=64), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("billing_interval", sa.String(length=16), nullable=False, server_default="monthly"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "billing_interval IN ('monthly', 'annual', 'one_time')",
            name="ck_plans_interval_values",
        ),
    )
    op.create_index("ix_plans_slug", "plans", ["slug"], unique=True)

    op.create_table(
        "platform_products",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("price_id", sa.String(length=255), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("platform", "product_id", name="uq_platform_products_platform_product"),
    )
    op.create_index("ix_platform_products_plan_id", "platform_products", ["plan_id"], unique=False)

    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("plan", sa.String(length=64), nullable=False, server_default="free"),
        sa.Column("plan_status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("plan_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renewal", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "plan_status IN ('active', 'expired', 'suspended')",
            name="ck_profiles_plan_status_values",
        ),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"], unique=True)

    op.create_table(
        "inbound_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("raw_headers", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("raw_payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("verification_reason", sa.String(length=128), nullable=True),
        sa.Column("canonical_event", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="received"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "idempotency_key", name="uq_inbound_events_provider_idempotency_key"),
        sa.CheckConstraint(
            "status IN ('received', 'processed', 'failed', 'discarded')",
            name="ck_inbound_events_status_values",
        ),
    )
    op.create_index("ix_inbound_events_provider", "inbound_events", ["provider"], unique=False)
    op.create_index("ix_inbound_events_status", "inbound_events", ["status"], unique=False)
    op.create_index("ix_inbound_events_received_at", "inbound_events", ["received_at"], unique=False)

    op.create_table(
        "domain_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("inbound_event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("profile_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["inbound_event_id"], ["inbound_events.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["profile_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("inbound_event_id", name="uq_domain_events_inbound_event_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'dispatched', 'failed')",
            name="ck_domain_events_status_values",
        ),
    )
    op.create_index("ix_domain_events_event_type", "domain_events", ["event_type"], unique=False)
    op.create_index("ix_domain_events_profile_id", "domain_events", ["profile_id"], unique=False)
    op.create_index("ix_domain_events_status", "domain_events", ["status"], unique=False)
    op.create_index("ix_domain_events_created_at", "domain_events", ["created_at"], unique=False)

    op.create_table(
        "outbound_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("target_url", sa.String(length=2048), nullable=False),
        sa.Column("secret", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("failures_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("backoff_state", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("last_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbound_subscriptions_active", "outbound_subscriptions", ["active"], unique=False)

    op.create_table(
        "outbound_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("domain_event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["domain_event_id"], ["domain_events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscription_id"], ["outbound_subscriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "domain_event_id",
            "subscription_id",
            "attempt",
            name="uq_outbound_deliveries_event_subscription_attempt",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'success', 'failed', 'retry')",
            name="ck_outbound_deliveries_status_values",
        ),
    )
    op.create_index("ix_outbound_deliveries_domain_event_id", "outbound_deliveries", ["domain_event_id"], unique=False)
    op.create_index("ix_outbound_deliveries_subscription_id", "outbound_deliveries", ["subscription_id"], unique=False)
    op.create_index("ix_outbound_deliveries_status", "outbound_deliveries", ["status"], unique=False)
    op.create_index("ix_outbound_deliveries_next_retry_at", "outbound_deliveries", ["next_retry_at"], unique=False)

    op.create_table(
        "dead_letter_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("reference_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reason", sa.String(length=128), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "kind IN ('delivery', 'domain_event')",
            name="ck_dead_letter_entries_kind_values",
        ),
    )
    op.create_index("ix_dead_letter_entries_kind", "dead_letter_entries", ["kind"], unique=False)
    op.create_index("ix_dead_letter_entries_reference_id", "dead_letter_entries", ["reference_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_dead_letter_entries_reference_id", table_name="dead_letter_entries")
    op.drop_index("ix_dead_letter_entries_kind", table_name="dead_letter_entries")
    op.drop_table("dead_letter_entries")

    op.drop_index("ix_outbound_deliveries_next_retry_at", table_name="outbound_deliveries")
    op.drop_index("ix_outbound_deliveries_status", table_name="outbound_deliveries")
    op.drop_index("ix_outbound_deliveries_subscription_id", table_name="outbound_deliveries")
    op.drop_index("ix_outbound_deliveries_domain_event_id", table_name="outbound_deliveries")
    op.drop_table("outbound_deliveries")

    op.drop_index("ix_outbound_subscriptions_active", table_name="outbound_subscriptions")
    op.drop_table("outbound_subscriptions")

    op.drop_index("ix_domain_events_created_at", table_name="domain_events")
    op.drop_index("ix_domain_events_status", table_name="domain_events")
    op.drop_index("ix_domain_events_profile_id", table_name="domain_events")
    op.drop_index("ix_domain_events_event_type", table_name="domain_events")
    op.drop_table("domain_events")

    op.drop_index("ix_inbound_events_received_at", table_name="inbound_events")
    op.drop_index("ix_inbound_events_status", table_name="inbound_events")
    op.drop_index("ix_inbound_events_provider", table_name="inbound_events")
    op.drop_table("inbound_events")

    op.drop_index("ix_profiles_email", table_name="profiles")
    op.drop_table("profiles")

    op.drop_index("ix_platform_products_plan_id", table_name="platform_products")
    op.drop_table("platform_products")

    op.drop_index("ix_plans_slug", table_name="plans")
    op.drop_table("plans")
