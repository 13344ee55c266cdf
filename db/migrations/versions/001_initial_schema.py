"""Initial schema: identity, billing, sync, warehouse tables.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

SCHEMAS = ("identity", "billing", "sync", "warehouse")

WEBHOOK_EVENTS = (
    "'user.created','user.updated','user.deleted',"
    "'organization.created','organization.updated','organization.deleted',"
    "'organization_domain.verified','organization_domain.verification_failed'"
)


def _timestamps(updated: bool = True) -> list:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
        )
    return columns


def upgrade() -> None:
    for schema in SCHEMAS:
        op.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")

    # ─── Identity Schema ─────────────────────────────────────────────────────

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("external_id", sa.Text, nullable=False),
        sa.Column("email", sa.Text, nullable=False),
        sa.Column("email_verified", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("first_name", sa.Text, nullable=True),
        sa.Column("last_name", sa.Text, nullable=True),
        sa.Column("profile_picture_url", sa.Text, nullable=True),
        sa.Column("role", sa.Text, nullable=False, server_default="user"),
        sa.Column("user_metadata", sa.JSON, nullable=True),
        *_timestamps(),
        sa.CheckConstraint("role IN ('admin','user')", name="ck_user_role"),
        sa.UniqueConstraint("external_id", name="uq_user_external_id"),
        schema="identity",
    )
    op.create_index("ix_identity_users_email", "users", ["email"], schema="identity")

    op.create_table(
        "organizations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("external_id", sa.Text, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("org_metadata", sa.JSON, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("external_id", name="uq_org_external_id"),
        schema="identity",
    )

    op.create_table(
        "organization_domains",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("identity.organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.Text, nullable=False),
        sa.Column("domain", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status IN ('verified','pending','failed')", name="ck_domain_status"),
        sa.UniqueConstraint("external_id", name="uq_domain_external_id"),
        schema="identity",
    )
    op.create_index(
        "ix_organization_domains_organization_id", "organization_domains", ["organization_id"], schema="identity"
    )
    op.create_index("ix_organization_domains_domain", "organization_domains", ["domain"], schema="identity")

    op.create_table(
        "organization_memberships",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_external_id", sa.Text, nullable=False),
        sa.Column("user_external_id", sa.Text, nullable=False),
        sa.Column("role", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        *_timestamps(),
        sa.CheckConstraint("status IN ('active','pending','inactive')", name="ck_membership_status"),
        sa.UniqueConstraint("organization_external_id", "user_external_id", name="uq_membership_org_user"),
        schema="identity",
    )
    op.create_index(
        "ix_memberships_organization_external_id",
        "organization_memberships",
        ["organization_external_id"],
        schema="identity",
    )
    op.create_index(
        "ix_memberships_user_external_id", "organization_memberships", ["user_external_id"], schema="identity"
    )

    op.create_table(
        "processed_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.Text, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("event_id", name="uq_processed_event_id"),
        schema="identity",
    )
    op.create_index("ix_processed_events_processed_at", "processed_events", ["processed_at"], schema="identity")

    op.create_table(
        "events_cursor",
        sa.Column("key", sa.Text, primary_key=True),
        sa.Column("cursor", sa.Text, nullable=True),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        schema="identity",
    )

    # ─── Billing Schema ──────────────────────────────────────────────────────

    op.create_table(
        "stripe_customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("identity.organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_customer_id", sa.Text, nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("organization_id", name="uq_stripe_customer_org"),
        sa.UniqueConstraint("stripe_customer_id", name="uq_stripe_customer_id"),
        schema="billing",
    )

    op.create_table(
        "organization_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("identity.organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_customer_id", sa.Text, nullable=False),
        sa.Column("stripe_subscription_id", sa.Text, nullable=True),
        sa.Column("stripe_price_id", sa.Text, nullable=True),
        sa.Column("tier", sa.Text, nullable=False, server_default="personal"),
        sa.Column("status", sa.Text, nullable=False, server_default="none"),
        sa.Column("billing_interval", sa.Text, nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("cancel_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seat_limit", sa.Integer, nullable=False, server_default="1"),
        sa.Column("payment_method_brand", sa.Text, nullable=True),
        sa.Column("payment_method_last4", sa.Text, nullable=True),
        sa.Column("pending_checkout_session_id", sa.Text, nullable=True),
        sa.Column("pending_price_id", sa.Text, nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active','canceled','incomplete','incomplete_expired',"
            "'past_due','paused','trialing','unpaid','none')",
            name="ck_subscription_status",
        ),
        sa.CheckConstraint("tier IN ('personal','pro','enterprise')", name="ck_subscription_tier"),
        sa.CheckConstraint(
            "billing_interval IS NULL OR billing_interval IN ('month','year')",
            name="ck_subscription_billing_interval",
        ),
        sa.UniqueConstraint("organization_id", name="uq_subscription_org"),
        schema="billing",
    )
    op.create_index(
        "ix_subscription_org_status", "organization_subscriptions", ["organization_id", "status"], schema="billing"
    )
    op.create_index(
        "ix_subscription_stripe_customer_id", "organization_subscriptions", ["stripe_customer_id"], schema="billing"
    )
    op.create_index(
        "ix_subscription_stripe_subscription_id",
        "organization_subscriptions",
        ["stripe_subscription_id"],
        schema="billing",
    )

    op.create_table(
        "stripe_webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.Text, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("customer_id", sa.Text, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("event_id", name="uq_stripe_webhook_event_id"),
        schema="billing",
    )

    # ─── Sync Schema ─────────────────────────────────────────────────────────

    op.create_table(
        "sync_status",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("entity_id", sa.Text, nullable=False),
        sa.Column("target_system", sa.Text, nullable=False, server_default="warehouse"),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("webhook_event", sa.Text, nullable=False),
        sa.Column("workflow_id", sa.Text, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("entity_type IN ('user','organization')", name="ck_sync_entity_type"),
        sa.CheckConstraint("status IN ('pending','success','failed')", name="ck_sync_status"),
        sa.CheckConstraint(f"webhook_event IN ({WEBHOOK_EVENTS})", name="ck_sync_webhook_event"),
        sa.UniqueConstraint("workflow_id", name="uq_sync_workflow_id"),
        schema="sync",
    )
    op.create_index("ix_sync_status_entity", "sync_status", ["entity_type", "entity_id"], schema="sync")
    op.create_index("ix_sync_status_status", "sync_status", ["status"], schema="sync")

    # ─── Warehouse Schema ────────────────────────────────────────────────────

    for table in ("users", "organizations"):
        op.create_table(
            table,
            sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
            sa.Column("workos_id", sa.Text, nullable=False),
            sa.Column("source_id", sa.Text, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("workos_id", name=f"uq_warehouse_{table}_workos_id"),
            sa.UniqueConstraint("source_id", name=f"uq_warehouse_{table}_source_id"),
            schema="warehouse",
        )


def downgrade() -> None:
    op.drop_table("organizations", schema="warehouse")
    op.drop_table("users", schema="warehouse")
    op.drop_index("ix_sync_status_status", table_name="sync_status", schema="sync")
    op.drop_index("ix_sync_status_entity", table_name="sync_status", schema="sync")
    op.drop_table("sync_status", schema="sync")
    op.drop_table("stripe_webhook_events", schema="billing")
    op.drop_table("organization_subscriptions", schema="billing")
    op.drop_table("stripe_customers", schema="billing")
    op.drop_table("events_cursor", schema="identity")
    op.drop_table("processed_events", schema="identity")
    op.drop_table("organization_memberships", schema="identity")
    op.drop_table("organization_domains", schema="identity")
    op.drop_table("organizations", schema="identity")
    op.drop_table("users", schema="identity")
