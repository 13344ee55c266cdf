"""SQLAlchemy 2.0 ORM models for the identity sync backend.

Covers 14 tables across 4 schemas:
  - identity: users, organizations, organization_domains,
              organization_memberships, processed_events, events_cursor, roles
  - billing: stripe_customers, organization_subscriptions, stripe_webhook_events
  - sync: sync_status, dead_letter_queue
  - warehouse: users, organizations (secondary store for billing/analytics joins)
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    UUID,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerated values used in CHECK constraints
# ---------------------------------------------------------------------------

SYNC_ENTITY_TYPES = ("user", "organization")
DEAD_LETTER_ENTITY_TYPES = ("user", "organization", "subscription")
SYNC_STATUSES = ("pending", "success", "failed")
WEBHOOK_EVENTS = (
    "user.created",
    "user.updated",
    "user.deleted",
    "organization.created",
    "organization.updated",
    "organization.deleted",
    "organization_domain.verified",
    "organization_domain.verification_failed",
)
DOMAIN_STATUSES = ("verified", "pending", "failed")
MEMBERSHIP_STATUSES = ("active", "pending", "inactive")
USER_ROLES = ("admin", "user")
ROLE_SOURCES = ("environment", "organization")
SUBSCRIPTION_STATUSES = (
    "active",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "past_due",
    "paused",
    "trialing",
    "unpaid",
    "none",
)
SUBSCRIPTION_TIERS = ("personal", "pro", "enterprise")
BILLING_INTERVALS = ("month", "year")

# Seat limits per tier; -1 means unlimited
TIER_SEAT_LIMITS = {
    "personal": 1,
    "pro": 3,
    "enterprise": -1,
}


def _in_check(column: str, values: tuple[str, ...], nullable: bool = False) -> str:
    clause = f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"
    if nullable:
        return f"{column} IS NULL OR {clause}"
    return clause


# ===========================================================================
# Schema: identity
# ===========================================================================


class User(Base):
    """identity.users — mirror of identity-provider users."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(_in_check("role", USER_ROLES), name="ck_user_role"),
        {"schema": "identity"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    email_verified: Mapped[bool] = mapped_column(
        Boolean, server_default="false", nullable=False
    )
    first_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    profile_picture_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(Text, nullable=False, server_default="user")
    # "metadata" is reserved on declarative classes; the provider map lives here
    user_metadata: Mapped[Optional[dict[str, str]]] = mapped_column(
        JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Organization(Base):
    """identity.organizations — mirror of identity-provider organizations."""

    __tablename__ = "organizations"
    __table_args__ = {"schema": "identity"}

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    org_metadata: Mapped[Optional[dict[str, str]]] = mapped_column(
        JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    domains: Mapped[list["OrganizationDomain"]] = relationship(
        "OrganizationDomain", back_populates="organization", cascade="all, delete-orphan"
    )
    subscription: Mapped[Optional["OrganizationSubscription"]] = relationship(
        "OrganizationSubscription", back_populates="organization", uselist=False
    )


class OrganizationDomain(Base):
    """identity.organization_domains — verified/pending domains per organization."""

    __tablename__ = "organization_domains"
    __table_args__ = (
        CheckConstraint(_in_check("status", DOMAIN_STATUSES), name="ck_domain_status"),
        {"schema": "identity"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("identity.organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    domain: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default="pending")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationship
    organization: Mapped["Organization"] = relationship(
        "Organization", back_populates="domains"
    )


class OrganizationMembership(Base):
    """identity.organization_memberships — user ↔ organization with a role slug.

    Keyed by identity-provider ids on both sides, matching what webhook
    payloads carry.
    """

    __tablename__ = "organization_memberships"
    __table_args__ = (
        CheckConstraint(
            _in_check("status", MEMBERSHIP_STATUSES), name="ck_membership_status"
        ),
        UniqueConstraint(
            "organization_external_id", "user_external_id", name="uq_membership_org_user"
        ),
        {"schema": "identity"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_external_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    user_external_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    role: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ProcessedEvent(Base):
    """identity.processed_events — idempotency log shared by webhooks and polling."""

    __tablename__ = "processed_events"
    __table_args__ = {"schema": "identity"}

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )


class EventsCursor(Base):
    """identity.events_cursor — Events API polling position (single row 'main')."""

    __tablename__ = "events_cursor"
    __table_args__ = {"schema": "identity"}

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    cursor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_polled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Role(Base):
    """identity.roles — environment role cache (slug → permission slugs)."""

    __tablename__ = "roles"
    __table_args__ = (
        CheckConstraint(_in_check("source", ROLE_SOURCES), name="ck_role_source"),
        {"schema": "identity"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    slug: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    source: Mapped[str] = mapped_column(Text, nullable=False, server_default="environment")
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("identity.organizations.id", ondelete="CASCADE"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ===========================================================================
# Schema: billing
# ===========================================================================


class StripeCustomer(Base):
    """billing.stripe_customers — links an organization to its Stripe customer."""

    __tablename__ = "stripe_customers"
    __table_args__ = {"schema": "billing"}

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("identity.organizations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    stripe_customer_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class OrganizationSubscription(Base):
    """billing.organization_subscriptions — subscription state synced from Stripe."""

    __tablename__ = "organization_subscriptions"
    __table_args__ = (
        CheckConstraint(
            _in_check("status", SUBSCRIPTION_STATUSES), name="ck_subscription_status"
        ),
        CheckConstraint(_in_check("tier", SUBSCRIPTION_TIERS), name="ck_subscription_tier"),
        CheckConstraint(
            _in_check("billing_interval", BILLING_INTERVALS, nullable=True),
            name="ck_subscription_billing_interval",
        ),
        Index("ix_subscription_org_status", "organization_id", "status"),
        {"schema": "billing"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("identity.organizations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    stripe_customer_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, index=True
    )
    stripe_price_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tier: Mapped[str] = mapped_column(Text, nullable=False, server_default="personal")
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default="none")
    billing_interval: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, server_default="false", nullable=False
    )
    cancel_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    seat_limit: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    payment_method_brand: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_method_last4: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pending_checkout_session_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pending_price_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationship
    organization: Mapped["Organization"] = relationship(
        "Organization", back_populates="subscription"
    )


class StripeWebhookEvent(Base):
    """billing.stripe_webhook_events — idempotency log for Stripe deliveries."""

    __tablename__ = "stripe_webhook_events"
    __table_args__ = {"schema": "billing"}

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


# ===========================================================================
# Schema: sync
# ===========================================================================


class SyncStatus(Base):
    """sync.sync_status — one row per sync workflow, kept as history."""

    __tablename__ = "sync_status"
    __table_args__ = (
        CheckConstraint(
            _in_check("entity_type", SYNC_ENTITY_TYPES), name="ck_sync_entity_type"
        ),
        CheckConstraint(_in_check("status", SYNC_STATUSES), name="ck_sync_status"),
        CheckConstraint(
            _in_check("webhook_event", WEBHOOK_EVENTS), name="ck_sync_webhook_event"
        ),
        Index("ix_sync_status_entity", "entity_type", "entity_id"),
        {"schema": "sync"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    # Identity-provider id of the user or organization
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_system: Mapped[str] = mapped_column(
        Text, nullable=False, server_default="warehouse"
    )
    status: Mapped[str] = mapped_column(
        Text, nullable=False, server_default="pending", index=True
    )
    webhook_event: Mapped[str] = mapped_column(Text, nullable=False)
    workflow_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class DeadLetterItem(Base):
    """sync.dead_letter_queue — syncs that failed terminally, awaiting an operator."""

    __tablename__ = "dead_letter_queue"
    __table_args__ = (
        CheckConstraint(
            _in_check("entity_type", DEAD_LETTER_ENTITY_TYPES),
            name="ck_dead_letter_entity_type",
        ),
        CheckConstraint("retry_count >= 0", name="ck_dead_letter_retry_count"),
        Index("ix_dead_letter_entity", "entity_type", "entity_id"),
        Index("ix_dead_letter_open", "retryable", "resolved_at"),
        {"schema": "sync"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    workflow_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, server_default="true", nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Workflow spawned by the most recent retry; resolves the item when it succeeds
    last_retry_workflow_id: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, index=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


# ===========================================================================
# Schema: warehouse
# ===========================================================================


class WarehouseUser(Base):
    """warehouse.users — identity-provider id ↔ primary-store id, for joins."""

    __tablename__ = "users"
    __table_args__ = {"schema": "warehouse"}

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    workos_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class WarehouseOrganization(Base):
    """warehouse.organizations — identity-provider id ↔ primary-store id, for joins."""

    __tablename__ = "organizations"
    __table_args__ = {"schema": "warehouse"}

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    workos_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

__all__ = [
    "Base",
    # identity
    "User",
    "Organization",
    "OrganizationDomain",
    "OrganizationMembership",
    "ProcessedEvent",
    "EventsCursor",
    "Role",
    # billing
    "StripeCustomer",
    "OrganizationSubscription",
    "StripeWebhookEvent",
    # sync
    "SyncStatus",
    "DeadLetterItem",
    # warehouse
    "WarehouseUser",
    "WarehouseOrganization",
    # enumerations
    "SYNC_ENTITY_TYPES",
    "DEAD_LETTER_ENTITY_TYPES",
    "SYNC_STATUSES",
    "WEBHOOK_EVENTS",
    "DOMAIN_STATUSES",
    "MEMBERSHIP_STATUSES",
    "ROLE_SOURCES",
    "SUBSCRIPTION_STATUSES",
    "SUBSCRIPTION_TIERS",
    "TIER_SEAT_LIMITS",
]
