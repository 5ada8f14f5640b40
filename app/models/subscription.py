"""
SQLAlchemy declarative base and the subscription aggregate.

Subscription is the single local record of an account's billing state. It is
written only through SubscriptionStore (compare-and-swap on ``version``);
every successful write appends a SubscriptionAudit row.

Attributes:
    account_id: Tenant identifier (Primary Key)
    plan_id: Plan catalog id (free|starter|professional|business)
    status: trialing|active|past_due|cancelled|unpaid|incomplete
    provider: Billing provider of record (stripe|polar), null until first checkout
    provider_customer_id / provider_subscription_id: Provider-side references
    period_start / period_end: Current billing window
    trial_end: End of the implicit trial (null once paid)
    cancel_at_period_end: Provider will cancel at period end
    version: Monotonic CAS counter, reset to 1 when a new generation starts
    generation: Incremented when a new checkout replaces a cancelled record
    event_cursors: JSON {provider: ISO occurred_at of last applied event}
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Index, CheckConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "cancelled", "unpaid", "incomplete")


class Subscription(Base):
    __tablename__ = "subscriptions"

    account_id = Column(String(64), primary_key=True, comment="Tenant identifier")
    plan_id = Column(String(50), nullable=False, default="free")
    status = Column(String(20), nullable=False, default="trialing")

    provider = Column(String(20), nullable=True)
    provider_customer_id = Column(String(100), nullable=True, index=True)
    provider_subscription_id = Column(String(100), nullable=True, index=True)

    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False, default=1)
    generation = Column(Integer, nullable=False, default=1)
    event_cursors = Column(JSON, nullable=True, comment="Last applied event time per provider")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_subscriptions_status_updated", "status", "updated_at"),
        Index("idx_subscriptions_provider_ref", "provider", "provider_subscription_id"),
        CheckConstraint(
            "period_start IS NULL OR period_end IS NULL OR period_end > period_start",
            name="ck_subscriptions_period_order",
        ),
    )


class SubscriptionAudit(Base):
    """
    Append-only version history of Subscription — read only when debugging
    provider disagreements, never by the hot path.
    """
    __tablename__ = "subscription_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), nullable=False, index=True)
    generation = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    plan_id = Column(String(50), nullable=True)
    source = Column(String(120), nullable=True)               # stripe:evt_123 | trial | reconcile:...
    occurred_at = Column(DateTime, default=datetime.utcnow)
