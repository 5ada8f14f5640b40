"""
Common shapes shared by every billing provider integration.

Each provider is a BillingProviderAdapter: it verifies webhook signatures,
normalizes provider payloads into a BillingEvent and fetches
provider-of-record state for reconciliation. Nothing provider-specific
leaks past this boundary.
"""
import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from app.services.subscription_store import ProviderRef

EVENT_CHECKOUT_COMPLETED = "checkout_completed"
EVENT_SUBSCRIPTION_UPDATED = "subscription_updated"
EVENT_SUBSCRIPTION_CANCELLED = "subscription_cancelled"
EVENT_INVOICE_PAID = "invoice_paid"
EVENT_INVOICE_FAILED = "invoice_failed"
EVENT_UNHANDLED = "unhandled"

EVENT_TYPES = (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_FAILED,
    EVENT_UNHANDLED,
)

_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "unpaid",
    "incomplete": "incomplete",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "incomplete_expired": "cancelled",
    "revoked": "cancelled",
    "paused": "unpaid",
}


def normalize_status(raw: Optional[str]) -> Optional[str]:
    """Provider status → local status. Unknown values are treated as incomplete."""
    if raw is None:
        return None
    return _STATUS_MAP.get(raw.lower(), "incomplete")


def payload_hash(payload: Union[bytes, str, Mapping[str, Any]]) -> str:
    if isinstance(payload, Mapping):
        payload = json.dumps(payload, sort_keys=True, default=str)
    if isinstance(payload, str):
        payload = payload.encode()
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True)
class BillingEvent:
    """Provider-independent billing event fed to BillingEventIngestor.ingest."""
    event_id: str
    provider: str
    type: str
    occurred_at: datetime
    account_id: Optional[str] = None
    plan_id: Optional[str] = None
    provider_ref: Optional[ProviderRef] = None
    status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    checkout_session_id: Optional[str] = None
    invoice_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    raw_type: Optional[str] = None
    raw_payload_hash: Optional[str] = None


@dataclass(frozen=True)
class ProviderState:
    """Provider-of-record view of one subscription."""
    provider: str
    subscription_id: str
    customer_id: Optional[str]
    status: str
    plan_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    account_id: Optional[str] = None

    @property
    def ref(self) -> ProviderRef:
        return ProviderRef(self.provider, self.customer_id, self.subscription_id)

    def to_event(self, event_id: str, occurred_at: datetime, event_type: Optional[str] = None,
                 checkout_session_id: Optional[str] = None) -> BillingEvent:
        if event_type is None:
            event_type = (
                EVENT_SUBSCRIPTION_CANCELLED if self.status == "cancelled" else EVENT_SUBSCRIPTION_UPDATED
            )
        return BillingEvent(
            event_id=event_id,
            provider=self.provider,
            type=event_type,
            occurred_at=occurred_at,
            account_id=self.account_id,
            plan_id=self.plan_id,
            provider_ref=self.ref,
            status=self.status,
            period_start=self.period_start,
            period_end=self.period_end,
            trial_end=self.trial_end,
            cancel_at_period_end=self.cancel_at_period_end,
            checkout_session_id=checkout_session_id,
            raw_type="reconciliation",
            raw_payload_hash=payload_hash({
                "subscription_id": self.subscription_id,
                "status": self.status,
                "plan_id": self.plan_id,
                "period_start": self.period_start,
                "period_end": self.period_end,
            }),
        )


@dataclass(frozen=True)
class CheckoutState:
    session_id: str
    status: str                               # open|complete|expired
    subscription: Optional[ProviderState] = None


@dataclass(frozen=True)
class CheckoutResult:
    provider: str
    session_id: str
    url: str


class BillingProviderAdapter(ABC):
    """Capability set every billing provider integration implements."""

    name: str = ""

    def is_configured(self) -> bool:
        return True

    @abstractmethod
    def verify(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        """Check the webhook signature and return the parsed payload. Raises ValidationError."""

    @abstractmethod
    def normalize(self, payload: dict, delivery_id: Optional[str] = None) -> BillingEvent:
        """Provider payload → BillingEvent (type ``unhandled`` for events we do not act on)."""

    @abstractmethod
    def fetch_subscription(self, ref: ProviderRef) -> ProviderState:
        """Provider-of-record subscription state. Raises ProviderUnavailable."""

    @abstractmethod
    def fetch_checkout(self, session_id: str) -> CheckoutState:
        """Checkout session state. Raises ProviderUnavailable."""

    @abstractmethod
    def create_checkout(self, account_id: str, plan_id: str, success_url: str,
                        cancel_url: Optional[str] = None,
                        customer_id: Optional[str] = None) -> CheckoutResult:
        """Start a hosted checkout. Raises ProviderUnavailable."""

    @abstractmethod
    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Self-service portal URL where the customer changes or cancels the plan."""
