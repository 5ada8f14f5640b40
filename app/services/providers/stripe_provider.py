"""
Stripe integration.

Required environment variables:
    STRIPE_SECRET_KEY       — Stripe secret key (sk_live_... or sk_test_...)
    STRIPE_WEBHOOK_SECRET   — Stripe webhook signing secret (whsec_...)
    STRIPE_PRICE_*          — Price id per paid plan (optional, inline prices otherwise)
"""
import json
import logging
from typing import Any, Mapping, Optional

import stripe

from app.core.config import get_settings
from app.core.errors import ProviderUnavailable, ValidationError
from app.core.timeutils import from_unix
from app.services.plan_catalog import get_plan, is_paid_plan, plan_for_provider_price, provider_price_id
from app.services.providers.base import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_FAILED,
    EVENT_INVOICE_PAID,
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_UNHANDLED,
    BillingEvent,
    BillingProviderAdapter,
    CheckoutResult,
    CheckoutState,
    ProviderState,
    normalize_status,
    payload_hash,
)
from app.services.subscription_store import ProviderRef

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

_SUBSCRIPTION_EVENTS = ("customer.subscription.created", "customer.subscription.updated")
_INVOICE_PAID_EVENTS = ("invoice.paid", "invoice.payment_succeeded")


def _as_dict(obj: Any) -> dict:
    """StripeObject → plain dict (works across SDK major versions)."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _account_from_metadata(metadata: Optional[dict]) -> Optional[str]:
    metadata = metadata or {}
    return metadata.get("userId") or metadata.get("account_id")


def _plan_from_metadata(metadata: Optional[dict]) -> Optional[str]:
    metadata = metadata or {}
    return metadata.get("planId") or metadata.get("plan_id")


def subscription_state(sub: dict) -> ProviderState:
    """Stripe subscription object → ProviderState."""
    items = (sub.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price_id = _id_of(first_item.get("price"))

    # Newer API versions moved the period onto the subscription items.
    period_start = sub.get("current_period_start") or first_item.get("current_period_start")
    period_end = sub.get("current_period_end") or first_item.get("current_period_end")

    metadata = sub.get("metadata") or {}
    return ProviderState(
        provider=PROVIDER,
        subscription_id=sub["id"],
        customer_id=_id_of(sub.get("customer")),
        status=normalize_status(sub.get("status")) or "incomplete",
        plan_id=_plan_from_metadata(metadata) or plan_for_provider_price(PROVIDER, price_id),
        period_start=from_unix(period_start),
        period_end=from_unix(period_end),
        trial_end=from_unix(sub.get("trial_end")),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        account_id=_account_from_metadata(metadata),
    )


class StripeAdapter(BillingProviderAdapter):

    name = PROVIDER

    def __init__(self, settings=None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        return bool(self.settings.STRIPE_SECRET_KEY)

    def _client(self):
        if not self.settings.STRIPE_SECRET_KEY:
            raise ProviderUnavailable(PROVIDER, "STRIPE_SECRET_KEY is not configured")
        stripe.api_key = self.settings.STRIPE_SECRET_KEY
        stripe.default_http_client = stripe.RequestsClient(timeout=self.settings.PROVIDER_TIMEOUT_SECONDS)
        return stripe

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        secret = self.settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            raise ValidationError("STRIPE_WEBHOOK_SECRET is not configured")
        sig_header = headers.get("stripe-signature")
        if not sig_header:
            raise ValidationError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, sig_header, secret)
        except stripe.SignatureVerificationError as e:
            raise ValidationError(f"Invalid Stripe signature: {e}")
        except ValueError as e:
            raise ValidationError(f"Invalid Stripe payload: {e}")
        return json.loads(payload)

    def normalize(self, payload: dict, delivery_id: Optional[str] = None) -> BillingEvent:
        event_id = payload.get("id") or delivery_id
        raw_type = payload.get("type")
        if not event_id or not raw_type:
            raise ValidationError("Stripe event without id or type")

        occurred_at = from_unix(payload.get("created"))
        if occurred_at is None:
            raise ValidationError(f"Stripe event {event_id} has no creation time")

        obj = (payload.get("data") or {}).get("object") or {}
        common = dict(
            event_id=event_id,
            provider=PROVIDER,
            occurred_at=occurred_at,
            raw_type=raw_type,
            raw_payload_hash=payload_hash(payload),
        )

        if raw_type == "checkout.session.completed":
            if obj.get("mode") not in (None, "subscription"):
                return BillingEvent(type=EVENT_UNHANDLED, **common)
            metadata = obj.get("metadata") or {}
            return BillingEvent(
                type=EVENT_CHECKOUT_COMPLETED,
                account_id=_account_from_metadata(metadata) or obj.get("client_reference_id"),
                plan_id=_plan_from_metadata(metadata),
                provider_ref=ProviderRef(PROVIDER, _id_of(obj.get("customer")), _id_of(obj.get("subscription"))),
                # The session carries no billing window; the subscription events own it.
                status="active",
                checkout_session_id=obj.get("id"),
                amount_cents=obj.get("amount_total"),
                currency=obj.get("currency"),
                **common,
            )

        if raw_type in _SUBSCRIPTION_EVENTS or raw_type == "customer.subscription.deleted":
            state = subscription_state(obj)
            event_type = EVENT_SUBSCRIPTION_UPDATED
            if raw_type == "customer.subscription.deleted" or state.status == "cancelled":
                event_type = EVENT_SUBSCRIPTION_CANCELLED
            return BillingEvent(
                type=event_type,
                account_id=state.account_id,
                plan_id=state.plan_id,
                provider_ref=state.ref,
                status="cancelled" if event_type == EVENT_SUBSCRIPTION_CANCELLED else state.status,
                period_start=state.period_start,
                period_end=state.period_end,
                trial_end=state.trial_end,
                cancel_at_period_end=state.cancel_at_period_end,
                **common,
            )

        if raw_type in _INVOICE_PAID_EVENTS or raw_type == "invoice.payment_failed":
            subscription_id = _id_of(obj.get("subscription"))
            if subscription_id is None:
                details = ((obj.get("parent") or {}).get("subscription_details") or {})
                subscription_id = _id_of(details.get("subscription"))
            if subscription_id is None:
                # One-off invoice, nothing to do with the subscription.
                return BillingEvent(type=EVENT_UNHANDLED, **common)

            lines = (obj.get("lines") or {}).get("data") or []
            period = (lines[0].get("period") or {}) if lines else {}
            paid = raw_type in _INVOICE_PAID_EVENTS
            return BillingEvent(
                type=EVENT_INVOICE_PAID if paid else EVENT_INVOICE_FAILED,
                provider_ref=ProviderRef(PROVIDER, _id_of(obj.get("customer")), subscription_id),
                status="active" if paid else "past_due",
                period_start=from_unix(period.get("start")) if paid else None,
                period_end=from_unix(period.get("end")) if paid else None,
                invoice_id=obj.get("id"),
                amount_cents=obj.get("amount_paid") if paid else obj.get("amount_due"),
                currency=obj.get("currency"),
                **common,
            )

        return BillingEvent(type=EVENT_UNHANDLED, **common)

    # ------------------------------------------------------------------
    # Provider-of-record reads
    # ------------------------------------------------------------------

    def fetch_subscription(self, ref: ProviderRef) -> ProviderState:
        if not ref.subscription_id:
            raise ValidationError("Stripe reference has no subscription id")
        client = self._client()
        try:
            sub = client.Subscription.retrieve(ref.subscription_id)
        except stripe.StripeError as e:
            logger.warning("Stripe subscription fetch failed for %s: %s", ref.subscription_id, e)
            raise ProviderUnavailable(PROVIDER, str(e))
        return subscription_state(_as_dict(sub))

    def fetch_checkout(self, session_id: str) -> CheckoutState:
        client = self._client()
        try:
            session = _as_dict(client.checkout.Session.retrieve(session_id, expand=["subscription"]))
        except stripe.StripeError as e:
            logger.warning("Stripe checkout fetch failed for %s: %s", session_id, e)
            raise ProviderUnavailable(PROVIDER, str(e))

        status = session.get("status") or "open"
        subscription = None
        sub_obj = session.get("subscription")
        if status == "complete" and isinstance(sub_obj, dict):
            state = subscription_state(sub_obj)
            metadata = session.get("metadata") or {}
            subscription = ProviderState(
                provider=state.provider,
                subscription_id=state.subscription_id,
                customer_id=state.customer_id or _id_of(session.get("customer")),
                status=state.status,
                plan_id=state.plan_id or _plan_from_metadata(metadata),
                period_start=state.period_start,
                period_end=state.period_end,
                trial_end=state.trial_end,
                cancel_at_period_end=state.cancel_at_period_end,
                account_id=state.account_id or _account_from_metadata(metadata)
                or session.get("client_reference_id"),
            )
        return CheckoutState(session_id=session_id, status=status, subscription=subscription)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout(self, account_id, plan_id, success_url, cancel_url=None, customer_id=None):
        if not is_paid_plan(plan_id):
            raise ValidationError(f"Plan '{plan_id}' cannot be purchased")
        client = self._client()
        plan = get_plan(plan_id)
        metadata = {"userId": account_id, "planId": plan_id}

        price_id = provider_price_id(PROVIDER, plan_id)
        if price_id:
            line_item = {"price": price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": "usd",
                    "product_data": {"name": f"{plan.name} Plan"},
                    "unit_amount": plan.price_cents,
                    "recurring": {"interval": "month"},
                },
                "quantity": 1,
            }

        try:
            if not customer_id:
                customer = client.Customer.create(metadata={"userId": account_id})
                customer_id = customer.id
            session = client.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                line_items=[line_item],
                success_url=success_url,
                cancel_url=cancel_url or success_url,
                client_reference_id=account_id,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout creation failed for %s: %s", account_id, e)
            raise ProviderUnavailable(PROVIDER, str(e))

        return CheckoutResult(provider=PROVIDER, session_id=session.id, url=session.url)

    def create_portal_session(self, customer_id, return_url):
        client = self._client()
        try:
            session = client.billing_portal.Session.create(customer=customer_id, return_url=return_url)
        except stripe.StripeError as e:
            logger.error("Stripe portal session failed for customer %s: %s", customer_id, e)
            raise ProviderUnavailable(PROVIDER, str(e))
        return session.url
