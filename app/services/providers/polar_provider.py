"""
Polar integration (REST API + Standard Webhooks signatures).

Required environment variables:
    POLAR_ACCESS_TOKEN      — Organization access token
    POLAR_WEBHOOK_SECRET    — Webhook secret (raw or ``whsec_``-prefixed base64)
    POLAR_PRODUCT_*         — Product id per paid plan
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

import requests

from app.core.config import get_settings
from app.core.errors import ProviderUnavailable, ValidationError
from app.core.timeutils import parse_iso, utcnow
from app.services.plan_catalog import is_paid_plan, plan_for_provider_price, provider_price_id
from app.services.providers.base import (
    EVENT_CHECKOUT_COMPLETED,
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

PROVIDER = "polar"

SIGNATURE_TOLERANCE_SECONDS = 5 * 60

_SUBSCRIPTION_EVENTS = (
    "subscription.created",
    "subscription.updated",
    "subscription.active",
    "subscription.uncanceled",
    "subscription.canceled",
)
_ORDER_EVENTS = ("order.created", "order.paid")

# Polar checkout status → open|complete|expired
_CHECKOUT_STATUS = {
    "open": "open",
    "confirmed": "open",
    "succeeded": "complete",
    "expired": "expired",
    "failed": "expired",
}


def _signing_key(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        try:
            return base64.b64decode(secret[len("whsec_"):])
        except (binascii.Error, ValueError):
            raise ValidationError("POLAR_WEBHOOK_SECRET is not valid base64")
    return secret.encode()


def sign_payload(secret: str, msg_id: str, timestamp: str, payload: bytes) -> str:
    """Standard Webhooks v1 signature of ``payload``."""
    signed = f"{msg_id}.{timestamp}.".encode() + payload
    digest = hmac.new(_signing_key(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def _account_from(data: dict) -> Optional[str]:
    metadata = data.get("metadata") or {}
    customer = data.get("customer") or {}
    return metadata.get("userId") or metadata.get("account_id") or customer.get("external_id")


def _plan_from(data: dict) -> Optional[str]:
    metadata = data.get("metadata") or {}
    return (
        metadata.get("planId")
        or metadata.get("plan_id")
        or plan_for_provider_price(PROVIDER, data.get("product_id") or (data.get("product") or {}).get("id"))
    )


def subscription_state(data: dict) -> ProviderState:
    """Polar subscription object → ProviderState."""
    return ProviderState(
        provider=PROVIDER,
        subscription_id=data["id"],
        customer_id=data.get("customer_id") or (data.get("customer") or {}).get("id"),
        status=normalize_status(data.get("status")) or "incomplete",
        plan_id=_plan_from(data),
        period_start=parse_iso(data.get("current_period_start")),
        period_end=parse_iso(data.get("current_period_end")),
        trial_end=parse_iso(data.get("trial_end")),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        account_id=_account_from(data),
    )


class PolarAdapter(BillingProviderAdapter):

    name = PROVIDER

    def __init__(self, settings=None, clock=time.time):
        self.settings = settings or get_settings()
        self.clock = clock
        self.base_url = self.settings.POLAR_API_URL.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.settings.POLAR_ACCESS_TOKEN)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.POLAR_ACCESS_TOKEN}",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> Any:
        if not self.settings.POLAR_ACCESS_TOKEN:
            raise ProviderUnavailable(PROVIDER, "POLAR_ACCESS_TOKEN is not configured")
        url = f"{self.base_url}/v1{path}"
        try:
            response = requests.request(
                method, url, headers=self.headers,
                timeout=self.settings.PROVIDER_TIMEOUT_SECONDS, **kwargs
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Polar %s %s failed: %s", method, path, e)
            raise ProviderUnavailable(PROVIDER, str(e))
        return response.json()

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        secret = self.settings.POLAR_WEBHOOK_SECRET
        if not secret:
            raise ValidationError("POLAR_WEBHOOK_SECRET is not configured")

        msg_id = headers.get("webhook-id")
        timestamp = headers.get("webhook-timestamp")
        signatures = headers.get("webhook-signature")
        if not (msg_id and timestamp and signatures):
            raise ValidationError("Missing webhook signature headers")

        try:
            sent_at = int(timestamp)
        except ValueError:
            raise ValidationError("Invalid webhook-timestamp header")
        if abs(self.clock() - sent_at) > SIGNATURE_TOLERANCE_SECONDS:
            raise ValidationError("Webhook timestamp outside tolerance")

        expected = sign_payload(secret, msg_id, timestamp, payload)
        for candidate in signatures.split(" "):
            version, _, signature = candidate.partition(",")
            if version == "v1" and hmac.compare_digest(signature, expected):
                break
        else:
            raise ValidationError("Invalid Polar signature")

        try:
            return json.loads(payload)
        except ValueError as e:
            raise ValidationError(f"Invalid Polar payload: {e}")

    def normalize(self, payload: dict, delivery_id: Optional[str] = None) -> BillingEvent:
        raw_type = payload.get("type")
        data = payload.get("data") or {}
        event_id = delivery_id or payload.get("id")
        if not raw_type or not event_id:
            raise ValidationError("Polar event without type or delivery id")

        occurred_at = (
            parse_iso(payload.get("timestamp"))
            or parse_iso(data.get("modified_at"))
            or parse_iso(data.get("created_at"))
            or utcnow()
        )
        common = dict(
            event_id=event_id,
            provider=PROVIDER,
            occurred_at=occurred_at,
            raw_type=raw_type,
            raw_payload_hash=payload_hash(payload),
        )

        if raw_type in _ORDER_EVENTS:
            subscription = data.get("subscription") or {}
            subscription_id = data.get("subscription_id") or subscription.get("id")
            if not subscription_id:
                # One-time purchase
                return BillingEvent(type=EVENT_UNHANDLED, **common)

            reason = data.get("billing_reason")
            event_type = EVENT_CHECKOUT_COMPLETED if reason == "subscription_create" else EVENT_INVOICE_PAID
            return BillingEvent(
                type=event_type,
                account_id=_account_from(data) or _account_from(subscription),
                plan_id=_plan_from(data) or _plan_from(subscription),
                provider_ref=ProviderRef(PROVIDER, data.get("customer_id"), subscription_id),
                status=normalize_status(subscription.get("status")) or "active",
                period_start=parse_iso(subscription.get("current_period_start")),
                period_end=parse_iso(subscription.get("current_period_end")),
                checkout_session_id=data.get("checkout_id"),
                invoice_id=data.get("id"),
                amount_cents=data.get("total_amount", data.get("amount")),
                currency=data.get("currency"),
                **common,
            )

        if raw_type in _SUBSCRIPTION_EVENTS or raw_type == "subscription.revoked":
            state = subscription_state(data)
            cancelled = raw_type == "subscription.revoked" or state.status == "cancelled"
            return BillingEvent(
                type=EVENT_SUBSCRIPTION_CANCELLED if cancelled else EVENT_SUBSCRIPTION_UPDATED,
                account_id=state.account_id,
                plan_id=state.plan_id,
                provider_ref=state.ref,
                status="cancelled" if cancelled else state.status,
                period_start=state.period_start,
                period_end=state.period_end,
                trial_end=state.trial_end,
                cancel_at_period_end=state.cancel_at_period_end,
                **common,
            )

        return BillingEvent(type=EVENT_UNHANDLED, **common)

    # ------------------------------------------------------------------
    # Provider-of-record reads
    # ------------------------------------------------------------------

    def fetch_subscription(self, ref: ProviderRef) -> ProviderState:
        if not ref.subscription_id:
            raise ValidationError("Polar reference has no subscription id")
        return subscription_state(self._request("GET", f"/subscriptions/{ref.subscription_id}"))

    def fetch_checkout(self, session_id: str) -> CheckoutState:
        checkout = self._request("GET", f"/checkouts/{session_id}")
        status = _CHECKOUT_STATUS.get(checkout.get("status"), "open")
        subscription = None

        customer_id = checkout.get("customer_id")
        if status == "complete" and customer_id:
            # The checkout does not point at the subscription it created;
            # take the customer's most recent one.
            listing = self._request(
                "GET", "/subscriptions/",
                params={"customer_id": customer_id, "sorting": "-started_at", "limit": 1},
            )
            items = listing.get("items") or []
            if items:
                state = subscription_state(items[0])
                metadata = checkout.get("metadata") or {}
                subscription = ProviderState(
                    provider=state.provider,
                    subscription_id=state.subscription_id,
                    customer_id=state.customer_id or customer_id,
                    status=state.status,
                    plan_id=state.plan_id or metadata.get("planId"),
                    period_start=state.period_start,
                    period_end=state.period_end,
                    trial_end=state.trial_end,
                    cancel_at_period_end=state.cancel_at_period_end,
                    account_id=state.account_id or metadata.get("userId"),
                )
        return CheckoutState(session_id=session_id, status=status, subscription=subscription)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout(self, account_id, plan_id, success_url, cancel_url=None, customer_id=None):
        if not is_paid_plan(plan_id):
            raise ValidationError(f"Plan '{plan_id}' cannot be purchased")
        product_id = provider_price_id(PROVIDER, plan_id)
        if not product_id:
            raise ValidationError(f"No Polar product configured for plan '{plan_id}'")

        body = {
            "products": [product_id],
            "success_url": success_url,
            "customer_external_id": account_id,
            "metadata": {"userId": account_id, "planId": plan_id},
        }
        if customer_id:
            body["customer_id"] = customer_id
        checkout = self._request("POST", "/checkouts/", json=body)
        return CheckoutResult(provider=PROVIDER, session_id=checkout["id"], url=checkout["url"])

    def create_portal_session(self, customer_id, return_url):
        # Polar's portal has no return link; the session URL is authenticated by its token.
        session = self._request("POST", "/customer-sessions/", json={"customer_id": customer_id})
        return session["customer_portal_url"]
