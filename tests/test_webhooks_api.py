import hashlib
import hmac
import json
import time

import pytest

from app.core.config import Settings
from app.main import app
from app.models import AppliedEvent
from app.services.providers import ProviderRegistry, get_providers
from app.services.providers.polar_provider import PolarAdapter, sign_payload
from app.services.providers.stripe_provider import StripeAdapter
from app.services.subscription_store import SubscriptionStore

TEST_ACCOUNT = "acct_test"

STRIPE_SECRET = "whsec_api_test"
POLAR_SECRET = "polar_api_test"


@pytest.fixture
def signed_client(client):
    """Test client wired to the real adapters with known webhook secrets."""
    settings = Settings(
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=STRIPE_SECRET,
        POLAR_ACCESS_TOKEN="polar_token",
        POLAR_WEBHOOK_SECRET=POLAR_SECRET,
    )
    registry = ProviderRegistry([StripeAdapter(settings), PolarAdapter(settings)])
    app.dependency_overrides[get_providers] = lambda: registry
    return client


def _post_stripe(client, event, secret=STRIPE_SECRET):
    payload = json.dumps(event).encode()
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"},
    )


def _post_polar(client, event, msg_id, secret=POLAR_SECRET):
    payload = json.dumps(event).encode()
    timestamp = str(int(time.time()))
    return client.post(
        "/webhooks/polar",
        content=payload,
        headers={
            "webhook-id": msg_id,
            "webhook-timestamp": timestamp,
            "webhook-signature": "v1," + sign_payload(secret, msg_id, timestamp, payload),
            "Content-Type": "application/json",
        },
    )


def _checkout_completed(event_id="evt_checkout"):
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {"object": {
            "id": "cs_1", "mode": "subscription", "customer": "cus_1", "subscription": "sub_1",
            "metadata": {"userId": TEST_ACCOUNT, "planId": "starter"},
        }},
    }


def test_stripe_checkout_applied_once(signed_client, db_session):
    first = _post_stripe(signed_client, _checkout_completed())
    assert first.status_code == 200
    assert first.json()["outcome"] == "applied"

    record = SubscriptionStore(db_session).get(TEST_ACCOUNT)
    assert (record.plan_id, record.status) == ("starter", "active")

    again = _post_stripe(signed_client, _checkout_completed())
    assert again.status_code == 200
    assert (again.json()["outcome"], again.json()["reason"]) == ("ignored", "duplicate")
    assert SubscriptionStore(db_session).get(TEST_ACCOUNT).version == 1


def test_bad_signature_rejected_without_side_effects(signed_client, db_session):
    response = _post_stripe(signed_client, _checkout_completed(), secret="whsec_wrong")
    assert response.status_code == 400
    assert db_session.query(AppliedEvent).count() == 0
    assert SubscriptionStore(db_session).find(TEST_ACCOUNT) is None


def test_unsigned_delivery_rejected(signed_client):
    response = signed_client.post("/webhooks/stripe", content=b"{}")
    assert response.status_code == 400


def test_unhandled_event_acknowledged(signed_client, db_session):
    response = _post_stripe(signed_client, {
        "id": "evt_customer", "object": "event", "type": "customer.created",
        "created": int(time.time()), "data": {"object": {"id": "cus_1"}},
    })
    assert response.status_code == 200
    assert (response.json()["outcome"], response.json()["reason"]) == ("ignored", "unhandled")
    assert db_session.get(AppliedEvent, ("stripe", "evt_customer")) is not None


def test_polar_order_creates_subscription(signed_client, db_session):
    order = {
        "type": "order.paid",
        "timestamp": "2026-03-01T12:00:00Z",
        "data": {
            "id": "ord_1", "billing_reason": "subscription_create", "customer_id": "pc_1",
            "subscription_id": "psub_1", "total_amount": 7900, "currency": "usd",
            "metadata": {"userId": TEST_ACCOUNT, "planId": "professional"},
            "subscription": {"id": "psub_1", "status": "active",
                             "current_period_start": "2026-03-01T12:00:00Z",
                             "current_period_end": "2026-04-01T12:00:00Z"},
        },
    }
    response = _post_polar(signed_client, order, msg_id="msg_order_1")
    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "applied", "reason": None, "event_id": "msg_order_1"}

    record = SubscriptionStore(db_session).get(TEST_ACCOUNT)
    assert (record.plan_id, record.provider_ref.provider) == ("professional", "polar")


def test_polar_tampered_payload_rejected(signed_client):
    payload = json.dumps({"type": "subscription.updated", "data": {"id": "psub_1"}}).encode()
    timestamp = str(int(time.time()))
    signature = sign_payload(POLAR_SECRET, "msg_1", timestamp, payload)
    response = signed_client.post(
        "/webhooks/polar",
        content=payload.replace(b"psub_1", b"psub_2"),
        headers={"webhook-id": "msg_1", "webhook-timestamp": timestamp, "webhook-signature": f"v1,{signature}"},
    )
    assert response.status_code == 400
