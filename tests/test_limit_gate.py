from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.core.errors import QuotaExceeded, ValidationError
from app.core.timeutils import utcnow
from app.models import Chatbot, Website
from app.services.limit_gate import LimitGate
from app.services.subscription_store import ProviderRef, SubscriptionMutation, SubscriptionStore


def _subscribe(db, status="active", plan_id="starter", account_id="acct_1"):
    now = utcnow()
    SubscriptionStore(db).upsert(account_id, SubscriptionMutation(
        plan_id=plan_id,
        status=status,
        provider_ref=ProviderRef("stripe", "cus_1", "sub_1"),
        period_start=now - timedelta(days=1),
        period_end=now + timedelta(days=29),
    ), expected_version=None)
    db.commit()


def test_first_conversation_starts_trial(db_session: Session):
    decision = LimitGate(db_session).can_proceed("acct_new", "conversation")

    assert decision.allowed
    assert (decision.used, decision.limit) == (1, 100)
    record = SubscriptionStore(db_session).get("acct_new")
    assert (record.status, record.plan_id) == ("trialing", "free")


@pytest.mark.parametrize("status", ["cancelled", "unpaid"])
def test_inactive_subscription_denied(db_session: Session, status):
    _subscribe(db_session, status=status)
    decision = LimitGate(db_session).can_proceed("acct_1", "conversation")
    assert not decision
    assert decision.reason == "subscription_inactive"


def test_past_due_keeps_access(db_session: Session):
    _subscribe(db_session, status="past_due")
    assert LimitGate(db_session).can_proceed("acct_1", "conversation")


def test_expired_trial_denied(db_session: Session):
    SubscriptionStore(db_session).create_trial("acct_1", trial_days=1)
    later = utcnow() + timedelta(days=2)
    decision = LimitGate(db_session, clock=lambda: later).can_proceed("acct_1", "chatbot")
    assert (decision.allowed, decision.reason) == (False, "trial_expired")


def test_resource_limits_follow_live_plan(db_session: Session):
    _subscribe(db_session, plan_id="starter")
    gate = LimitGate(db_session)
    assert gate.can_proceed("acct_1", "website")

    db_session.add(Website(account_id="acct_1", url="https://example.com"))
    db_session.add_all([Chatbot(account_id="acct_1", name="a"), Chatbot(account_id="acct_1", name="b")])
    db_session.add(Website(account_id="acct_other", url="https://other.example.com"))
    db_session.commit()

    website = gate.can_proceed("acct_1", "website")
    assert (website.allowed, website.reason, website.used, website.limit) == (False, "limit_reached", 1, 1)
    assert not gate.can_proceed("acct_1", "chatbot")


def test_require_raises_typed_denial(db_session: Session):
    _subscribe(db_session, plan_id="starter")
    db_session.add(Website(account_id="acct_1", url="https://example.com"))
    db_session.commit()

    with pytest.raises(QuotaExceeded) as exc:
        LimitGate(db_session).require("acct_1", "website")
    assert (exc.value.resource, exc.value.reason, exc.value.used, exc.value.limit) == ("website", "limit_reached", 1, 1)


def test_unknown_resource(db_session: Session):
    with pytest.raises(ValidationError):
        LimitGate(db_session).can_proceed("acct_1", "minutes")
