from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from app.core.errors import TransientFailure, VersionConflict
from app.core.config import get_settings
from app.models import (
    AppliedEvent, BillingHistory, CheckoutSession, Subscription, SubscriptionAudit, UsageCounter,
)
from app.core.timeutils import utcnow
from app.services.billing_events import BillingEventIngestor
from app.services.limit_gate import LimitGate
from app.services.subscription_store import SubscriptionStore

T0 = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def ingestor(db_session, notifier):
    return BillingEventIngestor(db_session, notifier=notifier)


def _state(db):
    record = SubscriptionStore(db).get("acct_test")
    return (record.plan_id, record.status, record.period_start, record.period_end,
            record.provider_ref, record.cancel_at_period_end)


def test_checkout_creates_subscription(ingestor, make_event, db_session: Session):
    result = ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    assert result.applied
    record = result.subscription
    assert (record.plan_id, record.status, record.version, record.generation) == ("starter", "active", 1, 1)
    assert record.provider_ref.subscription_id == "sub_1"
    assert record.last_event_at("stripe") == T0


def test_duplicate_delivery_applies_once(ingestor, make_event, db_session: Session):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    invoice = make_event("invoice_failed", occurred_at=T0 + timedelta(days=1), event_id="evt_dup")

    first = ingestor.ingest(invoice)
    second = ingestor.ingest(invoice)

    assert first.applied
    assert (second.outcome, second.reason) == ("ignored", "duplicate")
    assert SubscriptionStore(db_session).get("acct_test").version == 2
    assert db_session.query(AppliedEvent).filter(AppliedEvent.event_id == "evt_dup").count() == 1


def test_out_of_order_matches_in_order(make_event, db_session: Session, notifier):
    checkout = make_event("checkout_completed", plan_id="starter", occurred_at=T0, event_id="e1")
    failed = make_event("invoice_failed", occurred_at=T0 + timedelta(days=30), event_id="e2")
    upgraded = make_event(
        "subscription_updated", plan_id="professional", status="active",
        occurred_at=T0 + timedelta(days=31), event_id="e3",
        period_start=T0 + timedelta(days=31), period_end=T0 + timedelta(days=61),
    )

    ingestor = BillingEventIngestor(db_session, notifier=notifier)
    for event in (checkout, failed, upgraded):
        ingestor.ingest(event)
    in_order = _state(db_session)

    db_session.query(AppliedEvent).delete()
    db_session.query(UsageCounter).delete()
    db_session.query(SubscriptionAudit).delete()
    db_session.query(Subscription).delete()
    db_session.commit()

    reasons = [ingestor.ingest(event).reason for event in (checkout, upgraded, failed)]
    assert reasons == [None, None, "stale"]
    assert _state(db_session) == in_order


def test_stale_update_is_ignored(ingestor, make_event, db_session: Session):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    t1 = make_event("subscription_updated", status="past_due", occurred_at=T0 + timedelta(hours=1))
    t2 = make_event("subscription_updated", status="active", plan_id="business",
                    occurred_at=T0 + timedelta(hours=2))

    assert ingestor.ingest(t2).applied
    late = ingestor.ingest(t1)

    assert (late.outcome, late.reason) == ("ignored", "stale")
    record = SubscriptionStore(db_session).get("acct_test")
    assert (record.status, record.plan_id) == ("active", "business")
    ledger = db_session.get(AppliedEvent, ("stripe", t1.event_id))
    assert (ledger.outcome, ledger.reason) == ("ignored", "stale")


def test_cancelled_is_terminal_until_new_checkout(ingestor, make_event, db_session: Session):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    ingestor.ingest(make_event("subscription_cancelled", occurred_at=T0 + timedelta(days=1)))

    for event_type in ("subscription_updated", "invoice_paid", "invoice_failed"):
        result = ingestor.ingest(make_event(event_type, occurred_at=T0 + timedelta(days=2)))
        assert (result.outcome, result.reason) == ("ignored", "terminal")
    assert SubscriptionStore(db_session).get("acct_test").status == "cancelled"

    renewed = ingestor.ingest(make_event(
        "checkout_completed", plan_id="professional", subscription_id="sub_2",
        occurred_at=T0 + timedelta(days=3),
    ))
    assert renewed.applied
    record = renewed.subscription
    assert (record.status, record.plan_id, record.generation, record.version) == ("active", "professional", 2, 1)
    assert record.provider_ref.subscription_id == "sub_2"


def test_unhandled_and_unknown_account_are_recorded(ingestor, make_event, db_session: Session):
    unhandled = ingestor.ingest(make_event("unhandled", event_id="evt_u"))
    orphan = ingestor.ingest(make_event("invoice_paid", account_id=None, subscription_id="sub_zzz",
                                        customer_id="cus_zzz", event_id="evt_o"))

    assert (unhandled.outcome, unhandled.reason) == ("ignored", "unhandled")
    assert (orphan.outcome, orphan.reason) == ("ignored", "unknown_account")
    assert db_session.query(AppliedEvent).count() == 2
    assert SubscriptionStore(db_session).find("acct_test") is None


def test_account_resolved_from_provider_ref(ingestor, make_event, db_session: Session):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    result = ingestor.ingest(make_event("invoice_failed", account_id=None, occurred_at=T0 + timedelta(days=1)))
    assert result.applied
    assert result.subscription.status == "past_due"


def test_foreign_subscription_id_is_ignored(ingestor, make_event, db_session: Session):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    result = ingestor.ingest(make_event(
        "subscription_updated", status="past_due", subscription_id="sub_other",
        occurred_at=T0 + timedelta(hours=1),
    ))
    assert (result.outcome, result.reason) == ("ignored", "provider_mismatch")
    assert SubscriptionStore(db_session).get("acct_test").status == "active"


def test_trial_converted_by_checkout(ingestor, make_event, db_session: Session):
    trial = SubscriptionStore(db_session).create_trial("acct_test")
    result = ingestor.ingest(make_event("checkout_completed", plan_id="starter"))
    assert result.applied
    assert result.subscription.trial_end is None
    assert result.subscription.version == trial.version + 1


def test_payment_failure_notifies(ingestor, make_event, notifier):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    ingestor.ingest(make_event("invoice_failed", occurred_at=T0 + timedelta(days=30)))
    assert ("payment_failed", "acct_test", "stripe", "starter") in notifier.events
    assert ("subscription_changed", "acct_test", "active", "past_due") in notifier.events


def test_invoice_paid_records_history_once(ingestor, make_event, db_session: Session):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    for event_id in ("evt_paid", "evt_payment_succeeded"):
        ingestor.ingest(make_event(
            "invoice_paid", event_id=event_id, invoice_id="in_1", amount_cents=2900, currency="usd",
            occurred_at=T0 + timedelta(minutes=1),
        ))
    rows = db_session.query(BillingHistory).all()
    assert len(rows) == 1
    assert (rows[0].amount_paid, rows[0].provider_invoice_id) == (2900, "in_1")


def test_plan_change_opens_next_period(ingestor, make_event, db_session: Session):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0))
    period_end = SubscriptionStore(db_session).get("acct_test").period_end

    # upgrade without moving the period: new limits start at the next boundary
    ingestor.ingest(make_event(
        "subscription_updated", plan_id="business", occurred_at=T0 + timedelta(days=5),
        period_start=T0, period_end=period_end,
    ))

    counters = {c.period_start: c.limit for c in db_session.query(UsageCounter).all()}
    assert counters == {T0: 500, period_end: 10000}


def test_checkout_resolves_pending_session(ingestor, make_event, db_session: Session):
    db_session.add(CheckoutSession(provider="stripe", session_id="cs_1", account_id="acct_test",
                                   plan_id="starter", status="pending"))
    db_session.commit()

    ingestor.ingest(make_event("checkout_completed", plan_id="starter", checkout_session_id="cs_1"))

    session = db_session.query(CheckoutSession).one()
    db_session.refresh(session)
    assert session.status == "completed"
    assert session.resolved_at is not None


def test_exhausted_retries_leave_event_unrecorded(ingestor, make_event, db_session: Session, monkeypatch):
    def always_conflict(self, account_id, mutation, expected_version, expected_generation=None):
        raise VersionConflict(account_id, expected_version)

    monkeypatch.setattr(SubscriptionStore, "upsert", always_conflict)
    monkeypatch.setattr(get_settings(), "CAS_BACKOFF_BASE_SECONDS", 0.0)

    with pytest.raises(TransientFailure):
        ingestor.ingest(make_event("checkout_completed", plan_id="starter", event_id="evt_retry"))
    assert db_session.query(AppliedEvent).count() == 0


def test_trial_counter_archived_after_upgrade(ingestor, make_event, db_session: Session):
    SubscriptionStore(db_session).create_trial("acct_test")
    gate = LimitGate(db_session)
    gate.can_proceed("acct_test", "conversation")
    trial_start = SubscriptionStore(db_session).get("acct_test").period_start

    ingestor.ingest(make_event("checkout_completed", plan_id="starter",
                               occurred_at=utcnow() + timedelta(minutes=1)))
    assert gate.can_proceed("acct_test", "conversation").limit == 500

    db_session.expire_all()
    counters = {c.period_start: (c.used, c.limit, c.archived) for c in db_session.query(UsageCounter).all()}
    assert counters[trial_start] == (1, 100, True)
    live = [value for start, value in counters.items() if start != trial_start]
    assert live == [(1, 500, False)]


def test_audit_failure_does_not_undo_transition(ingestor, make_event, db_session: Session):
    SubscriptionAudit.__table__.drop(bind=db_session.get_bind())

    result = ingestor.ingest(make_event("checkout_completed", plan_id="starter",
                                        occurred_at=T0, event_id="evt_no_audit"))

    assert result.applied
    record = SubscriptionStore(db_session).get("acct_test")
    assert (record.status, record.plan_id) == ("active", "starter")
    ledger = db_session.get(AppliedEvent, ("stripe", "evt_no_audit"))
    assert ledger.outcome == "applied"


def test_checkout_keeps_window_from_subscription_event(ingestor, make_event, db_session: Session):
    period_end = T0 + timedelta(days=31)
    ingestor.ingest(make_event("subscription_updated", plan_id="starter", occurred_at=T0,
                               period_start=T0, period_end=period_end))
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0 + timedelta(seconds=3),
                               period_start=None, period_end=None))

    record = SubscriptionStore(db_session).get("acct_test")
    assert (record.status, record.period_start, record.period_end) == ("active", T0, period_end)
    assert [c.period_start for c in db_session.query(UsageCounter).all()] == [T0]


def test_checkout_without_window_starts_one_at_completion(ingestor, make_event, db_session: Session):
    ingestor.ingest(make_event("checkout_completed", plan_id="starter", occurred_at=T0,
                               period_start=None, period_end=None))

    record = SubscriptionStore(db_session).get("acct_test")
    assert (record.period_start, record.period_end) == (T0, datetime(2026, 4, 1, 12, 0, 0))
