"""
BillingEventIngestor — applies normalized provider events to SubscriptionStore.

Usage:
    result = BillingEventIngestor(db).ingest(event)
    result.outcome   # "applied" | "ignored"
    result.reason    # duplicate|unhandled|unknown_account|stale|terminal|provider_mismatch

Ingestion is idempotent per (provider, event_id): the ledger row in
``applied_events`` commits in the same transaction as the subscription
change, so an event is applied exactly once or not at all.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import DuplicateEvent
from app.core.timeutils import add_months, utcnow
from app.models import AppliedEvent, BillingHistory, CheckoutSession
from app.services.notifier import LoggingNotifier, Notifier
from app.services.plan_catalog import get_plan, is_known_plan
from app.services.providers.base import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_FAILED,
    EVENT_INVOICE_PAID,
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_UNHANDLED,
    BillingEvent,
)
from app.services.subscription_store import (
    ProviderRef,
    SubscriptionMutation,
    SubscriptionRecord,
    SubscriptionStore,
    run_with_retry,
)
from app.services.usage_meter import UsageMeter

logger = logging.getLogger(__name__)

APPLIED = "applied"
IGNORED = "ignored"

# Event types that may create the local record when none exists yet.
_CREATING_EVENTS = (EVENT_CHECKOUT_COMPLETED, EVENT_SUBSCRIPTION_UPDATED)


@dataclass(frozen=True)
class IngestResult:
    outcome: str
    reason: Optional[str] = None
    subscription: Optional[SubscriptionRecord] = None

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED


class BillingEventIngestor:

    def __init__(
        self,
        db: Session,
        store: Optional[SubscriptionStore] = None,
        meter: Optional[UsageMeter] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.store = store or SubscriptionStore(db, clock=clock)
        self.notifier = notifier or LoggingNotifier()
        self.meter = meter or UsageMeter(db, store=self.store, notifier=self.notifier, clock=clock)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def ingest(self, event: BillingEvent) -> IngestResult:
        if self._already_applied(event):
            logger.info("Duplicate %s event %s ignored", event.provider, event.event_id)
            return IngestResult(IGNORED, "duplicate")

        try:
            if event.type == EVENT_UNHANDLED:
                return self._ignore(event, None, "unhandled")

            account_id = self._resolve_account(event)
            if account_id is None:
                logger.warning(
                    "%s event %s (%s) matches no account",
                    event.provider, event.event_id, event.raw_type or event.type,
                )
                return self._ignore(event, None, "unknown_account")

            result, previous = run_with_retry(self.db, lambda: self._apply(event, account_id))
        except DuplicateEvent:
            self.db.rollback()
            logger.info("Concurrent duplicate %s event %s ignored", event.provider, event.event_id)
            return IngestResult(IGNORED, "duplicate")
        except Exception:
            self.db.rollback()
            raise

        if result.applied:
            self._after_commit(event, previous, result.subscription)
        return result

    # ------------------------------------------------------------------
    # Transaction body (re-run on VersionConflict)
    # ------------------------------------------------------------------

    def _apply(self, event: BillingEvent, account_id: str) -> Tuple[IngestResult, Optional[SubscriptionRecord]]:
        current = self.store.find(account_id)

        reason = self._rejection(event, current)
        if reason is not None:
            if reason == "stale":
                logger.warning(
                    "Stale %s event %s for %s (occurred %s, last applied %s)",
                    event.provider, event.event_id, account_id, event.occurred_at.isoformat(),
                    current.last_event_at(event.provider).isoformat(),
                )
            else:
                logger.info("%s event %s for %s ignored: %s", event.provider, event.event_id, account_id, reason)
            return self._ignore(event, account_id, reason, current), current

        mutation = self._mutation_for(event, current)
        record = self.store.upsert(
            account_id,
            mutation,
            expected_version=current.version if current else None,
            expected_generation=current.generation if current else None,
        )

        self._open_next_period(current, record)
        if event.type == EVENT_CHECKOUT_COMPLETED:
            self._complete_checkout_sessions(event, account_id)

        self._record(event, account_id, APPLIED, None)
        self._commit(event)
        logger.info(
            "Applied %s %s for %s: %s/%s v%d.%d",
            event.provider, event.type, account_id, record.plan_id, record.status,
            record.generation, record.version,
        )
        return IngestResult(APPLIED, None, record), current

    def _rejection(self, event: BillingEvent, current: Optional[SubscriptionRecord]) -> Optional[str]:
        if current is None:
            return None if event.type in _CREATING_EVENTS else "unknown_account"

        last = current.last_event_at(event.provider)
        if last is not None and event.occurred_at < last:
            return "stale"

        if event.type == EVENT_CHECKOUT_COMPLETED:
            return None
        if current.is_cancelled:
            return "terminal"

        bound, incoming = current.provider_ref, event.provider_ref
        if bound and incoming and bound.subscription_id and incoming.subscription_id and (
            bound.provider != incoming.provider or bound.subscription_id != incoming.subscription_id
        ):
            return "provider_mismatch"
        return None

    def _mutation_for(self, event: BillingEvent, current: Optional[SubscriptionRecord]) -> SubscriptionMutation:
        plan_id = event.plan_id
        if plan_id is not None and not is_known_plan(plan_id):
            logger.warning("%s event %s names unknown plan '%s'; keeping current plan",
                           event.provider, event.event_id, plan_id)
            plan_id = None

        mutation = SubscriptionMutation(
            plan_id=plan_id,
            provider_ref=self._merged_ref(event, current),
            event_provider=event.provider,
            event_occurred_at=event.occurred_at,
            source=f"{event.provider}:{event.event_id}",
        )

        if event.type == EVENT_CHECKOUT_COMPLETED:
            mutation.status = event.status or "active"
            mutation.period_start = event.period_start
            mutation.period_end = event.period_end
            if event.period_start is None and not self._period_bound_by(event, current):
                # The session carries no billing window; start one at completion.
                mutation.period_start = event.occurred_at
                mutation.period_end = add_months(event.occurred_at, 1)
            mutation.cancel_at_period_end = False
            mutation.new_generation = current is not None and current.is_cancelled
        elif event.type == EVENT_SUBSCRIPTION_UPDATED:
            mutation.status = event.status
            mutation.period_start = event.period_start
            mutation.period_end = event.period_end
            mutation.trial_end = event.trial_end
            mutation.cancel_at_period_end = event.cancel_at_period_end
        elif event.type == EVENT_SUBSCRIPTION_CANCELLED:
            mutation.status = "cancelled"
            mutation.cancel_at_period_end = False
        elif event.type == EVENT_INVOICE_PAID:
            mutation.status = "active"
            mutation.period_start = event.period_start
            mutation.period_end = event.period_end
        elif event.type == EVENT_INVOICE_FAILED:
            mutation.status = "past_due"

        if mutation.status == "active":
            mutation.clear_trial = True
        return mutation

    @staticmethod
    def _period_bound_by(event: BillingEvent, current: Optional[SubscriptionRecord]) -> bool:
        """True when a subscription event already set the window for this provider subscription."""
        if current is None or current.is_cancelled or current.period_start is None:
            return False
        bound, incoming = current.provider_ref, event.provider_ref
        return bool(
            bound and incoming
            and bound.provider == incoming.provider
            and bound.subscription_id
            and bound.subscription_id == incoming.subscription_id
        )

    @staticmethod
    def _merged_ref(event: BillingEvent, current: Optional[SubscriptionRecord]) -> Optional[ProviderRef]:
        incoming = event.provider_ref
        if incoming is None:
            return None
        bound = current.provider_ref if current else None
        if bound is None or bound.provider != incoming.provider:
            return incoming
        return ProviderRef(
            provider=incoming.provider,
            customer_id=incoming.customer_id or bound.customer_id,
            subscription_id=incoming.subscription_id or bound.subscription_id,
        )

    def _open_next_period(self, previous: Optional[SubscriptionRecord], record: SubscriptionRecord) -> None:
        """Pre-create the counter for the first period that uses a new plan."""
        if previous is not None and previous.plan_id == record.plan_id and previous.generation == record.generation:
            return
        if previous is None or previous.generation != record.generation or record.period_start != previous.period_start:
            boundary = record.period_start
        else:
            boundary = previous.period_end
        if boundary is None:
            return
        try:
            with self.db.begin_nested():
                self.meter.open_period(record.account_id, boundary, get_plan(record.plan_id))
        except IntegrityError:
            # The counter was opened concurrently by a metered request.
            logger.info("Counter for %s at %s already open", record.account_id, boundary.isoformat())

    def _complete_checkout_sessions(self, event: BillingEvent, account_id: str) -> None:
        conditions = [
            CheckoutSession.provider == event.provider,
            CheckoutSession.status == "pending",
        ]
        if event.checkout_session_id:
            conditions.append(CheckoutSession.session_id == event.checkout_session_id)
        else:
            conditions.append(CheckoutSession.account_id == account_id)
        self.db.execute(
            update(CheckoutSession)
            .where(*conditions)
            .values(status="completed", resolved_at=self.clock())
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _already_applied(self, event: BillingEvent) -> bool:
        return self.db.execute(
            select(AppliedEvent.event_id).where(
                AppliedEvent.provider == event.provider,
                AppliedEvent.event_id == event.event_id,
            )
        ).first() is not None

    def _record(self, event: BillingEvent, account_id: Optional[str], outcome: str, reason: Optional[str]) -> None:
        self.db.add(AppliedEvent(
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.type,
            raw_type=event.raw_type,
            account_id=account_id,
            outcome=outcome,
            reason=reason,
            raw_payload_hash=event.raw_payload_hash,
            occurred_at=event.occurred_at,
            applied_at=self.clock(),
        ))

    def _commit(self, event: BillingEvent) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self._already_applied(event):
                raise DuplicateEvent(event.provider, event.event_id)
            raise

    def _ignore(self, event: BillingEvent, account_id: Optional[str], reason: str,
                current: Optional[SubscriptionRecord] = None) -> IngestResult:
        self._record(event, account_id, IGNORED, reason)
        self._commit(event)
        return IngestResult(IGNORED, reason, current)

    def _resolve_account(self, event: BillingEvent) -> Optional[str]:
        if event.account_id:
            return event.account_id
        ref = event.provider_ref
        if ref is None:
            return None
        record = self.store.find_by_provider_ref(ref.provider, ref.subscription_id, ref.customer_id)
        return record.account_id if record else None

    # ------------------------------------------------------------------
    # Best-effort side effects (after the transition committed)
    # ------------------------------------------------------------------

    def _after_commit(self, event: BillingEvent, previous: Optional[SubscriptionRecord],
                      record: SubscriptionRecord) -> None:
        if event.type == EVENT_INVOICE_PAID:
            self._append_billing_history(event, record)

        try:
            if event.type == EVENT_INVOICE_FAILED:
                self.notifier.payment_failed(record.account_id, event.provider, record.plan_id)
            old_status = previous.status if previous else None
            if old_status != record.status:
                self.notifier.subscription_changed(record.account_id, old_status, record.status)
        except Exception as e:
            logger.warning("Billing notifier failed for %s: %s", record.account_id, e)

    def _append_billing_history(self, event: BillingEvent, record: SubscriptionRecord) -> None:
        try:
            if event.invoice_id:
                exists = self.db.execute(
                    select(BillingHistory.id).where(
                        BillingHistory.provider == event.provider,
                        BillingHistory.provider_invoice_id == event.invoice_id,
                    )
                ).first()
                if exists:
                    return
            self.db.add(BillingHistory(
                account_id=record.account_id,
                provider=event.provider,
                provider_invoice_id=event.invoice_id,
                amount_paid=event.amount_cents,
                currency=event.currency,
                status="paid",
                billing_period_start=event.period_start or record.period_start,
                billing_period_end=event.period_end or record.period_end,
                paid_at=event.occurred_at,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Could not record billing history for %s: %s", record.account_id, e)
