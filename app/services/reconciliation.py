"""
ReconciliationScheduler — periodic repair of local state from the
provider of record.

Webhooks can be lost, delayed or reordered. Every sweep looks for
subscriptions whose local state is suspect and for checkouts that never
got their completion webhook, fetches the provider's view and feeds it
through BillingEventIngestor as a synthesized event, so repairs follow the
exact same rules (CAS, idempotency, terminal cancellation) as webhooks.
"""
import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import database
from app.core.config import get_settings
from app.core.errors import BillingError, ProviderUnavailable
from app.core.timeutils import utcnow
from app.models import CheckoutSession
from app.services.billing_events import BillingEventIngestor, IngestResult
from app.services.notifier import LoggingNotifier, Notifier
from app.services.providers import ProviderRegistry, get_providers
from app.services.providers.base import EVENT_CHECKOUT_COMPLETED
from app.services.subscription_store import SubscriptionRecord, SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    checked: int = 0
    applied: int = 0
    ignored: int = 0
    failed: int = 0
    expired_checkouts: int = 0
    errors: List[str] = field(default_factory=list)

    def count(self, result: IngestResult) -> None:
        if result.applied:
            self.applied += 1
        else:
            self.ignored += 1

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


class ReconciliationScheduler:

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        providers: Optional[ProviderRegistry] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        settings=None,
    ):
        self._session_factory = session_factory
        self.providers = providers or get_providers()
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self.settings = settings or get_settings()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _new_session(self) -> Session:
        factory = self._session_factory or database.SessionLocal
        if factory is None:
            raise RuntimeError("Database is not configured. Missing DB_URL environment variable.")
        return factory()

    def _ingestor(self, db: Session) -> BillingEventIngestor:
        return BillingEventIngestor(db, notifier=self.notifier, clock=self.clock)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def run_once(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """One full sweep over suspect subscriptions and abandoned checkouts."""
        now = now or self.clock()
        report = ReconciliationReport()
        db = self._new_session()
        try:
            stale_before = now - timedelta(seconds=self.settings.RECONCILIATION_STALE_AFTER_SECONDS)
            for record in SubscriptionStore(db, clock=self.clock).list_reconciliation_candidates(stale_before):
                self._reconcile_item(report, f"subscription {record.account_id}",
                                     lambda: self._reconcile_subscription(db, record))

            checkout_before = now - timedelta(seconds=self.settings.CHECKOUT_TIMEOUT_SECONDS)
            for session in self._pending_checkouts(db, checkout_before):
                self._reconcile_checkout_item(db, report, session, now)
        finally:
            db.close()

        if report.checked:
            logger.info(
                "Reconciliation sweep: %d checked, %d applied, %d ignored, %d failed, %d checkouts expired",
                report.checked, report.applied, report.ignored, report.failed, report.expired_checkouts,
            )
        return report

    def reconcile_account(self, account_id: str, db: Optional[Session] = None) -> ReconciliationReport:
        """
        Sync one account now (manual sync endpoint): its bound provider
        subscription plus any checkout still pending, whatever its age.
        Raises ProviderUnavailable when the provider cannot be reached.
        """
        report = ReconciliationReport()
        owns_session = db is None
        db = db or self._new_session()
        try:
            record = SubscriptionStore(db, clock=self.clock).find(account_id)
            if record and record.provider_ref and record.provider_ref.subscription_id:
                report.checked += 1
                report.count(self._reconcile_subscription(db, record))

            now = self.clock()
            pending = db.execute(
                select(CheckoutSession)
                .where(CheckoutSession.account_id == account_id, CheckoutSession.status == "pending")
                .order_by(CheckoutSession.created_at.asc())
            ).scalars().all()
            for session in pending:
                report.checked += 1
                result = self._reconcile_checkout(db, session, now)
                if result is not None:
                    report.count(result)
        finally:
            if owns_session:
                db.close()
        return report

    def _reconcile_item(self, report: ReconciliationReport, label: str, action: Callable[[], IngestResult]) -> None:
        report.checked += 1
        try:
            report.count(action())
        except ProviderUnavailable as e:
            report.failed += 1
            report.errors.append(f"{label}: {e}")
            logger.warning("Reconciliation of %s deferred: %s", label, e)
        except (BillingError, SQLAlchemyError) as e:
            report.failed += 1
            report.errors.append(f"{label}: {e}")
            logger.error("Reconciliation of %s failed: %s", label, e)

    def _reconcile_checkout_item(self, db: Session, report: ReconciliationReport,
                                 session: CheckoutSession, now: datetime) -> None:
        max_age = timedelta(seconds=self.settings.CHECKOUT_MAX_AGE_SECONDS)
        if session.created_at is not None and session.created_at < now - max_age:
            self._resolve_checkout(db, session, "expired", now)
            report.expired_checkouts += 1
            logger.info("Checkout %s:%s expired unresolved", session.provider, session.session_id)
            return

        label = f"checkout {session.provider}:{session.session_id}"
        report.checked += 1
        try:
            result = self._reconcile_checkout(db, session, now)
            if result is not None:
                report.count(result)
        except ProviderUnavailable as e:
            report.failed += 1
            report.errors.append(f"{label}: {e}")
            logger.warning("Reconciliation of %s deferred: %s", label, e)
        except (BillingError, SQLAlchemyError) as e:
            db.rollback()
            report.failed += 1
            report.errors.append(f"{label}: {e}")
            logger.error("Reconciliation of %s failed: %s", label, e)

    # ------------------------------------------------------------------
    # Single items
    # ------------------------------------------------------------------

    def _reconcile_subscription(self, db: Session, record: SubscriptionRecord) -> IngestResult:
        ref = record.provider_ref
        adapter = self.providers.get(ref.provider)
        state = adapter.fetch_subscription(ref)
        fetched_at = self.clock()

        event = state.to_event(
            event_id=f"reconcile:{ref.provider}:{ref.subscription_id}:{fetched_at.isoformat()}",
            occurred_at=fetched_at,
        )
        if event.account_id != record.account_id:
            event = dataclasses.replace(event, account_id=record.account_id)

        result = self._ingestor(db).ingest(event)
        logger.info(
            "Reconciled %s from %s: provider status %s → %s%s",
            record.account_id, ref.provider, state.status, result.outcome,
            f" ({result.reason})" if result.reason else "",
        )
        return result

    def _reconcile_checkout(self, db: Session, session: CheckoutSession, now: datetime) -> Optional[IngestResult]:
        adapter = self.providers.get(session.provider)
        checkout = adapter.fetch_checkout(session.session_id)

        if checkout.status == "expired":
            self._resolve_checkout(db, session, "expired", now)
            return None
        if checkout.status != "complete" or checkout.subscription is None:
            return None

        state = checkout.subscription
        fetched_at = self.clock()
        event = state.to_event(
            event_id=f"reconcile:{session.provider}:checkout:{session.session_id}",
            occurred_at=fetched_at,
            event_type=EVENT_CHECKOUT_COMPLETED,
            checkout_session_id=session.session_id,
        )
        event = dataclasses.replace(
            event,
            account_id=session.account_id,
            plan_id=state.plan_id or session.plan_id,
        )
        result = self._ingestor(db).ingest(event)
        if not result.applied:
            self._resolve_checkout(db, session, "completed", now)
        logger.info(
            "Recovered checkout %s:%s for %s → %s%s",
            session.provider, session.session_id, session.account_id, result.outcome,
            f" ({result.reason})" if result.reason else "",
        )
        return result

    @staticmethod
    def _pending_checkouts(db: Session, created_before: datetime) -> List[CheckoutSession]:
        return db.execute(
            select(CheckoutSession)
            .where(CheckoutSession.status == "pending", CheckoutSession.created_at < created_before)
            .order_by(CheckoutSession.created_at.asc())
        ).scalars().all()

    @staticmethod
    def _resolve_checkout(db: Session, session: CheckoutSession, status: str, now: datetime) -> None:
        db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session.id, CheckoutSession.status == "pending")
            .values(status=status, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        interval = self.settings.RECONCILIATION_INTERVAL_SECONDS
        logger.info("Reconciliation scheduler started (every %ss)", interval)
        while self._running:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                # Keep the loop alive; the next sweep retries everything.
                logger.exception("Reconciliation sweep failed: %s", e)
            await asyncio.sleep(interval)

    def start(self) -> asyncio.Task:
        """Schedule the sweep loop on the running event loop."""
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.get_running_loop().create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reconciliation scheduler stopped")
