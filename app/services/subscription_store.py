"""
SubscriptionStore — the only writer of the ``subscriptions`` table.

Every mutation is a compare-and-swap on ``version``:

    record = store.get(account_id)
    store.upsert(account_id, mutation, expected_version=record.version)

A lost race raises VersionConflict; callers re-read and retry through
``run_with_retry`` (bounded, exponential backoff). ``upsert`` only flushes;
the caller owns the transaction so that related rows (the idempotency
ledger) commit or roll back together with the subscription change.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select, update, or_, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import (
    SubscriptionNotFound, TransientFailure, ValidationError, VersionConflict,
)
from app.core.timeutils import add_months, parse_iso, utcnow
from app.models import Subscription, SubscriptionAudit, SUBSCRIPTION_STATUSES
from app.services.plan_catalog import DEFAULT_PLAN_ID

logger = logging.getLogger(__name__)

T = TypeVar("T")

AMBIGUOUS_STATUSES = ("incomplete", "past_due", "unpaid")


@dataclass(frozen=True)
class ProviderRef:
    provider: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionRecord:
    """Detached, immutable snapshot of a Subscription row."""
    account_id: str
    plan_id: str
    status: str
    provider_ref: Optional[ProviderRef]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    trial_end: Optional[datetime]
    cancel_at_period_end: bool
    version: int
    generation: int
    event_cursors: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def trial_expired(self, now: datetime) -> bool:
        return self.status == "trialing" and self.trial_end is not None and now >= self.trial_end

    def last_event_at(self, provider: str) -> Optional[datetime]:
        return parse_iso((self.event_cursors or {}).get(provider))

    def to_dict(self) -> dict:
        ref = self.provider_ref
        return {
            "account_id": self.account_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "provider": ref.provider if ref else None,
            "provider_customer_id": ref.customer_id if ref else None,
            "provider_subscription_id": ref.subscription_id if ref else None,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "version": self.version,
            "generation": self.generation,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class SubscriptionMutation:
    """Field changes for one upsert. ``None`` leaves a field untouched."""
    plan_id: Optional[str] = None
    status: Optional[str] = None
    provider_ref: Optional[ProviderRef] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    clear_trial: bool = False
    cancel_at_period_end: Optional[bool] = None
    event_provider: Optional[str] = None
    event_occurred_at: Optional[datetime] = None
    new_generation: bool = False
    source: Optional[str] = None


def _to_record(row: Subscription) -> SubscriptionRecord:
    ref = None
    if row.provider:
        ref = ProviderRef(
            provider=row.provider,
            customer_id=row.provider_customer_id,
            subscription_id=row.provider_subscription_id,
        )
    return SubscriptionRecord(
        account_id=row.account_id,
        plan_id=row.plan_id,
        status=row.status,
        provider_ref=ref,
        period_start=row.period_start,
        period_end=row.period_end,
        trial_end=row.trial_end,
        cancel_at_period_end=bool(row.cancel_at_period_end),
        version=row.version,
        generation=row.generation,
        event_cursors=dict(row.event_cursors or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SubscriptionStore:

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, account_id: str) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def find(self, account_id: str) -> Optional[SubscriptionRecord]:
        row = self._load(account_id)
        return _to_record(row) if row else None

    def get(self, account_id: str) -> SubscriptionRecord:
        record = self.find(account_id)
        if record is None:
            raise SubscriptionNotFound(account_id)
        return record

    def find_by_provider_ref(
        self,
        provider: str,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Optional[SubscriptionRecord]:
        """Resolve an account from provider ids (subscription id wins over customer id)."""
        for column, value in (
            (Subscription.provider_subscription_id, subscription_id),
            (Subscription.provider_customer_id, customer_id),
        ):
            if not value:
                continue
            row = self.db.execute(
                select(Subscription)
                .where(Subscription.provider == provider, column == value)
                .order_by(Subscription.updated_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if row:
                return _to_record(row)
        return None

    def list_reconciliation_candidates(self, stale_before: datetime) -> List[SubscriptionRecord]:
        """
        Subscriptions bound to a provider whose local state is suspect:
        an ambiguous status not refreshed since ``stale_before``, or a paid
        period that ended before ``stale_before`` without a renewal event.
        """
        stmt = select(Subscription).where(
            Subscription.provider.isnot(None),
            Subscription.provider_subscription_id.isnot(None),
            or_(
                and_(
                    Subscription.status.in_(AMBIGUOUS_STATUSES),
                    Subscription.updated_at < stale_before,
                ),
                and_(
                    Subscription.status.in_(("active", "trialing")),
                    Subscription.period_end.isnot(None),
                    Subscription.period_end < stale_before,
                ),
            ),
        ).order_by(Subscription.updated_at.asc())
        return [_to_record(row) for row in self.db.execute(stmt).scalars().all()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        account_id: str,
        mutation: SubscriptionMutation,
        expected_version: Optional[int],
        expected_generation: Optional[int] = None,
    ) -> SubscriptionRecord:
        """
        Create (``expected_version=None``) or compare-and-swap update the
        subscription. Raises VersionConflict when the row changed (or was
        created) concurrently, ValidationError when the result would break
        a record invariant.
        """
        now = self.clock()
        if expected_version is None:
            row = self._create(account_id, mutation, now)
        else:
            row = self._compare_and_swap(account_id, mutation, expected_version, expected_generation, now)

        record = _to_record(row)
        self._append_audit(record, mutation.source, now)
        return record

    def _create(self, account_id: str, mutation: SubscriptionMutation, now: datetime) -> Subscription:
        values = self._merged_values(None, mutation, now)
        if self._load(account_id) is not None:
            raise VersionConflict(account_id, None)
        row = Subscription(
            account_id=account_id,
            version=1,
            generation=1,
            created_at=now,
            **values,
        )
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError:
            raise VersionConflict(account_id, None)
        return row

    def _compare_and_swap(
        self,
        account_id: str,
        mutation: SubscriptionMutation,
        expected_version: int,
        expected_generation: Optional[int],
        now: datetime,
    ) -> Subscription:
        current = self._load(account_id)
        if current is None or current.version != expected_version or (
            expected_generation is not None and current.generation != expected_generation
        ):
            raise VersionConflict(account_id, expected_version)

        values = self._merged_values(_to_record(current), mutation, now)
        if mutation.new_generation:
            values["generation"] = current.generation + 1
            values["version"] = 1
        else:
            values["version"] = Subscription.version + 1

        conditions = [
            Subscription.account_id == account_id,
            Subscription.version == expected_version,
        ]
        if expected_generation is not None:
            conditions.append(Subscription.generation == expected_generation)

        result = self.db.execute(
            update(Subscription)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise VersionConflict(account_id, expected_version)

        return self._load(account_id)

    def _merged_values(
        self,
        current: Optional[SubscriptionRecord],
        mutation: SubscriptionMutation,
        now: datetime,
    ) -> Dict[str, Any]:
        def pick(new, old, default=None):
            if new is not None:
                return new
            return old if current is not None else default

        ref = mutation.provider_ref or (current.provider_ref if current else None)
        status = pick(mutation.status, current.status if current else None, "trialing")
        period_start = pick(mutation.period_start, current.period_start if current else None)
        period_end = pick(mutation.period_end, current.period_end if current else None)
        trial_end = None if mutation.clear_trial else pick(
            mutation.trial_end, current.trial_end if current else None
        )

        if status not in SUBSCRIPTION_STATUSES:
            raise ValidationError(f"Unknown subscription status '{status}'")
        if period_start and period_end and period_end <= period_start:
            raise ValidationError(
                f"period_end {period_end.isoformat()} must be after period_start {period_start.isoformat()}"
            )
        if status != "trialing" and (ref is None or not ref.provider):
            raise ValidationError(f"Status '{status}' requires a billing provider reference")

        if mutation.new_generation or current is None:
            cursors: Dict[str, str] = {}
        else:
            cursors = dict(current.event_cursors or {})
        if mutation.event_provider and mutation.event_occurred_at:
            cursors[mutation.event_provider] = mutation.event_occurred_at.isoformat()

        cancel_at_period_end = mutation.cancel_at_period_end
        if cancel_at_period_end is None:
            cancel_at_period_end = current.cancel_at_period_end if current and not mutation.new_generation else False

        return {
            "plan_id": pick(mutation.plan_id, current.plan_id if current else None, DEFAULT_PLAN_ID),
            "status": status,
            "provider": ref.provider if ref else None,
            "provider_customer_id": ref.customer_id if ref else None,
            "provider_subscription_id": ref.subscription_id if ref else None,
            "period_start": period_start,
            "period_end": period_end,
            "trial_end": trial_end,
            "cancel_at_period_end": cancel_at_period_end,
            "event_cursors": cursors,
            "updated_at": now,
        }

    def _append_audit(self, record: SubscriptionRecord, source: Optional[str], now: datetime) -> None:
        # Audit is bookkeeping; a failure here must not undo the state transition.
        try:
            with self.db.begin_nested():
                self.db.add(SubscriptionAudit(
                    account_id=record.account_id,
                    generation=record.generation,
                    version=record.version,
                    status=record.status,
                    plan_id=record.plan_id,
                    source=(source or "")[:120] or None,
                    occurred_at=now,
                ))
        except SQLAlchemyError as e:
            logger.warning(
                "Could not write subscription audit for %s v%s: %s",
                record.account_id, record.version, e,
            )

    def create_trial(self, account_id: str, trial_days: Optional[int] = None) -> SubscriptionRecord:
        """
        Implicit trial on the free plan, created on the first quota-consuming
        action. Safe under races: the loser returns the winner's record.
        """
        settings = get_settings()
        days = settings.TRIAL_DAYS if trial_days is None else trial_days
        now = self.clock()
        mutation = SubscriptionMutation(
            plan_id=DEFAULT_PLAN_ID,
            status="trialing",
            period_start=now,
            period_end=add_months(now, 1),
            trial_end=now + timedelta(days=days),
            source="trial",
        )
        try:
            record = self.upsert(account_id, mutation, expected_version=None)
            self.db.commit()
            logger.info("Created implicit trial subscription for account %s", account_id)
            return record
        except VersionConflict:
            self.db.rollback()
            return self.get(account_id)


def run_with_retry(
    db: Session,
    operation: Callable[[], T],
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation`` and re-run it after a VersionConflict, rolling the
    session back between attempts. Raises TransientFailure once the retry
    budget is spent.
    """
    settings = get_settings()
    retries = settings.CAS_MAX_RETRIES if max_retries is None else max_retries
    delay = settings.CAS_BACKOFF_BASE_SECONDS if base_delay is None else base_delay

    for attempt in range(retries + 1):
        try:
            return operation()
        except VersionConflict as e:
            db.rollback()
            if attempt >= retries:
                logger.error("Giving up after %d CAS retries: %s", retries, e)
                raise TransientFailure(str(e)) from e
            backoff = delay * (2 ** attempt)
            logger.info("CAS conflict (attempt %d/%d), retrying in %.3fs: %s",
                        attempt + 1, retries, backoff, e)
            sleep(backoff)
    raise TransientFailure("unreachable")
