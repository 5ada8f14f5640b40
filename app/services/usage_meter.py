"""
UsageMeter — per-account, per-metric counters scoped to a billing period.

Usage:
    decision = UsageMeter(db).check_and_increment(account_id, "conversations")
    if not decision.allowed:
        ...  # typed denial, nothing was counted

The gate is a single conditional UPDATE at the storage layer
(``used + n <= limit``), so concurrent callers can never jointly push a
counter past its limit. Counter limits are snapshots taken when the
period's row is created and are never rewritten afterwards.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.timeutils import add_months, utcnow
from app.models import UsageCounter
from app.services.notifier import Notifier, LoggingNotifier
from app.services.plan_catalog import UNLIMITED, Plan, get_plan, usage_percentage
from app.services.subscription_store import SubscriptionRecord, SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    used: int
    limit: int
    metric: str
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def resolve_period(subscription: SubscriptionRecord, now: datetime) -> Tuple[datetime, datetime]:
    """
    Billing window the counter for ``now`` belongs to.

    Provider-bound subscriptions keep their stored period until a provider
    event (or reconciliation) moves it, so a late renewal webhook never
    splits one period across two counters. Trials and provider-less
    accounts roll forward month by month from their period start.
    """
    start, end = subscription.period_start, subscription.period_end
    if start is None or end is None:
        month_start = datetime(now.year, now.month, 1)
        return month_start, add_months(month_start, 1)

    if now < end or subscription.provider_ref is not None:
        return start, end

    months = 0
    while True:
        months += 1
        window_start = add_months(start, months)
        window_end = add_months(start, months + 1)
        if window_start <= now < window_end:
            return window_start, window_end


class UsageMeter:

    def __init__(
        self,
        db: Session,
        store: Optional[SubscriptionStore] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.store = store or SubscriptionStore(db, clock=clock)
        self.notifier = notifier or LoggingNotifier()

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def _find_counter(self, account_id: str, metric: str, period_start: datetime) -> Optional[UsageCounter]:
        return self.db.execute(
            select(UsageCounter)
            .where(
                UsageCounter.account_id == account_id,
                UsageCounter.metric == metric,
                UsageCounter.period_start == period_start,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _get_or_create_counter(
        self, account_id: str, metric: str, period_start: datetime, plan: Plan
    ) -> UsageCounter:
        counter = self._find_counter(account_id, metric, period_start)
        if counter is not None:
            # Pre-opened by a plan change: the first use retires the older period.
            if self._has_live_before(account_id, metric, period_start):
                self._archive_previous(account_id, metric, period_start)
            return counter

        now = self.clock()
        counter = UsageCounter(
            account_id=account_id,
            metric=metric,
            period_start=period_start,
            used=0,
            limit=plan.limit_for(metric),
            version=1,
            archived=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(counter)
        try:
            self.db.commit()
        except IntegrityError:
            # Another worker opened the period first; use its row.
            self.db.rollback()
            counter = self._find_counter(account_id, metric, period_start)
            if counter is None:
                raise
            return counter

        self._archive_previous(account_id, metric, period_start)
        logger.info(
            "Opened %s counter for %s at %s (limit %s)",
            metric, account_id, period_start.isoformat(), counter.limit,
        )
        return counter

    def _has_live_before(self, account_id: str, metric: str, period_start: datetime) -> bool:
        return self.db.execute(
            select(UsageCounter.id).where(
                UsageCounter.account_id == account_id,
                UsageCounter.metric == metric,
                UsageCounter.period_start < period_start,
                UsageCounter.archived.is_(False),
            ).limit(1)
        ).first() is not None

    def _archive_previous(self, account_id: str, metric: str, period_start: datetime) -> None:
        try:
            self.db.execute(
                update(UsageCounter)
                .where(
                    UsageCounter.account_id == account_id,
                    UsageCounter.metric == metric,
                    UsageCounter.period_start < period_start,
                    UsageCounter.archived.is_(False),
                )
                .values(archived=True)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Could not archive old %s counters for %s: %s", metric, account_id, e)

    def open_period(self, account_id: str, period_start: datetime, plan: Plan,
                    metrics: Tuple[str, ...] = ("conversations",)) -> List[UsageCounter]:
        """
        Pre-create counters for a period boundary with ``plan``'s limits.
        Existing counters for that period are left untouched. Runs inside the
        caller's transaction (no commit).
        """
        opened = []
        for metric in metrics:
            if self._find_counter(account_id, metric, period_start) is not None:
                continue
            counter = UsageCounter(
                account_id=account_id,
                metric=metric,
                period_start=period_start,
                used=0,
                limit=plan.limit_for(metric),
                version=1,
                archived=False,
            )
            self.db.add(counter)
            opened.append(counter)
        if opened:
            self.db.flush()
        return opened

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def check_and_increment(
        self,
        account_id: str,
        metric: str,
        amount: int = 1,
        subscription: Optional[SubscriptionRecord] = None,
    ) -> UsageDecision:
        if amount <= 0:
            raise ValueError("amount must be positive")

        now = self.clock()
        if subscription is None:
            subscription = self.store.get(account_id)
        plan = get_plan(subscription.plan_id)

        period_start, _ = resolve_period(subscription, now)
        counter = self._get_or_create_counter(account_id, metric, period_start, plan)
        counter_id, limit = counter.id, counter.limit

        if subscription.trial_expired(now):
            return UsageDecision(False, counter.used, limit, metric, reason="trial_expired")

        if limit == UNLIMITED:
            return self._increment_unlimited(counter_id, account_id, metric, amount, now)

        row = self.db.execute(
            update(UsageCounter)
            .where(
                UsageCounter.id == counter_id,
                UsageCounter.archived.is_(False),
                UsageCounter.used + amount <= UsageCounter.limit,
            )
            .values(
                used=UsageCounter.used + amount,
                version=UsageCounter.version + 1,
                updated_at=now,
            )
            .returning(UsageCounter.used, UsageCounter.limit)
            .execution_options(synchronize_session=False)
        ).first()
        self.db.commit()

        if row is None:
            current = self._find_counter(account_id, metric, period_start)
            used = current.used if current is not None else 0
            logger.info("Quota denied for %s/%s: %s/%s", account_id, metric, used, limit)
            return UsageDecision(False, used, limit, metric, reason="limit_reached")

        used, limit = int(row[0]), int(row[1])
        self._maybe_notify(account_id, metric, used, limit, amount)
        return UsageDecision(True, used, limit, metric)

    def _increment_unlimited(
        self, counter_id: int, account_id: str, metric: str, amount: int, now: datetime
    ) -> UsageDecision:
        # Counting is for analytics only; an unlimited plan is never blocked by it.
        used = 0
        try:
            row = self.db.execute(
                update(UsageCounter)
                .where(UsageCounter.id == counter_id)
                .values(used=UsageCounter.used + amount, version=UsageCounter.version + 1, updated_at=now)
                .returning(UsageCounter.used)
                .execution_options(synchronize_session=False)
            ).first()
            self.db.commit()
            used = int(row[0]) if row else 0
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Unlimited usage tracking failed for %s/%s: %s", account_id, metric, e)
        return UsageDecision(True, used, UNLIMITED, metric)

    def _maybe_notify(self, account_id: str, metric: str, used: int, limit: int, amount: int) -> None:
        threshold = get_settings().USAGE_WARNING_PCT
        before = usage_percentage(used - amount, limit)
        after = usage_percentage(used, limit)
        for pct in (threshold, 100):
            if before < pct <= after:
                try:
                    self.notifier.usage_threshold(account_id, metric, used, limit, pct)
                except Exception as e:
                    logger.warning("Usage notifier failed for %s: %s", account_id, e)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def current_usage(self, account_id: str, metric: str,
                      subscription: SubscriptionRecord) -> Dict[str, object]:
        period_start, period_end = resolve_period(subscription, self.clock())
        counter = self._find_counter(account_id, metric, period_start)
        plan = get_plan(subscription.plan_id)
        used = counter.used if counter else 0
        limit = counter.limit if counter else plan.limit_for(metric)
        return {
            "metric": metric,
            "used": used,
            "limit": limit,
            "remaining": None if limit == UNLIMITED else max(limit - used, 0),
            "percentage": round(usage_percentage(used, limit), 1),
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        }

    def summary(self, account_id: str, subscription: SubscriptionRecord,
                metrics: Tuple[str, ...] = ("conversations",)) -> List[Dict[str, object]]:
        return [self.current_usage(account_id, metric, subscription) for metric in metrics]
