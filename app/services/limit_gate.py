"""
LimitGate — the single entry point chat traffic and dashboard actions use
to ask "may this account do one more X?".

    decision = LimitGate(db).can_proceed(account_id, "conversation")
    if not decision:
        return 429, decision.reason

Conversations are metered (the check also counts the conversation);
websites and chatbots are compared against the live plan limit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.core.errors import QuotaExceeded, ValidationError
from app.core.timeutils import utcnow
from app.services.notifier import Notifier
from app.services.plan_catalog import (
    METRIC_CHATBOTS, METRIC_CONVERSATIONS, METRIC_WEBSITES, UNLIMITED, get_plan, is_limit_reached,
)
from app.services.resource_repository import ResourceRepository
from app.services.subscription_store import SubscriptionRecord, SubscriptionStore
from app.services.usage_meter import UsageMeter

logger = logging.getLogger(__name__)

RESOURCE_CONVERSATION = "conversation"
RESOURCE_WEBSITE = "website"
RESOURCE_CHATBOT = "chatbot"

RESOURCE_METRICS = {
    RESOURCE_CONVERSATION: METRIC_CONVERSATIONS,
    RESOURCE_WEBSITE: METRIC_WEBSITES,
    RESOURCE_CHATBOT: METRIC_CHATBOTS,
}

INACTIVE_STATUSES = ("cancelled", "unpaid")


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    resource: str
    reason: Optional[str] = None
    used: Optional[int] = None
    limit: Optional[int] = None

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "resource": self.resource,
            "reason": self.reason,
            "used": self.used,
            "limit": self.limit,
        }


class LimitGate:

    def __init__(
        self,
        db: Session,
        store: Optional[SubscriptionStore] = None,
        meter: Optional[UsageMeter] = None,
        resources: Optional[ResourceRepository] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.clock = clock
        self.store = store or SubscriptionStore(db, clock=clock)
        self.meter = meter or UsageMeter(db, store=self.store, notifier=notifier, clock=clock)
        self.resources = resources or ResourceRepository(db)

    def subscription_for(self, account_id: str) -> SubscriptionRecord:
        """The account's subscription, starting the implicit trial on first use."""
        return self.store.find(account_id) or self.store.create_trial(account_id)

    def can_proceed(self, account_id: str, resource: str) -> GateDecision:
        metric = RESOURCE_METRICS.get(resource)
        if metric is None:
            raise ValidationError(f"Unknown resource kind '{resource}'")

        record = self.subscription_for(account_id)
        if record.status in INACTIVE_STATUSES:
            logger.info("Denied %s for %s: subscription %s", resource, account_id, record.status)
            return GateDecision(False, resource, reason="subscription_inactive")
        if record.trial_expired(self.clock()):
            return GateDecision(False, resource, reason="trial_expired")

        if resource == RESOURCE_CONVERSATION:
            usage = self.meter.check_and_increment(account_id, metric, subscription=record)
            return GateDecision(usage.allowed, resource, usage.reason, usage.used, usage.limit)

        limit = get_plan(record.plan_id).limit_for(metric)
        used = self.resources.count(account_id, resource)
        if limit != UNLIMITED and is_limit_reached(used, limit):
            return GateDecision(False, resource, reason="limit_reached", used=used, limit=limit)
        return GateDecision(True, resource, used=used, limit=limit)

    def require(self, account_id: str, resource: str) -> GateDecision:
        decision = self.can_proceed(account_id, resource)
        if not decision:
            raise QuotaExceeded(resource, decision.reason, decision.used, decision.limit)
        return decision
