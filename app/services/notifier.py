"""
Billing alert hooks.

Components receive a Notifier at construction time; the process-wide
instance comes from ``get_notifier()``. Delivery channels
(email, chat) live outside this service, so the default implementation
only logs.
"""
import logging
from functools import lru_cache
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


class Notifier:
    """Interface — override the hooks you care about."""

    def usage_threshold(self, account_id: str, metric: str, used: int, limit: int, pct: int) -> None:
        pass

    def payment_failed(self, account_id: str, provider: str, plan_id: Optional[str]) -> None:
        pass

    def subscription_changed(self, account_id: str, old_status: Optional[str], new_status: str) -> None:
        pass


class LoggingNotifier(Notifier):

    def usage_threshold(self, account_id, metric, used, limit, pct):
        logger.warning("Account %s reached %d%% of its %s quota (%d/%d)", account_id, pct, metric, used, limit)

    def payment_failed(self, account_id, provider, plan_id):
        logger.warning("Payment failed for account %s (%s, plan=%s)", account_id, provider, plan_id)

    def subscription_changed(self, account_id, old_status, new_status):
        logger.info("Subscription %s: %s -> %s", account_id, old_status, new_status)


class RecordingNotifier(Notifier):
    """Keeps every notification in memory (used by tests and local debugging)."""

    def __init__(self):
        self.events: List[Tuple] = []

    def usage_threshold(self, account_id, metric, used, limit, pct):
        self.events.append(("usage_threshold", account_id, metric, used, limit, pct))

    def payment_failed(self, account_id, provider, plan_id):
        self.events.append(("payment_failed", account_id, provider, plan_id))

    def subscription_changed(self, account_id, old_status, new_status):
        self.events.append(("subscription_changed", account_id, old_status, new_status))


@lru_cache()
def get_notifier() -> Notifier:
    """Process-wide notifier (FastAPI dependency)."""
    return LoggingNotifier()
