"""
Billing error taxonomy.

ValidationError     — malformed or unsigned webhook; rejected, never ingested.
DuplicateEvent      — (provider, event_id) already recorded; not an error for the provider.
VersionConflict     — CAS lost on Subscription.version; retried transparently.
TransientFailure    — VersionConflict retries exhausted; the caller should retry later.
QuotaExceeded       — expected business outcome, returned to clients as a typed denial.
ProviderUnavailable — network error or timeout talking to a billing provider.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for every error raised by the billing core."""


class ValidationError(BillingError):
    pass


class DuplicateEvent(BillingError):
    def __init__(self, provider: str, event_id: str):
        super().__init__(f"Event {provider}:{event_id} already processed")
        self.provider = provider
        self.event_id = event_id


class VersionConflict(BillingError):
    def __init__(self, account_id: str, expected_version: Optional[int]):
        super().__init__(
            f"Subscription {account_id} changed concurrently (expected version {expected_version})"
        )
        self.account_id = account_id
        self.expected_version = expected_version


class TransientFailure(BillingError):
    pass


class SubscriptionNotFound(BillingError):
    def __init__(self, account_id: str):
        super().__init__(f"No subscription for account {account_id}")
        self.account_id = account_id


class UnknownPlan(BillingError):
    def __init__(self, plan_id: str):
        super().__init__(f"Unknown plan '{plan_id}'")
        self.plan_id = plan_id


class QuotaExceeded(BillingError):
    def __init__(self, resource: str, reason: str, used: Optional[int] = None,
                 limit: Optional[int] = None):
        super().__init__(f"Quota exceeded for {resource}: {reason}")
        self.resource = resource
        self.reason = reason
        self.used = used
        self.limit = limit


class ProviderUnavailable(BillingError):
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider} unavailable: {message}")
        self.provider = provider
