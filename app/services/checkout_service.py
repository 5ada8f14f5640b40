import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import UnknownPlan, ValidationError
from app.core.timeutils import utcnow
from app.models import CheckoutSession
from app.services.plan_catalog import is_known_plan, is_paid_plan
from app.services.providers import ProviderRegistry
from app.services.providers.base import CheckoutResult
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def choose_provider(bound: Optional[str], requested: Optional[str]) -> str:
    """An account stays with the provider it is bound to; otherwise requested, then default."""
    return bound or requested or get_settings().DEFAULT_BILLING_PROVIDER


def create_checkout(
    db: Session,
    providers: ProviderRegistry,
    account_id: str,
    plan_id: str,
    success_url: str,
    cancel_url: Optional[str] = None,
    provider: Optional[str] = None,
) -> CheckoutResult:
    """
    Start a hosted checkout and remember it as a pending CheckoutSession,
    so reconciliation can recover the purchase if its webhook never arrives.

    Raises UnknownPlan, ValidationError or ProviderUnavailable.
    """
    if not is_known_plan(plan_id):
        raise UnknownPlan(plan_id)
    if not is_paid_plan(plan_id):
        raise ValidationError(f"Plan '{plan_id}' does not require a checkout")

    record = SubscriptionStore(db).find(account_id)
    bound = record.provider_ref if record and not record.is_cancelled else None
    if bound and provider and provider != bound.provider:
        raise ValidationError(
            f"Account is billed through {bound.provider}; cannot check out with {provider}"
        )

    adapter = providers.get(choose_provider(bound.provider if bound else None, provider))
    customer_id = None
    if record and record.provider_ref and record.provider_ref.provider == adapter.name:
        customer_id = record.provider_ref.customer_id

    result = adapter.create_checkout(
        account_id, plan_id, success_url, cancel_url=cancel_url, customer_id=customer_id
    )

    db.add(CheckoutSession(
        provider=result.provider,
        session_id=result.session_id,
        account_id=account_id,
        plan_id=plan_id,
        status="pending",
        checkout_url=result.url,
        created_at=utcnow(),
    ))
    db.commit()
    logger.info("Checkout %s:%s started for %s (%s)", result.provider, result.session_id, account_id, plan_id)
    return result
