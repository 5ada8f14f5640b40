"""
Billing endpoints — plans, the caller's subscription, checkout, the
provider portal, manual sync and usage / limit checks.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.database import get_db, handle_database_errors
from app.core.errors import ProviderUnavailable, UnknownPlan, ValidationError
from app.core.limiter import limiter
from app.middleware.auth import ApiKeyData, get_api_key
from app.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    PortalRequest,
    PortalResponse,
    SyncResponse,
    UsageCheckRequest,
    UsageCheckResponse,
    UsageResponse,
)
from app.services.checkout_service import create_checkout
from app.services.limit_gate import LimitGate
from app.services.notifier import Notifier, get_notifier
from app.services.plan_catalog import (
    METRIC_CHATBOTS, METRIC_WEBSITES, UNLIMITED, get_plan, list_plans, usage_percentage,
)
from app.services.providers import ProviderRegistry, get_providers
from app.services.reconciliation import ReconciliationScheduler
from app.services.resource_repository import ResourceRepository
from app.services.subscription_store import SubscriptionRecord, SubscriptionStore
from app.services.usage_meter import UsageMeter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def _subscription_payload(record: SubscriptionRecord) -> dict:
    ref = record.provider_ref
    return {
        "account_id": record.account_id,
        "plan_id": record.plan_id,
        "status": record.status,
        "provider": ref.provider if ref else None,
        "provider_customer_id": ref.customer_id if ref else None,
        "provider_subscription_id": ref.subscription_id if ref else None,
        "period_start": record.period_start,
        "period_end": record.period_end,
        "trial_end": record.trial_end,
        "cancel_at_period_end": record.cancel_at_period_end,
        "version": record.version,
        "generation": record.generation,
        "plan": get_plan(record.plan_id).to_dict(),
    }


# ---------------------------------------------------------------------------
# GET /billing/plans  (public)
# ---------------------------------------------------------------------------

@router.get("/plans", summary="Available plans")
@limiter.limit("60/minute")
def get_plans(request: Request):
    return {"plans": [plan.to_dict() for plan in list_plans()]}


# ---------------------------------------------------------------------------
# GET /billing/subscription
# ---------------------------------------------------------------------------

@router.get(
    "/subscription",
    summary="Caller's subscription",
    description="Returns the account's subscription; the first call starts the free trial.",
)
@limiter.limit("60/minute")
@handle_database_errors
def get_subscription(
    request: Request,
    db: Session = Depends(get_db),
    api_key: ApiKeyData = Depends(get_api_key),
):
    record = LimitGate(db).subscription_for(api_key.account_id)
    return _subscription_payload(record)


# ---------------------------------------------------------------------------
# POST /billing/checkout
# ---------------------------------------------------------------------------

@router.post("/checkout", response_model=CheckoutResponse, summary="Start a hosted checkout")
@limiter.limit("10/minute")
@handle_database_errors
def post_checkout(
    request: Request,
    body: CheckoutRequest,
    db: Session = Depends(get_db),
    api_key: ApiKeyData = Depends(get_api_key),
    providers: ProviderRegistry = Depends(get_providers),
):
    try:
        result = create_checkout(
            db,
            providers,
            account_id=api_key.account_id,
            plan_id=body.plan_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
            provider=body.provider,
        )
    except (UnknownPlan, ValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderUnavailable as e:
        logger.error("Checkout failed for %s: %s", api_key.account_id, e)
        raise HTTPException(status_code=502, detail=str(e))

    return CheckoutResponse(checkout_url=result.url, session_id=result.session_id, provider=result.provider)


# ---------------------------------------------------------------------------
# POST /billing/portal
# ---------------------------------------------------------------------------

@router.post("/portal", response_model=PortalResponse, summary="Open the provider's self-service portal")
@limiter.limit("10/minute")
@handle_database_errors
def post_portal(
    request: Request,
    body: PortalRequest,
    db: Session = Depends(get_db),
    api_key: ApiKeyData = Depends(get_api_key),
    providers: ProviderRegistry = Depends(get_providers),
):
    record = SubscriptionStore(db).find(api_key.account_id)
    ref = record.provider_ref if record else None
    if ref is None or not ref.customer_id:
        raise HTTPException(status_code=400, detail="Account has no billing provider customer")

    try:
        url = providers.get(ref.provider).create_portal_session(ref.customer_id, body.return_url)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderUnavailable as e:
        logger.error("Portal session failed for %s: %s", api_key.account_id, e)
        raise HTTPException(status_code=502, detail=str(e))

    return PortalResponse(portal_url=url, provider=ref.provider)


# ---------------------------------------------------------------------------
# POST /billing/sync
# ---------------------------------------------------------------------------

@router.post(
    "/sync",
    response_model=SyncResponse,
    summary="Reconcile the caller's subscription with the billing provider now",
)
@limiter.limit("5/minute")
@handle_database_errors
def post_sync(
    request: Request,
    db: Session = Depends(get_db),
    api_key: ApiKeyData = Depends(get_api_key),
    providers: ProviderRegistry = Depends(get_providers),
    notifier: Notifier = Depends(get_notifier),
):
    scheduler = ReconciliationScheduler(providers=providers, notifier=notifier)
    try:
        report = scheduler.reconcile_account(api_key.account_id, db=db)
    except ProviderUnavailable as e:
        raise HTTPException(status_code=502, detail=str(e))

    record = SubscriptionStore(db).find(api_key.account_id)
    return SyncResponse(
        checked=report.checked,
        applied=report.applied,
        ignored=report.ignored,
        subscription=_subscription_payload(record) if record else None,
    )


# ---------------------------------------------------------------------------
# GET /billing/usage
# ---------------------------------------------------------------------------

@router.get("/usage", response_model=UsageResponse, summary="Usage and limits for the current period")
@limiter.limit("60/minute")
@handle_database_errors
def get_usage(
    request: Request,
    db: Session = Depends(get_db),
    api_key: ApiKeyData = Depends(get_api_key),
):
    record = LimitGate(db).subscription_for(api_key.account_id)
    plan = get_plan(record.plan_id)
    usage = UsageMeter(db).summary(api_key.account_id, record)

    counts = ResourceRepository(db).counts(api_key.account_id)
    for kind, metric in (("website", METRIC_WEBSITES), ("chatbot", METRIC_CHATBOTS)):
        limit = plan.limit_for(metric)
        used = counts[kind]
        usage.append({
            "metric": metric,
            "used": used,
            "limit": limit,
            "remaining": None if limit == UNLIMITED else max(limit - used, 0),
            "percentage": round(usage_percentage(used, limit), 1),
        })

    return UsageResponse(
        account_id=record.account_id,
        plan_id=record.plan_id,
        status=record.status,
        usage=usage,
    )


# ---------------------------------------------------------------------------
# POST /billing/usage/check
# ---------------------------------------------------------------------------

@router.post(
    "/usage/check",
    response_model=UsageCheckResponse,
    summary="Check (and for conversations, count) one unit of a resource",
    description="200 when allowed; 429 with a typed quota_exceeded body otherwise.",
)
@limiter.limit("600/minute")
@handle_database_errors
def post_usage_check(
    request: Request,
    body: UsageCheckRequest,
    db: Session = Depends(get_db),
    api_key: ApiKeyData = Depends(get_api_key),
    notifier: Notifier = Depends(get_notifier),
):
    decision = LimitGate(db, notifier=notifier).require(api_key.account_id, body.resource)
    return UsageCheckResponse(**decision.to_dict())
