"""
Billing provider webhooks (no API key — verified by provider signature).

Every delivery is verified before anything else happens; unsigned or
malformed requests get a 400 and are never ingested. Once verified, the
event is normalized and ingested. The response tells the provider
whether to retry:

    200 — recorded (applied or ignored, duplicates included)
    400 — signature / payload rejected
    500 — persistence failure (provider retries)
    503 — CAS retries exhausted (provider retries)
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import TransientFailure, ValidationError
from app.core.limiter import limiter
from app.schemas.billing import WebhookResponse
from app.services.billing_events import BillingEventIngestor
from app.services.notifier import Notifier, get_notifier
from app.services.providers import ProviderRegistry, get_providers

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


async def _handle_delivery(
    provider: str,
    request: Request,
    db: Session,
    providers: ProviderRegistry,
    notifier: Notifier,
) -> WebhookResponse:
    adapter = providers.get(provider)
    payload = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    try:
        parsed = adapter.verify(payload, headers)
        event = adapter.normalize(parsed, delivery_id=headers.get("webhook-id"))
    except ValidationError as e:
        logger.warning("%s webhook rejected: %s", provider, e)
        raise HTTPException(status_code=400, detail=f"Webhook rejected: {e}")

    logger.info("%s webhook received: %s (%s)", provider, event.raw_type, event.event_id)

    ingestor = BillingEventIngestor(db, notifier=notifier)
    try:
        result = await run_in_threadpool(ingestor.ingest, event)
    except TransientFailure as e:
        logger.error("%s event %s not applied, provider will retry: %s", provider, event.event_id, e)
        raise HTTPException(status_code=503, detail="Temporarily unable to apply event, retry later")
    except ValidationError as e:
        logger.error("%s event %s rejected: %s", provider, event.event_id, e)
        raise HTTPException(status_code=400, detail=f"Webhook rejected: {e}")
    except SQLAlchemyError as e:
        logger.error("Error processing %s event %s: %s", provider, event.event_id, e)
        raise HTTPException(status_code=500, detail="Database error while applying event")

    return WebhookResponse(outcome=result.outcome, reason=result.reason, event_id=event.event_id)


@router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    include_in_schema=False,
)
@limiter.limit("120/minute")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    providers: ProviderRegistry = Depends(get_providers),
    notifier: Notifier = Depends(get_notifier),
):
    return await _handle_delivery("stripe", request, db, providers, notifier)


@router.post(
    "/polar",
    response_model=WebhookResponse,
    summary="Polar webhook endpoint",
    include_in_schema=False,
)
@limiter.limit("120/minute")
async def polar_webhook(
    request: Request,
    db: Session = Depends(get_db),
    providers: ProviderRegistry = Depends(get_providers),
    notifier: Notifier = Depends(get_notifier),
):
    return await _handle_delivery("polar", request, db, providers, notifier)
