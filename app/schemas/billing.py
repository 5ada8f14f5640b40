"""
Schemas for the billing, usage and webhook endpoints.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class PlanResponse(BaseModel):
    id: str
    name: str
    price_cents: int
    monthly_conversation_limit: int = Field(..., description="-1 = unlimited")
    website_limit: int
    chatbot_limit: int
    features: List[str] = []


class SubscriptionResponse(BaseModel):
    account_id: str
    plan_id: str
    status: str
    provider: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    version: int
    generation: int
    plan: PlanResponse


class CheckoutRequest(BaseModel):
    """Body for POST /billing/checkout"""
    plan_id: str = Field(..., description="Plan id (starter|professional|business)")
    provider: Optional[Literal["stripe", "polar"]] = Field(
        None, description="Billing provider (defaults to the bound one, then DEFAULT_BILLING_PROVIDER)"
    )
    success_url: str = Field(..., description="Redirect URL on successful payment")
    cancel_url: Optional[str] = Field(None, description="Redirect URL when payment is cancelled")

    class Config:
        json_schema_extra = {
            "example": {
                "plan_id": "starter",
                "provider": "stripe",
                "success_url": "https://app.example.com/billing?success=1",
                "cancel_url": "https://app.example.com/billing",
            }
        }


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str
    provider: str


class PortalRequest(BaseModel):
    """Body for POST /billing/portal"""
    return_url: str = Field(..., description="Where the provider portal sends the customer back")


class PortalResponse(BaseModel):
    portal_url: str
    provider: str


class UsageMetric(BaseModel):
    metric: str
    used: int
    limit: int
    remaining: Optional[int] = None
    percentage: float
    period_start: Optional[str] = None
    period_end: Optional[str] = None


class UsageResponse(BaseModel):
    account_id: str
    plan_id: str
    status: str
    usage: List[UsageMetric]


class UsageCheckRequest(BaseModel):
    """Body for POST /billing/usage/check"""
    resource: Literal["conversation", "website", "chatbot"]


class UsageCheckResponse(BaseModel):
    allowed: bool
    resource: str
    reason: Optional[str] = None
    used: Optional[int] = None
    limit: Optional[int] = None


class SyncResponse(BaseModel):
    checked: int
    applied: int
    ignored: int
    subscription: Optional[SubscriptionResponse] = None


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str
    reason: Optional[str] = None
    event_id: str
