from .billing import (
    PlanResponse,
    SubscriptionResponse,
    CheckoutRequest,
    CheckoutResponse,
    PortalRequest,
    PortalResponse,
    UsageMetric,
    UsageResponse,
    UsageCheckRequest,
    UsageCheckResponse,
    SyncResponse,
    WebhookResponse,
)
