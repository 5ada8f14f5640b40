from .billing import router as billing_router
from .webhooks import router as webhooks_router
