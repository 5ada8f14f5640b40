import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.routers import billing_router, webhooks_router
from app.core import database
from app.core.config import get_settings
from app.core.errors import QuotaExceeded
from app.core.limiter import limiter
from app.services.notifier import get_notifier
from app.services.reconciliation import ReconciliationScheduler

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.init_db()

    scheduler = None
    if settings.RECONCILIATION_ENABLED and database.SessionLocal is not None:
        scheduler = ReconciliationScheduler(notifier=get_notifier())
        scheduler.start()
    app.state.reconciliation = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()


app = FastAPI(
    title=settings.APP_NAME,
    description="Subscription, usage metering and billing reconciliation for the chatbot platform.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(QuotaExceeded)
async def quota_exceeded_handler(request: Request, exc: QuotaExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "error": "quota_exceeded",
            "resource": exc.resource,
            "reason": exc.reason,
            "used": exc.used,
            "limit": exc.limit,
        },
    )


# CORS configuration
origins = settings.CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(webhooks_router)


@app.get("/")
@limiter.limit("5/minute")
def read_root(request: Request):
    return {"message": f"{settings.APP_NAME} is running."}


@app.get("/health")
def health():
    return {"status": "ok"}
