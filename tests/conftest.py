import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.database import get_db
from app.core.errors import ProviderUnavailable
from app.core.limiter import limiter
from app.core.timeutils import add_months, utcnow
from app.middleware.auth import ApiKeyData, get_api_key
from app.models import GlobalApiKey, Base
from app.services.notifier import RecordingNotifier, get_notifier
from app.services.providers import ProviderRegistry, get_providers
from app.services.providers.base import (
    BillingEvent, BillingProviderAdapter, CheckoutResult, CheckoutState,
)
from app.services.subscription_store import ProviderRef

TEST_ACCOUNT = "acct_test"

# Setup in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeAdapter(BillingProviderAdapter):
    """In-memory provider: canned provider-of-record state, no network."""

    def __init__(self, name):
        self.name = name
        self.subscriptions = {}
        self.checkouts = {}
        self.created = []
        self.unavailable = False

    def verify(self, payload, headers):
        raise NotImplementedError

    def normalize(self, payload, delivery_id=None):
        raise NotImplementedError

    def fetch_subscription(self, ref):
        if self.unavailable:
            raise ProviderUnavailable(self.name, "timeout")
        return self.subscriptions[ref.subscription_id]

    def fetch_checkout(self, session_id):
        if self.unavailable:
            raise ProviderUnavailable(self.name, "timeout")
        return self.checkouts.get(session_id, CheckoutState(session_id=session_id, status="open"))

    def create_checkout(self, account_id, plan_id, success_url, cancel_url=None, customer_id=None):
        if self.unavailable:
            raise ProviderUnavailable(self.name, "timeout")
        session_id = f"cs_{len(self.created) + 1}"
        self.created.append((account_id, plan_id, customer_id))
        return CheckoutResult(provider=self.name, session_id=session_id, url=f"https://pay.test/{session_id}")

    def create_portal_session(self, customer_id, return_url):
        if self.unavailable:
            raise ProviderUnavailable(self.name, "timeout")
        return f"https://portal.test/{self.name}/{customer_id}"


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_providers():
    return ProviderRegistry([FakeAdapter("stripe"), FakeAdapter("polar")])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_event():
    """Factory for normalized billing events with sensible defaults."""
    counter = {"n": 0}

    def _make(type="subscription_updated", provider="stripe", account_id=TEST_ACCOUNT,
              occurred_at=None, event_id=None, subscription_id="sub_1", customer_id="cus_1", **fields):
        counter["n"] += 1
        occurred_at = occurred_at or utcnow()
        fields.setdefault("status", "active")
        if type in ("checkout_completed", "subscription_updated"):
            fields.setdefault("period_start", occurred_at)
            fields.setdefault("period_end", add_months(occurred_at, 1))
        return BillingEvent(
            event_id=event_id or f"evt_{counter['n']}",
            provider=provider,
            type=type,
            occurred_at=occurred_at,
            account_id=account_id,
            provider_ref=ProviderRef(provider, customer_id, subscription_id),
            raw_type=type,
            **fields,
        )

    return _make


@pytest.fixture(scope="function")
def client(db_session, fake_providers, notifier):
    """Create a test client with overridden dependencies."""

    # Override get_db
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    # Create a mock API key in the DB
    _, mock_key = GlobalApiKey.issue(TEST_ACCOUNT, "Test Key")
    db_session.add(mock_key)
    db_session.commit()
    db_session.refresh(mock_key)

    # Override get_api_key
    def override_get_api_key():
        return ApiKeyData(
            id=mock_key.id,
            account_id=mock_key.account_id,
            name=mock_key.name,
            prefix=mock_key.prefix,
            is_active=True,
            created_at=mock_key.created_at,
            last_used_at=None,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_api_key] = override_get_api_key
    app.dependency_overrides[get_providers] = lambda: fake_providers
    app.dependency_overrides[get_notifier] = lambda: notifier
    limiter.enabled = False

    with TestClient(app) as c:
        yield c

    limiter.enabled = True
    app.dependency_overrides = {}
