"""Shared pytest fixtures for test suite"""
import os
import sys
from pathlib import Path
from typing import Generator, List
from unittest.mock import Mock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time; keep the app off Postgres and give it a webhook secret
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")

from app.main import app
from app.api.dependencies import get_notifier, get_processor_config
from app.core.config import NotifyTarget, ProcessorConfig
from app.db.session import get_db
from app.models import Base
from app.services.notifier import CrmNotifier


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

CRM_URL = "https://crm.example.test/api/payments"
CRM_SECRET = "crm_test_secret"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def processor_config() -> ProcessorConfig:
    """Processor config with a CRM target for resinaro and no backoff delay"""
    return ProcessorConfig(
        supported_currencies=frozenset({"gbp", "eur", "usd"}),
        notify_targets={"resinaro": NotifyTarget(url=CRM_URL, secret=CRM_SECRET)},
        notify_attempts=3,
        notify_timeout_seconds=1.0,
        notify_backoff_seconds=0.0,
        claim_ttl_seconds=900,
    )


@pytest.fixture(scope="function")
def crm_requests() -> List[httpx.Request]:
    """Requests captured by the mocked CRM transport"""
    return []


@pytest.fixture(scope="function")
def crm_status() -> dict:
    """Mutable status code the mocked CRM answers with"""
    return {"code": 200}


@pytest.fixture(scope="function")
def notifier(processor_config, crm_requests, crm_status) -> CrmNotifier:
    """CRM notifier backed by httpx.MockTransport (no network)"""
    def handler(request: httpx.Request) -> httpx.Response:
        crm_requests.append(request)
        return httpx.Response(crm_status["code"], json={"ok": crm_status["code"] < 400})

    return CrmNotifier(processor_config, transport=httpx.MockTransport(handler), sleep=Mock())


@pytest.fixture(scope="function")
def client(db_session: Session, processor_config, notifier) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked CRM"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor_config] = lambda: processor_config
    app.dependency_overrides[get_notifier] = lambda: notifier

    try:
        # Tables come from db_session; skip startup create_all against the app engine
        with patch("app.main.init_db"):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function", autouse=True)
def mock_stripe():
    """Automatically mock Stripe for all tests so nothing reaches the real API"""
    with patch("app.services.stripe_client.stripe") as mock_stripe_module:
        mock_stripe_module.PaymentIntent.create = Mock(return_value={
            "id": "pi_test123",
            "client_secret": "pi_test123_secret_abc",
        })
        mock_stripe_module.Webhook.construct_event = Mock(return_value={
            "id": "evt_test123",
            "type": "customer.created",
            "livemode": False,
            "created": 1700000000,
            "data": {"object": {}}
        })
        yield mock_stripe_module


def make_payment_intent_event(
    event_id: str = "evt_1",
    payment_intent_id: str = "pi_1",
    amount=4000,
    currency: str = "gbp",
    metadata: dict = None,
    **extra,
) -> dict:
    """Build a verified payment_intent.succeeded event as Stripe would send it"""
    obj = {
        "id": payment_intent_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount,
        "currency": currency,
        "customer": "cus_test123",
        "receipt_email": "buyer@example.com",
        "metadata": metadata if metadata is not None else {},
    }
    obj.update(extra)
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "livemode": False,
        "created": 1700000000,
        "data": {"object": obj},
    }


@pytest.fixture(scope="function")
def pi_event():
    """Factory for payment_intent.succeeded events"""
    return make_payment_intent_event
