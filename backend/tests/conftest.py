"""Shared pytest fixtures for test suite"""
import base64
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["INTERNAL_API_TOKEN"] = "test-internal-token"
os.environ["PROCESSOR_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["PROCESSOR_DATALINK_USER"] = "datalink"
os.environ["PROCESSOR_DATALINK_PASSWORD"] = "datalink-password"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

from paycore.main import app
from paycore.core.config import settings
from paycore.core.security import SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_signature
from paycore.db import redis as redis_module
from paycore.db.session import get_db
from paycore.models import Base
from paycore.services.event_router import ingest_event
from paycore.services.normalizer import normalize_event
from paycore.services.subscription_service import create_subscription
from paycore.services.transaction_service import initiate_charge


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
def threaded_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed SQLite for tests that write from several threads.

    Every transaction starts with BEGIN IMMEDIATE, so writers queue on the
    database lock instead of failing a deferred lock upgrade.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def mock_redis():
    """Async Redis client backed by fakeredis, one server per test"""
    server = FakeServer()

    def fake_client():
        return fake_aioredis.FakeRedis(server=server, decode_responses=True)

    with patch.object(redis_module, 'get_async_redis_client', side_effect=fake_client):
        yield server


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry instrumentation and the real database in tests
        with patch('paycore.main.init_db'):
            with patch('paycore.core.otel.initialize_otel', return_value=False):
                with patch('paycore.core.otel.setup_otel_logging', return_value=False):
                    with patch('paycore.core.otel.instrument_sqlalchemy'):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture
def internal_headers():
    return {"X-Internal-Token": settings.INTERNAL_API_TOKEN}


@pytest.fixture
def signed_headers():
    """Headers a correctly configured processor would send for a body"""
    def _sign(body: bytes, timestamp: int = None, content_type: str = "application/json"):
        ts = str(timestamp if timestamp is not None else int(time.time()))
        return {
            SIGNATURE_HEADER: compute_signature(settings.PROCESSOR_WEBHOOK_SECRET, ts, body),
            TIMESTAMP_HEADER: ts,
            "Content-Type": content_type,
        }
    return _sign


@pytest.fixture
def basic_auth_header():
    token = base64.b64encode(
        f"{settings.PROCESSOR_DATALINK_USER}:{settings.PROCESSOR_DATALINK_PASSWORD}".encode()
    ).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def make_event():
    """Build a NormalizedEvent from wire-style fields"""
    def _make(event_type: str, event_id: str = None, **fields):
        payload = {"eventType": event_type}
        if event_id is not None:
            payload["eventId"] = event_id
        payload.update(fields)
        return normalize_event(payload)
    return _make


@pytest.fixture
def make_charge(db_session):
    """Pending transaction created through the charge-initiation contract"""
    def _make(amount="10.00", kind="tip", creator_id="creator-1", payer_id="payer-1", **kwargs):
        return initiate_charge(
            db_session,
            payer_id=payer_id,
            creator_id=creator_id,
            amount=amount,
            kind=kind,
            **kwargs
        )
    return _make


@pytest.fixture
def complete_charge(db_session, make_event):
    """Apply a sale success for a pending transaction"""
    def _complete(transaction, event_id: str = None, processor_transaction_id: str = None):
        processor_id = processor_transaction_id or f"proc-{transaction.id}"
        event = make_event(
            "NewSaleSuccess",
            event_id or f"evt-sale-{transaction.id}",
            transactionId=processor_id,
            accountingAmount=str(transaction.amount),
            customFields={"transactionId": str(transaction.id)},
        )
        outcome = ingest_event(db_session, event)
        db_session.refresh(transaction)
        return outcome
    return _complete


@pytest.fixture
def make_subscription(db_session):
    def _make(processor_subscription_id="sub-1", payer_id="payer-1", creator_id="creator-1",
              amount="9.99", tier="gold", **kwargs):
        return create_subscription(
            db_session,
            payer_id=payer_id,
            creator_id=creator_id,
            tier=tier,
            amount=amount,
            processor_subscription_id=processor_subscription_id,
            **kwargs
        )
    return _make


@pytest.fixture
def override_settings(monkeypatch):
    """Temporarily change settings attributes for one test"""
    def _override(**values):
        for name, value in values.items():
            monkeypatch.setattr(settings, name, value)
    return _override