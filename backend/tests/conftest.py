import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from app.application.services import inbound_event_service, webhook_processing_service
from app.application.services.plan_catalog_service import seed_plan_catalog
from app.core.config import settings
from app.domain import models  # noqa: F401
from app.infrastructure.db.base import Base
from app.infrastructure.db.session import get_db
from app.infrastructure.observability import metrics
from main import app

SQLITE_FALLBACK_URL = f"sqlite:///{Path(__file__).with_name('.pipeline_test.db')}"
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", os.getenv("DATABASE_URL", "")) or SQLITE_FALLBACK_URL

TEST_SECRETS = {
    "hotmart_webhook_token": "hottok-test",
    "kiwify_webhook_secret": "kiwify-test-secret",
    "caktor_webhook_secret": "caktor-test-secret",
    "stripe_webhook_secret": "whsec_test",
    "generic_webhook_secret": "generic-test-secret",
    "admin_api_token": "admin-test-token",
}


def _create_test_engine(url: str):
    if make_url(url).get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    # pysqlite only emits BEGIN lazily; SAVEPOINT-based ledger inserts need an explicit one.
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="session")
def db_engine():
    engine = _create_test_engine(TEST_DATABASE_URL)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        pytest.skip(f"Database unavailable for integration tests: {exc}")

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def clean_tables(db_engine):
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def session_factory(db_engine, clean_tables):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_session):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def pipeline_settings(monkeypatch):
    for name, value in TEST_SECRETS.items():
        monkeypatch.setattr(settings, name, value)
    monkeypatch.setattr(settings, "webhook_allow_unverified", False)
    monkeypatch.setattr(settings, "billing_downgrade_on_revoke", True)
    monkeypatch.setattr(settings, "billing_free_plan_tier", "free")
    monkeypatch.setattr(settings, "outbound_auto_deactivate_after_failures", 0)
    monkeypatch.setattr(settings, "outbound_timeout_seconds", 2.0)
    return settings


@pytest.fixture(autouse=True)
def enqueued(monkeypatch):
    """Celery is not running in tests; enqueue helpers record what they would have sent."""
    calls = {"inbound": [], "domain_events": []}
    monkeypatch.setattr(
        inbound_event_service,
        "process_inbound_event_async",
        lambda event_id, countdown=None: calls["inbound"].append(event_id),
    )
    monkeypatch.setattr(
        webhook_processing_service,
        "fan_out_domain_event_async",
        lambda domain_event_id: calls["domain_events"].append(domain_event_id),
    )
    monkeypatch.setattr(metrics, "increment_background_counter", lambda metric_name, amount=1: False)
    return calls


@pytest.fixture
def plan_catalog(db_session):
    return seed_plan_catalog(db_session)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": TEST_SECRETS["admin_api_token"]}
