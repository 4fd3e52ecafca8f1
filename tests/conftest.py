"""Pytest fixtures and factories.

All model modules must be imported before Base.metadata.create_all() so every
table (and the ledger triggers) is registered.
"""
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configuration is read at import time; set it before importing the package.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./test_revenue_kernel.db")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("OPERATOR_TOKEN", "test-operator-token")
os.environ.setdefault("USE_REDIS", "false")
os.environ.setdefault("MOCK_FAILURE_RATE", "0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'revenue_kernel' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from revenue_kernel.main import app  # type: ignore
from revenue_kernel.database import Base  # type: ignore
from revenue_kernel.api import deps  # type: ignore
from revenue_kernel.models.db import (  # noqa: E402
    BillableEvent,
    LedgerEntry,
    OfflineConversionJob,
)
from revenue_kernel.models.db.enums import BillingState, QueueStatus  # noqa: E402
from revenue_kernel.integrations import (  # noqa: E402
    MockConversionAdapter,
    ProviderRegistry,
    StaticCredentialStore,
)
from revenue_kernel.jobs.cron_lock import InMemoryCronLock  # noqa: E402
from revenue_kernel.jobs.semaphore import InMemorySemaphore  # noqa: E402
from revenue_kernel.jobs.tasks import TaskContext  # noqa: E402
from revenue_kernel.jobs.upload_runner import UploadRunner  # noqa: E402
from revenue_kernel.services.conversion_queue import enqueue_conversion  # noqa: E402
from revenue_kernel.services.usage_counter import InMemoryUsageCounter  # noqa: E402
from revenue_kernel.utils.circuit_breaker import CircuitBreaker  # noqa: E402
from revenue_kernel.utils.metrics import PipelineMetrics  # noqa: E402
from revenue_kernel.utils.time import year_month  # noqa: E402

# File-based SQLite so runner threads and the test thread share one database
SQLALCHEMY_TEST_URL = os.environ["DATABASE_URL"]
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False} if SQLALCHEMY_TEST_URL.startswith("sqlite") else {},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Fixed clock for deterministic eligibility and backoff assertions
NOW = datetime(2025, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_revenue_kernel.db")
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _fresh_tables(create_test_db):  # type: ignore[unused-argument]
    """Recreate the schema per test.

    Tables are dropped rather than emptied: the ledger rejects DELETE.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


app.dependency_overrides[deps.get_db] = _override_get_db


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def metrics():
    return PipelineMetrics()


@pytest.fixture()
def semaphore():
    return InMemorySemaphore()


@pytest.fixture()
def cron_lock():
    return InMemoryCronLock()


@pytest.fixture()
def usage_counter():
    return InMemoryUsageCounter()


@pytest.fixture()
def adapter():
    return MockConversionAdapter(failure_rate=0.0, seed=7)


@pytest.fixture()
def credential_store():
    return StaticCredentialStore({("*", "mock"): {"developer_token": "test"}})


@pytest.fixture()
def breaker():
    return CircuitBreaker(failure_threshold=5, cooldown_seconds=300, probe_count=5)


@pytest.fixture()
def runner(adapter, credential_store, semaphore, metrics, breaker):
    return UploadRunner(
        session_factory=TestingSessionLocal,
        registry=ProviderRegistry([adapter]),
        credential_store=credential_store,
        semaphore=semaphore,
        metrics=metrics,
        breaker=breaker,
    )


@pytest.fixture()
def task_context(runner, cron_lock, usage_counter, metrics):
    return TaskContext(
        session_factory=TestingSessionLocal,
        runner=runner,
        cron_lock=cron_lock,
        counter=usage_counter,
        metrics=metrics,
    )


@pytest.fixture()
def client(task_context):
    app.state.task_context = task_context  # type: ignore[attr-defined]
    yield TestClient(app)
    app.state.task_context = None  # type: ignore[attr-defined]


@pytest.fixture()
def cron_headers():
    return {"Authorization": f"Bearer {os.environ['CRON_SECRET']}"}


@pytest.fixture()
def operator_headers():
    return {"Authorization": f"Bearer {os.environ['OPERATOR_TOKEN']}"}


# ---------- Data factory helpers ----------

@pytest.fixture()
def row_factory(db_session):
    """Enqueue a row, then force any columns a test needs (status, attempts...)."""
    def _create(
        *,
        site_id: str = "site-a",
        provider_key: str = "mock",
        amount_minor: int = 1999,
        gclid: str | None = "gclid-abc",
        occurred_at: datetime | None = None,
        **overrides,
    ) -> OfflineConversionJob:
        row, _ = enqueue_conversion(
            db_session,
            site_id=site_id,
            provider_key=provider_key,
            source_event_id=f"evt-{uuid.uuid4().hex[:12]}",
            occurred_at=occurred_at or NOW - timedelta(hours=1),
            amount_minor=amount_minor,
            currency="USD",
            click_ids={"gclid": gclid},
        )
        if overrides:
            for key, value in overrides.items():
                setattr(row, key, value)
            db_session.commit()
        db_session.refresh(row)
        return row
    return _create


@pytest.fixture()
def billable_event_factory(db_session):
    def _create(
        site_id: str = "site-a",
        *,
        period: str | None = None,
        count: int = 1,
        billing_state: BillingState = BillingState.INCLUDED,
        billable: bool = True,
        created_at: datetime | None = None,
    ) -> None:
        ym = period or year_month(NOW)
        for _ in range(count):
            db_session.add(BillableEvent(
                site_id=site_id,
                idempotency_key=uuid.uuid4().hex,
                year_month=ym,
                billable=billable,
                billing_state=billing_state,
                created_at=created_at or NOW,
            ))
        db_session.commit()
    return _create


@pytest.fixture()
def ledger_factory(db_session):
    def _create(site_id: str = "site-a", value_minor: int = 1000, recorded_at: datetime | None = None) -> LedgerEntry:
        entry = LedgerEntry(site_id=site_id, value_minor=value_minor, currency="USD", recorded_at=recorded_at or NOW)
        db_session.add(entry)
        db_session.commit()
        db_session.refresh(entry)
        return entry
    return _create


def load_row(session, row_id: str) -> OfflineConversionJob:
    session.expire_all()
    return session.get(OfflineConversionJob, row_id)


__all__ = ["NOW", "TestingSessionLocal", "load_row", "QueueStatus"]
