# paygate/conftest.py
import os

# Must be set before paygate.core.config builds its settings
os.environ["ENV"] = "test"
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402

from paygate.core import database  # noqa: E402
from paygate.core.metrics import METRICS  # noqa: E402
from paygate.features.entitlements.store import EntitlementStore  # noqa: E402
from paygate.tests.fakes import FakeClock, FakeProvider  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Fresh schema for every test.

    SQLite in-memory with a single shared connection, so dropping the
    engine throws all data away.
    """
    database.init_engine(os.environ["TEST_DATABASE_URL"])
    database.create_all_tables()
    yield
    database.drop_all_tables()
    database.dispose_engine()


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def store():
    return EntitlementStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def client(provider):
    """TestClient with Stripe replaced by the in-memory provider."""
    from fastapi.testclient import TestClient

    from paygate.api.payments import require_provider
    from paygate.main import create_app

    app = create_app()
    app.dependency_overrides[require_provider] = lambda: provider
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
