# markethub/conftest.py
import os
import shutil
import tempfile

import pytest

# Configure the environment before any markethub module reads settings
_TEST_DB_DIR = tempfile.mkdtemp(prefix="markethub-tests-")
os.environ["ENV"] = "test"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ["USAGE_POLICY"] = "per_category_monthly"
for _var in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "AI_GATEWAY_API_KEY", "SUPABASE_JWT_SECRET", "OTEL_ENABLED"):
    os.environ.pop(_var, None)


@pytest.fixture(scope="session", autouse=True)
def test_database():
    """Create the SQLite test database once per session and remove it afterwards."""
    from markethub.core.database import create_all_tables, dispose_engine

    create_all_tables()
    yield
    dispose_engine()
    shutil.rmtree(_TEST_DB_DIR, ignore_errors=True)


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop and recreate all tables so every test starts empty."""
    from markethub.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from markethub.main import app

    return TestClient(app)


@pytest.fixture
def billing_provider(monkeypatch):
    """Enable billing with an in-memory provider shared by resolver and webhook intake."""
    from markethub.core.config import settings
    from markethub.tests.mocks import FakeBillingProvider

    provider = FakeBillingProvider()
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_PRODUCT_PRO", "prod_pro")
    monkeypatch.setattr(settings, "STRIPE_PRODUCT_MAX", "prod_max")
    monkeypatch.setattr("markethub.features.billing.service.get_provider", lambda: provider)
    monkeypatch.setattr("markethub.features.entitlements.service.get_provider", lambda: provider)
    return provider
