# resumesaas/conftest.py
import os

import pytest

# Must be set before resumesaas.core.config builds its Settings instance
os.environ.setdefault("ENV", "test")

from fastapi.testclient import TestClient

from resumesaas.core import database
from resumesaas.core.config import settings

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="function", autouse=True)
def test_settings(monkeypatch):
    """Every test starts from the same settings, whatever .env contains."""
    overrides = {
        "ENV": "test",
        "APP_URL": "http://localhost:3000",
        "ALLOW_HEADER_AUTH": True,
        "CLERK_SECRET_KEY": None,
        "CLERK_ISSUER": None,
        "CLERK_AUDIENCE": None,
        "GROQ_API_KEY": None,
        "STRIPE_SECRET_KEY": None,
        "STRIPE_WEBHOOK_SECRET": None,
        "STRIPE_PRICE_BASIC": "price_basic",
        "STRIPE_PRICE_STANDARD": "price_standard",
        "STRIPE_PRICE_PRO": "price_pro",
        "CREDIT_MAX_RETRIES": 3,
        "CREDIT_BYPASS_ENABLED": False,
        "ADMIN_API_KEY": None,
    }
    for key, value in overrides.items():
        monkeypatch.setattr(settings, key, value)
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    return settings


@pytest.fixture(scope="function", autouse=True)
def ledger_db(tmp_path):
    """
    Fresh SQLite file database per test.

    A file (not :memory:) so threads in concurrency tests share one store.
    """
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    database.init_engine(url)
    database.create_all_tables()
    yield url
    database.dispose_engine()


@pytest.fixture
def billing_settings(monkeypatch):
    """Stripe configured with test keys (no network calls are made)."""
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return settings


@pytest.fixture
def fake_groq():
    from resumesaas.tests.mocks import FakeGroq
    return FakeGroq()


@pytest.fixture
def client(fake_groq):
    from resumesaas.main import app
    from resumesaas.features.generation.service import TextGenerator, get_text_generator

    app.dependency_overrides[get_text_generator] = lambda: TextGenerator(client=fake_groq)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
