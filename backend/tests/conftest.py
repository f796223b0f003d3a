import os
import tempfile
from pathlib import Path

# Settings are read at import time, so the environment must be ready first.
_DB_DIR = Path(tempfile.mkdtemp(prefix="arflow-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'test.db'}"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key-0123456789"
os.environ["APP_URL"] = "http://testserver"
os.environ["ENV"] = "dev"

import email_validator
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from arflow.database import create_db_and_tables, drop_db_and_tables, engine
from arflow.main import app
from arflow.routes import public

# Test addresses live under the reserved .test domain.
email_validator.TEST_ENVIRONMENT = True


@pytest.fixture(autouse=True)
def reset_db():
    """Give every test an empty schema and a fresh rate limiter."""
    drop_db_and_tables()
    create_db_and_tables()
    public.limiter.reset()
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def register(client):
    def _register(email="owner@acme.test", organization_name="Acme Corp", password="supersecret"):
        r = client.post('/api/auth/register', json={
            'email': email, 'password': password, 'organization_name': organization_name,
            'first_name': 'Olive', 'last_name': 'Owner',
        })
        assert r.status_code == 201, r.text
        return {'Authorization': f"Bearer {r.json()['access_token']}"}
    return _register


@pytest.fixture
def admin(register):
    return register()


@pytest.fixture
def customer(client, admin):
    r = client.post('/api/customers', json={'company_name': 'Globex', 'email': 'ap@globex.test'}, headers=admin)
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture
def make_invoice(client, admin, customer):
    def _make(amount=100.0, customer_id=None, headers=None, **extra):
        body = {
            'customer_id': customer_id or customer['id'],
            'document_date': '2026-01-15',
            'line_items': [{'description': 'Consulting', 'quantity': 1, 'unit_price': amount}],
        }
        body.update(extra)
        r = client.post('/api/documents', json=body, headers=headers or admin)
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
def stripe_enabled(client, admin):
    """Configure, enable and activate Stripe for the admin's organization."""
    r = client.put('/api/gateways/stripe', json={
        'secret_key': 'sk_test_123', 'publishable_key': 'pk_test_123', 'webhook_secret': 'whsec_abc',
        'require_cvv': False,
    }, headers=admin)
    assert r.status_code == 200, r.text
    assert client.put('/api/gateways/stripe/toggle', json={'enabled': True}, headers=admin).status_code == 200
    r = client.put('/api/gateways/active', json={'provider': 'STRIPE'}, headers=admin)
    assert r.status_code == 200, r.text
    return admin
