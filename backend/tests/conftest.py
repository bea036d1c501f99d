import os
import tempfile
import uuid
from pathlib import Path

import pytest

# Settings are read at import time, so the test database and bootstrap admin
# must be configured before `commission_tracker.main` is imported.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="commission-tracker-tests-"))
os.environ["ENV"] = "dev"
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ["ADMIN_EMAIL"] = "admin@example.com"
os.environ["ADMIN_PASSWORD"] = "admin-pass"

from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session  # noqa: E402

from commission_tracker import services  # noqa: E402
from commission_tracker.database import engine  # noqa: E402
from commission_tracker.main import app  # noqa: E402

ADMIN_EMAIL = os.environ["ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]


def unique(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def login(email: str, password: str) -> dict:
    """Log in with a throwaway client and return bearer headers.

    A fresh client keeps session cookies from leaking between users that
    share the module-level clients.
    """
    r = TestClient(app).post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


def create_user(role: str = "viewer", password: str = "secret") -> dict:
    """Create a user directly through the service layer."""
    email = f"{unique(role)}@example.com"
    with Session(engine) as session:
        user = services.UserService(session).create(
            username=email.split("@")[0],
            full_name=f"Test {role}",
            email=email,
            password=password,
            role=role,
        )
        return {"id": user.id, "email": email, "password": password, "role": role}


@pytest.fixture(scope="session")
def admin_headers():
    return login(ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def make_user():
    """Factory: `make_user("viewer")` -> user dict with bearer `headers`."""
    def _make(role: str = "viewer"):
        user = create_user(role)
        user["headers"] = login(user["email"], user["password"])
        return user
    return _make


@pytest.fixture
def reference_data(admin_headers):
    """A client, product (10% commission, 2% fee), broker and sales lead."""
    c = TestClient(app)
    client = c.post("/clients", json={"name": unique("Client"), "industry": "Retail", "region": "North"},
                    headers=admin_headers)
    product = c.post("/products", json={"name": unique("Product"), "category": "Health", "insurer_name": "Acme",
                                        "base_commission_pct": 10, "cdp_fee_pct": 2}, headers=admin_headers)
    broker = c.post("/brokers", json={"name": unique("Broker"), "contact_email": "b@example.com",
                                      "partner_type": "Corporate"}, headers=admin_headers)
    lead = c.post("/sales-leads", json={"name": unique("Lead"), "email": "l@example.com", "phone": "555"},
                  headers=admin_headers)
    for r in (client, product, broker, lead):
        assert r.status_code == 201, r.text
    return {
        "client": client.json(),
        "product": product.json(),
        "broker": broker.json(),
        "sales_lead": lead.json(),
    }
