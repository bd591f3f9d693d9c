"""
Pytest configuration for the API tests.

The app reads its settings from the environment at import time, so the
test database and providers are configured before `dumbrent` is imported.
"""

import datetime as dt
import hashlib
import hmac
import json
import os
import tempfile
import time

import pytest

_TMP_DIR = tempfile.mkdtemp(prefix="dumbrent-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["EMAIL_BACKEND"] = "console"
os.environ["REQUIRE_EMAIL_VERIFICATION"] = "1"
os.environ["UPLOADS_DIR"] = os.path.join(_TMP_DIR, "uploads")
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["ADMIN_EMAIL"] = "admin@dumbrent.test"
os.environ["ADMIN_PASSWORD"] = "admin-pass"
for _name in (
    "STRIPE_SECRET_KEY",
    "STRIPE_PRICE_MONTHLY",
    "STRIPE_PRICE_QUARTERLY",
    "OPENAI_API_KEY",
    "GOOGLE_MAPS_API_KEY",
    "CLOUDINARY_CLOUD_NAME",
    "CLOUDINARY_API_KEY",
    "CLOUDINARY_API_SECRET",
):
    os.environ.pop(_name, None)

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import select  # noqa: E402

from dumbrent.db import ENGINE, session_scope  # noqa: E402
from dumbrent.main import app  # noqa: E402
from dumbrent.models import AuthCode, Base, Listing, ListingSubscription, User  # noqa: E402
from dumbrent.rate_limit import limiter  # noqa: E402
from dumbrent.security import hash_password  # noqa: E402
from dumbrent.stripe_billing import compute_signature  # noqa: E402


VALID_LISTING = {
    "title": "Sunny 2BR near the park",
    "description": "Bright corner unit with lots of light.",
    "price": 3200,
    "deposit": 3200,
    "bedrooms": 2,
    "bathrooms": 1.5,
    "square_feet": 900,
    "address": "123 Test St",
    "zip_code": "11102",
    "neighborhood_id": "astoria",
    "borough_id": "3",
    "key_feature": "Private balcony",
    "amenities": ["Dishwasher", "Elevator"],
    "available_date": "2030-01-01",
}


@pytest.fixture
def client():
    """Fresh schema per test; startup seeds the catalog and the admin."""
    Base.metadata.drop_all(ENGINE)
    Base.metadata.create_all(ENGINE)
    limiter.reset()
    with TestClient(app) as c:
        yield c


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def make_user(email: str, *, role: str = "tenant", password: str = "secret123", verified: bool = True, name: str = "") -> str:
    """Insert a user directly and return its id."""
    with session_scope() as db:
        u = User(
            email=email,
            display_name=name or email.split("@")[0],
            role=role,
            password_hash=hash_password(password),
            email_verified_at=dt.datetime.now(dt.timezone.utc) if verified else None,
        )
        db.add(u)
        db.flush()
        return u.id


def login(client: TestClient, email: str, password: str = "secret123") -> str:
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()["access_token"]


def latest_code(email: str, purpose: str) -> str:
    with session_scope() as db:
        rec = db.execute(
            select(AuthCode).where((AuthCode.email == email) & (AuthCode.purpose == purpose)).order_by(AuthCode.id.desc())
        ).scalars().first()
        return rec.code if rec else ""


def activate_listing(listing_id: str, *, days: int = 30, status: str = "published") -> None:
    """Mark a listing as paid for, the way a confirmed checkout would."""
    today = dt.date.today()
    with session_scope() as db:
        l = db.get(Listing, listing_id)
        l.status = status
        db.add(
            ListingSubscription(
                listing_id=l.id,
                owner_id=l.landlord_id,
                plan_type="monthly",
                start_date=today - dt.timedelta(days=1),
                end_date=today + dt.timedelta(days=days),
                amount_paid=100,
                status="active",
                billing_cycle=30,
            )
        )


def signed_webhook(event: dict, secret: str = "whsec_test") -> tuple[bytes, dict]:
    payload = json.dumps(event).encode("utf-8")
    ts = int(time.time())
    sig = compute_signature(payload=payload, timestamp=ts, secret=secret)
    return payload, {"stripe-signature": f"t={ts},v1={sig}", "content-type": "application/json"}


@pytest.fixture
def owner(client):
    make_user("owner@example.com", role="listing_owner", name="Olivia Owner")
    return login(client, "owner@example.com")


@pytest.fixture
def tenant(client):
    make_user("tenant@example.com", role="tenant", name="Tom Tenant")
    return login(client, "tenant@example.com")


@pytest.fixture
def admin(client):
    return login(client, "admin@dumbrent.test", "admin-pass")


@pytest.fixture
def listing_id(client, owner):
    r = client.post("/listings", json=VALID_LISTING, headers=auth_header(owner))
    assert r.status_code == 200, r.text
    return r.json()["id"]


@pytest.fixture
def live_listing(listing_id):
    activate_listing(listing_id)
    return listing_id


class FakeResponse:
    """Minimal stand-in for `requests.Response`."""

    def __init__(self, status_code: int = 200, payload: dict | None = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload or {})

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload
