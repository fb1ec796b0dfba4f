import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from otp import OtpStore
from schemas import utcnow


class FakeMailer:
    def __init__(self):
        self.sent = []

    def send(self, template, variables):
        self.sent.append((template, variables))


SHIPPING = {
    "full_name": "Jane Buyer",
    "address": "12 Market Street",
    "city": "Springfield",
    "postal_code": "12345",
    "country": "US",
    "phone": "+1 555 123 4567",
}


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["storefront_test"]
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(db, mailer):
    main.app.state.otp_store = OtpStore()
    main.app.dependency_overrides[main.get_mailer] = lambda: mailer
    for limiter in (main.send_otp_limiter, main.verify_otp_limiter, main.login_limiter):
        limiter.reset()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email="buyer@example.com", role="user", password=None, name="Jane Buyer"):
        doc = {
            "name": name,
            "email": email,
            "password_hash": main.get_password_hash(password) if password else "not-a-hash",
            "role": role,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc
    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = main.create_access_token({"sub": str(user["_id"])})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_product(db):
    def _make(name="Oak Table", price=150.0, stock=5, is_active=True, **extra):
        doc = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "category": "Home & Garden",
            "sku": f"SKU-{name.replace(' ', '-').upper()}",
            "images": [{"url": f"https://img.example.com/{name.replace(' ', '_')}.jpg", "alt": name}],
            "stock": stock,
            "is_active": is_active,
            "rating": 0,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        doc.update(extra)
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc
    return _make
