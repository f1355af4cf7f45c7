import os

os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)
os.environ["ENVIRONMENT"] = "development"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
import main
from ratelimit import MemoryRateLimitStore


@pytest.fixture
def mongo(monkeypatch):
    test_db = mongomock.MongoClient()["store_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    return test_db


@pytest.fixture
def client(mongo):
    main.app.state.rate_limiter = MemoryRateLimitStore(window_seconds=900, max_requests=10000)
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user(client, mongo):
    counter = {"n": 0}

    def _make(name="Maria Silva", email=None, password="Secret123", role="user"):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        res = client.post("/api/users/register", json={"name": name, "email": email, "password": password})
        assert res.status_code == 201, res.text
        data = res.json()["data"]
        if role != "user":
            mongo["user"].update_one({"_id": ObjectId(data["user"]["id"])}, {"$set": {"role": role}})
            data["user"]["role"] = role
        return data["user"], {"Authorization": f"Bearer {data['token']}"}

    return _make


@pytest.fixture
def product_payload():
    def _payload(**overrides):
        data = {
            "name": "Wireless Mouse",
            "description": "Ergonomic wireless mouse with USB receiver",
            "price": 25.5,
            "category": "electronics",
            "stock": 10,
            "images": ["https://example.com/mouse.png"],
            "brand": "Logi",
            "tags": ["  Peripherals "],
        }
        data.update(overrides)
        return data

    return _payload
