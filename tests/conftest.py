import hashlib
import hmac
import json
import time

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from passlib.context import CryptContext

import database
import main
import payments

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient()["storefront_test"]
    database.ensure_indexes(mock_db)
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    return mock_db


@pytest.fixture
def client(mongo, monkeypatch):
    # cheap hashes keep the suite fast
    monkeypatch.setattr(main, "pwd_context", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return TestClient(main.app)


def register(client, email="alice@example.com", name="Alice", password="s3cret-pass"):
    res = client.post("/api/register", json={"name": name, "email": email, "password": password})
    assert res.status_code == 200, res.text
    body = res.json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['access_token']}"}


@pytest.fixture
def user(client):
    return register(client)


@pytest.fixture
def admin(client, mongo):
    user_id, headers = register(client, email="admin@example.com", name="Admin")
    mongo["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"role": "admin"}})
    return user_id, headers


def signed_webhook(payload: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def completed_event(session_id, user_id, amount_total=None, **session):
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": "paid",
        "metadata": {"user_id": user_id},
        "client_reference_id": user_id,
        **session,
    }
    if amount_total is not None:
        obj["amount_total"] = amount_total
    return {
        "id": f"evt_{session_id}",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": obj},
    }
