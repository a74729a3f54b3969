from types import SimpleNamespace

import pytest
import stripe

from test_cart import ITEMS


@pytest.fixture
def stripe_sessions(monkeypatch):
    created = []

    def fake_create(**params):
        created.append(params)
        return SimpleNamespace(id=f"cs_test_{len(created)}", url="https://checkout.stripe.com/c/pay/cs_test")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    return created


def test_checkout_builds_one_line_item_per_cart_item(client, user, stripe_sessions):
    user_id, headers = user
    res = client.post("/api/checkout", json={"items": ITEMS}, headers=headers)
    assert res.status_code == 200
    assert res.json() == {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test"}

    params = stripe_sessions[0]
    line_items = params["line_items"]
    assert len(line_items) == len(ITEMS)
    charged = sum(li["price_data"]["unit_amount"] * li["quantity"] for li in line_items)
    subtotal = sum(i["price"] * i["quantity"] for i in ITEMS)
    assert charged == round(subtotal * 100)
    assert params["metadata"] == {"user_id": user_id}
    assert params["mode"] == "payment"
    assert line_items[0]["price_data"]["product_data"]["metadata"] == {
        "product_id": ITEMS[0]["product_id"], "size": "42", "color": "White",
    }


def test_checkout_user_comes_from_credential(client, user, stripe_sessions):
    user_id, headers = user
    client.post("/api/checkout", json={"items": ITEMS, "userId": "someone-else"}, headers=headers)
    assert stripe_sessions[0]["client_reference_id"] == user_id


def test_checkout_falls_back_to_stored_cart(client, user, stripe_sessions):
    _, headers = user
    client.post("/api/cart", json={"items": ITEMS[:1]}, headers=headers)
    res = client.post("/api/checkout", json={}, headers=headers)
    assert res.status_code == 200
    assert len(stripe_sessions[0]["line_items"]) == 1


def test_checkout_empty_cart(client, user, stripe_sessions):
    _, headers = user
    assert client.post("/api/checkout", json={"items": []}, headers=headers).status_code == 400
    assert client.post("/api/checkout", json={}, headers=headers).status_code == 400
    assert stripe_sessions == []


def test_checkout_does_not_touch_cart_or_orders(client, user, mongo, stripe_sessions):
    _, headers = user
    client.post("/api/checkout", json={"items": ITEMS}, headers=headers)
    assert mongo["cart"].count_documents({}) == 0
    assert mongo["order"].count_documents({}) == 0


def test_checkout_provider_failure(client, user, monkeypatch):
    _, headers = user

    def boom(**params):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", boom)
    res = client.post("/api/checkout", json={"items": ITEMS}, headers=headers)
    assert res.status_code == 502
    assert "network down" not in res.text


def test_checkout_requires_auth(client, stripe_sessions):
    client.cookies.clear()
    assert client.post("/api/checkout", json={"items": ITEMS}).status_code == 401


def test_checkout_accepts_client_cart_shape(client, user, stripe_sessions):
    _, headers = user
    items = [{"id": "tmp-1", "productId": "64b000000000000000000001", "name": "Court Sneaker",
              "price": 79.5, "image": "", "quantity": 1}]
    assert client.post("/api/checkout", json={"items": items}, headers=headers).status_code == 200
    metadata = stripe_sessions[0]["line_items"][0]["price_data"]["product_data"]["metadata"]
    assert metadata["product_id"] == "64b000000000000000000001"
