from bson import ObjectId

SNEAKER = {
    "name": "Court Sneaker",
    "description": "Low-top leather sneaker",
    "price": 79.5,
    "category": "Shoes",
    "images": ["https://img.example.com/sneaker.jpg"],
    "sizes": ["41", "42"],
    "colors": ["White"],
}


def test_admin_creates_and_reads_product(client, admin):
    _, headers = admin
    res = client.post("/api/products", json=SNEAKER, headers=headers)
    assert res.status_code == 200
    created = res.json()
    assert created["name"] == "Court Sneaker"
    assert created["in_stock"] is True

    res = client.get(f"/api/products/{created['id']}")
    assert res.status_code == 200
    assert res.json()["sizes"] == ["41", "42"]


def test_non_admin_cannot_create_product(client, user, mongo):
    _, headers = user
    res = client.post("/api/products", json=SNEAKER, headers=headers)
    assert res.status_code == 403
    assert mongo["product"].count_documents({}) == 0


def test_list_and_search_products(client, admin):
    _, headers = admin
    client.post("/api/products", json=SNEAKER, headers=headers)
    client.post("/api/products", json={**SNEAKER, "name": "Linen Shirt", "category": "Shirts", "description": "Airy"}, headers=headers)

    assert len(client.get("/api/products").json()) == 2
    assert [p["name"] for p in client.get("/api/products", params={"category": "Shirts"}).json()] == ["Linen Shirt"]
    assert [p["name"] for p in client.get("/api/products/search", params={"q": "sneak"}).json()] == ["Court Sneaker"]


def test_update_product(client, admin):
    _, headers = admin
    product_id = client.post("/api/products", json=SNEAKER, headers=headers).json()["id"]
    res = client.put(f"/api/products/{product_id}", json={"price": 65.0, "in_stock": False}, headers=headers)
    assert res.status_code == 200
    assert res.json()["price"] == 65.0
    assert res.json()["in_stock"] is False
    assert res.json()["name"] == "Court Sneaker"


def test_update_product_without_fields(client, admin):
    _, headers = admin
    product_id = client.post("/api/products", json=SNEAKER, headers=headers).json()["id"]
    assert client.put(f"/api/products/{product_id}", json={}, headers=headers).status_code == 400


def test_get_product_bad_and_missing_id(client):
    assert client.get("/api/products/not-an-id").status_code == 400
    assert client.get(f"/api/products/{ObjectId()}").status_code == 404


def test_delete_missing_product_is_404(client, admin):
    _, headers = admin
    res = client.delete(f"/api/products/{ObjectId()}", headers=headers)
    assert res.status_code == 404


def test_delete_product(client, admin, mongo):
    _, headers = admin
    product_id = client.post("/api/products", json=SNEAKER, headers=headers).json()["id"]
    assert client.delete(f"/api/products/{product_id}", headers=headers).status_code == 200
    assert mongo["product"].count_documents({}) == 0


def test_categories(client):
    names = [c["name"] for c in client.get("/api/categories").json()]
    assert names == ["Shoes", "Perfumes", "Trousers", "Shirts", "T-Shirts", "Accessories"]
