from bson import ObjectId


def create_product(client, headers, payload):
    res = client.post("/api/products", headers=headers, json=payload)
    assert res.status_code == 201, res.text
    return res.json()["data"]


def test_create_requires_authentication(client, product_payload):
    res = client.post("/api/products", json=product_payload())
    assert res.status_code == 401


def test_create_product(client, make_user, product_payload):
    user, headers = make_user(name="Owner", email="owner@example.com")
    product = create_product(client, headers, product_payload(category="Electronics"))

    assert product["category"] == "electronics"
    assert product["tags"] == ["peripherals"]
    assert product["is_active"] is True
    assert product["ratings"] == {"average": 0.0, "count": 0}
    assert product["in_stock"] is True
    assert product["discounted_price"] == 25.5
    assert product["created_by"] == {"id": user["id"], "name": "Owner", "email": "owner@example.com"}
    assert "created_at" in product and "updated_at" in product


def test_create_reports_every_violation(client, mongo, make_user):
    _, headers = make_user()
    res = client.post(
        "/api/products",
        headers=headers,
        json={"name": "A", "description": "x", "price": -1, "category": "toys", "stock": -5},
    )
    assert res.status_code == 400
    fields = {e.split(":")[0] for e in res.json()["errors"]}
    assert fields == {"name", "description", "price", "category", "stock"}
    assert mongo["product"].count_documents({}) == 0


def test_derived_fields(client, make_user, product_payload):
    _, headers = make_user()
    bulk = create_product(client, headers, product_payload(price=100, stock=60))
    empty = create_product(client, headers, product_payload(price=100, stock=0))
    assert bulk["discounted_price"] == 90.0
    assert bulk["in_stock"] is True
    assert empty["discounted_price"] == 100
    assert empty["in_stock"] is False


def test_list_filters_and_paginates(client, make_user, product_payload):
    _, headers = make_user()
    for i in range(8):
        create_product(client, headers, product_payload(name=f"Gadget {i}", price=10 + i))
    create_product(client, headers, product_payload(name="Expensive", price=99))
    create_product(client, headers, product_payload(name="Novel", category="books", price=15))

    res = client.get("/api/products?minPrice=10&maxPrice=20&category=electronics&page=2&limit=5")
    assert res.status_code == 200
    body = res.json()
    assert body["pagination"] == {"page": 2, "limit": 5, "total": 8, "pages": 2}
    assert len(body["data"]) == 3
    assert all(p["category"] == "electronics" and 10 <= p["price"] <= 20 for p in body["data"])
    # newest first: page two holds the three oldest
    assert [p["name"] for p in body["data"]] == ["Gadget 2", "Gadget 1", "Gadget 0"]

    res = client.get("/api/products?page=5&limit=5")
    assert res.json()["data"] == []
    assert res.json()["pagination"]["total"] == 10


def test_list_search_is_case_insensitive(client, make_user, product_payload):
    _, headers = make_user()
    create_product(client, headers, product_payload(name="Trail Shoes", category="sports", description="Running shoes for rough trails"))
    create_product(client, headers, product_payload(name="Desk Lamp", category="home", description="LED lamp (adjustable arm)"))

    res = client.get("/api/products", params={"search": "TRAIL"})
    assert [p["name"] for p in res.json()["data"]] == ["Trail Shoes"]

    res = client.get("/api/products", params={"search": "(adjustable"})
    assert [p["name"] for p in res.json()["data"]] == ["Desk Lamp"]


def test_list_sorting(client, make_user, product_payload):
    _, headers = make_user()
    for price in (30, 10, 20):
        create_product(client, headers, product_payload(name=f"Item {price}", price=price))

    res = client.get("/api/products?sortBy=price&sortOrder=asc")
    assert [p["price"] for p in res.json()["data"]] == [10, 20, 30]

    res = client.get("/api/products?sortBy=price")
    assert [p["price"] for p in res.json()["data"]] == [30, 20, 10]

    res = client.get("/api/products?sortBy=$where")
    assert res.status_code == 400
    assert res.json()["success"] is False

    assert client.get("/api/products?sortOrder=sideways").status_code == 400


def test_list_by_category(client, make_user, product_payload):
    _, headers = make_user()
    create_product(client, headers, product_payload(name="Jacket", category="clothing"))
    create_product(client, headers, product_payload(name="Phone", category="electronics"))

    res = client.get("/api/products/category/CLOTHING")
    assert res.status_code == 200
    body = res.json()
    assert [p["name"] for p in body["data"]] == ["Jacket"]
    assert body["pagination"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}


def test_get_product(client, make_user, product_payload):
    _, headers = make_user()
    product = create_product(client, headers, product_payload())

    res = client.get(f"/api/products/{product['id']}")
    assert res.status_code == 200
    assert res.json()["data"]["name"] == "Wireless Mouse"

    missing = client.get(f"/api/products/{ObjectId()}")
    malformed = client.get("/api/products/not-an-id")
    assert missing.status_code == malformed.status_code == 404
    assert missing.json() == malformed.json()


def test_update_product_ownership(client, make_user, product_payload):
    _, owner_headers = make_user()
    _, stranger_headers = make_user()
    _, admin_headers = make_user(role="admin")
    product = create_product(client, owner_headers, product_payload())
    url = f"/api/products/{product['id']}"

    assert client.put(url, json={"price": 30}).status_code == 401
    assert client.put(url, headers=stranger_headers, json={"price": 30}).status_code == 403
    assert client.put(url, headers=owner_headers, json={}).status_code == 400
    assert client.put(url, headers=owner_headers, json={"stock": -1}).status_code == 400

    res = client.put(url, headers=owner_headers, json={"price": 30, "category": "Home"})
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["price"] == 30
    assert data["category"] == "home"
    assert data["name"] == "Wireless Mouse"

    res = client.put(url, headers=admin_headers, json={"stock": 75})
    assert res.status_code == 200
    assert res.json()["data"]["discounted_price"] == 27.0

    assert client.put(f"/api/products/{ObjectId()}", headers=owner_headers, json={"price": 5}).status_code == 404


def test_delete_is_soft(client, mongo, make_user, product_payload):
    _, owner_headers = make_user()
    _, stranger_headers = make_user()
    product = create_product(client, owner_headers, product_payload())
    url = f"/api/products/{product['id']}"

    assert client.delete(url, headers=stranger_headers).status_code == 403

    res = client.delete(url, headers=owner_headers)
    assert res.status_code == 200
    assert res.json()["success"] is True

    stored = mongo["product"].find_one({"_id": ObjectId(product["id"])})
    assert stored is not None and stored["is_active"] is False
    assert client.get(url).status_code == 404
    assert client.get("/api/products").json()["pagination"]["total"] == 0
    assert client.get("/api/products/category/electronics").json()["data"] == []
    assert client.delete(url, headers=owner_headers).status_code == 404


def test_admin_can_delete_any_product(client, make_user, product_payload):
    _, owner_headers = make_user()
    _, admin_headers = make_user(role="admin")
    product = create_product(client, owner_headers, product_payload())
    assert client.delete(f"/api/products/{product['id']}", headers=admin_headers).status_code == 200


def test_create_rejects_non_finite_numbers(client, mongo, make_user):
    _, headers = make_user()
    body = (
        '{"name": "Wireless Mouse", "description": "Ergonomic wireless mouse", '
        '"price": Infinity, "category": "electronics", "stock": 3, '
        '"specifications": {"weight": NaN}}'
    )
    res = client.post("/api/products", headers={**headers, "Content-Type": "application/json"}, content=body)
    assert res.status_code == 400
    fields = {e.split(":")[0] for e in res.json()["errors"]}
    assert fields == {"price", "specifications.weight"}
    assert mongo["product"].count_documents({}) == 0
    assert client.get("/api/products").status_code == 200


def test_update_rejects_non_finite_price(client, make_user, product_payload):
    _, headers = make_user()
    product = create_product(client, headers, product_payload())
    res = client.put(
        f"/api/products/{product['id']}",
        headers={**headers, "Content-Type": "application/json"},
        content='{"price": -Infinity}',
    )
    assert res.status_code == 400
    assert client.get(f"/api/products/{product['id']}").json()["data"]["price"] == 25.5


def test_huge_page_returns_empty_data(client, make_user, product_payload):
    _, headers = make_user()
    create_product(client, headers, product_payload())
    res = client.get("/api/products", params={"page": 10**18, "limit": 100})
    assert res.status_code == 200
    body = res.json()
    assert body["data"] == []
    assert body["pagination"] == {"page": 10**18, "limit": 100, "total": 1, "pages": 1}


def test_image_urls_are_stored_as_sent(client, mongo, make_user, product_payload):
    _, headers = make_user()
    product = create_product(client, headers, product_payload(images=["https://example.com"]))
    assert product["images"] == ["https://example.com"]
    stored = mongo["product"].find_one({"_id": ObjectId(product["id"])})
    assert stored["images"] == ["https://example.com"]
