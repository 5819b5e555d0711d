# tests/test_catalog.py

from fastapi.testclient import TestClient
from store_api.cache import invalidate_cache
from store_api.main import app
from store_api.models import OrderStatus

client = TestClient(app)


def create_category(name: str, **fields) -> dict:
    response = client.post("/admin/categories", json={"name": name, **fields})
    assert response.status_code == 201
    return response.json()

def create_collection(name: str, **fields) -> dict:
    response = client.post("/admin/collections", json={"name": name, "description": f"{name} drop", **fields})
    assert response.status_code == 201
    return response.json()

def create_product(name: str, price: float = 25.0, **fields) -> dict:
    payload = {"name": name, "price": price, "sizes": [{"size": "M", "price": price, "stock": 5}], **fields}
    response = client.post("/admin/products", json=payload)
    assert response.status_code == 201
    return response.json()


# -------------------- Categories --------------------

def test_create_and_list_categories_with_product_counts(create_test_database, mock_dispatcher):
    shirts = create_category("Shirts", image_url="")
    create_category("Accessories", image_url="/uploads/accessories.jpg")
    create_product("Classic Tee", category_id=shirts["id"])

    assert shirts["image_url"] is None
    assert shirts["product_count"] == 0

    categories = client.get("/admin/categories").json()
    assert [(category["name"], category["product_count"]) for category in categories] == [
        ("Accessories", 0),
        ("Shirts", 1),
    ]


def test_create_category_duplicate_name(create_test_database):
    create_category("Shirts")

    response = client.post("/admin/categories", json={"name": "Shirts"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Category with this name already exists"


def test_get_category(create_test_database):
    shirts = create_category("Shirts")

    assert client.get(f"/admin/categories/{shirts['id']}").json()["name"] == "Shirts"
    assert client.get("/admin/categories/missing").status_code == 404


def test_update_category(create_test_database, mock_dispatcher):
    shirts = create_category("Shirts")
    create_category("Hoodies")
    create_product("Classic Tee", category_id=shirts["id"])
    mock_dispatcher.reset_mock()

    clash = client.put(f"/admin/categories/{shirts['id']}", json={"name": "Hoodies"})
    assert clash.status_code == 400

    response = client.put(f"/admin/categories/{shirts['id']}", json={"name": "Tees"})
    assert response.status_code == 200
    assert response.json()["name"] == "Tees"
    assert response.json()["product_count"] == 1
    # cached products carry the category name
    mock_dispatcher.invalidate.assert_called_once_with(["products", "product:classic-tee"])

    assert client.put("/admin/categories/missing", json={"name": "Nope"}).status_code == 404


def test_delete_category(create_test_database, mock_dispatcher):
    shirts = create_category("Shirts")
    empty = create_category("Empty")
    create_product("Classic Tee", category_id=shirts["id"])

    refused = client.delete(f"/admin/categories/{shirts['id']}")
    assert refused.status_code == 400
    assert refused.json()["detail"] == "Cannot delete category with associated products"

    response = client.delete(f"/admin/categories/{empty['id']}")
    assert response.json() == {"success": True}
    assert client.get(f"/admin/categories/{empty['id']}").status_code == 404


# -------------------- Collections --------------------

def test_create_collection_defaults(create_test_database):
    collection = create_collection("Summer 26")

    assert collection["available"] is True
    assert collection["collection_type"] == "CURRENT"
    assert collection["discontinued_date"] is None
    assert collection["product_count"] == 0


def test_create_collection_requires_description(create_test_database):
    response = client.post("/admin/collections", json={"name": "Summer 26"})

    assert response.status_code == 422


def test_update_collection(create_test_database, mock_dispatcher):
    summer = create_collection("Summer 26")

    response = client.put(
        f"/admin/collections/{summer['id']}",
        json={"available": False, "collection_type": "DISCONTINUED", "discontinued_date": "2026-09-01T00:00:00"},
    )

    assert response.status_code == 200
    collection = response.json()
    assert collection["available"] is False
    assert collection["collection_type"] == "DISCONTINUED"
    assert collection["discontinued_date"].startswith("2026-09-01")
    assert collection["description"] == "Summer 26 drop"
    assert client.put("/admin/collections/missing", json={"available": True}).status_code == 404


def test_delete_collection(create_test_database, mock_dispatcher):
    summer = create_collection("Summer 26")
    winter = create_collection("Winter 26")
    create_product("Linen Shirt", collection_id=summer["id"])

    assert client.delete(f"/admin/collections/{summer['id']}").status_code == 400

    response = client.delete(f"/admin/collections/{winter['id']}")
    assert response.json() == {"message": "Collection deleted successfully"}
    assert client.get(f"/admin/collections/{winter['id']}").status_code == 404

    collections = client.get("/admin/collections").json()
    assert [(collection["name"], collection["product_count"]) for collection in collections] == [("Summer 26", 1)]


# -------------------- Products in the catalog --------------------

def test_product_links_category_and_collection(create_test_database, mock_dispatcher):
    shirts = create_category("Shirts")
    summer = create_collection("Summer 26")

    product = create_product("Linen Shirt", category_id=shirts["id"], collection_id=summer["id"])

    assert product["category"] == {"id": shirts["id"], "name": "Shirts"}
    assert product["collection"] == {"id": summer["id"], "name": "Summer 26"}


def test_product_with_unknown_category_or_collection(create_test_database, mock_dispatcher):
    response = client.post("/admin/products", json={"name": "Classic Tee", "price": 25.0, "category_id": "missing"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Category not found"

    product = create_product("Classic Tee")
    response = client.put(f"/admin/products/{product['id']}", json={"collection_id": "missing"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Collection not found"


def test_get_products_by_category_and_collection(create_test_database, fake_redis, mock_dispatcher):
    shirts = create_category("Shirts")
    summer = create_collection("Summer 26")
    create_product("Linen Shirt", category_id=shirts["id"], collection_id=summer["id"])
    create_product("Oxford Shirt", category_id=shirts["id"])
    create_product("Wool Cap")

    by_category = client.get("/products", params={"category": shirts["id"], "sort": "name-asc"}).json()
    assert [product["name"] for product in by_category["products"]] == ["Linen Shirt", "Oxford Shirt"]

    by_collection = client.get("/products", params={"collection": summer["id"]}).json()
    assert [product["name"] for product in by_collection["products"]] == ["Linen Shirt"]

    admin = client.get("/admin/products", params={"category_id": shirts["id"]}).json()
    assert {product["name"] for product in admin} == {"Linen Shirt", "Oxford Shirt"}


def test_new_arrivals(create_test_database, fake_redis, mock_dispatcher):
    create_product("Classic Tee", price=25.0)
    client.post("/admin/products", json={
        "name": "Zip Hoodie",
        "price": 60.0,
        "sizes": [{"size": "M", "price": 55.0, "stock": 1}, {"size": "XL", "price": 65.0, "stock": 0}],
    })
    create_product("Archived Cap", is_archived=True)
    client.post("/admin/products", json={"name": "Gift Card", "price": 20.0})

    response = client.get("/products/new-arrivals")

    assert response.status_code == 200
    arrivals = response.json()
    assert [arrival["name"] for arrival in arrivals] == ["Gift Card", "Zip Hoodie", "Classic Tee"]
    hoodie = arrivals[1]
    assert (hoodie["min_price"], hoodie["max_price"]) == (55.0, 65.0)
    # a product without sizes falls back to its own price
    assert (arrivals[0]["min_price"], arrivals[0]["max_price"]) == (20.0, 20.0)

    assert fake_redis.exists("products:new-arrivals") == 1
    invalidate_cache(fake_redis, "products")
    assert fake_redis.exists("products:new-arrivals") == 0


# -------------------- Dashboard --------------------

def test_admin_stats(seed_product, seed_order):
    seed_product("P1", "Classic Tee", {"M": 3, "L": 10})
    seed_product("P2", "Hoodie", {"M": 20})
    create_category("Shirts")
    create_collection("Summer 26")
    seed_order([("P1", "Classic Tee", "M", 2)], order_number="ORD-TEST-0001", status=OrderStatus.APPROVED)
    seed_order([("P1", "Classic Tee", "L", 1)], order_number="ORD-TEST-0002")

    response = client.get("/admin/stats")

    assert response.status_code == 200
    assert response.json() == {
        "total_products": 2,
        "total_orders": 2,
        "total_customers": 1,
        "total_revenue": 50,
        "categories": 1,
        "collections": 1,
        "low_stock_products": 1,
    }


def test_admin_stats_empty_store(create_test_database):
    stats = client.get("/admin/stats").json()

    assert set(stats.values()) == {0}
