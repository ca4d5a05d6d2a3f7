import dataclasses

import pytest
from fastapi.testclient import TestClient

from auth import RateLimiter
from database import MemoryDatabase
from main import create_app
from schemas import Role


NEW_PRODUCT = {"name": "Widget", "description": "A small widget", "price": 9.999, "stock": 4, "category": "tools"}


@pytest.fixture
def admin_auth(admin, headers_for):
    return headers_for(admin)


# ---------- Products ----------

def test_admin_creates_product(client, admin, admin_auth):
    response = client.post("/products", json=NEW_PRODUCT, headers=admin_auth)

    assert response.status_code == 201
    product = response.json()["object"]
    assert product["price"] == 10.0
    assert product["owner_id"] == admin.id
    assert product["stock"] == 4
    assert "_id" not in product


def test_non_admin_cannot_create_product(client, user, headers_for):
    response = client.post("/products", json=NEW_PRODUCT, headers=headers_for(user))

    assert response.status_code == 403
    assert response.json()["errors"] == ["Admin role required to access this resource"]


def test_anonymous_cannot_create_product(client):
    assert client.post("/products", json=NEW_PRODUCT).status_code == 401


@pytest.mark.parametrize("change", [
    {"name": "   "},
    {"price": 0},
    {"price": -1},
    {"stock": -1},
    {"stock": 1.5},
    {"category": ""},
])
def test_invalid_product(client, admin_auth, change):
    response = client.post("/products", json=dict(NEW_PRODUCT, **change), headers=admin_auth)

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_get_product(client, make_product):
    widget = make_product()

    response = client.get(f"/products/{widget.id}")

    assert response.status_code == 200
    assert response.json()["object"]["id"] == widget.id
    assert client.get("/products/missing").status_code == 404


def test_list_products_paginates(client, make_product):
    for n in range(5):
        make_product(name=f"Mug {n}", price=float(n + 1), category="kitchen")
    make_product(name="Hammer", category="tools")

    response = client.get("/products", params={"category": "kitchen", "sort": "price_desc", "page": 2, "limit": 2})

    body = response.json()
    assert response.status_code == 200
    assert body["pageNumber"] == 2
    assert body["pageSize"] == 2
    assert body["totalSize"] == 5
    assert body["totalPages"] == 3
    assert [p["name"] for p in body["object"]] == ["Mug 2", "Mug 1"]
    assert body["errors"] is None


def test_list_products_search(client, make_product):
    make_product(name="Blue Mug")
    make_product(name="Hammer")

    body = client.get("/products", params={"search": "MUG", "pageSize": 5}).json()

    assert [p["name"] for p in body["object"]] == ["Blue Mug"]
    assert body["pageSize"] == 5


def test_update_product(client, admin_auth, make_product):
    widget = make_product(price=10.0, stock=5)

    response = client.put(f"/products/{widget.id}", json={"price": 12.5}, headers=admin_auth)

    assert response.status_code == 200
    assert response.json()["object"]["price"] == 12.5
    assert response.json()["object"]["stock"] == 5
    assert client.put("/products/missing", json={"price": 1}, headers=admin_auth).status_code == 404
    assert client.put(f"/products/{widget.id}", json={}, headers=admin_auth).status_code == 400


def test_delete_product(client, db, admin_auth, make_product):
    widget = make_product()

    response = client.delete(f"/products/{widget.id}", headers=admin_auth)

    assert response.status_code == 200
    assert db.products.get(widget.id) is None
    assert client.delete(f"/products/{widget.id}", headers=admin_auth).status_code == 404


# ---------- Accounts ----------

def test_register_and_login(client):
    response = client.post("/auth/register", json={
        "username": "carol", "email": "carol@example.com", "password": "Str0ng!pass", "firstName": "Carol",
    })

    assert response.status_code == 201
    user = response.json()["object"]
    assert user["role"] == "user"
    assert user["firstName"] == "Carol"
    assert "password_hash" not in user

    response = client.post("/auth/login", json={"email": "carol@example.com", "password": "Str0ng!pass"})

    assert response.status_code == 200
    token = response.json()["object"]["token"]
    orders = client.get("/orders", headers={"Authorization": f"Bearer {token}"})
    assert orders.status_code == 200


def test_register_rejects_weak_password(client):
    response = client.post("/auth/register", json={
        "username": "carol", "email": "carol@example.com", "password": "short",
    })

    assert response.status_code == 400
    assert len(response.json()["errors"]) >= 3


def test_register_rejects_bad_username(client):
    response = client.post("/auth/register", json={
        "username": "carol smith", "email": "carol@example.com", "password": "Str0ng!pass",
    })

    assert response.status_code == 400


def test_register_duplicate(client, user):
    response = client.post("/auth/register", json={
        "username": "someone", "email": user.email, "password": "Str0ng!pass",
    })

    assert response.status_code == 409


def test_login_with_wrong_password(client, user):
    response = client.post("/auth/login", json={"email": user.email, "password": "Wrong#123"})

    assert response.status_code == 401
    assert response.json()["errors"] == ["Invalid email or password"]


def test_admin_is_seeded_from_settings(settings):
    settings = dataclasses.replace(settings, admin_email="root@example.com", admin_password="R00t!pass")
    db = MemoryDatabase()

    with TestClient(create_app(settings, db)) as client:
        response = client.post("/auth/login", json={"email": "root@example.com", "password": "R00t!pass"})

    assert response.status_code == 200
    assert db.users.find_by_email("root@example.com").role == Role.ADMIN


# ---------- Service ----------

def test_health(client):
    body = client.get("/health").json()

    assert body["database"] == "memory"
    assert body["connection_status"] == "Connected"


def test_unknown_route_uses_envelope(client):
    response = client.get("/nope")

    assert response.status_code == 404
    assert response.json()["success"] is False


# ---------- Rate limiting ----------

def test_auth_routes_are_rate_limited(settings):
    settings = dataclasses.replace(settings, auth_rate_limit=2)

    with TestClient(create_app(settings, MemoryDatabase())) as client:
        credentials = {"email": "nobody@example.com", "password": "Wrong#123"}
        statuses = [client.post("/auth/login", json=credentials).status_code for _ in range(2)]
        response = client.post("/auth/register", json={
            "username": "carol", "email": "carol@example.com", "password": "Str0ng!pass",
        })

    assert statuses == [401, 401]
    assert response.status_code == 429
    assert response.json() == {
        "success": False,
        "message": "Too many authentication attempts",
        "object": None,
        "errors": ["Too many login/register attempts from this IP, please try again later"],
    }


def test_other_routes_are_not_rate_limited(settings):
    settings = dataclasses.replace(settings, auth_rate_limit=1)

    with TestClient(create_app(settings, MemoryDatabase())) as client:
        statuses = [client.get("/products").status_code for _ in range(3)]

    assert statuses == [200, 200, 200]


def test_rate_limit_window_resets():
    now = [0.0]
    limiter = RateLimiter(limit=2, window_seconds=60, clock=lambda: now[0])

    assert [limiter.hit("1.2.3.4") for _ in range(3)] == [True, True, False]
    assert limiter.hit("5.6.7.8") is True

    now[0] = 60.0
    assert limiter.hit("1.2.3.4") is True
