import pytest
from fastapi.testclient import TestClient

from auth import create_access_token, hash_password
from config import Settings
from database import MemoryDatabase
from main import create_app
from schemas import Role

SECRET = "test-secret-0123456789-0123456789-abcdef"


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, order_timeout_seconds=5)


@pytest.fixture
def db():
    database = MemoryDatabase()
    database.connect()
    yield database
    database.close()


@pytest.fixture
def app(settings, db):
    return create_app(settings, db)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db):
    def _make(username="alice", role=Role.USER, password="Secret#123"):
        return db.users.create(
            username=username,
            email=f"{username}@example.com",
            password_hash=hash_password(password),
            role=role,
        )
    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user("boss", role=Role.ADMIN)


@pytest.fixture
def headers_for():
    def _headers(user):
        token = create_access_token(user, SECRET, 60)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_product(db):
    def _make(name="Widget", price=10.0, stock=5, category="tools", owner_id="admin-1"):
        return db.products.create(
            {"name": name, "description": f"A {name.lower()}", "price": price, "stock": stock, "category": category},
            owner_id=owner_id,
        )
    return _make
