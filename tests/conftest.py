"""
Shared fixtures: an in-memory MongoDB (mongomock) wired into the app in
place of the real database, plus factories for users and startups.

Run with: pytest -v
"""

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes, get_db, oid
from main import app
from schemas import Startup


@pytest.fixture
def db():
    database = mongomock.MongoClient()["crowdfunding_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Insert a user directly, bypassing registration and password hashing."""
    def _make(username, role):
        user_id = create_document(db, "user", {
            "username": username,
            "email": f"{username}@example.com",
            "password_hash": "not-a-real-hash",
            "role": role,
        })
        return db["user"].find_one({"_id": oid(user_id)})
    return _make


@pytest.fixture
def owner(make_user):
    return make_user("founder", "startup")


@pytest.fixture
def investor(make_user):
    return make_user("backer", "investor")


@pytest.fixture
def startup(db, owner):
    # funding goal 10000.00
    row = Startup(
        owner_user_id=str(owner["_id"]),
        name="Acme Robotics",
        description="Warehouse robots",
        pitch="Robots that restock shelves overnight",
        stage="seed",
        funding_goal_minor=1_000_000,
    ).model_dump()
    startup_id = create_document(db, "startup", row)
    return db["startup"].find_one({"_id": oid(startup_id)})


@pytest.fixture
def register(client):
    """Register through the API and return (user json, auth headers)."""
    def _register(username, role, password="secret123"):
        res = client.post("/api/register", json={
            "username": username,
            "email": f"{username}@example.com",
            "password": password,
            "role": role,
        })
        assert res.status_code == 201, res.text
        body = res.json()
        return body["user"], {"Authorization": f"Bearer {body['token']}"}
    return _register
