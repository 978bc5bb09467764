"""
Pytest fixtures for the branch sales API.

The MongoDB dependency is swapped for an in-memory mongomock database, so no server is needed.
"""
import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from main import app


@pytest.fixture
def db():
    database = mongomock.MongoClient()["branch_sales_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    """
    API client bound to the in-memory database. Not used as a context manager, so the
    startup hook (real connection + seeding) never runs.
    """
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def branch(client):
    resp = client.post("/api/branches", json={"name": "D WATSON F6", "phone": "051-1234567"})
    assert resp.status_code == 201
    return resp.json()
