"""
Startup and wiring: the lifespan hook, the `serve` entry point, index creation and the
static client mount.
"""
import pytest
import uvicorn
from fastapi.testclient import TestClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

import database
import main
from database import BRANCHES, CATEGORIES, StorageUnavailable, get_db
from main import app, mount_client


def _unreachable():
    raise StorageUnavailable("127.0.0.1:1: [Errno 111] Connection refused")


@pytest.fixture
def disconnected(monkeypatch):
    monkeypatch.setattr(database, "_state", "disconnected")
    monkeypatch.setattr(database, "disconnect", lambda: None)


@pytest.fixture
def seed_calls(monkeypatch):
    calls = []
    real_seed = main.seed_default_data

    def recording_seed(db):
        calls.append(db)
        return real_seed(db)

    monkeypatch.setattr(main, "seed_default_data", recording_seed)
    return calls


def test_startup_fails_when_storage_unreachable(monkeypatch, disconnected, seed_calls):
    monkeypatch.setattr(database, "connect", _unreachable)

    with pytest.raises(StorageUnavailable):
        with TestClient(app):
            pass

    assert seed_calls == []


def test_startup_connects_then_seeds(monkeypatch, db, disconnected, seed_calls):
    monkeypatch.setattr(database, "connect", lambda: db)
    app.dependency_overrides[get_db] = lambda: db
    try:
        with TestClient(app) as client:
            branches = client.get("/api/branches").json()
            categories = client.get("/api/categories").json()
    finally:
        app.dependency_overrides.clear()

    assert seed_calls == [db]
    assert len(branches) == 7
    assert len(categories) == 3
    assert db[BRANCHES].count_documents({}) == 7
    assert db[CATEGORIES].count_documents({}) == 3


def test_startup_reuses_an_open_connection(monkeypatch, db, seed_calls):
    monkeypatch.setattr(database, "_state", "connected")
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(database, "connect", _unreachable)
    monkeypatch.setattr(database, "disconnect", lambda: None)

    with TestClient(app):
        pass

    assert seed_calls == [db]
    assert db[BRANCHES].count_documents({}) == 7


def test_serve_exits_with_status_1_when_storage_unreachable(monkeypatch):
    runs = []
    monkeypatch.setattr(database, "connect", _unreachable)
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: runs.append(args))

    with pytest.raises(SystemExit) as exc:
        main.serve()

    assert exc.value.code == 1
    assert runs == []


def test_serve_starts_uvicorn_once_connected(monkeypatch, db):
    runs = []
    monkeypatch.setattr(database, "connect", lambda: db)
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: runs.append((app, kwargs)))

    main.serve()

    assert len(runs) == 1
    assert runs[0][0] is app
    assert runs[0][1]["port"] == main.PORT


def test_connect_raises_when_ping_fails(monkeypatch):
    def refuse(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("127.0.0.1:1: Connection refused")

    monkeypatch.setattr(database, "_state", "disconnected")
    monkeypatch.setattr(Database, "command", refuse)

    with pytest.raises(StorageUnavailable):
        database.connect()

    assert database.connection_state() == "disconnected"


def test_connect_survives_index_failure(monkeypatch, caplog):
    def duplicate_names(db):
        raise DuplicateKeyError("E11000 duplicate key error collection: projectx.categories index: name_1")

    monkeypatch.setattr(database, "_state", "disconnected")
    monkeypatch.setattr(Database, "command", lambda self, *args, **kwargs: {"ok": 1.0})
    monkeypatch.setattr(database, "ensure_indexes", duplicate_names)

    result = database.connect()

    assert result is database.db
    assert database.connection_state() == "connected"
    assert "Index creation failed" in caplog.text
    assert "connection failed" not in caplog.text


@pytest.fixture
def client_dir(tmp_path):
    (tmp_path / "index.html").write_text("<h1>Branch sales dashboard</h1>", encoding="utf-8")
    (tmp_path / "app.js").write_text("console.log('ready');", encoding="utf-8")
    assert mount_client(app, tmp_path)
    yield tmp_path
    app.router.routes[:] = [r for r in app.router.routes if getattr(r, "name", None) != "client"]


def test_static_client_served_after_api_routes(client, client_dir, branch):
    index = client.get("/")
    script = client.get("/app.js")
    unknown = client.get("/api/unknown")
    branches = client.get("/api/branches")

    assert index.status_code == 200
    assert "Branch sales dashboard" in index.text
    assert script.status_code == 200
    assert "ready" in script.text
    assert unknown.status_code == 404
    assert unknown.json() == {"error": "API endpoint not found", "path": "/api/unknown"}
    assert branches.json()[0]["name"] == branch["name"]


def test_static_file_missing_is_404(client, client_dir):
    assert client.get("/missing.css").status_code == 404


def test_mount_client_skips_missing_directory(tmp_path):
    routes_before = len(app.router.routes)

    assert mount_client(app, tmp_path / "absent") is False
    assert len(app.router.routes) == routes_before
