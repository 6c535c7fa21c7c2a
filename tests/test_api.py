import pytest
from fastapi.testclient import TestClient

from campuslib.api import create_app
from campuslib.config import Settings
from campuslib.store import LibraryStore

ADMIN = "admin-1"
API_KEY = "test-key"


@pytest.fixture
def cfg():
    cfg = Settings()
    cfg.api_key = API_KEY
    return cfg


@pytest.fixture
def client(cfg, store, authorizer, seeded):
    app = create_app(cfg, store=store, authorizer=authorizer)
    with TestClient(app) as test_client:
        yield test_client


def _headers(actor=ADMIN, key=API_KEY):
    headers = {"X-API-Key": key}
    if actor:
        headers["X-Actor-Id"] = actor
    return headers


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert [b["code"] for b in response.json()] == ["LIB001", "LIB002", "LIB003"]
    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_get_books_with_filters(client):
    response = client.get("/books", params={"category": "science"})
    assert [b["code"] for b in response.json()] == ["LIB002"]
    response = client.get("/books", params={"category": "Cooking"})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_get_book_by_code_is_case_insensitive(client):
    response = client.get("/books/lib001")
    assert response.status_code == 200
    assert response.json()["code"] == "LIB001"
    assert response.json()["available"] is True


def test_get_book_errors(client):
    response = client.get("/books/LIB999")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"

    response = client.get("/books/nonsense")
    assert response.status_code == 422
    assert response.json()["retryable"] is False


def test_add_book_with_valid_api_key(client):
    payload = {"title": "Sapiens", "author": "Yuval Noah Harari", "category": "History"}
    response = client.post("/books", headers=_headers(), json=payload)
    assert response.status_code == 201
    assert response.json()["code"] == "LIB004"


def test_add_book_with_invalid_api_key(client):
    payload = {"title": "Sapiens", "author": "Yuval Noah Harari", "category": "History"}
    response = client.post("/books", headers=_headers(key="invalid-key"), json=payload)
    assert response.status_code == 403


def test_add_book_without_api_key(client):
    payload = {"title": "Sapiens", "author": "Yuval Noah Harari", "category": "History"}
    response = client.post("/books", json=payload)
    assert response.status_code in (401, 403)


def test_add_book_requires_actor(client):
    payload = {"title": "Sapiens", "author": "Yuval Noah Harari", "category": "History"}
    response = client.post("/books", headers=_headers(actor=None), json=payload)
    assert response.status_code == 401


def test_delete_book(client):
    response = client.delete("/books/LIB003", headers=_headers())
    assert response.status_code == 200
    assert client.get("/books/LIB003").status_code == 404


def test_issue_and_return_flow(client):
    response = client.post("/circulation/issue", headers=_headers(),
                           json={"book_code": "lib001", "serial": "1xx21cs001"})
    assert response.status_code == 200
    receipt = response.json()
    assert receipt["book"]["available"] is False
    assert receipt["transaction"]["user_serial"] == "1XX21CS001"
    assert receipt["due_at"] is not None

    response = client.post("/circulation/issue", headers=_headers(),
                           json={"book_code": "LIB001", "serial": "1XX21CS002"})
    assert response.status_code == 409
    assert response.json()["code"] == "book_unavailable"

    response = client.post("/circulation/return", headers=_headers(), json={"book_code": "LIB001"})
    assert response.status_code == 200
    assert response.json()["book"]["available"] is True
    assert response.json()["returned_at"] is not None

    response = client.post("/circulation/return", headers=_headers(), json={"book_code": "LIB001"})
    assert response.status_code == 409
    assert response.json()["code"] == "book_not_issued"


def test_issue_by_unauthorized_actor(client):
    response = client.post("/circulation/issue", headers=_headers(actor="student-7"),
                           json={"book_code": "LIB001", "serial": "1XX21CS001"})
    assert response.status_code == 403
    assert response.json()["code"] == "not_authorized"
    assert client.get("/books/LIB001").json()["available"] is True


def test_issue_to_unknown_user(client):
    response = client.post("/circulation/issue", headers=_headers(),
                           json={"book_code": "LIB001", "serial": "9ZZ99ZZ999"})
    assert response.status_code == 404


def test_return_with_override_repairs_flag(client, raw_db):
    raw_db.execute("UPDATE books SET available = 0 WHERE code = 'LIB002'")
    response = client.post("/circulation/return", headers=_headers(), json={"book_code": "LIB002"})
    assert response.status_code == 409
    assert response.json()["code"] == "inconsistent_state"

    audit = client.get("/admin/audit", headers=_headers())
    assert [b["code"] for b in audit.json()] == ["LIB002"]

    response = client.post("/circulation/return", headers=_headers(),
                           json={"book_code": "LIB002", "override": True})
    assert response.status_code == 200
    assert response.json()["repaired"] is True
    assert response.json()["transaction"] is None
    assert client.get("/admin/audit", headers=_headers()).json() == []


def test_register_and_verify_user(client):
    payload = {"name": "Dana Lee", "serial": "3CD23ME007", "email": "dana@university.edu"}
    response = client.post("/users", json=payload)
    assert response.status_code == 201
    assert response.json()["verification_status"] == "pending"

    assert client.post("/users", json=payload).status_code == 409

    response = client.get("/users/3cd23me007", headers=_headers())
    assert response.status_code == 200
    assert response.json()["name"] == "Dana Lee"

    response = client.put("/users/3CD23ME007/verification", headers=_headers(), json={"status": "verified"})
    assert response.status_code == 200
    assert response.json()["verification_status"] == "verified"


def test_transactions_and_stats(client):
    client.post("/circulation/issue", headers=_headers(), json={"book_code": "LIB002", "serial": "1XX21CS002"})

    response = client.get("/transactions", headers=_headers(), params={"serial": "1XX21CS002"})
    assert response.status_code == 200
    assert [t["book_code"] for t in response.json()] == ["LIB002"]

    assert client.get("/transactions/overdue", headers=_headers()).json() == []

    stats = client.get("/stats").json()
    assert stats["total_books"] == 3
    assert stats["issued"] == 1
    assert stats["open_transactions"] == 1


def test_unreachable_store_is_503(cfg, authorizer, tmp_path):
    broken = LibraryStore(str(tmp_path / "missing" / "library.db"))
    # no lifespan: the schema cannot be created either
    client = TestClient(create_app(cfg, store=broken, authorizer=authorizer))

    response = client.get("/books/LIB001")
    assert response.status_code == 503
    assert response.json()["retryable"] is True
    assert client.get("/health").json()["status"] == "degraded"


def test_each_app_gets_its_own_store(cfg):
    import campuslib.api as api_module

    assert not hasattr(api_module, "app")
    first, second = create_app(cfg), create_app(cfg)
    assert first.state.store is not second.state.store
    assert first.state.store.db_file == cfg.database_file
