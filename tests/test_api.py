import sqlite3
import threading
import time

import pytest
from fastapi.testclient import TestClient

import lending.api as api_module
import lending.database as database_module
from lending.api import app, get_ledger
from lending.config import settings

pytestmark = pytest.mark.integration

ADMIN = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True


def test_get_books(client, book):
    response = client.get("/books")
    assert response.status_code == 200
    books = response.json()
    assert [b["id"] for b in books] == [book.id]
    assert books[0]["available"] == 5
    assert books[0]["requests"] == []


def test_add_book_with_valid_api_key(client):
    payload = {"title": "Emma", "author": "Jane Austen", "category": "Romance", "total": 2}
    response = client.post("/books", headers=ADMIN, json=payload)
    assert response.status_code == 201
    body = response.json()
    assert (body["total"], body["available"], body["issued"]) == (2, 2, 0)


def test_add_book_with_invalid_api_key(client):
    payload = {"title": "Emma", "author": "Jane Austen", "category": "Romance"}
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json=payload)
    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "forbidden",
                               "message": "Could not validate credentials"}


def test_add_book_without_api_key(client):
    response = client.post("/books", json={"title": "Emma", "author": "Jane Austen", "category": "Romance"})
    assert response.status_code == 403


def test_add_book_with_unknown_category(client):
    payload = {"title": "Emma", "author": "Jane Austen", "category": "Poetry"}
    response = client.post("/books", headers=ADMIN, json=payload)
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_malformed_body_uses_error_shape(client, book):
    response = client.post(f"/books/{book.id}/requests", json={})
    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "validation_error"
    assert "patron_id" in body["message"]


def test_get_missing_book(client):
    response = client.get("/books/nothing")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_request_approve_return_flow(client, book, alice):
    response = client.post(f"/books/{book.id}/requests", json={"patron_id": alice.id})
    assert response.status_code == 200
    assert response.json()["message"] == "Book request submitted successfully"
    request_id = response.json()["request"]["id"]

    duplicate = client.post(f"/books/{book.id}/requests", json={"patron_id": alice.id})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "conflict"

    pending = client.get("/requests/pending", headers=ADMIN)
    assert [p["request_id"] for p in pending.json()] == [request_id]

    response = client.patch(f"/books/{book.id}/requests/{request_id}", headers=ADMIN,
                            json={"status": "approved"})
    assert response.status_code == 200
    assert response.json()["message"] == "Request approved"
    assert response.json()["book"]["available"] == 4

    issued = client.get(f"/patrons/{alice.id}/issued-books")
    assert [r["book_id"] for r in issued.json()] == [book.id]
    assert issued.json()[0]["book"]["title"] == "Dune"

    response = client.post(f"/books/{book.id}/return", json={"patron_id": alice.id})
    assert response.status_code == 200
    assert response.json()["book"]["available"] == 5
    assert response.json()["book"]["requests"] == []
    assert response.json()["patron"]["issued_books"] == []


def test_resolve_requires_admin(client, book, alice):
    request = client.post(f"/books/{book.id}/requests", json={"patron_id": alice.id}).json()["request"]
    response = client.patch(f"/books/{book.id}/requests/{request['id']}", json={"status": "approved"})
    assert response.status_code == 403


def test_resolve_with_invalid_status(client, book, alice):
    request = client.post(f"/books/{book.id}/requests", json={"patron_id": alice.id}).json()["request"]
    response = client.patch(f"/books/{book.id}/requests/{request['id']}", headers=ADMIN,
                            json={"status": "pending"})
    assert response.status_code == 422


def test_reject_twice_is_conflict(client, book, alice):
    request = client.post(f"/books/{book.id}/requests", json={"patron_id": alice.id}).json()["request"]
    url = f"/books/{book.id}/requests/{request['id']}"
    assert client.patch(url, headers=ADMIN, json={"status": "rejected"}).status_code == 200
    response = client.patch(url, headers=ADMIN, json={"status": "rejected"})
    assert response.status_code == 409


def test_direct_issue_and_mark_read(client, book, alice):
    response = client.post(f"/books/{book.id}/issue", headers=ADMIN, json={"patron_id": alice.id})
    assert response.status_code == 200
    assert response.json()["message"] == "Book issued successfully"
    assert response.json()["patron"]["issued_books"][0]["book_id"] == book.id

    again = client.post(f"/books/{book.id}/issue", headers=ADMIN, json={"patron_id": alice.id})
    assert again.status_code == 409

    response = client.post(f"/books/{book.id}/read", json={"patron_id": alice.id})
    assert response.json() == {"success": True, "read_count": 1}


def test_return_not_issued_is_conflict(client, book, alice):
    response = client.post(f"/books/{book.id}/return", json={"patron_id": alice.id})
    assert response.status_code == 409
    assert response.json()["message"] == "This book was not issued to this patron"


def test_delete_book(client, book):
    response = client.delete(f"/books/{book.id}", headers=ADMIN)
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Book deleted successfully",
                               "deleted_book_id": book.id}
    assert client.delete(f"/books/{book.id}", headers=ADMIN).status_code == 404


def test_categories_and_authors(client, book):
    assert client.get("/categories").json() == [{"name": "Fiction", "count": 1}]
    assert client.get("/authors").json() == [{"name": "Frank Herbert", "book_count": 1}]


def test_patron_endpoints(client, book):
    response = client.post("/patrons", headers=ADMIN, json={"name": "Carol"})
    assert response.status_code == 201
    patron_id = response.json()["id"]

    assert client.get(f"/patrons/{patron_id}").json()["name"] == "Carol"
    assert client.get("/patrons/nobody").status_code == 404

    response = client.put(f"/patrons/{patron_id}/reading-progress", json={"book_id": book.id, "position": 7})
    assert response.status_code == 200
    assert client.get(f"/patrons/{patron_id}/reading-progress").json() == {"reading_progress": {book.id: 7}}

    bad = client.put(f"/patrons/{patron_id}/reading-progress", json={"book_id": book.id, "position": -1})
    assert bad.status_code == 422

    stats = client.get(f"/patrons/{patron_id}/statistics").json()
    assert stats["total_books_issued"] == 0


def test_register_patron_requires_admin(client):
    assert client.post("/patrons", json={"name": "Mallory", "is_admin": True}).status_code == 403


def test_consistency_endpoint(client, book):
    assert client.get("/admin/consistency").status_code == 403
    response = client.get("/admin/consistency", headers=ADMIN)
    assert response.json() == {"consistent": True, "violations": []}


def test_storage_failure_is_503_with_retry_after(client, book, monkeypatch):
    import lending.ledger as ledger_module

    def unavailable(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(ledger_module, "snapshot", unavailable)
    response = client.get(f"/books/{book.id}")
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["error"] == "storage_failure"


def test_unreachable_database_at_startup_is_503(tmp_path, monkeypatch):
    monkeypatch.setattr(api_module, "_ledger", None)
    monkeypatch.setattr(database_module, "DATABASE_FILE", str(tmp_path / "missing" / "lending.db"))

    response = TestClient(app).get("/books")

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["error"] == "storage_failure"
    assert api_module._ledger is None


def test_shared_ledger_is_created_once(monkeypatch):
    created = []

    class SlowLedger:
        def __init__(self):
            time.sleep(0.05)
            created.append(self)

    monkeypatch.setattr(api_module, "_ledger", None)
    monkeypatch.setattr(api_module, "Ledger", SlowLedger)

    barrier = threading.Barrier(4)
    seen = []

    def worker():
        barrier.wait()
        seen.append(get_ledger())

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(created) == 1
    assert len(seen) == 4 and all(ledger is created[0] for ledger in seen)


def test_title_request_endpoints(client, alice):
    response = client.post("/title-requests", json={"patron_id": alice.id, "title": "Middlemarch",
                                                    "author": "George Eliot", "description": "Classic"})
    assert response.status_code == 201
    assert response.json()["message"] == "Request submitted successfully"
    request_id = response.json()["request"]["id"]

    assert client.get("/title-requests").status_code == 403
    pending = client.get("/title-requests", headers=ADMIN).json()
    assert [r["id"] for r in pending] == [request_id]
    assert pending[0]["patron_name"] == "Alice"

    url = f"/title-requests/{request_id}"
    assert client.patch(url, json={"status": "approved"}).status_code == 403
    response = client.patch(url, headers=ADMIN, json={"status": "approved"})
    assert response.status_code == 200
    assert response.json()["request"]["status"] == "approved"

    again = client.patch(url, headers=ADMIN, json={"status": "rejected"})
    assert again.status_code == 409
    assert client.get("/title-requests", headers=ADMIN).json() == []
    assert client.patch("/title-requests/nothing", headers=ADMIN, json={"status": "rejected"}).status_code == 404


def test_title_request_for_unknown_patron(client):
    response = client.post("/title-requests", json={"patron_id": "nobody", "title": "Ulysses",
                                                    "author": "James Joyce"})
    assert response.status_code == 404
