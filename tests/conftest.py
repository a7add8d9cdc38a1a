import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_access_token
from database import create_document, ensure_indexes, get_db
from ledger import CopyLedger
from loans import LoanService
from schemas import User


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database = client["library_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def ledger(db):
    return CopyLedger(db)


@pytest.fixture
def service(db, ledger):
    return LoanService(db, ledger=ledger)


@pytest.fixture
def make_user(db):
    def _make(document_number, role="user", full_name=None, active=True):
        user_id = create_document(db, "user", User(
            document_number=document_number,
            full_name=full_name or f"Reader {document_number}",
            email=f"{document_number}@example.com",
            role=role,
            active=active,
        ))
        return {"id": user_id, "document_number": document_number, "role": role}
    return _make


@pytest.fixture
def book(db):
    book_id = create_document(db, "book", {"title": "Cien años de soledad", "isbn": "9780307474728"})
    return {"id": book_id, "title": "Cien años de soledad"}


@pytest.fixture
def make_copy(ledger, book):
    counter = {"n": 0}

    def _make(state="available"):
        counter["n"] += 1
        return ledger.create(book["id"], f"C-{counter['n']:03d}", state=state)
    return _make


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


@pytest.fixture
def headers_for():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user['id'])}"}
    return _headers
