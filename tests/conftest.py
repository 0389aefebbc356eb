"""
Shared fixtures: an in-memory Mongo (mongomock), a fixed clock and a wired Library.
"""
from datetime import date

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from config import Settings
from domain import FixedTimeProvider, Role
from security import make_token
from services import Library


@pytest.fixture
def clock():
    """Fixture providing a clock frozen on 2024-01-10"""
    return FixedTimeProvider(date(2024, 1, 10))


@pytest.fixture
def db():
    return mongomock.MongoClient().library


@pytest.fixture
def library(db, clock):
    return Library(db, Settings(), clock)


@pytest.fixture
def admin(library):
    return library.users.register("Admin", "admin@example.com", "secret", Role.ADMIN)


@pytest.fixture
def member(library):
    return library.users.register("Reader", "reader@example.com", "secret")


@pytest.fixture
def add_book(library, admin):
    """Fixture returning a helper that registers a book through the catalog service"""
    def _add(title="Dune", quantity=3, language="ENGLISH", type="FICTION"):
        return library.books.register(title, language, type, quantity, admin)
    return _add


@pytest.fixture
def client(library):
    main.app.dependency_overrides[main.get_library] = lambda: library
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {make_token(user.id)}"}
    return _headers
