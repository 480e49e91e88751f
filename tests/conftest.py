import pytest
from fastapi.testclient import TestClient

from database import JsonFileStore, get_store
from main import app


@pytest.fixture(scope="function")
def db_path(tmp_path):
    return tmp_path / "db-milk.json"


@pytest.fixture(scope="function")
def store(db_path):
    """Fresh file-backed store for each test."""
    return JsonFileStore(str(db_path))


@pytest.fixture(scope="function")
def client(store):
    """Create a test client with the store dependency overridden."""
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
