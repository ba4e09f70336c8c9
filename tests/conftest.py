import sys
from pathlib import Path

# backend/ holds flat modules (main, storage, ...), add it before importing them
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from fastapi.testclient import TestClient

from file_storage import FileTaskStore
from main import app, get_store


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / "data.json"


@pytest.fixture
def store(data_file):
    """File store on a throwaway JSON document"""
    return FileTaskStore(data_file)


@pytest.fixture
def client(store):
    """API client bound to the temporary file store"""
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
