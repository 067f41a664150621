"""
Shared test fixtures.
"""

import os
import sys
from pathlib import Path

# Add project root to Python path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

# Settings require Supabase credentials; tests never connect
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")

import pytest
from unittest.mock import patch
from datetime import datetime
from typing import Generator

from tests.factories import ImageFactory, ProductRowFactory

# ===================
# MOCK SUPABASE CLIENT
# ===================

class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data or []
        self.count = count if count is not None else len(self.data)


class MockSupabaseQuery:
    """Mock Supabase query builder with chainable methods."""

    def __init__(self, table: "MockSupabaseTable", data: list = None):
        self._table = table
        self._data = data or []

    def select(self, *args, **kwargs):
        return self

    def insert(self, data):
        if isinstance(data, dict):
            data = [data]
        inserted = []
        for item in data:
            row = dict(item)
            row.setdefault("created_at", datetime.utcnow().isoformat() + "Z")
            inserted.append(row)
        self._table.inserted.append(inserted)
        self._data = inserted
        return self

    def eq(self, column, value):
        self._table.filters.append(("eq", column, value))
        self._data = [row for row in self._data if row.get(column) == value]
        return self

    def in_(self, column, values):
        self._table.filters.append(("in", column, list(values)))
        self._data = [row for row in self._data if row.get(column) in values]
        return self

    def limit(self, count):
        return self

    def execute(self) -> MockSupabaseResponse:
        if self._table.error is not None:
            raise self._table.error
        return MockSupabaseResponse(data=self._data)


class MockSupabaseTable:
    """Mock Supabase table with configurable responses."""

    def __init__(self, data: list = None):
        self._data = data or []
        self.inserted: list[list[dict]] = []
        self.filters: list[tuple] = []
        self.error = None

    def select(self, *args, **kwargs):
        return MockSupabaseQuery(self, [dict(row) for row in self._data])

    def insert(self, data):
        return MockSupabaseQuery(self).insert(data)


class MockStorageBucket:
    """Mock storage bucket recording uploads."""

    def __init__(self, name: str):
        self.name = name
        self.uploads: list[tuple[str, bytes, dict]] = []

    def upload(self, path, file, file_options=None):
        self.uploads.append((path, file, file_options or {}))
        return {"Key": f"{self.name}/{path}"}

    def get_public_url(self, path):
        return f"https://test-project.supabase.co/storage/v1/object/public/{self.name}/{path}"


class MockStorage:
    def __init__(self):
        self.buckets: dict[str, MockStorageBucket] = {}

    def from_(self, name: str) -> MockStorageBucket:
        return self.buckets.setdefault(name, MockStorageBucket(name))


class MockSupabaseClient:
    """Mock Supabase client."""

    def __init__(self):
        self._tables: dict[str, MockSupabaseTable] = {}
        self.storage = MockStorage()

    def set_table_data(self, table_name: str, data: list):
        """Configure mock data for a table."""
        self._tables[table_name] = MockSupabaseTable(data)

    def table(self, name: str) -> MockSupabaseTable:
        """Get mock table (same instance on every call)."""
        return self._tables.setdefault(name, MockSupabaseTable())


# ===================
# FIXTURES
# ===================

@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """
    Create a mock Supabase client.

    Usage:
        def test_something(mock_supabase):
            mock_supabase.set_table_data("products", [
                {"sku": "CAM-001", "name": "Camisa", "user_id": "merchant-1"}
            ])
    """
    return MockSupabaseClient()


@pytest.fixture
def mock_db(mock_supabase) -> Generator:
    """
    Patch the database clients with mock.

    Usage:
        def test_something(mock_db, mock_supabase):
            mock_supabase.set_table_data("products", [...])
            # Now any code using get_supabase_client() gets the mock
    """
    with patch("config.database.get_supabase_client", return_value=mock_supabase):
        with patch("services.catalog_store.get_supabase_client", return_value=mock_supabase):
            with patch("services.catalog_store.get_admin_client", return_value=None):
                yield mock_supabase


@pytest.fixture
def sample_rows() -> list:
    """Three product rows with distinct names and SKUs."""
    return [
        ProductRowFactory.create(sku="CAM-AZ-M", name="Camisa Azul Talla M", price=29900),
        ProductRowFactory.create(sku="ZAP-NEG-42", name="Zapatos Negros", price=89900),
        ProductRowFactory.create(sku="GOR-DEP", name="Gorra Deportiva", price=19900),
    ]


@pytest.fixture
def sample_images() -> list:
    """Primary images for the sample rows plus one secondary view."""
    return [
        ImageFactory.create("camisa_azul.jpg"),
        ImageFactory.create("camisa_azul_2.jpg"),
        ImageFactory.create("IMG_zapatos-negros.png"),
        ImageFactory.create("gorra deportiva.webp"),
    ]


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client_with_mock_db(mock_supabase):
    """
    Create FastAPI test client with mocked database.

    Usage:
        def test_endpoint(test_client_with_mock_db, mock_supabase):
            mock_supabase.set_table_data("products", [...])
            response = test_client_with_mock_db.get("/api/bulk-upload/template")
    """
    from fastapi.testclient import TestClient
    from main import app

    with patch("config.database.get_supabase_client", return_value=mock_supabase):
        with patch("services.catalog_store.get_supabase_client", return_value=mock_supabase):
            with patch("services.catalog_store.get_admin_client", return_value=None):
                yield TestClient(app)
