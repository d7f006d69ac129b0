"""
Shared test fixtures.

The Supabase double keeps rows in memory and honours the query-builder calls
the services make, so state written by one call is visible to the next.
"""

import os
import sys
from pathlib import Path

# Add project root to Python path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

# Settings require Supabase credentials at import time
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["WATERMARK_PATH"] = ""

import pytest
from contextlib import ExitStack
from copy import deepcopy
from datetime import datetime
from typing import Any, Callable, Generator, Optional, Union
from unittest.mock import patch
from uuid import uuid4

# ===================
# MOCK SUPABASE CLIENT
# ===================

class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data: Any = None, count: Optional[int] = None):
        self.data = data if data is not None else []
        self.count = count


def _sort_key(column: str) -> Callable[[dict], tuple]:
    def key(row: dict) -> tuple:
        value = row.get(column)
        return (value is None, value if value is not None else "")
    return key


class MockSupabaseQuery:
    """Chainable query over one in-memory table."""

    def __init__(self, table: "MockSupabaseTable", operation: str, payload: Any = None):
        self._table = table
        self._operation = operation
        self._payload = payload
        self._filters: list[Callable[[dict], bool]] = []
        self._orders: list[tuple[str, bool]] = []
        self._limit: Optional[int] = None
        self._range: Optional[tuple[int, int]] = None
        self._count_mode: Optional[str] = None
        self._is_single = False

    def select(self, *columns, count: Optional[str] = None):
        self._count_mode = count
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self._filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        allowed = list(values)
        self._filters.append(lambda row: row.get(column) in allowed)
        return self

    def is_(self, column, value):
        if value in ("null", None):
            self._filters.append(lambda row: row.get(column) is None)
        else:
            self._filters.append(lambda row: row.get(column) is value)
        return self

    def gte(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def lte(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row.get(column) <= value)
        return self

    def order(self, column, desc: bool = False, **kwargs):
        self._orders.append((column, desc))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def single(self):
        self._is_single = True
        return self

    def _matching(self) -> list[dict]:
        return [row for row in self._table.rows if all(f(row) for f in self._filters)]

    def execute(self) -> MockSupabaseResponse:
        self._table.client.check_failure(self._table.name, self._operation)

        if self._operation == "insert":
            return MockSupabaseResponse(data=self._table.add_rows(self._payload))

        matched = self._matching()

        if self._operation == "update":
            now = datetime.utcnow().isoformat() + "Z"
            for row in matched:
                row.update(deepcopy(self._payload))
                row.setdefault("updated_at", now)
            self._table.client.log.append((self._table.name, "update", [r.get("id") for r in matched]))
            return MockSupabaseResponse(data=deepcopy(matched))

        if self._operation == "delete":
            self._table.rows = [row for row in self._table.rows if row not in matched]
            return MockSupabaseResponse(data=deepcopy(matched))

        rows = matched
        # Later order() calls are secondary keys
        for column, desc in reversed(self._orders):
            rows = sorted(rows, key=_sort_key(column), reverse=desc)

        total = len(rows)
        if self._range is not None:
            start, end = self._range
            rows = rows[start:end + 1]
        if self._limit is not None:
            rows = rows[:self._limit]

        rows = deepcopy(rows)
        count = total if self._count_mode else None
        if self._is_single:
            return MockSupabaseResponse(data=rows[0] if rows else None, count=count)
        return MockSupabaseResponse(data=rows, count=count)


class MockSupabaseTable:
    """In-memory table."""

    def __init__(self, client: "MockSupabaseClient", name: str):
        self.client = client
        self.name = name
        self.rows: list[dict] = []

    def add_rows(self, data: Union[dict, list[dict]]) -> list[dict]:
        items = [data] if isinstance(data, dict) else list(data)
        now = datetime.utcnow().isoformat() + "Z"
        added = []
        for item in items:
            row = deepcopy(item)
            row.setdefault("id", str(uuid4()))
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
            self.rows.append(row)
            added.append(deepcopy(row))
        return added

    def select(self, *columns, count: Optional[str] = None):
        return MockSupabaseQuery(self, "select").select(*columns, count=count)

    def insert(self, data):
        return MockSupabaseQuery(self, "insert", payload=data)

    def update(self, data):
        return MockSupabaseQuery(self, "update", payload=data)

    def delete(self):
        return MockSupabaseQuery(self, "delete")


class MockStorageException(Exception):
    """Raised like the storage client: response body as the only argument."""


class MockStorageBucket:
    """One in-memory storage bucket."""

    def __init__(self, storage: "MockStorage", name: str):
        self._storage = storage
        self.name = name

    def download(self, path: str) -> bytes:
        if self._storage.fail_downloads:
            raise RuntimeError("storage download timed out")
        files = self._storage.files.get(self.name, {})
        if path not in files:
            raise MockStorageException({
                "statusCode": "404",
                "error": "not_found",
                "message": "Object not found",
            })
        return files[path]

    def upload(self, path: str, file: bytes, file_options: Optional[dict] = None):
        self._storage.upload_attempts += 1
        if self._storage.fail_uploads_after is not None and \
                self._storage.upload_attempts > self._storage.fail_uploads_after:
            raise RuntimeError("storage upload failed")
        self._storage.files.setdefault(self.name, {})[path] = file
        self._storage.options[(self.name, path)] = file_options or {}
        return {"path": path}

    def get_public_url(self, path: str) -> str:
        return f"https://test-project.supabase.co/storage/v1/object/public/{self.name}/{path}"


class MockStorage:
    """In-memory Supabase Storage."""

    def __init__(self):
        self.files: dict[str, dict[str, bytes]] = {}
        self.options: dict[tuple[str, str], dict] = {}
        self.fail_downloads = False
        self.fail_uploads_after: Optional[int] = None
        self.upload_attempts = 0

    def put(self, bucket: str, path: str, content: bytes) -> None:
        self.files.setdefault(bucket, {})[path] = content

    def from_(self, bucket: str) -> MockStorageBucket:
        return MockStorageBucket(self, bucket)


class MockSupabaseClient:
    """Mock Supabase client with in-memory tables and storage."""

    def __init__(self):
        self._tables: dict[str, MockSupabaseTable] = {}
        self._failures: set[tuple[str, str]] = set()
        self.storage = MockStorage()
        self.log: list[tuple] = []

    def set_table_data(self, table_name: str, data: list):
        """Replace a table's rows."""
        table = self.table(table_name)
        table.rows = []
        table.add_rows(data)

    def rows(self, table_name: str) -> list[dict]:
        """Current rows of a table (live)."""
        return self.table(table_name).rows

    def fail_on(self, table_name: str, operation: str) -> None:
        """Make every <operation> on a table raise."""
        self._failures.add((table_name, operation))

    def check_failure(self, table_name: str, operation: str) -> None:
        if (table_name, operation) in self._failures:
            raise RuntimeError(f"connection reset during {operation} on {table_name}")

    def table(self, name: str) -> MockSupabaseTable:
        if name not in self._tables:
            self._tables[name] = MockSupabaseTable(self, name)
        return self._tables[name]


# ===================
# MOCK TEXT MODEL
# ===================

class FakeTextBlock:
    type = "text"

    def __init__(self, text: str):
        self.text = text


class FakeMessage:
    def __init__(self, text: str, stop_reason: str = "end_turn"):
        self.content = [FakeTextBlock(text)]
        self.stop_reason = stop_reason


class FakeMessages:
    """
    Scripted messages endpoint.

    Each queued item is a response string, an exception to raise, or a
    callable receiving the create() kwargs and returning a string.
    """

    def __init__(self):
        self.queue: list = []
        self.calls: list[dict] = []

    def create(self, **kwargs) -> FakeMessage:
        self.calls.append(deepcopy(kwargs))
        if not self.queue:
            raise AssertionError("Unexpected model call")
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(kwargs)
        return FakeMessage(item)


class FakeAnthropicClient:
    """Stands in for anthropic.Anthropic."""

    def __init__(self):
        self.messages = FakeMessages()

    def queue(self, *items) -> None:
        self.messages.queue.extend(items)


# ===================
# FIXTURES
# ===================

PATCHED_MODULES = (
    "config.database",
    "services.draft_service",
    "services.import_job_service",
    "services.master_list_service",
    "services.storage_service",
)

SINGLETONS = (
    ("services.draft_service", "_draft_service"),
    ("services.import_job_service", "_import_job_service"),
    ("services.master_list_service", "_master_list_service"),
    ("services.storage_service", "_storage_service"),
    ("services.enrichment_service", "_enrichment_service"),
    ("services.image_service", "_image_service"),
    ("services.import_pipeline_service", "_import_pipeline_service"),
)


@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """
    Create an in-memory Supabase client.

    Usage:
        def test_something(mock_db, mock_supabase):
            mock_supabase.set_table_data("ai_import_jobs", [JobFactory.create()])
    """
    return MockSupabaseClient()


@pytest.fixture
def mock_db(mock_supabase) -> Generator:
    """
    Patch the database client with the in-memory double.

    Service singletons are cleared so nothing built against a previous
    test's client leaks in.
    """
    with ExitStack() as stack:
        for module in PATCHED_MODULES:
            stack.enter_context(
                patch(f"{module}.get_supabase_client", return_value=mock_supabase)
            )
        for module, attribute in SINGLETONS:
            stack.enter_context(patch(f"{module}.{attribute}", None))
        yield mock_supabase


@pytest.fixture
def fake_model() -> FakeAnthropicClient:
    """Scripted stand-in for the Anthropic client."""
    return FakeAnthropicClient()


@pytest.fixture
def enrichment_service(fake_model):
    from services.enrichment_service import EnrichmentService
    return EnrichmentService(client=fake_model, model="test-model")


@pytest.fixture
def pipeline(mock_db, enrichment_service):
    """
    ImportPipelineService wired to the in-memory client and fake model.

    Time budget is generous; tests that exercise the deadline build their own.
    """
    from services.image_service import ImageService
    from services.import_pipeline_service import ImportPipelineService

    return ImportPipelineService(
        enrichment_service=enrichment_service,
        image_service=ImageService(max_width=800, quality=80, watermark=b""),
        time_budget_seconds=3600,
    )


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client_with_mock_db(mock_db, pipeline):
    """
    FastAPI test client backed by the in-memory client and fake model.

    Usage:
        def test_endpoint(test_client_with_mock_db, mock_supabase):
            response = test_client_with_mock_db.get("/api/import-jobs")
    """
    from fastapi.testclient import TestClient
    from main import app

    with patch("services.import_pipeline_service._import_pipeline_service", pipeline):
        yield TestClient(app)
