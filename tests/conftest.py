# tests/conftest.py
import itertools
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from supabase import PostgrestAPIError

from filevault.config import Settings, get_settings
from filevault.metadata import MetadataStore
from filevault.selector import BackendSet
from filevault.service import StorageService
from filevault.storage.base import Capability, ProgressTracker, StorageBackend
from filevault.storage.dto import StorageType, UploadResult


@pytest.fixture
def mock_settings():
    """
    Provides a mock of the application settings for testing.
    This avoids the need for environment variables during tests.
    """
    settings = MagicMock(spec=Settings)
    settings.LOG_LEVEL = "INFO"
    settings.LOG_FILE = None
    settings.SUPABASE_URL = "https://project.supabase.co"
    settings.SUPABASE_KEY = "test_key"
    settings.SUPABASE_STORAGE_BUCKET = "files"
    settings.SIGNED_URL_TTL_SECONDS = 3600
    settings.CLOUDINARY_CLOUD_NAME = "demo"
    settings.CLOUDINARY_UPLOAD_PRESET = "unsigned"
    settings.CLOUDINARY_DELETE_API_URL = "https://example.com/api/delete"
    settings.R2_ENDPOINT = None
    settings.R2_BUCKET_NAME = None
    settings.R2_ACCESS_KEY_ID = None
    settings.R2_SECRET_ACCESS_KEY = None
    settings.R2_REGION = "auto"
    settings.GDRIVE_CREDENTIALS_JSON = None
    settings.GDRIVE_TOKEN_JSON = None
    settings.token_file_path = Path("/tmp/.gdrive.token.json")
    settings.MAX_LOCAL_STORAGE_BYTES = 500 * 1024 * 1024
    settings.UPLOAD_MAX_ATTEMPTS = 3
    settings.RETRY_INITIAL_DELAY = 1.0
    settings.RETRY_MAX_DELAY = 10.0
    settings.REQUEST_TIMEOUT_SECONDS = 60.0
    settings.UPLOAD_CHUNK_SIZE = 1024
    settings.PURGE_FOLDER_OBJECTS = False
    settings.BASE_DIR = Path("/tmp")
    return settings


@pytest.fixture(autouse=True)
def patch_settings_class(monkeypatch, mock_settings):
    """
    Replaces the `Settings` constructor so that no real settings are ever
    loaded. The cache of get_settings is cleared because it might have been
    filled during test collection.
    """
    get_settings.cache_clear()
    monkeypatch.setattr("filevault.config.Settings", lambda *args, **kwargs: mock_settings)
    yield
    get_settings.cache_clear()


class InMemoryBackend(StorageBackend):
    """
    Recording test double for a storage backend.

    Queue exceptions in upload_errors / delete_errors to make the next calls
    fail, one queued item per call.
    """

    def __init__(self, storage_type: StorageType, configured=True, connected=True, capabilities=None):
        self.storage_type = storage_type
        self.capabilities = frozenset(capabilities or ())
        self.configured = configured
        self.connected = connected
        self.objects = {}
        self.upload_calls = []
        self.delete_calls = []
        self.upload_errors = []
        self.delete_errors = []
        self.signed_url_error = None
        self._counter = itertools.count(1)

    def is_configured(self):
        return self.configured

    def is_connected(self):
        return self.connected

    async def upload(self, file, owner_id, on_progress=None):
        self.upload_calls.append((file.name, owner_id))
        if self.upload_errors:
            raise self.upload_errors.pop(0)
        tracker = ProgressTracker(file.size, on_progress)
        tracker.update(0)
        path = f"{owner_id}/{next(self._counter)}_{file.name}"
        self.objects[path] = file.content
        tracker.update(file.size)
        return UploadResult(url=f"https://{self.storage_type.value}.test/{path}", path=path, storage_type=self.storage_type)

    async def delete(self, path, hint=None):
        self.delete_calls.append((path, hint))
        if self.delete_errors:
            raise self.delete_errors.pop(0)
        self.objects.pop(path, None)

    async def get_signed_url(self, path):
        if not self.supports(Capability.SIGNED_URLS):
            return await super().get_signed_url(path)
        if self.signed_url_error:
            raise self.signed_url_error
        return f"https://{self.storage_type.value}.test/signed/{path}?token=fresh"


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Chainable stand-in for a postgrest query builder over in-memory rows."""

    def __init__(self, db, table):
        self.db = db
        self.table_name = table
        self.action = "select"
        self.columns = "*"
        self.payload = None
        self.filters = []
        self.order_by = None
        self.slice = None

    def select(self, columns="*"):
        self.action, self.columns = "select", columns
        return self

    def insert(self, payload):
        self.action, self.payload = "insert", payload
        return self

    def update(self, patch):
        self.action, self.payload = "update", patch
        return self

    def delete(self):
        self.action = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def is_(self, column, value):
        assert value == "null"
        self.filters.append(lambda row: row.get(column) is None)
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def range(self, start, end):
        self.slice = (start, end + 1)
        return self

    def limit(self, count):
        self.slice = (0, count)
        return self

    def execute(self):
        self.db.executed.append((self.table_name, self.action))
        error = self.db.failures.get((self.table_name, self.action))
        if error is not None:
            raise error

        rows = self.db.tables.setdefault(self.table_name, [])
        if self.action == "insert":
            row = dict(self.payload)
            row["id"] = f"{self.table_name}-{next(self.db.ids)}"
            row["created_at"] = f"2024-01-01T00:00:{len(rows):02d}+00:00"
            rows.append(row)
            return FakeResponse([dict(row)])

        matched = [row for row in rows if all(f(row) for f in self.filters)]
        if self.action == "update":
            for row in matched:
                row.update(self.payload)
            return FakeResponse([dict(row) for row in matched])
        if self.action == "delete":
            self.db.tables[self.table_name] = [row for row in rows if row not in matched]
            return FakeResponse([dict(row) for row in matched])

        if self.order_by:
            column, desc = self.order_by
            matched = sorted(matched, key=lambda row: row.get(column) or "", reverse=desc)
        if self.slice:
            matched = matched[self.slice[0]:self.slice[1]]
        if self.columns != "*":
            keys = [c.strip() for c in self.columns.split(",")]
            matched = [{k: row.get(k) for k in keys} for row in matched]
        return FakeResponse([dict(row) for row in matched])


class FakeSupabase:
    """In-memory Supabase client: only the table() query API is supported."""

    def __init__(self):
        self.tables = {"files": [], "folders": []}
        self.failures = {}
        self.executed = []
        self.ids = itertools.count(1)

    def table(self, name):
        return FakeQuery(self, name)

    def fail(self, table, action, message="boom"):
        self.failures[(table, action)] = PostgrestAPIError({"message": message, "code": "500", "details": "", "hint": ""})


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def metadata_store(fake_supabase):
    return MetadataStore(fake_supabase)


@pytest.fixture
def backends():
    return BackendSet(
        cdn=InMemoryBackend(StorageType.CLOUDINARY),
        object_storage=InMemoryBackend(StorageType.R2, capabilities={Capability.SIGNED_URLS}),
        blob=InMemoryBackend(StorageType.SUPABASE_STORAGE, capabilities={Capability.SIGNED_URLS}),
        drive=InMemoryBackend(StorageType.GOOGLE_DRIVE, connected=False, capabilities={Capability.CONNECTION}),
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service(metadata_store, backends, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return StorageService(metadata_store, backends, max_local_bytes=1024 * 1024, sleep=fake_sleep)


@pytest.fixture
def in_memory_backend():
    return InMemoryBackend
