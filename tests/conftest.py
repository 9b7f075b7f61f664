# tests/conftest.py
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from smartdocs.config import Settings, get_settings
from smartdocs.exceptions import KeyConflictError, NotFoundError
from smartdocs.storage.base import StorageGateway
from smartdocs.storage.dto import ObjectRecord

BASE_TIME = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


class FakeGateway(StorageGateway):
    """
    In-memory gateway used by the engine tests.

    list_objects captures the container contents when the call starts, then
    optionally blocks on `list_gate`, so a test can hold a listing in flight
    while uploads land. write_object likewise blocks on `write_gate` before
    the object appears.
    """

    def __init__(self):
        self.objects = {}
        self.list_calls = 0
        self.active_lists = 0
        self.max_active_lists = 0
        self.write_calls = []
        self.list_gate = None
        self.write_gate = None
        self.list_error = None
        self.write_errors = {}
        self._lock = threading.Lock()
        self._writes = 0

    def add(self, key, minutes=0, size_bytes=100):
        self.objects[key] = ObjectRecord(
            key=key,
            last_modified=BASE_TIME + timedelta(minutes=minutes),
            size_bytes=size_bytes,
            access_url=self.resolve_access_url("rawinvoices", key),
        )

    def list_objects(self, container):
        with self._lock:
            self.list_calls += 1
            self.active_lists += 1
            self.max_active_lists = max(self.max_active_lists, self.active_lists)
            captured = list(self.objects.values())
        try:
            if self.list_gate is not None:
                self.list_gate.wait(5)
            if self.list_error is not None:
                raise self.list_error
            return captured
        finally:
            with self._lock:
                self.active_lists -= 1

    def get_object_metadata(self, container, key):
        if key not in self.objects:
            raise NotFoundError(f"{key} not found in {container}")
        return self.objects[key]

    def write_object(self, container, key, data, content_type):
        with self._lock:
            self.write_calls.append(key)
            for marker, error in self.write_errors.items():
                if marker in key:
                    raise error
        if self.write_gate is not None:
            self.write_gate.wait(5)
        with self._lock:
            if key in self.objects:
                raise KeyConflictError(f"{key} already exists")
            self._writes += 1
            self.objects[key] = ObjectRecord(
                key=key,
                last_modified=BASE_TIME + timedelta(hours=1, seconds=self._writes),
                size_bytes=len(data),
                access_url=self.resolve_access_url(container, key),
                content_type=content_type,
            )

    def resolve_access_url(self, container, key):
        return f"https://example.test/{container}/{key}"

    def verify_container_exists(self, container):
        return None


@pytest.fixture
def mock_settings():
    """
    Provides a mock of the application settings for testing.
    This avoids the need for environment variables during tests.
    """
    settings = MagicMock(spec=Settings)
    settings.STORAGE_PROVIDER = "azure"
    settings.CONTAINER_NAME = "rawinvoices"
    settings.LOG_LEVEL = "INFO"
    settings.POLL_INTERVAL_SECONDS = 30.0
    settings.GATEWAY_TIMEOUT_SECONDS = 5.0
    settings.LIST_PAGE_SIZE = 100
    settings.MAX_UPLOAD_BYTES = 10 * 1024 * 1024
    settings.ACCEPTED_CONTENT_TYPES = ["application/pdf", "image/jpeg", "image/png"]
    settings.AZURE_STORAGE_CONNECTION_STRING = None
    settings.AZURE_ACCOUNT_URL = "https://acct.blob.core.windows.net"
    settings.AZURE_STORAGE_ACCOUNT_KEY = "test_key"
    settings.AZURE_STORAGE_SAS_TOKEN = None
    settings.DROPBOX_APP_KEY = "test_key"
    settings.DROPBOX_APP_SECRET = "test_secret"
    settings.DROPBOX_REFRESH_TOKEN = "test_token"
    settings.DROPBOX_UPLOAD_CHUNK_SIZE = 1024
    settings.BASE_DIR = Path("/tmp")
    settings.LOG_FILE = Path("/tmp/app.log")
    settings.missing_storage_settings.return_value = []
    return settings


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mock_gateway():
    """Fixture for a mock storage gateway."""
    return MagicMock(spec=StorageGateway)


@pytest.fixture(autouse=True)
def patch_settings_class(monkeypatch, mock_settings):
    """
    Replaces the `Settings` constructor for every test, so any part of the app
    that calls `Settings()` receives `mock_settings` and no real environment is read.
    """
    # get_settings may have cached a real instance during collection.
    get_settings.cache_clear()
    monkeypatch.setattr("smartdocs.config.Settings", lambda *args, **kwargs: mock_settings)
    yield
    get_settings.cache_clear()
