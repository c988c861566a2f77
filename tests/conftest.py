"""
Pytest configuration and fixtures for Project Export Backend tests.
"""

import asyncio
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["APP_ENV"] = "test"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["EXPORT_STORAGE_DIR"] = tempfile.mkdtemp(prefix="export_test_storage_")
os.environ["DOWNLOAD_SIGNING_SECRET"] = "test-signing-secret"

from project_export_backend.cache import KeyValueCache
from project_export_backend.cache_backend import CacheBackend, InMemoryCacheBackend
from project_export_backend.collaborators import (
    ArtifactStore,
    BatchRetrievalResult,
    FileRetrieval,
    FileRetrievalFailure,
    MarkdownDocument,
    PdfConverter,
    PdfDocument,
    RetrievedFile,
    StoredArtifact,
)
from project_export_backend.configuration import ExportSettings
from project_export_backend.locking import DistributedLock
from project_export_backend.main import app, get_orchestrator
from project_export_backend.markdown_generator import CombiningMarkdownGenerator
from project_export_backend.orchestrator import ExportOrchestrator
from project_export_backend.status_tracker import ExportStatusTracker


class FakeClock:
    """Controllable time source usable both as a monotonic clock and a UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeFileRetrieval(FileRetrieval):
    """In-memory file service that records every call."""

    def __init__(self, files: Dict[str, RetrievedFile], project_files: Optional[Dict[str, List[str]]] = None):
        self.files = files
        self.project_files = project_files or {}
        self.list_calls = 0
        self.get_many_calls = 0
        self.release: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None
        self.ready = True
        self.closed = False

    async def list_project_files(self, project_id: str) -> List[str]:
        self.list_calls += 1
        return list(self.project_files.get(project_id, []))

    async def get_many(self, file_ids) -> BatchRetrievalResult:
        self.get_many_calls += 1
        if self.entered is not None:
            self.entered.set()
        if self.release is not None:
            await self.release.wait()
        result = BatchRetrievalResult()
        for file_id in file_ids:
            if file_id in self.files:
                result.successful.append(self.files[file_id])
            else:
                result.failed.append(FileRetrievalFailure(file_id, "404", "not found"))
        return result

    async def is_ready(self) -> bool:
        return self.ready

    async def close(self) -> None:
        self.closed = True


class FakePdfConverter(PdfConverter):
    def __init__(self):
        self.calls = 0
        self.fail_with: Optional[Exception] = None
        self.ready = True

    async def convert(self, markdown: MarkdownDocument, options) -> PdfDocument:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return PdfDocument(data=b"%PDF-1.4 " + markdown.content.encode("utf-8"), file_name="export.pdf")

    async def is_ready(self) -> bool:
        return self.ready


class FakeArtifactStore(ArtifactStore):
    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.uploads: List[Dict] = []

    async def upload(self, data: bytes, name: str, content_type: str) -> StoredArtifact:
        self.uploads.append({"data": data, "name": name, "content_type": content_type})
        object_key = f"exports/{len(self.uploads)}/{name}"
        return StoredArtifact(
            download_url=f"https://downloads.example.com/{object_key}",
            expires_at=self.clock.now() + timedelta(hours=24),
            object_key=object_key,
        )


class FailingBackend(CacheBackend):
    """Backend whose every operation fails as if Redis were down."""

    name = "failing"

    async def get(self, key):
        raise ConnectionError("connection refused")

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("connection refused")

    async def set_if_absent(self, key, value, ttl_seconds):
        raise ConnectionError("connection refused")

    async def delete(self, *keys):
        raise ConnectionError("connection refused")

    async def delete_if_equals(self, key, expected):
        raise ConnectionError("connection refused")

    async def exists(self, key):
        raise ConnectionError("connection refused")

    async def expire(self, key, ttl_seconds):
        raise ConnectionError("connection refused")

    async def mget(self, keys):
        raise ConnectionError("connection refused")

    async def scan(self, pattern, count):
        raise ConnectionError("connection refused")
        yield  # pragma: no cover

    async def ping(self):
        raise ConnectionError("connection refused")


def make_file(file_id: str, content: Optional[str] = None, name: Optional[str] = None) -> RetrievedFile:
    return RetrievedFile(
        id=file_id,
        name=name or f"{file_id}.md",
        content=content if content is not None else f"# {file_id}\n\nContent of {file_id}.\n",
    )


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the local artifact directory after all tests."""
    storage_dir = os.environ["EXPORT_STORAGE_DIR"]
    yield {"storage": storage_dir}
    shutil.rmtree(storage_dir, ignore_errors=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return InMemoryCacheBackend(clock=clock.monotonic)


@pytest.fixture
def cache(backend):
    return KeyValueCache(backend, environment="test", key_prefix="project-service")


@pytest.fixture
def failing_cache():
    return KeyValueCache(FailingBackend(), environment="test")


@pytest.fixture
def lock(cache):
    return DistributedLock(cache)


@pytest.fixture
def tracker(cache, clock):
    return ExportStatusTracker(cache, clock=clock.now)


@pytest.fixture
def files():
    return {file_id: make_file(file_id) for file_id in ("f1", "f2", "f3")}


@pytest.fixture
def file_retrieval(files):
    return FakeFileRetrieval(files, project_files={"p1": ["f1", "f2", "f3"], "empty": []})


@pytest.fixture
def pdf_converter():
    return FakePdfConverter()


@pytest.fixture
def artifact_store(clock):
    return FakeArtifactStore(clock)


@pytest.fixture
def make_orchestrator(file_retrieval, pdf_converter, artifact_store, cache, clock):
    """Factory building an orchestrator over the fakes; keyword arguments override ExportSettings."""

    def _make(export_cache: Optional[KeyValueCache] = None, **overrides) -> ExportOrchestrator:
        settings = ExportSettings(**overrides)
        target_cache = export_cache or cache
        return ExportOrchestrator(
            file_retrieval=file_retrieval,
            markdown_generator=CombiningMarkdownGenerator(clock=clock.now),
            pdf_converter=pdf_converter,
            artifact_store=artifact_store,
            cache=target_cache,
            settings=settings,
            tracker=ExportStatusTracker(target_cache, settings.status_ttl_seconds, clock=clock.now),
            clock=clock.now,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def client(orchestrator):
    """Create a test client for the FastAPI app wired to the fake collaborators."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    return {"X-User-Id": "user-1"}

