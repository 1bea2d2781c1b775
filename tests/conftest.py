import asyncio
import io
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from filedrop.errors import IndexWriteError, StorageError
from filedrop.index import JsonFileIndex
from filedrop.main import create_app
from filedrop.schemas import StoredBlob, UploadRecord
from filedrop.settings import Settings
from filedrop.storage import BlobStore, read_all

BASE_TIME = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def make_record(n: int, seconds: Optional[float] = None) -> UploadRecord:
    return UploadRecord(
        original_name=f"file-{n}.pdf",
        stored_key=f"1000-{n}-file-{n}.pdf",
        location=f"1000-{n}-file-{n}.pdf",
        received_at=BASE_TIME + timedelta(seconds=n if seconds is None else seconds),
    )


class MemoryBlobStore(BlobStore):
    name = "memory"

    def __init__(self):
        self.blobs = {}

    async def write(self, key, stream, content_type=None):
        data = await read_all(stream, 10 * 1024 * 1024)
        self.blobs[key] = data
        return StoredBlob(location=f"mem://{key}", size=len(data))


class BrokenBlobStore(BlobStore):
    name = "broken"

    def __init__(self):
        self.attempts = 0

    async def write(self, key, stream, content_type=None):
        self.attempts += 1
        raise StorageError("disk on fire")


class SlowBlobStore(BlobStore):
    name = "slow"

    async def write(self, key, stream, content_type=None):
        await asyncio.sleep(10)
        return StoredBlob(location=key, size=0)


class BrokenIndex(JsonFileIndex):
    async def append(self, record):
        raise IndexWriteError("index volume unavailable")


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, event, data):
        self.events.append((event, data))


class ExplodingNotifier:
    def publish(self, event, data):
        raise RuntimeError("push gateway unreachable")


def payload(data: bytes = b"%PDF-1.4 test document") -> io.BytesIO:
    return io.BytesIO(data)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        STORAGE_DIR=tmp_path / "uploads",
        DATABASE_URL=f"sqlite:///{tmp_path / 'index.db'}",
        LOG_DIR=None,
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client
