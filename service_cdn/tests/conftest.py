"""
Shared fixtures for CDN service tests.
"""

import io
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_cdn.app.adapters.object_storage_client import (
    FileRecord,
    StorageNotFoundError,
    StorageQuota,
    StoredObject,
    build_file_name,
)
from service_cdn.app.main import create_app

API_KEY = "test-api-key"


class TrackingBody(io.BytesIO):
    """Object body that remembers whether it was closed."""

    def __init__(self, data: bytes):
        super().__init__(data)
        self.was_closed = False

    def close(self):
        self.was_closed = True
        super().close()


class InMemoryStorage:
    """Storage client double keeping objects in a dict."""

    def __init__(self, quota_bytes: int = 1024 * 1024 * 1024):
        self.objects: Dict[str, Tuple[FileRecord, bytes]] = {}
        self.quota_bytes = quota_bytes
        self.bodies: List[TrackingBody] = []
        self.fail_with: Optional[Exception] = None

    def _check_failure(self):
        if self.fail_with is not None:
            raise self.fail_with

    def _get(self, file_id: str) -> Tuple[FileRecord, bytes]:
        self._check_failure()
        try:
            return self.objects[file_id]
        except KeyError:
            raise StorageNotFoundError(f"File {file_id!r} not found") from None

    async def upload_file(self, content, original_name, content_type, custom_name=None):
        self._check_failure()
        file_id = uuid.uuid4().hex
        record = FileRecord(
            id=file_id,
            name=build_file_name(file_id, original_name, custom_name),
            mime_type=content_type,
            size=len(content),
            created_time=datetime.now(timezone.utc).isoformat(),
        )
        self.objects[file_id] = (record, bytes(content))
        return record

    async def get_file_info(self, file_id):
        return self._get(file_id)[0]

    async def open_file(self, file_id):
        record, content = self._get(file_id)
        body = TrackingBody(content)
        self.bodies.append(body)
        return StoredObject(record=record, body=body)

    async def iter_chunks(self, body, chunk_size=64 * 1024):
        try:
            while True:
                chunk = body.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def delete_file(self, file_id):
        self._get(file_id)
        del self.objects[file_id]

    async def list_files(self, page_size=100, page_token=None):
        self._check_failure()
        records = sorted((record for record, _ in self.objects.values()),
                         key=lambda record: record.created_time, reverse=True)
        start = int(page_token) if page_token else 0
        page = records[start:start + page_size]
        next_token = str(start + page_size) if start + page_size < len(records) else None
        return page, next_token

    async def search_files(self, query):
        self._check_failure()
        return [record for record, _ in self.objects.values() if query.lower() in record.name.lower()]

    async def get_storage_stats(self):
        self._check_failure()
        usage = sum(record.size for record, _ in self.objects.values())
        return StorageQuota(usage=usage, limit=self.quota_bytes, file_count=len(self.objects))

    async def check_connection(self):
        return {"status": "ok", "bucket": "memory"}


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def config():
    return get_config("cdn", api_key=API_KEY, env="production")


@pytest.fixture
def app(config, storage):
    return create_app(config=config, storage_client=storage)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    return {"X-API-Key": API_KEY}


@pytest.fixture
def service(app):
    return app.state.cdn_service

