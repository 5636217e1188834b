"""
S3-compatible object storage client for the CDN gateway.

Objects are stored as ``<prefix><file_id>/<name>`` so that a file id can be
resolved with a single prefix listing and listings carry the display name.
boto3 is synchronous; every call is pushed onto the default executor so the
event loop is never blocked.
"""

import asyncio
import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from shared.logging import get_logger

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 64 * 1024
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageError(Exception):
    """Storage backend call failed."""


class StorageNotFoundError(StorageError):
    """Requested object does not exist."""


@dataclass
class FileRecord:
    id: str
    name: str
    mime_type: str
    size: int
    created_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mimeType": self.mime_type,
            "size": self.size,
            "createdTime": self.created_time,
        }


@dataclass
class StoredObject:
    record: FileRecord
    body: Any


@dataclass
class StorageQuota:
    usage: int
    limit: int
    file_count: int


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def guess_mime_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def sanitize_name(name: str) -> str:
    """Object names cannot introduce extra key segments."""
    cleaned = name.replace("/", "_").replace("\\", "_").strip()
    return cleaned or "file"


def build_file_name(file_id: str, original_name: Optional[str], custom_name: Optional[str] = None) -> str:
    if custom_name:
        return sanitize_name(custom_name)
    original = original_name or ""
    extension = original.rsplit(".", 1)[-1] if "." in original else ""
    return sanitize_name(f"{file_id}.{extension}" if extension else file_id)


class ObjectStorageClient:
    """Files stored in one bucket under one key prefix."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        *,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_read: bool = False,
        quota_bytes: int = 15 * 1024 ** 3,
    ):
        """Initialize the storage client.

        Args:
            bucket: Bucket that holds the CDN files
            prefix: Key prefix acting as the target container
            endpoint_url: Custom endpoint for R2/MinIO; None for AWS
            region: Bucket region
            access_key_id: Explicit credentials; default chain when omitted
            secret_access_key: Explicit credentials; default chain when omitted
            public_read: Apply the public-read ACL to uploads
            quota_bytes: Storage allowance reported by stats
        """
        self.bucket = bucket
        self.prefix = prefix if not prefix or prefix.endswith("/") else f"{prefix}/"
        self.public_read = public_read
        self.quota_bytes = quota_bytes
        self.logger = get_logger("cdn.storage_client")

        client_kwargs: Dict[str, Any] = {
            "config": Config(retries={"max_attempts": 3, "mode": "standard"}),
        }
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if region:
            client_kwargs["region_name"] = region
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key

        self.s3 = boto3.client("s3", **client_kwargs)

    async def _call(self, func: Callable[..., T], *args, **kwargs) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: func(*args, **kwargs))
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                raise StorageNotFoundError(str(exc)) from exc
            raise StorageError(str(exc)) from exc
        except BotoCoreError as exc:
            raise StorageError(str(exc)) from exc

    def _key(self, file_id: str, name: str) -> str:
        return f"{self.prefix}{file_id}/{name}"

    def _parse_key(self, key: str) -> Optional[Tuple[str, str]]:
        relative = key[len(self.prefix):] if key.startswith(self.prefix) else None
        if not relative or "/" not in relative:
            return None
        file_id, name = relative.split("/", 1)
        if not file_id or not name:
            return None
        return file_id, name

    def _record_from_listing(self, item: Dict[str, Any]) -> Optional[FileRecord]:
        parsed = self._parse_key(item["Key"])
        if parsed is None:
            return None
        file_id, name = parsed
        return FileRecord(
            id=file_id,
            name=name,
            mime_type=guess_mime_type(name),
            size=int(item.get("Size", 0)),
            created_time=_isoformat(item.get("LastModified")),
        )

    async def _locate(self, file_id: str) -> str:
        """Resolve a file id to its object key."""
        if not file_id or "/" in file_id or file_id in (".", ".."):
            raise StorageNotFoundError(f"File {file_id!r} not found")

        response = await self._call(
            self.s3.list_objects_v2,
            Bucket=self.bucket,
            Prefix=f"{self.prefix}{file_id}/",
            MaxKeys=1,
        )
        contents = response.get("Contents") or []
        if not contents:
            raise StorageNotFoundError(f"File {file_id!r} not found")
        return contents[0]["Key"]

    async def upload_file(
        self,
        content: bytes,
        original_name: Optional[str],
        content_type: str,
        custom_name: Optional[str] = None,
    ) -> FileRecord:
        """Store a new object and return its record."""
        file_id = uuid.uuid4().hex
        name = build_file_name(file_id, original_name, custom_name)
        key = self._key(file_id, name)

        put_kwargs: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": content,
            "ContentType": content_type,
            "Metadata": {"original-name": (original_name or name).encode("ascii", "replace").decode("ascii")},
        }
        if self.public_read:
            put_kwargs["ACL"] = "public-read"

        await self._call(self.s3.put_object, **put_kwargs)
        self.logger.info("File uploaded", file_id=file_id, size=len(content), content_type=content_type)

        return FileRecord(
            id=file_id,
            name=name,
            mime_type=content_type,
            size=len(content),
            created_time=_isoformat(datetime.now(timezone.utc)),
        )

    async def get_file_info(self, file_id: str) -> FileRecord:
        key = await self._locate(file_id)
        head = await self._call(self.s3.head_object, Bucket=self.bucket, Key=key)
        name = key.rsplit("/", 1)[-1]
        return FileRecord(
            id=file_id,
            name=name,
            mime_type=head.get("ContentType") or guess_mime_type(name),
            size=int(head.get("ContentLength", 0)),
            created_time=_isoformat(head.get("LastModified")),
        )

    async def open_file(self, file_id: str) -> StoredObject:
        """Fetch an object; the caller owns ``body`` and must close it."""
        key = await self._locate(file_id)
        response = await self._call(self.s3.get_object, Bucket=self.bucket, Key=key)
        name = key.rsplit("/", 1)[-1]
        record = FileRecord(
            id=file_id,
            name=name,
            mime_type=response.get("ContentType") or guess_mime_type(name),
            size=int(response.get("ContentLength", 0)),
            created_time=_isoformat(response.get("LastModified")),
        )
        return StoredObject(record=record, body=response["Body"])

    async def iter_chunks(self, body: Any, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield an object body in chunks, closing it however iteration ends."""
        loop = asyncio.get_running_loop()
        try:
            while True:
                try:
                    chunk = await loop.run_in_executor(None, body.read, chunk_size)
                except (BotoCoreError, ClientError) as exc:
                    raise StorageError(str(exc)) from exc
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def read_file(self, file_id: str) -> Tuple[FileRecord, bytes]:
        stored = await self.open_file(file_id)
        content = b"".join([chunk async for chunk in self.iter_chunks(stored.body)])
        return stored.record, content

    async def delete_file(self, file_id: str) -> None:
        key = await self._locate(file_id)
        await self._call(self.s3.delete_object, Bucket=self.bucket, Key=key)
        self.logger.info("File deleted", file_id=file_id)

    async def list_files(self, page_size: int = 100, page_token: Optional[str] = None) -> Tuple[List[FileRecord], Optional[str]]:
        """One page of files, newest first within the page."""
        kwargs: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": self.prefix, "MaxKeys": page_size}
        if page_token:
            kwargs["ContinuationToken"] = page_token

        response = await self._call(self.s3.list_objects_v2, **kwargs)
        records = [
            record for record in (self._record_from_listing(item) for item in response.get("Contents") or [])
            if record is not None
        ]
        records.sort(key=lambda record: record.created_time or "", reverse=True)
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return records, next_token

    async def _iter_all(self) -> AsyncIterator[FileRecord]:
        token: Optional[str] = None
        while True:
            records, token = await self.list_files(1000, token)
            for record in records:
                yield record
            if not token:
                break

    async def search_files(self, query: str) -> List[FileRecord]:
        """Case-insensitive substring match on file names."""
        needle = query.lower()
        return [record async for record in self._iter_all() if needle in record.name.lower()]

    async def get_storage_stats(self) -> StorageQuota:
        usage = 0
        count = 0
        async for record in self._iter_all():
            usage += record.size
            count += 1
        return StorageQuota(usage=usage, limit=self.quota_bytes, file_count=count)

    async def check_connection(self) -> Dict[str, Any]:
        """Health check: the bucket must be reachable."""
        try:
            await self._call(self.s3.head_bucket, Bucket=self.bucket)
            return {"status": "ok", "bucket": self.bucket}
        except StorageError as exc:
            return {"status": "error", "bucket": self.bucket, "error": str(exc)}
