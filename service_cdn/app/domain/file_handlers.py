"""
Route handlers for the CDN gateway.

Handlers validate the request shape, delegate to the storage client and
shape the response. Storage failures are translated into the service error
taxonomy here; nothing from the backend reaches the client raw.
"""

import json
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from shared.config import ServiceConfig
from shared.errors import NotFoundError, UpstreamError, ValidationError
from shared.logging import get_logger
from ..adapters.object_storage_client import (
    FileRecord,
    ObjectStorageClient,
    StorageError,
    StorageNotFoundError,
)
from ..caching.response_cache import ResponseCache
from .files import (
    content_disposition,
    format_file_size,
    generate_cdn_url,
    get_file_category,
    validate_file_type,
)

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


MAX_FILES_PER_UPLOAD = 10
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 1000
CDN_BROWSER_MAX_AGE = 31536000
LISTING_CACHE_PATTERNS = ("/api/files", "/api/stats")
MULTIPART_OVERHEAD_BYTES = 1024 * 1024


def success(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=body)


class FileHandlers:
    """HTTP-facing operations over the object storage client."""

    def __init__(
        self,
        storage: ObjectStorageClient,
        cache: ResponseCache,
        config: ServiceConfig,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.storage = storage
        self.cache = cache
        self.config = config
        self.metrics = metrics
        self.logger = get_logger("cdn.file_handlers")

    # Helpers

    def _base_url(self, request: Request) -> str:
        return self.config.public_base_url or str(request.base_url)

    def _decorate(self, request: Request, record: FileRecord, *, direct_url: bool = False) -> Dict[str, Any]:
        base_url = self._base_url(request)
        data = record.to_dict()
        data["url"] = generate_cdn_url(base_url, record.id)
        if direct_url:
            data["directUrl"] = generate_cdn_url(base_url, record.id, record.name)
        data["category"] = get_file_category(record.mime_type)
        data["formattedSize"] = format_file_size(record.size)
        return data

    async def _read_form(self, request: Request, max_files: int) -> FormData:
        """Parse the multipart body, refusing oversized requests before any part is spooled."""
        declared = request.headers.get("content-length", "")
        budget = self.config.max_file_size_bytes * max_files + MULTIPART_OVERHEAD_BYTES
        if declared.isdigit() and int(declared) > budget:
            raise self._size_error()

        try:
            return await request.form(max_files=max_files)
        except StarletteHTTPException as exc:
            raise ValidationError(str(exc.detail)) from exc

    async def _read_upload(self, upload: UploadFile) -> bytes:
        """Enforce the size and type limits and return the payload."""
        limit = self.config.max_file_size_bytes
        if upload.size is not None and upload.size > limit:
            raise self._size_error()

        content = await upload.read()
        if len(content) > limit:
            raise self._size_error()

        if not validate_file_type(upload.content_type):
            raise ValidationError("File type not allowed")
        return content

    def _size_error(self) -> ValidationError:
        return ValidationError(f"File size exceeds maximum limit of {self.config.max_file_size_mb}MB")

    def _invalidate_listings(self) -> None:
        for pattern in LISTING_CACHE_PATTERNS:
            self.cache.invalidate(pattern)

    async def _store(self, upload: UploadFile, content: bytes, custom_name: Optional[str] = None) -> FileRecord:
        try:
            record = await self.storage.upload_file(
                content,
                upload.filename,
                upload.content_type,
                custom_name=custom_name,
            )
        except StorageError as exc:
            raise UpstreamError("Failed to upload file", details={"reason": str(exc)}) from exc

        if self.metrics:
            self.metrics.record_upload(get_file_category(record.mime_type), record.size)
        return record

    # Uploads

    async def upload(self, request: Request) -> Response:
        form = await self._read_form(request, max_files=1)
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            raise ValidationError("No file provided")

        custom_name = form.get("name")
        if not isinstance(custom_name, str) or not custom_name.strip():
            custom_name = None

        try:
            content = await self._read_upload(upload)
            record = await self._store(upload, content, custom_name)
        finally:
            await upload.close()

        self._invalidate_listings()
        return success(self._decorate(request, record, direct_url=True), status_code=201)

    async def upload_multiple(self, request: Request) -> Response:
        form = await self._read_form(request, max_files=MAX_FILES_PER_UPLOAD)
        uploads = [item for item in form.getlist("files") if isinstance(item, UploadFile)]
        if not uploads:
            raise ValidationError("No files provided")

        uploaded: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        for upload in uploads:
            try:
                content = await self._read_upload(upload)
                record = await self._store(upload, content)
                uploaded.append(self._decorate(request, record, direct_url=True))
            except (ValidationError, UpstreamError) as exc:
                failure = exc.to_response(expose_details=self.config.is_development)
                entry = {"name": upload.filename, "error": failure.error}
                if failure.message:
                    entry["message"] = failure.message
                failed.append(entry)
                self.logger.warning("File rejected in batch upload", name=upload.filename, error=exc.message)
            finally:
                await upload.close()

        if uploaded:
            self._invalidate_listings()

        return success(
            {
                "uploaded": uploaded,
                "failed": failed,
                "total": len(uploads),
                "successful": len(uploaded),
            },
            status_code=201,
        )

    # Delivery

    async def _open(self, file_id: str, operation: str):
        try:
            return await self.storage.open_file(file_id)
        except StorageNotFoundError as exc:
            raise NotFoundError("File not found") from exc
        except StorageError as exc:
            raise UpstreamError(f"Failed to {operation} file", details={"reason": str(exc)}) from exc

    async def serve(self, request: Request) -> Response:
        """Inline delivery. Small objects are buffered so the cache can keep them."""
        stored = await self._open(request.path_params["file_id"], "serve")
        record = stored.record
        headers = {
            "Content-Disposition": content_disposition("inline", record.name),
            "Cache-Control": f"public, max-age={CDN_BROWSER_MAX_AGE}",
            "Access-Control-Allow-Origin": "*",
        }

        if record.size <= self.config.cache_max_body_bytes:
            try:
                body = b"".join([chunk async for chunk in self.storage.iter_chunks(stored.body)])
            except StorageError as exc:
                raise UpstreamError("Failed to serve file", details={"reason": str(exc)}) from exc
            return Response(content=body, media_type=record.mime_type, headers=headers)

        headers["Content-Length"] = str(record.size)
        return StreamingResponse(
            self.storage.iter_chunks(stored.body),
            media_type=record.mime_type,
            headers=headers,
        )

    async def download(self, request: Request) -> Response:
        stored = await self._open(request.path_params["file_id"], "download")
        record = stored.record
        return StreamingResponse(
            self.storage.iter_chunks(stored.body),
            media_type=record.mime_type,
            headers={
                "Content-Disposition": content_disposition("attachment", record.name),
                "Content-Length": str(record.size),
            },
        )

    # Metadata

    async def get_info(self, request: Request) -> Response:
        file_id = request.path_params["file_id"]
        try:
            record = await self.storage.get_file_info(file_id)
        except StorageNotFoundError as exc:
            raise NotFoundError("File not found") from exc
        except StorageError as exc:
            raise UpstreamError("Failed to get file info", details={"reason": str(exc)}) from exc

        return success(self._decorate(request, record))

    async def delete(self, request: Request) -> Response:
        file_id = request.path_params["file_id"]
        try:
            await self.storage.delete_file(file_id)
        except StorageNotFoundError as exc:
            raise NotFoundError("File not found") from exc
        except StorageError as exc:
            raise UpstreamError("Failed to delete file", details={"reason": str(exc)}) from exc

        self.cache.invalidate(file_id)
        self._invalidate_listings()
        return success(message="File deleted successfully")

    async def list_files(self, request: Request) -> Response:
        raw_size = request.query_params.get("pageSize")
        try:
            page_size = int(raw_size) if raw_size else DEFAULT_PAGE_SIZE
        except ValueError as exc:
            raise ValidationError("pageSize must be an integer") from exc
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        page_token = request.query_params.get("pageToken") or None

        try:
            records, next_token = await self.storage.list_files(page_size, page_token)
        except StorageError as exc:
            raise UpstreamError("Failed to list files", details={"reason": str(exc)}) from exc

        files = [self._decorate(request, record) for record in records]
        return success({"files": files, "nextPageToken": next_token, "count": len(files)})

    async def search(self, request: Request) -> Response:
        query = (request.query_params.get("q") or "").strip()
        if not query:
            raise ValidationError("Search query is required")

        try:
            records = await self.storage.search_files(query)
        except StorageError as exc:
            raise UpstreamError("Failed to search files", details={"reason": str(exc)}) from exc

        return success([self._decorate(request, record) for record in records])

    async def stats(self, request: Request) -> Response:
        try:
            quota = await self.storage.get_storage_stats()
        except StorageError as exc:
            raise UpstreamError("Failed to get stats", details={"reason": str(exc)}) from exc

        percent_used = (quota.usage / quota.limit) * 100 if quota.limit else 0.0
        return success({
            "storage": {
                "used": format_file_size(quota.usage),
                "total": format_file_size(quota.limit),
                "usedBytes": quota.usage,
                "totalBytes": quota.limit,
                "percentUsed": f"{percent_used:.2f}",
            },
            "files": {
                "total": quota.file_count,
            },
        })

    # Cache administration

    async def clear_cache(self, request: Request) -> Response:
        raw = await request.body()
        try:
            payload = json.loads(raw) if raw.strip() else {}
        except ValueError as exc:
            raise ValidationError("Request body must be valid JSON") from exc

        pattern = payload.get("pattern") if isinstance(payload, dict) else None
        if pattern is not None and not isinstance(pattern, str):
            raise ValidationError("pattern must be a string")

        removed = self.cache.invalidate(pattern or None)
        return success({"removed": removed}, message="Cache cleared")

    async def cache_stats(self, request: Request) -> Response:
        return success(self.cache.get_stats())

    async def not_found(self, request: Request) -> Response:
        raise NotFoundError("Endpoint not found")
