"""
CDN gateway service: file delivery over S3-compatible object storage.
"""

from typing import Any, Dict, Optional, Sequence

from fastapi import Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from .adapters.object_storage_client import ObjectStorageClient
from .caching.response_cache import ResponseCache
from .domain.auth_middleware import ApiKeyAuthenticator
from .domain.file_handlers import FileHandlers
from .domain.pipeline import RequestPipeline, Stage, auth_stage, rate_limit_stage
from .ratelimit.fixed_window import FixedWindowRateLimiter, RateLimitMiddleware

CDN_CACHE_TTL = 86400
FILE_INFO_CACHE_TTL = 300
FILE_LIST_CACHE_TTL = 60
STATS_CACHE_TTL = 300
API_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


def build_storage_client(config: ServiceConfig) -> ObjectStorageClient:
    return ObjectStorageClient(
        config.storage_bucket,
        config.storage_prefix,
        endpoint_url=config.storage_endpoint_url or None,
        region=config.storage_region or None,
        access_key_id=config.storage_access_key_id or None,
        secret_access_key=config.storage_secret_access_key or None,
        public_read=config.storage_public_read,
        quota_bytes=config.storage_quota_bytes,
    )


class CdnService(BaseService):
    """CDN gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        storage_client: Optional[ObjectStorageClient] = None,
    ):
        config = config or get_config("cdn")
        self.storage_client = storage_client or build_storage_client(config)
        super().__init__("cdn", config)

        self.response_cache = ResponseCache(
            default_ttl=self.config.cache_default_ttl,
            max_entries=self.config.cache_max_entries,
            check_period=self.config.cache_check_period,
            metrics=self.metrics,
        )
        self.rate_limiter = FixedWindowRateLimiter(self.config.rate_limit_rules(), metrics=self.metrics)
        self.rate_limit_middleware = RateLimitMiddleware(
            self.rate_limiter,
            trust_forwarded_headers=self.config.trust_forwarded_headers,
        )
        self.authenticator = ApiKeyAuthenticator(self.config.api_key)
        self.handlers = FileHandlers(
            self.storage_client,
            self.response_cache,
            self.config,
            metrics=self.metrics,
        )

        self._setup_cdn_routes()
        self._setup_api_routes()
        self.app.state.cdn_service = self

    async def startup(self) -> None:
        await self.response_cache.start()
        self.logger.info(
            "CDN service started",
            bucket=self.config.storage_bucket,
            prefix=self.config.storage_prefix,
        )

    async def shutdown(self) -> None:
        await self.response_cache.stop()

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {
            "storage": await self.storage_client.check_connection(),
            "cache": {"entries": len(self.response_cache)},
        }

    def _pipeline(self, name: str, stages: Sequence[Stage], cache_ttl: Optional[int] = None) -> RequestPipeline:
        return RequestPipeline(
            name,
            stages,
            render_error=self.error_response,
            render_internal_error=self.internal_error_response,
            cache=self.response_cache if cache_ttl is not None else None,
            cache_ttl=cache_ttl,
            metrics=self.metrics,
        )

    def _rate(self, limit_type: str) -> Stage:
        return rate_limit_stage(self.rate_limit_middleware, limit_type, self.error_response)

    def _api_stages(self, *extra: Stage) -> Sequence[Stage]:
        """Every /api route: auth first, then the shared api budget."""
        return [auth_stage(self.authenticator), self._rate("api"), *extra]

    def _setup_cdn_routes(self):
        """Public delivery routes."""
        serve_pipeline = self._pipeline("cdn", [self._rate("download")], cache_ttl=CDN_CACHE_TTL)
        download_pipeline = self._pipeline("download", [self._rate("download")])

        @self.app.get("/cdn/{file_id}")
        async def serve_file(request: Request, file_id: str):
            """Serve file inline by id."""
            return await serve_pipeline.handle(request, self.handlers.serve)

        @self.app.get("/cdn/{file_id}/{filename}")
        async def serve_named_file(request: Request, file_id: str, filename: str):
            """Serve file inline by id; the filename segment is cosmetic."""
            return await serve_pipeline.handle(request, self.handlers.serve)

        @self.app.get("/download/{file_id}")
        async def download_file(request: Request, file_id: str):
            """Download file as attachment."""
            return await download_pipeline.handle(request, self.handlers.download)

    def _setup_api_routes(self):
        """Key-protected management routes."""
        upload_pipeline = self._pipeline("upload", self._api_stages(self._rate("upload")))
        info_pipeline = self._pipeline("file_info", self._api_stages(), cache_ttl=FILE_INFO_CACHE_TTL)
        list_pipeline = self._pipeline("file_list", self._api_stages(), cache_ttl=FILE_LIST_CACHE_TTL)
        stats_pipeline = self._pipeline("stats", self._api_stages(), cache_ttl=STATS_CACHE_TTL)
        api_pipeline = self._pipeline("api", self._api_stages())

        @self.app.post("/api/upload")
        async def upload_file(request: Request):
            """Upload a single file (multipart field "file")."""
            return await upload_pipeline.handle(request, self.handlers.upload)

        @self.app.post("/api/upload/multiple")
        async def upload_files(request: Request):
            """Upload up to 10 files (multipart field "files")."""
            return await upload_pipeline.handle(request, self.handlers.upload_multiple)

        @self.app.get("/api/file/{file_id}")
        async def get_file_info(request: Request, file_id: str):
            """File metadata."""
            return await info_pipeline.handle(request, self.handlers.get_info)

        @self.app.delete("/api/file/{file_id}")
        async def delete_file(request: Request, file_id: str):
            """Delete a file and drop its cached responses."""
            return await api_pipeline.handle(request, self.handlers.delete)

        @self.app.get("/api/files/search")
        async def search_files(request: Request):
            """Substring search on file names."""
            return await api_pipeline.handle(request, self.handlers.search)

        @self.app.get("/api/files")
        async def list_files(request: Request):
            """Paginated listing."""
            return await list_pipeline.handle(request, self.handlers.list_files)

        @self.app.get("/api/stats")
        async def get_stats(request: Request):
            """Storage usage and file count."""
            return await stats_pipeline.handle(request, self.handlers.stats)

        @self.app.post("/api/cache/clear")
        async def clear_cache(request: Request):
            """Invalidate cached responses by substring, or everything."""
            return await api_pipeline.handle(request, self.handlers.clear_cache)

        @self.app.get("/api/cache/stats")
        async def cache_stats(request: Request):
            """Response cache statistics."""
            return await api_pipeline.handle(request, self.handlers.cache_stats)

        # Registered last: unmatched /api paths still pass the key gate and api budget
        @self.app.api_route("/api", methods=API_METHODS, include_in_schema=False)
        @self.app.api_route("/api/{path:path}", methods=API_METHODS, include_in_schema=False)
        async def api_not_found(request: Request):
            return await api_pipeline.handle(request, self.handlers.not_found)


def create_app(
    config: Optional[ServiceConfig] = None,
    storage_client: Optional[ObjectStorageClient] = None,
):
    """Create FastAPI application."""
    service = CdnService(config=config, storage_client=storage_client)
    return service.app


def main() -> None:
    service = CdnService()
    service.run()


if __name__ == "__main__":
    main()
