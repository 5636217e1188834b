"""
Request pipeline for the CDN gateway.

A pipeline is an explicit ordered list of stages followed by a handler:

    AUTH_PENDING -> RATE_CHECKED -> CACHE_CHECKED -> HANDLER_RUN -> RESPONDED

Each stage either returns ``None`` to continue or a terminal ``Response``;
raising a ``CdnException`` is rendered as the matching error envelope. The
optional cache stage wraps the handler call and stores its return value.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING

from fastapi import Request, Response
from starlette.responses import FileResponse, StreamingResponse

from shared.errors import CdnException, RateLimitError
from shared.logging import get_logger, set_client_context, set_pipeline_context
from ..caching.response_cache import CachedResponse, ResponseCache
from ..ratelimit.fixed_window import RateLimitMiddleware
from .auth_middleware import ApiKeyAuthenticator

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


Stage = Callable[[Request], Awaitable[Optional[Response]]]
Handler = Callable[[Request], Awaitable[Response]]
ErrorRenderer = Callable[[CdnException, Optional[Dict[str, str]]], Response]
InternalErrorRenderer = Callable[[Exception], Response]

# Headers that describe a single delivery and must not be replayed from cache
_UNCACHED_HEADERS = {
    "content-length",
    "content-type",
    "set-cookie",
    "x-cache",
    "x-request-id",
    "x-ratelimit-limit",
    "x-ratelimit-remaining",
    "x-ratelimit-reset",
}


class PipelineState(str, Enum):
    AUTH_PENDING = "auth_pending"
    RATE_CHECKED = "rate_checked"
    CACHE_CHECKED = "cache_checked"
    HANDLER_RUN = "handler_run"
    RESPONDED = "responded"


def cache_key(request: Request) -> str:
    """Exact request identity: the undecoded path plus the raw query string.

    ``/a%3Fb`` and ``/a?b`` never share an entry.
    """
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.url.query
    return f"{path}?{query}" if query else path


def auth_stage(authenticator: ApiKeyAuthenticator) -> Stage:
    async def _authenticate(request: Request) -> Optional[Response]:
        authenticator.authenticate_request(request)
        return None

    return _authenticate


def rate_limit_stage(middleware: RateLimitMiddleware, limit_type: str, render_error: ErrorRenderer) -> Stage:
    async def _check(request: Request) -> Optional[Response]:
        result = middleware.check_request(request, limit_type)
        set_client_context(middleware.get_client_id(request))
        if not result["allowed"]:
            error = RateLimitError(details={"limit_type": limit_type, "limit": result["limit"]})
            headers = {
                "Retry-After": str(result["retry_after"]),
                "X-RateLimit-Limit": str(result["limit"]),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(result["reset_in_seconds"]),
            }
            return render_error(error, headers)

        results: List[Dict[str, Any]] = getattr(request.state, "rate_limits", [])
        results.append(result)
        request.state.rate_limits = results
        return None

    return _check


class RequestPipeline:
    """Runs the stages for one route and then its handler."""

    def __init__(
        self,
        name: str,
        stages: Sequence[Stage],
        *,
        render_error: ErrorRenderer,
        render_internal_error: InternalErrorRenderer,
        cache: Optional[ResponseCache] = None,
        cache_ttl: Optional[int] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.name = name
        self.stages = list(stages)
        self.render_error = render_error
        self.render_internal_error = render_internal_error
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.metrics = metrics
        self.logger = get_logger("cdn.pipeline")

    async def handle(self, request: Request, handler: Handler) -> Response:
        set_pipeline_context(self.name)
        self._advance(request, PipelineState.AUTH_PENDING)
        try:
            for stage in self.stages:
                terminal = await stage(request)
                if terminal is not None:
                    self.logger.info(
                        "Pipeline terminated early",
                        pipeline=self.name,
                        state=request.state.pipeline_state.value,
                        status_code=terminal.status_code,
                    )
                    return self._finish(request, terminal)
        except CdnException as exc:
            self.logger.info(
                "Pipeline rejected request",
                pipeline=self.name,
                state=request.state.pipeline_state.value,
                code=exc.code,
            )
            return self._finish(request, self.render_error(exc, None))
        self._advance(request, PipelineState.RATE_CHECKED)

        if self._cacheable_request(request):
            key = cache_key(request)
            cached = self.cache.get(key)
            self._advance(request, PipelineState.CACHE_CHECKED)
            if cached is not None:
                self._count("cache_hits_total")
                return self._finish(request, self._replay(cached))

            self._count("cache_misses_total")
            response = await self._run_handler(request, handler)
            captured = self._capture(response)
            if captured is not None:
                self.cache.set(key, captured, self.cache_ttl)
            response.headers["X-Cache"] = "MISS"
            return self._finish(request, response)

        self._advance(request, PipelineState.CACHE_CHECKED)
        return self._finish(request, await self._run_handler(request, handler))

    async def _run_handler(self, request: Request, handler: Handler) -> Response:
        self._advance(request, PipelineState.HANDLER_RUN)
        try:
            return await handler(request)
        except CdnException as exc:
            if exc.status_code >= 500:
                self.logger.error("Handler failed", pipeline=self.name, code=exc.code,
                                  reason=exc.details.get("reason"))
                if self.metrics:
                    self.metrics.record_error(exc.code)
            return self.render_error(exc, None)
        except Exception as exc:
            self.logger.error("Unhandled handler error", pipeline=self.name, error=str(exc), exc_info=True)
            if self.metrics:
                self.metrics.record_error(type(exc).__name__)
            return self.render_internal_error(exc)

    def _cacheable_request(self, request: Request) -> bool:
        return self.cache is not None and request.method == "GET"

    @staticmethod
    def _capture(response: Response) -> Optional[CachedResponse]:
        """Snapshot a fully buffered 2xx response; streams are never stored."""
        if isinstance(response, (StreamingResponse, FileResponse)):
            return None
        if not 200 <= response.status_code < 300:
            return None
        body = getattr(response, "body", None)
        if not isinstance(body, bytes):
            return None
        headers = {
            name: value for name, value in response.headers.items()
            if name.lower() not in _UNCACHED_HEADERS
        }
        return CachedResponse(
            body=body,
            media_type=response.media_type,
            status_code=response.status_code,
            headers=headers,
        )

    def _replay(self, cached: CachedResponse) -> Response:
        response = Response(
            content=cached.body,
            status_code=cached.status_code,
            media_type=cached.media_type,
            headers=cached.headers,
        )
        ttl = self.cache_ttl if self.cache_ttl is not None else self.cache.default_ttl
        response.headers["X-Cache"] = "HIT"
        response.headers["Cache-Control"] = f"public, max-age={ttl}"
        return response

    def _finish(self, request: Request, response: Response) -> Response:
        results: List[Dict[str, Any]] = getattr(request.state, "rate_limits", [])
        if results and "x-ratelimit-limit" not in response.headers:
            tightest = min(results, key=lambda result: result["remaining"])
            response.headers["X-RateLimit-Limit"] = str(tightest["limit"])
            response.headers["X-RateLimit-Remaining"] = str(tightest["remaining"])
            response.headers["X-RateLimit-Reset"] = str(tightest["reset_in_seconds"])
        self._advance(request, PipelineState.RESPONDED)
        return response

    def _count(self, metric_name: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, route=self.name)

    @staticmethod
    def _advance(request: Request, state: PipelineState) -> None:
        request.state.pipeline_state = state
