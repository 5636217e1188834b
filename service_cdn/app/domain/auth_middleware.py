"""
API key authentication for the CDN gateway.
"""

import hmac
from typing import Optional, Sequence

from fastapi import Request

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger

PUBLIC_PREFIXES = ("/cdn/", "/file/")
API_KEY_HEADER = "X-API-Key"
API_KEY_QUERY_PARAM = "apiKey"


class ApiKeyAuthenticator:
    """Shared-secret gate for protected routes.

    Paths starting with one of ``public_prefixes`` pass without a key.
    Everything else must present the configured secret either in the
    ``X-API-Key`` header or the ``apiKey`` query parameter.
    """

    def __init__(self, api_key: str, public_prefixes: Sequence[str] = PUBLIC_PREFIXES):
        self.api_key = api_key
        self.public_prefixes = tuple(public_prefixes)
        self.logger = get_logger("cdn.auth_middleware")
        if not api_key:
            self.logger.warning("No API key configured; protected routes will reject every request")

    def is_public(self, path: str) -> bool:
        return path.startswith(self.public_prefixes)

    def extract_key(self, request: Request) -> Optional[str]:
        return request.headers.get(API_KEY_HEADER) or request.query_params.get(API_KEY_QUERY_PARAM)

    def authenticate_request(self, request: Request) -> None:
        """Raise AuthenticationError (no key) or AuthorizationError (wrong key)."""
        if self.is_public(request.url.path):
            return

        supplied = self.extract_key(request)
        if not supplied:
            raise AuthenticationError("API key is required")

        if not self.api_key or not hmac.compare_digest(supplied.encode(), self.api_key.encode()):
            self.logger.warning(
                "Rejected API key",
                path=request.url.path,
                api_key=supplied,
            )
            raise AuthorizationError("Invalid API key")
