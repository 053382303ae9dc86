"""
HTTP middleware for wabridge.

Provides rate limiting, API token authentication and security headers.
Health checks are exempt from both rate limiting and authentication so
orchestrators can always probe the process.
"""
import hashlib
import secrets
import time
from collections import defaultdict
from typing import Callable, Dict, Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from wabridge.logger import get_logger

logger = get_logger(__name__)

PUBLIC_PATHS = ("/healthz",)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-IP rate limiting using a token bucket.

    A bucket holds up to ``max_requests`` tokens and refills at
    ``max_requests / window_seconds`` tokens per second.
    """

    def __init__(
        self,
        app,
        max_requests: int = 100,
        window_seconds: int = 15 * 60,
        exempt_paths: Iterable[str] = PUBLIC_PATHS,
    ):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.rate = max_requests / float(window_seconds)
        self.exempt_paths = set(exempt_paths)
        self.buckets: Dict[str, Dict] = defaultdict(
            lambda: {"tokens": float(max_requests), "last_update": time.monotonic()}
        )

    def _get_client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _check_rate_limit(self, client_ip: str) -> bool:
        now = time.monotonic()
        bucket = self.buckets[client_ip]

        elapsed = now - bucket["last_update"]
        bucket["tokens"] = min(self.max_requests, bucket["tokens"] + elapsed * self.rate)
        bucket["last_update"] = now

        if bucket["tokens"] >= 1:
            bucket["tokens"] -= 1
            return True
        return False

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        if not self._check_rate_limit(client_ip):
            logger.warning(f"Rate limit exceeded for {client_ip}")
            return JSONResponse(
                {
                    "status": False,
                    "message": "Too many requests, please try again later.",
                },
                status_code=429,
                headers={"Retry-After": str(int(1 / self.rate) if self.rate else 60)},
            )

        response = await call_next(request)
        bucket = self.buckets[client_ip]
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(int(bucket["tokens"]))
        return response


class APITokenMiddleware(BaseHTTPMiddleware):
    """
    API token authentication.

    The token is accepted from:
    1. Authorization header: "Bearer <token>"
    2. Query parameter: "api_key=<token>"

    With no token configured every request is allowed.
    """

    def __init__(
        self,
        app,
        api_token: Optional[str] = None,
        public_paths: Iterable[str] = PUBLIC_PATHS,
    ):
        super().__init__(app)
        self.public_paths = set(public_paths)
        self.token_hash = (
            hashlib.sha256(api_token.encode()).hexdigest() if api_token else None
        )

    def _extract_token(self, request: Request) -> Optional[str]:
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            return auth[7:]
        return request.query_params.get("api_key")

    def _verify_token(self, token: Optional[str]) -> bool:
        if self.token_hash is None:
            return True
        if not token:
            return False
        token_hash = hashlib.sha256(token.encode()).hexdigest()
        return secrets.compare_digest(token_hash, self.token_hash)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.public_paths or request.method == "OPTIONS":
            return await call_next(request)

        if not self._verify_token(self._extract_token(request)):
            logger.warning(f"Rejected request to {request.url.path}: invalid API token")
            return JSONResponse(
                {"status": False, "message": "Invalid API token"},
                status_code=401,
            )

        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses.

    Headers added:
    - X-Content-Type-Options: nosniff
    - X-Frame-Options: SAMEORIGIN
    - Referrer-Policy: no-referrer
    - Strict-Transport-Security (HTTPS only)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "no-referrer"

        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response
