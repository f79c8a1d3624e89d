"""
HTTP middleware: CORS, compression, security headers and response timing.

Starlette runs middleware last-added-first, so ``install_middleware`` adds
them innermost first: timing, security headers, rate limiting, gzip, CORS.
"""

import time

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from loguru import logger
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from colsof.settings import Settings

SLOW_REQUEST_MS = 1000
COMPRESS_MIN_BYTES = 1024

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'; img-src 'self' data: https:;",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add the fixed set of security headers to every response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        return response


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration; expose it as X-Response-Time."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers["X-Response-Time"] = f"{duration_ms:.0f}ms"
        line = (
            f"{request.method} {request.url.path} - "
            f"{response.status_code} - {duration_ms:.0f}ms"
        )
        if duration_ms > SLOW_REQUEST_MS:
            logger.warning(f"Slow endpoint: {line}")
        else:
            logger.info(line)
        return response


def install_middleware(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(RequestTimingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=COMPRESS_MIN_BYTES, compresslevel=6)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Cache", "X-Response-Time", "Retry-After"],
        max_age=86400,
    )
