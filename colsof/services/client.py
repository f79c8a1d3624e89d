"""
ApiClient - Async HTTP client for the COLSOF REST API.

Combines:
- CacheManager for GET response caching
- RequestDeduplicator for concurrent identical GETs
- ResilientExecutor for retry on transient failure (network errors, 429)
"""

from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from loguru import logger

from colsof.services.cache import CacheManager, KeyPattern
from colsof.services.deduplicator import RequestDeduplicator
from colsof.services.envelope import Err, Ok, Result, decode_envelope
from colsof.services.errors import (
    PermanentError,
    RateLimitError,
    ServiceError,
    TransientIOError,
)
from colsof.services.read_through import (
    CASES_INVALIDATION,
    USERS_INVALIDATION,
    CachedGateway,
)
from colsof.services.retry import ResilientExecutor, RetryPolicy
from colsof.settings import Settings, load_settings

SERVICE_ID = "api"

CASE_LIST_TTL = timedelta(minutes=2)
CASE_DETAIL_TTL = timedelta(minutes=5)
STATISTICS_TTL = timedelta(minutes=5)
DASHBOARD_TTL = timedelta(minutes=1)
USERS_TTL = timedelta(minutes=5)
CLIENTS_TTL = timedelta(minutes=10)


def parse_retry_after(value: str | None) -> float | None:
    """
    Seconds to wait from a ``Retry-After`` header.

    Accepts delay-seconds or an HTTP-date; anything unparseable gives None.
    """
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class ApiClient:
    """
    Client-side read-through cache over the REST API.

    Usage:
        async with ApiClient() as api:
            page = await api.list_cases({"estado": "abierto"})
            case = await api.get_case("CASE-001")
            await api.update_case("CASE-001", {"estado": "resuelto"})
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        cache_max_size: int = 100,
    ):
        settings = settings or load_settings()
        self._timeout = settings.api_timeout
        self._http_client = httpx.AsyncClient(
            base_url=settings.api_base_url.rstrip("/") + "/",
            timeout=httpx.Timeout(settings.api_timeout),
            transport=transport,
        )

        self._cache = CacheManager(
            max_size=cache_max_size,
            default_ttl=timedelta(minutes=5),
            debug=settings.debug,
        )
        self._deduplicator = RequestDeduplicator(debug=settings.debug)
        self._executor = ResilientExecutor(
            SERVICE_ID,
            RetryPolicy(
                max_retries=settings.api_max_retries,
                base_delay=settings.api_retry_delay,
                attempt_timeout=None,
            ),
        )
        self._gateway = CachedGateway(self._cache, self._deduplicator, self._executor)

    @property
    def cache(self) -> CacheManager:
        return self._cache

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        cache_ttl: timedelta | float | None = None,
    ) -> Ok[Any]:
        """
        Make an API request.

        GETs are served from cache when possible and deduplicated by
        ``GET:<endpoint>`` plus params. A ``cache_ttl`` of 0 bypasses the cache.

        Raises:
            PermanentError: non-2xx response or ``success: false`` body
            ExhaustedRetriesError: network errors or 429s outlasted the retries
        """
        method = method.upper()

        async def do_request() -> Ok[Any]:
            return await self._execute_request(endpoint, method, params, json)

        if method != "GET":
            return await self._executor.execute(do_request)

        if cache_ttl is not None and not cache_ttl:
            return await self._executor.execute(do_request)

        key = self._cache.generate_key(f"GET:{endpoint}", params)
        result = await self._gateway.read(key, do_request, cache_ttl)
        return result.data

    async def try_request(self, endpoint: str, method: str = "GET", **kwargs: Any) -> Result:
        """Like ``request`` but returns an ``Err`` instead of raising."""
        try:
            return await self.request(endpoint, method, **kwargs)
        except PermanentError as e:
            return Err(e.kind, str(e), e.status_code)
        except ServiceError as e:
            logger.warning(f"Request to {endpoint} failed: {e}")
            return Err("unavailable", str(e))

    async def _execute_request(
        self,
        endpoint: str,
        method: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
    ) -> Ok[Any]:
        """Execute the actual HTTP request and decode the envelope."""
        present = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            response = await self._http_client.request(
                method=method,
                url=endpoint.lstrip("/"),
                params=present or None,
                json=json,
            )
        except httpx.TimeoutException as e:
            raise TransientIOError(
                f"Request to {endpoint} timed out after {self._timeout}s",
                service_id=SERVICE_ID,
            ) from e
        except httpx.RequestError as e:
            raise TransientIOError(str(e), service_id=SERVICE_ID) from e

        if response.status_code == 429:
            raise RateLimitError(
                SERVICE_ID, parse_retry_after(response.headers.get("Retry-After"))
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        decoded = decode_envelope(response.status_code, body)
        if isinstance(decoded, Err):
            raise decoded.to_exception(SERVICE_ID)
        return decoded

    # ==================== CASES ====================

    async def list_cases(self, filters: dict[str, Any] | None = None) -> Ok[Any]:
        return await self.request("casos", params=filters, cache_ttl=CASE_LIST_TTL)

    async def get_case(self, case_id: str) -> Ok[Any]:
        return await self.request(f"casos/{case_id}", cache_ttl=CASE_DETAIL_TTL)

    async def create_case(self, case: dict[str, Any]) -> Ok[Any]:
        result = await self.request("casos", method="POST", json=case)
        self._cache.invalidate(CASES_INVALIDATION)
        return result

    async def update_case(self, case_id: str, updates: dict[str, Any]) -> Ok[Any]:
        result = await self.request(f"casos/{case_id}", method="PUT", json=updates)
        self._cache.invalidate(CASES_INVALIDATION)
        return result

    async def get_statistics(self) -> Ok[Any]:
        return await self.request("estadisticas", cache_ttl=STATISTICS_TTL)

    async def get_dashboard_stats(self) -> Ok[Any]:
        return await self.request("dashboard/stats", cache_ttl=DASHBOARD_TTL)

    async def list_clients(self) -> Ok[Any]:
        return await self.request("clientes", cache_ttl=CLIENTS_TTL)

    # ==================== USERS ====================

    async def list_users(self, filters: dict[str, Any] | None = None) -> Ok[Any]:
        return await self.request("usuarios", params=filters, cache_ttl=USERS_TTL)

    async def get_user(self, user_id: int) -> Ok[Any]:
        return await self.request(f"usuarios/{user_id}", cache_ttl=USERS_TTL)

    async def create_user(self, user: dict[str, Any]) -> Ok[Any]:
        result = await self.request("usuarios", method="POST", json=user)
        self._cache.invalidate(USERS_INVALIDATION)
        return result

    async def update_user(self, user_id: int, updates: dict[str, Any]) -> Ok[Any]:
        result = await self.request(f"usuarios/{user_id}", method="PUT", json=updates)
        self._cache.invalidate(USERS_INVALIDATION)
        return result

    async def get_user_stats(self) -> Ok[Any]:
        return await self.request("usuarios-stats", cache_ttl=USERS_TTL)

    # ==================== SESSION ====================

    async def login(self, email: str, password: str) -> Ok[Any]:
        """Authenticate; a new session starts with an empty cache."""
        result = await self.request(
            "login", method="POST", json={"email": email, "password": password}
        )
        self._cache.clear()
        return result

    async def health_check(self) -> bool:
        try:
            await self.request("health", cache_ttl=0)
        except ServiceError as e:
            logger.warning(f"API health check failed: {e}")
            return False
        return True

    # ==================== CACHE ====================

    def get_cache_stats(self) -> dict[str, Any]:
        return self._gateway.get_stats()

    def clear_cache(self) -> None:
        self._cache.clear()

    def invalidate_cache(self, pattern: KeyPattern) -> int:
        return self._cache.invalidate(pattern)

    async def close(self) -> None:
        """Close the HTTP client and cancel in-flight reads."""
        self._deduplicator.cancel_all()
        await self._http_client.aclose()
        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
