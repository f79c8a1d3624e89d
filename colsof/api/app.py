"""
FastAPI application factory.

The lifespan builds the service graph (database + pool, cache, deduplicator,
executor, gateway, maintenance scheduler) and tears it down on shutdown.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException

from colsof.api.middleware import install_middleware
from colsof.api.rate_limit import limiter, rate_limit_exceeded_handler
from colsof.api.routes import router
from colsof.datastore.engine import Database
from colsof.scheduler import MaintenanceScheduler
from colsof.services.cache import CacheManager
from colsof.services.deduplicator import RequestDeduplicator
from colsof.services.envelope import Err, kind_for_status
from colsof.services.errors import (
    AcquisitionTimeoutError,
    ExhaustedRetriesError,
    PermanentError,
    PoolClosedError,
    ServiceError,
    TransientIOError,
)
from colsof.services.read_through import CachedGateway
from colsof.services.retry import ResilientExecutor, RetryPolicy
from colsof.settings import Settings, load_settings


@dataclass
class AppServices:
    """Everything a request handler needs, built once per app."""

    settings: Settings
    database: Database
    cache: CacheManager
    deduplicator: RequestDeduplicator
    executor: ResilientExecutor
    gateway: CachedGateway
    scheduler: MaintenanceScheduler


def build_services(settings: Settings) -> AppServices:
    database = Database(settings)
    cache = CacheManager(
        max_size=settings.cache_max_size,
        default_ttl=settings.cache_default_ttl,
        debug=settings.debug,
    )
    deduplicator = RequestDeduplicator(debug=settings.debug)
    executor = ResilientExecutor(
        "db",
        RetryPolicy(
            max_retries=settings.query_max_retries,
            base_delay=settings.query_retry_delay,
            attempt_timeout=settings.query_timeout,
        ),
    )
    return AppServices(
        settings=settings,
        database=database,
        cache=cache,
        deduplicator=deduplicator,
        executor=executor,
        gateway=CachedGateway(cache, deduplicator, executor),
        scheduler=MaintenanceScheduler(
            cache, database.pool, settings.maintenance_interval_seconds
        ),
    )


def _error_response(status: int, message: str, errors: list[str] | None = None):
    err = Err(kind_for_status(status), message, status, errors)
    return JSONResponse(status_code=status, content=err.to_payload())


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return _error_response(
            exc.status_code, str(exc.detail), getattr(exc, "errors", None)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(p) for p in e['loc'] if p != 'body')}: {e['msg']}"
            for e in exc.errors()
        ]
        return _error_response(400, "Validation failed", errors)

    @app.exception_handler(PermanentError)
    async def permanent_error(request: Request, exc: PermanentError):
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return _error_response(exc.status_code or 500, str(exc))

    @app.exception_handler(ServiceError)
    async def service_error(request: Request, exc: ServiceError):
        unavailable = (
            TransientIOError,
            ExhaustedRetriesError,
            AcquisitionTimeoutError,
            PoolClosedError,
        )
        if isinstance(exc, unavailable):
            logger.error(f"{request.method} {request.url.path} unavailable: {exc}")
            return _error_response(503, "Service temporarily unavailable")

        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error_response(500, "Internal server error")

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.opt(exception=exc).error(
            f"Unhandled error on {request.method} {request.url.path}: {exc}"
        )
        return _error_response(500, "Internal server error")

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(settings)
        logger.info("Initializing database...")
        await services.database.init()
        services.scheduler.start()
        app.state.services = services
        logger.info("COLSOF API ready")

        try:
            yield
        finally:
            services.scheduler.stop()
            cancelled = services.deduplicator.cancel_all()
            if cancelled:
                logger.info(f"Cancelled {cancelled} in-flight reads")
            await services.database.close()
            logger.info("COLSOF API stopped")

    limiter.enabled = settings.rate_limit_enabled

    app = FastAPI(title="COLSOF API", lifespan=lifespan)
    app.state.limiter = limiter
    app.include_router(router)
    register_error_handlers(app)
    install_middleware(app, settings)
    return app
