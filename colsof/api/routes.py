"""
REST endpoints.

Reads go through CachedGateway.read (cache -> dedup -> retry -> pool),
writes through CachedGateway.write with family-level invalidation.
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Depends, Path, Request, Response
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncConnection
from starlette.concurrency import run_in_threadpool

from colsof.api.schemas import (
    CASE_ID_PATTERN,
    CaseCreate,
    CaseUpdate,
    LoginRequest,
    UserCreate,
    UserUpdate,
)
from colsof.api.rate_limit import (
    LOGIN_LIMIT,
    LOGIN_MESSAGE,
    WRITE_LIMIT,
    WRITE_MESSAGE,
    limiter,
    login_key,
    remember_login_email,
)
from colsof.api.security import get_password_hash, verify_password
from colsof.datastore.models import CaseStatus
from colsof.datastore.repositories import CaseRepository, UserRepository
from colsof.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from colsof.services.envelope import Ok
from colsof.services.read_through import (
    CASES_INVALIDATION,
    STATS_INVALIDATION,
    USERS_INVALIDATION,
    ReadResult,
)
from colsof.utils import sanitize_input, validate_email

router = APIRouter(prefix="/api")

CASE_LIST_TTL = timedelta(minutes=2)
CASE_DETAIL_TTL = timedelta(minutes=5)
STATISTICS_TTL = timedelta(minutes=5)
DASHBOARD_TTL = timedelta(minutes=1)
CLIENTS_TTL = timedelta(minutes=10)
USERS_TTL = timedelta(minutes=5)
LOGIN_USER_TTL = timedelta(minutes=10)


def get_services(request: Request):
    """Dependency returning the services built by the app lifespan."""
    return request.app.state.services


def _query(services, work: Callable[[AsyncConnection], Awaitable[Any]]):
    """Producer running ``work`` on a pooled connection."""
    return lambda: services.database.run(work)


def _respond(response: Response, result: ReadResult[Any], **meta: Any) -> dict:
    response.headers["X-Cache"] = "HIT" if result.from_cache else "MISS"
    return Ok(result.data, meta).to_payload()


# ==================== HEALTH ====================


@router.get("/health")
@limiter.exempt
async def health(services=Depends(get_services)):
    """Database connectivity, pool accounting and cache statistics."""
    db = await services.database.test_connection()
    return {
        "status": "ok",
        "message": "API running",
        "db_connected": db["success"],
        "database": db,
        "pool": services.database.health().to_dict(),
        **services.gateway.get_stats(),
        "timestamp": datetime.now().isoformat(),
    }


# ==================== AUTH ====================


@router.post("/login", dependencies=[Depends(remember_login_email)])
@limiter.limit(LOGIN_LIMIT, key_func=login_key, error_message=LOGIN_MESSAGE)
async def login(
    request: Request, body: LoginRequest, services=Depends(get_services)
):
    if not body.email or not body.password:
        raise ValidationError("Email and password are required")
    if not validate_email(body.email):
        raise ValidationError("Invalid email")

    email = body.email.lower()
    user = await services.gateway.cached_read(
        services.cache.generate_key("usuarios:email", {"email": email}),
        _query(services, lambda conn: UserRepository(conn).get_credentials(email)),
        LOGIN_USER_TTL,
    )

    if user is None:
        raise UnauthorizedError("Invalid credentials")
    if not user["activo"]:
        raise ForbiddenError("Inactive user. Contact the administrator.")
    if not await run_in_threadpool(verify_password, body.password, user["password"]):
        raise UnauthorizedError("Incorrect password")

    await services.gateway.write(
        _query(services, lambda conn: UserRepository(conn).touch_last_access(user["id"])),
        STATS_INVALIDATION,
    )
    logger.info(f"User {user['id']} logged in")

    public = {k: v for k, v in user.items() if k != "password"}
    return Ok(public).to_payload()


# ==================== CASES ====================


@router.get("/casos")
async def list_cases(
    response: Response,
    estado: str | None = None,
    prioridad: str | None = None,
    cliente: str | None = None,
    asignado_a: int | None = None,
    page: int = 1,
    limit: int = 50,
    sort: str = "-fecha_creacion",
    services=Depends(get_services),
):
    params = {
        "estado": estado,
        "prioridad": prioridad,
        "cliente": sanitize_input(cliente) or None,
        "asignado_a": asignado_a,
        "page": page,
        "limit": limit,
        "sort": sort,
    }

    async def fetch(conn: AsyncConnection) -> dict[str, Any]:
        found = await CaseRepository(conn).search(**params)
        return {"rows": found.rows, "pagination": found.pagination()}

    result = await services.gateway.read(
        services.cache.generate_key("casos:list", params),
        _query(services, fetch),
        CASE_LIST_TTL,
    )
    return _respond(
        response,
        ReadResult(result.data["rows"], result.from_cache),
        pagination=result.data["pagination"],
    )


@router.get("/casos/{case_id}")
async def get_case(
    response: Response,
    case_id: str = Path(pattern=CASE_ID_PATTERN),
    services=Depends(get_services),
):
    result = await services.gateway.read(
        services.cache.generate_key(f"casos:{case_id}"),
        _query(services, lambda conn: CaseRepository(conn).get(case_id)),
        CASE_DETAIL_TTL,
    )
    if result.data is None:
        raise NotFoundError("Case not found")
    return _respond(response, result)


@router.post("/casos", status_code=201)
@limiter.limit(WRITE_LIMIT, error_message=WRITE_MESSAGE)
async def create_case(
    request: Request, body: CaseCreate, services=Depends(get_services)
):
    async def insert(conn: AsyncConnection) -> dict[str, Any]:
        repo = CaseRepository(conn)
        if await repo.exists(body.id):
            raise ConflictError(f"Case {body.id} already exists")
        return await repo.create(body.to_values())

    created = await services.gateway.write(_query(services, insert), CASES_INVALIDATION)
    return Ok(created).to_payload()


@router.put("/casos/{case_id}")
@limiter.limit(WRITE_LIMIT, error_message=WRITE_MESSAGE)
async def update_case(
    request: Request,
    body: CaseUpdate,
    case_id: str = Path(pattern=CASE_ID_PATTERN),
    services=Depends(get_services),
):
    values = body.to_values()
    if not values:
        raise ValidationError("No valid fields to update")

    updated = await services.gateway.write(
        _query(services, lambda conn: CaseRepository(conn).update(case_id, values)),
        CASES_INVALIDATION,
    )
    if updated is None:
        raise NotFoundError("Case not found")
    return Ok(updated).to_payload()


# ==================== STATISTICS ====================


@router.get("/estadisticas")
async def statistics(response: Response, services=Depends(get_services)):
    result = await services.gateway.read(
        "estadisticas",
        _query(services, lambda conn: CaseRepository(conn).statistics()),
        STATISTICS_TTL,
    )
    return _respond(response, result)


@router.get("/dashboard/stats")
async def dashboard_stats(response: Response, services=Depends(get_services)):
    async def fetch() -> dict[str, int]:
        total, paused, resolved, closed = await services.database.parallel(
            lambda conn: CaseRepository(conn).count(),
            lambda conn: CaseRepository(conn).count_by_status(CaseStatus.PAUSED),
            lambda conn: CaseRepository(conn).count_by_status(CaseStatus.RESOLVED),
            lambda conn: CaseRepository(conn).count_by_status(CaseStatus.CLOSED),
        )
        return {
            "total_casos": total,
            "pausados": paused,
            "resueltos": resolved,
            "cerrados": closed,
        }

    result = await services.gateway.read("dashboard:stats", fetch, DASHBOARD_TTL)
    return _respond(response, result)


@router.get("/clientes")
async def list_clients(response: Response, services=Depends(get_services)):
    result = await services.gateway.read(
        "clientes",
        _query(services, lambda conn: CaseRepository(conn).clients()),
        CLIENTS_TTL,
    )
    return _respond(response, result, count=len(result.data))


# ==================== USERS ====================


@router.get("/usuarios")
async def list_users(
    response: Response,
    rol: str | None = None,
    activo: bool | None = None,
    page: int = 1,
    limit: int = 50,
    services=Depends(get_services),
):
    params = {"rol": rol, "activo": activo, "page": page, "limit": limit}

    async def fetch(conn: AsyncConnection) -> dict[str, Any]:
        found = await UserRepository(conn).search(**params)
        return {"rows": found.rows, "pagination": found.pagination()}

    result = await services.gateway.read(
        services.cache.generate_key("usuarios:list", params),
        _query(services, fetch),
        USERS_TTL,
    )
    return _respond(
        response,
        ReadResult(result.data["rows"], result.from_cache),
        pagination=result.data["pagination"],
    )


@router.get("/usuarios/{user_id}")
async def get_user(response: Response, user_id: int, services=Depends(get_services)):
    result = await services.gateway.read(
        services.cache.generate_key(f"usuarios:{user_id}"),
        _query(services, lambda conn: UserRepository(conn).get(user_id)),
        USERS_TTL,
    )
    if result.data is None:
        raise NotFoundError("User not found")
    return _respond(response, result)


@router.post("/usuarios", status_code=201)
@limiter.limit(WRITE_LIMIT, error_message=WRITE_MESSAGE)
async def create_user(
    request: Request, body: UserCreate, services=Depends(get_services)
):
    password_hash = await run_in_threadpool(get_password_hash, body.password)

    async def insert(conn: AsyncConnection) -> dict[str, Any]:
        repo = UserRepository(conn)
        if await repo.email_exists(body.email):
            raise ConflictError("Email already registered")
        return await repo.create(
            nombre=body.nombre,
            apellido=body.apellido,
            email=body.email,
            password_hash=password_hash,
            rol=body.rol.value,
        )

    created = await services.gateway.write(_query(services, insert), USERS_INVALIDATION)
    return Ok(created).to_payload()


@router.put("/usuarios/{user_id}")
@limiter.limit(WRITE_LIMIT, error_message=WRITE_MESSAGE)
async def update_user(
    request: Request, user_id: int, body: UserUpdate, services=Depends(get_services)
):
    values = body.to_values()
    if not values:
        raise ValidationError("No valid fields to update")

    async def apply(conn: AsyncConnection) -> dict[str, Any] | None:
        repo = UserRepository(conn)
        if "email" in values and await repo.email_exists(values["email"], user_id):
            raise ConflictError("Email already registered")
        return await repo.update(user_id, values)

    updated = await services.gateway.write(_query(services, apply), USERS_INVALIDATION)
    if updated is None:
        raise NotFoundError("User not found")
    return Ok(updated).to_payload()


@router.get("/usuarios-stats")
async def user_stats(response: Response, services=Depends(get_services)):
    result = await services.gateway.read(
        "usuarios:stats",
        _query(services, lambda conn: UserRepository(conn).stats()),
        USERS_TTL,
    )
    return _respond(response, result)
