"""
Rate limiting for the COLSOF API (slowapi, in-memory fixed windows).

- General: 100 requests / 15 min per client IP, applied by SlowAPIMiddleware
- Login: 5 attempts / 15 min per e-mail + IP
- Writes: 30 / min per client IP on case and user creation/update
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from colsof.services.envelope import Err

GENERAL_LIMIT = "100 per 15 minutes"
LOGIN_LIMIT = "5 per 15 minutes"
WRITE_LIMIT = "30 per minute"

GENERAL_MESSAGE = "Too many requests. Try again later."
LOGIN_MESSAGE = "Too many login attempts. Try again in 15 minutes."
WRITE_MESSAGE = "Write limit reached. Try again later."


async def remember_login_email(request: Request) -> None:
    """Dependency stashing the login e-mail for ``login_key``."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    email = payload.get("email") if isinstance(payload, dict) else None
    request.state.login_email = str(email or "").strip().lower()


def login_key(request: Request) -> str:
    email = getattr(request.state, "login_email", "")
    return f"{email}-{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[GENERAL_LIMIT],
    strategy="fixed-window",
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 in the API envelope, with Retry-After set to the window length."""
    message = exc.detail if exc.limit.error_message else GENERAL_MESSAGE
    logger.warning(
        f"[RateLimit] {request.method} {request.url.path} from "
        f"{get_remote_address(request)}: {exc.limit.limit}"
    )
    return JSONResponse(
        status_code=429,
        content=Err("rate_limited", message, 429).to_payload(),
        headers={"Retry-After": str(exc.limit.limit.get_expiry())},
    )
