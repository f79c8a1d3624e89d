import functools
import re
from typing import Any, Awaitable, Callable

from loguru import logger

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_INPUT_LENGTH = 255
MIN_PASSWORD_LENGTH = 8


def sanitize_input(value: Any) -> str:
    """Strip markup-significant characters, trim and cap free-text input."""
    if value is None or value == "":
        return ""
    return re.sub(r"[<>\"'&]", "", str(value)).strip()[:MAX_INPUT_LENGTH]


def validate_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def validate_password(password: str) -> bool:
    return bool(password) and len(password) >= MIN_PASSWORD_LENGTH


def logged_job(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """
    Decorator for scheduled coroutine jobs.

    Logs entry and completion at debug level. A failing job is logged and
    not re-raised, so one bad run does not stop later runs.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = func.__name__
        logger.debug(f"Running job {func_name}")
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Job {func_name} failed: {type(e).__name__}: {e}")
            return None
        logger.debug(f"Job {func_name} finished")
        return result

    return wrapper
