"""
Tagged results for the ``{success, data, error}`` API envelope.
"""

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from colsof.services.errors import PermanentError, RateLimitError, ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful response; ``meta`` carries siblings of ``data`` (pagination, count)."""

    data: T
    meta: dict[str, Any] = field(default_factory=dict)

    ok = True

    def unwrap(self) -> T:
        return self.data

    def to_payload(self) -> dict[str, Any]:
        return {"success": True, "data": self.data, **self.meta}


@dataclass(frozen=True)
class Err:
    """Failed response."""

    kind: str
    message: str
    status: int | None = None
    details: list[str] | None = None

    ok = False

    def unwrap(self) -> Any:
        raise self.to_exception()

    def to_exception(self, service_id: str | None = None) -> ServiceError:
        if self.kind == "rate_limited":
            return RateLimitError(service_id or "api")
        return PermanentError(
            self.message, service_id=service_id, kind=self.kind, status_code=self.status
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "error": self.message}
        if self.details:
            payload["errors"] = self.details
        return payload


Result = Ok[Any] | Err


def kind_for_status(status: int) -> str:
    """Map an HTTP status to an error kind."""
    if status == 400 or status == 422:
        return "validation"
    if status == 401:
        return "unauthorized"
    if status == 403:
        return "forbidden"
    if status == 404:
        return "not_found"
    if status == 409:
        return "conflict"
    if status == 429:
        return "rate_limited"
    if status >= 500:
        return "server"
    return "client"


def decode_envelope(status: int, body: Any) -> Result:
    """
    Decode an HTTP status and JSON body into ``Ok`` or ``Err``.

    Bodies without a ``success`` field (e.g. the health endpoint) are treated
    as successful data when the status is 2xx.
    """
    if not isinstance(body, dict):
        if 200 <= status < 300:
            return Ok(body)
        return Err(kind_for_status(status), f"HTTP {status}", status)

    if status < 200 or status >= 300:
        message = body.get("error") or f"HTTP {status}"
        return Err(kind_for_status(status), str(message), status, body.get("errors"))

    if body.get("success") is False:
        return Err("application", str(body.get("error") or "Unknown error"), status)

    if "success" not in body:
        return Ok(body)

    meta = {k: v for k, v in body.items() if k not in ("success", "data")}
    return Ok(body.get("data"), meta)
