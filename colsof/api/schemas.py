"""Request models for the REST API."""

from pydantic import BaseModel, Field, field_validator

from colsof.datastore.models import CasePriority, CaseStatus, UserRole
from colsof.utils import sanitize_input, validate_email, validate_password

CASE_ID_PATTERN = r"^[A-Za-z0-9_\-]+$"


def _required_text(value: str) -> str:
    cleaned = sanitize_input(value)
    if not cleaned:
        raise ValueError("is required")
    return cleaned


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class CaseCreate(BaseModel):
    id: str = Field(pattern=CASE_ID_PATTERN, max_length=64)
    cliente: str
    sede: str
    categoria: str
    descripcion: str
    contacto: str = ""
    correo: str = ""
    telefono: str = ""
    tipo: str = ""
    prioridad: CasePriority | None = None
    autor: str = ""

    @field_validator("cliente", "sede", "categoria", "descripcion")
    @classmethod
    def _required(cls, value: str) -> str:
        return _required_text(value)

    @field_validator("contacto", "correo", "telefono", "tipo", "autor")
    @classmethod
    def _optional(cls, value: str) -> str:
        return sanitize_input(value)

    def to_values(self) -> dict:
        values = self.model_dump()
        values["prioridad"] = self.prioridad.value if self.prioridad else ""
        return values


class CaseUpdate(BaseModel):
    estado: CaseStatus | None = None
    prioridad: CasePriority | None = None
    categoria: str | None = None
    descripcion: str | None = None
    asignado_a: int | None = None
    tecnico: str | None = None
    contacto: str | None = None
    correo: str | None = None
    telefono: str | None = None

    @field_validator(
        "categoria", "descripcion", "tecnico", "contacto", "correo", "telefono"
    )
    @classmethod
    def _clean(cls, value: str | None) -> str | None:
        return None if value is None else sanitize_input(value)

    def to_values(self) -> dict:
        values = self.model_dump(exclude_unset=True, mode="json")
        # Only assignment can be cleared explicitly
        return {
            k: v
            for k, v in values.items()
            if v is not None or k in ("asignado_a", "tecnico")
        }


class UserCreate(BaseModel):
    nombre: str
    apellido: str
    email: str
    password: str
    rol: UserRole

    @field_validator("nombre", "apellido")
    @classmethod
    def _required(cls, value: str) -> str:
        return _required_text(value)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        if not validate_email(value):
            raise ValueError("must be a valid email")
        return value.lower()

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        if not validate_password(value):
            raise ValueError("must be at least 8 characters")
        return value


class UserUpdate(BaseModel):
    nombre: str | None = None
    apellido: str | None = None
    email: str | None = None
    rol: UserRole | None = None
    activo: bool | None = None

    @field_validator("nombre", "apellido")
    @classmethod
    def _clean(cls, value: str | None) -> str | None:
        return None if value is None else _required_text(value)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not validate_email(value):
            raise ValueError("must be a valid email")
        return value.lower()

    def to_values(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude_none=True, mode="json")
