"""
Database models
SQLAlchemy 2.0+ declarative mapping for support cases and users
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models"""

    pass


class CaseStatus(str, Enum):
    """Observed case workflow states."""

    OPEN = "abierto"
    IN_PROGRESS = "en_progreso"
    PAUSED = "pausado"
    RESOLVED = "resuelto"
    CLOSED = "cerrado"
    CANCELLED = "cancelado"


class CasePriority(str, Enum):
    LOW = "baja"
    MEDIUM = "media"
    HIGH = "alta"
    URGENT = "urgente"
    CRITICAL = "critica"


class UserRole(str, Enum):
    ADMIN = "administrador"
    MANAGER = "gestor"
    TECHNICIAN = "tecnico"


class CaseDB(Base):
    """Support cases (tickets)"""

    __tablename__ = "casos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cliente: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    sede: Mapped[str] = mapped_column(String(255), nullable=False)
    contacto: Mapped[str] = mapped_column(String(255), default="")
    correo: Mapped[str] = mapped_column(String(255), default="")
    telefono: Mapped[str] = mapped_column(String(64), default="")
    tipo: Mapped[str] = mapped_column(String(100), default="")
    categoria: Mapped[str] = mapped_column(String(100), nullable=False)
    descripcion: Mapped[str] = mapped_column(Text, nullable=False)
    estado: Mapped[str] = mapped_column(
        String(32), default=CaseStatus.OPEN.value, nullable=False, index=True
    )
    prioridad: Mapped[str] = mapped_column(String(32), default="", index=True)
    autor: Mapped[str] = mapped_column(String(255), default="")
    asignado_a: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    tecnico: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fecha_creacion: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, nullable=False
    )
    fecha_actualizacion: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    __table_args__ = (Index("idx_casos_estado_fecha", "estado", "fecha_creacion"),)

    def __repr__(self) -> str:
        return f"<Case(id={self.id}, estado={self.estado})>"


class UserDB(Base):
    """Application users"""

    __tablename__ = "usuarios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nombre: Mapped[str] = mapped_column(String(255), nullable=False)
    apellido: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    password: Mapped[str] = mapped_column(String(255), nullable=False)
    rol: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    activo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    ultimo_acceso: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    fecha_creacion: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, nullable=False
    )
    fecha_actualizacion: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(email={self.email}, rol={self.rol})>"
