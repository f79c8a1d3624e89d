"""
Repository layer - data access for cases and users.

Repositories work on a single AsyncConnection; the caller (Database.run)
owns the transaction.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from colsof.datastore.models import CaseDB, CasePriority, CaseStatus, UserDB, UserRole

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50

CASE_SORT_FIELDS = ("fecha_creacion", "fecha_actualizacion", "prioridad", "estado")
CASE_UPDATABLE_FIELDS = (
    "estado",
    "prioridad",
    "categoria",
    "descripcion",
    "asignado_a",
    "tecnico",
    "contacto",
    "correo",
    "telefono",
)
USER_UPDATABLE_FIELDS = ("nombre", "apellido", "email", "rol", "activo")

# Columns safe to return to clients (no password hash)
USER_PUBLIC_COLUMNS = (
    UserDB.id,
    UserDB.nombre,
    UserDB.apellido,
    UserDB.email,
    UserDB.rol,
    UserDB.activo,
    UserDB.fecha_creacion,
)
CASE_LIST_COLUMNS = (
    CaseDB.id,
    CaseDB.cliente,
    CaseDB.sede,
    CaseDB.categoria,
    CaseDB.descripcion,
    CaseDB.estado,
    CaseDB.prioridad,
    CaseDB.asignado_a,
    CaseDB.fecha_creacion,
)


@dataclass
class Page:
    """One page of rows plus pagination metadata."""

    rows: list[dict[str, Any]]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_more": self.page < self.total_pages,
        }


def clamp_paging(page: int | None, limit: int | None) -> tuple[int, int, int]:
    """Return (page, limit, offset) with page >= 1 and 1 <= limit <= 100."""
    page = max(1, page or 1)
    limit = max(1, min(MAX_PAGE_SIZE, limit or DEFAULT_PAGE_SIZE))
    return page, limit, (page - 1) * limit


class CaseRepository:
    """Support case data access"""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    @staticmethod
    def _filters(
        estado: str | None = None,
        prioridad: str | None = None,
        cliente: str | None = None,
        asignado_a: int | None = None,
    ) -> list[ColumnElement[bool]]:
        conditions: list[ColumnElement[bool]] = []
        # Unknown states and priorities are ignored rather than rejected
        if estado and estado.lower() in {s.value for s in CaseStatus}:
            conditions.append(CaseDB.estado == estado.lower())
        if prioridad and prioridad.lower() in {p.value for p in CasePriority}:
            conditions.append(CaseDB.prioridad == prioridad.lower())
        if cliente:
            conditions.append(CaseDB.cliente.ilike(f"%{cliente}%"))
        if asignado_a is not None:
            conditions.append(CaseDB.asignado_a == asignado_a)
        return conditions

    async def search(
        self,
        estado: str | None = None,
        prioridad: str | None = None,
        cliente: str | None = None,
        asignado_a: int | None = None,
        page: int | None = 1,
        limit: int | None = DEFAULT_PAGE_SIZE,
        sort: str = "-fecha_creacion",
    ) -> Page:
        """List cases matching the filters, newest first by default."""
        page, limit, offset = clamp_paging(page, limit)
        conditions = self._filters(estado, prioridad, cliente, asignado_a)

        field_name = sort.lstrip("+-")
        if field_name not in CASE_SORT_FIELDS:
            order = CaseDB.fecha_creacion.desc()
        else:
            column = getattr(CaseDB, field_name)
            order = column.desc() if sort.startswith("-") else column.asc()

        stmt = (
            select(*CASE_LIST_COLUMNS)
            .where(*conditions)
            .order_by(order)
            .limit(limit)
            .offset(offset)
        )
        count_stmt = select(func.count()).select_from(CaseDB).where(*conditions)

        rows = (await self.conn.execute(stmt)).mappings().all()
        total = (await self.conn.execute(count_stmt)).scalar_one()

        return Page(rows=[dict(r) for r in rows], page=page, limit=limit, total=total)

    async def get(self, case_id: str) -> dict[str, Any] | None:
        result = await self.conn.execute(select(CaseDB.__table__).where(CaseDB.id == case_id))
        row = result.mappings().one_or_none()
        return dict(row) if row else None

    async def exists(self, case_id: str) -> bool:
        result = await self.conn.execute(select(CaseDB.id).where(CaseDB.id == case_id))
        return result.scalar_one_or_none() is not None

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a new case; every case starts in the open state."""
        now = datetime.now()
        values = {
            **data,
            "estado": CaseStatus.OPEN.value,
            "fecha_creacion": now,
            "fecha_actualizacion": now,
        }
        await self.conn.execute(insert(CaseDB).values(**values))
        created = await self.get(values["id"])
        assert created is not None
        return created

    async def update(self, case_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        """Apply whitelisted updates; returns None when the case does not exist."""
        values = {k: v for k, v in updates.items() if k in CASE_UPDATABLE_FIELDS}
        if not values:
            raise ValueError("No updatable fields supplied")

        values["fecha_actualizacion"] = datetime.now()
        result = await self.conn.execute(
            update(CaseDB).where(CaseDB.id == case_id).values(**values)
        )
        if result.rowcount == 0:
            return None
        return await self.get(case_id)

    async def statistics(self) -> dict[str, Any]:
        """Totals grouped by state, priority and assigned technician."""
        total = await self.count()
        by_status = await self._grouped(CaseDB.estado, "estado")
        by_priority = await self._grouped(CaseDB.prioridad, "prioridad")
        by_technician = await self._grouped(
            CaseDB.asignado_a, "asignado_a", CaseDB.asignado_a.is_not(None)
        )
        return {
            "total": total,
            "por_estado": by_status,
            "por_prioridad": by_priority,
            "por_tecnico": by_technician,
        }

    async def _grouped(
        self, column: Any, label: str, *conditions: ColumnElement[bool]
    ) -> list[dict[str, Any]]:
        stmt = (
            select(column.label(label), func.count().label("count"))
            .where(*conditions)
            .group_by(column)
            .order_by(column)
        )
        rows = (await self.conn.execute(stmt)).mappings().all()
        return [dict(r) for r in rows]

    async def count_by_status(self, status: CaseStatus) -> int:
        stmt = select(func.count()).select_from(CaseDB).where(CaseDB.estado == status.value)
        return (await self.conn.execute(stmt)).scalar_one()

    async def count(self) -> int:
        stmt = select(func.count()).select_from(CaseDB)
        return (await self.conn.execute(stmt)).scalar_one()

    async def clients(self) -> list[dict[str, Any]]:
        """Distinct client names derived from cases."""
        stmt = (
            select(CaseDB.cliente)
            .where(CaseDB.cliente.is_not(None))
            .distinct()
            .order_by(CaseDB.cliente)
        )
        names = (await self.conn.execute(stmt)).scalars().all()
        return [
            {"id": idx, "nombre": name, "estado": "Activo"}
            for idx, name in enumerate(names, start=1)
        ]


class UserRepository:
    """User data access"""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def search(
        self,
        rol: str | None = None,
        activo: bool | None = None,
        page: int | None = 1,
        limit: int | None = DEFAULT_PAGE_SIZE,
    ) -> Page:
        page, limit, offset = clamp_paging(page, limit)

        conditions: list[ColumnElement[bool]] = []
        if rol and rol.lower() in {r.value for r in UserRole}:
            conditions.append(UserDB.rol == rol.lower())
        if activo is not None:
            conditions.append(UserDB.activo == activo)

        stmt = (
            select(*USER_PUBLIC_COLUMNS)
            .where(*conditions)
            .order_by(UserDB.rol, UserDB.nombre)
            .limit(limit)
            .offset(offset)
        )
        count_stmt = select(func.count()).select_from(UserDB).where(*conditions)

        rows = (await self.conn.execute(stmt)).mappings().all()
        total = (await self.conn.execute(count_stmt)).scalar_one()
        return Page(rows=[dict(r) for r in rows], page=page, limit=limit, total=total)

    async def get(self, user_id: int) -> dict[str, Any] | None:
        result = await self.conn.execute(
            select(*USER_PUBLIC_COLUMNS).where(UserDB.id == user_id)
        )
        row = result.mappings().one_or_none()
        return dict(row) if row else None

    async def get_credentials(self, email: str) -> dict[str, Any] | None:
        """Public columns plus the password hash, for login only."""
        result = await self.conn.execute(
            select(*USER_PUBLIC_COLUMNS, UserDB.password).where(
                UserDB.email == email.lower()
            )
        )
        row = result.mappings().one_or_none()
        return dict(row) if row else None

    async def email_exists(self, email: str, exclude_id: int | None = None) -> bool:
        stmt = select(UserDB.id).where(UserDB.email == email.lower())
        if exclude_id is not None:
            stmt = stmt.where(UserDB.id != exclude_id)
        return (await self.conn.execute(stmt)).first() is not None

    async def create(
        self, nombre: str, apellido: str, email: str, password_hash: str, rol: str
    ) -> dict[str, Any]:
        now = datetime.now()
        result = await self.conn.execute(
            insert(UserDB)
            .values(
                nombre=nombre,
                apellido=apellido,
                email=email.lower(),
                password=password_hash,
                rol=rol,
                activo=True,
                fecha_creacion=now,
                fecha_actualizacion=now,
            )
        )
        user_id = result.inserted_primary_key[0]
        created = await self.get(user_id)
        assert created is not None
        return created

    async def update(self, user_id: int, updates: dict[str, Any]) -> dict[str, Any] | None:
        values = {k: v for k, v in updates.items() if k in USER_UPDATABLE_FIELDS}
        if not values:
            raise ValueError("No updatable fields supplied")
        if "email" in values:
            values["email"] = str(values["email"]).lower()

        values["fecha_actualizacion"] = datetime.now()
        result = await self.conn.execute(
            update(UserDB).where(UserDB.id == user_id).values(**values)
        )
        if result.rowcount == 0:
            return None
        return await self.get(user_id)

    async def touch_last_access(self, user_id: int) -> None:
        await self.conn.execute(
            update(UserDB).where(UserDB.id == user_id).values(ultimo_acceso=datetime.now())
        )

    async def stats(self) -> dict[str, Any]:
        total = (
            await self.conn.execute(select(func.count()).select_from(UserDB))
        ).scalar_one()
        by_role = (
            await self.conn.execute(
                select(UserDB.rol, func.count().label("count"))
                .group_by(UserDB.rol)
                .order_by(UserDB.rol)
            )
        ).mappings().all()
        active = (
            await self.conn.execute(
                select(func.count()).select_from(UserDB).where(UserDB.activo.is_(True))
            )
        ).scalar_one()
        return {"total": total, "por_rol": [dict(r) for r in by_role], "activos": active}
