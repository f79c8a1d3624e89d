"""
End-to-end tests of the REST API against a temporary SQLite database.

Requests go through httpx's ASGI transport with the app lifespan running, so
the full stack (routes -> gateway -> executor -> pool -> SQLAlchemy) is used.
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
import pytest

from colsof.api.app import create_app
from colsof.api.rate_limit import GENERAL_MESSAGE, LOGIN_MESSAGE, WRITE_MESSAGE, limiter


def case_payload(case_id: str, **overrides) -> dict:
    payload = {
        "id": case_id,
        "cliente": "ACME",
        "sede": "Bogota",
        "categoria": "Hardware",
        "descripcion": "Printer jammed",
        "prioridad": "alta",
    }
    payload.update(overrides)
    return payload


def user_payload(email: str = "ana@colsof.com", **overrides) -> dict:
    payload = {
        "nombre": "Ana",
        "apellido": "Diaz",
        "email": email,
        "password": "secret123",
        "rol": "tecnico",
    }
    payload.update(overrides)
    return payload


@asynccontextmanager
async def serve(settings, raise_app_exceptions: bool = True):
    """Run an app for ``settings`` and yield an HTTP client bound to it."""
    app = create_app(settings)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(
            app=app, raise_app_exceptions=raise_app_exceptions
        )
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.fixture
async def app(settings):
    app = create_app(settings)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def http(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_reports_database_and_cache(self, http) -> None:
        response = await http.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["db_connected"] is True
        assert body["pool"]["busy"] == 0
        assert "cache" in body and "deduplicator" in body


class TestCases:
    @pytest.mark.asyncio
    async def test_create_and_read_case(self, http) -> None:
        created = await http.post("/api/casos", json=case_payload("CASO-001"))

        assert created.status_code == 201
        assert created.json()["success"] is True
        assert created.json()["data"]["estado"] == "abierto"

        first = await http.get("/api/casos/CASO-001")
        second = await http.get("/api/casos/CASO-001")

        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert second.json()["data"]["cliente"] == "ACME"

    @pytest.mark.asyncio
    async def test_duplicate_case_conflicts(self, http) -> None:
        await http.post("/api/casos", json=case_payload("CASO-002"))
        response = await http.post("/api/casos", json=case_payload("CASO-002"))

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "error": "Case CASO-002 already exists",
        }

    @pytest.mark.asyncio
    async def test_missing_fields_are_rejected(self, http) -> None:
        response = await http.post("/api/casos", json={"id": "CASO-003", "cliente": "ACME"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert any(e.startswith("sede") for e in body["errors"])

    @pytest.mark.asyncio
    async def test_unknown_case_is_404(self, http) -> None:
        response = await http.get("/api/casos/NOPE")
        assert response.status_code == 404
        assert response.json()["error"] == "Case not found"

    @pytest.mark.asyncio
    async def test_invalid_case_id_is_400(self, http) -> None:
        response = await http.get("/api/casos/bad.id")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_invalidates_cached_reads(self, http) -> None:
        await http.post("/api/casos", json=case_payload("CASO-010"))
        await http.get("/api/casos")
        cached = await http.get("/api/casos")
        assert cached.headers["X-Cache"] == "HIT"

        updated = await http.put("/api/casos/CASO-010", json={"estado": "resuelto"})
        assert updated.status_code == 200
        assert updated.json()["data"]["estado"] == "resuelto"

        fresh = await http.get("/api/casos")
        assert fresh.headers["X-Cache"] == "MISS"
        assert fresh.json()["data"][0]["estado"] == "resuelto"

        detail = await http.get("/api/casos/CASO-010")
        assert detail.json()["data"]["estado"] == "resuelto"

    @pytest.mark.asyncio
    async def test_update_without_fields_is_400(self, http) -> None:
        await http.post("/api/casos", json=case_payload("CASO-011"))
        response = await http.put("/api/casos/CASO-011", json={})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_unknown_case_is_404(self, http) -> None:
        response = await http.put("/api/casos/NOPE", json={"estado": "cerrado"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_filters_and_pagination(self, http) -> None:
        for i in range(3):
            await http.post("/api/casos", json=case_payload(f"CASO-10{i}"))
        await http.post(
            "/api/casos", json=case_payload("CASO-200", cliente="Globex", prioridad="baja")
        )

        response = await http.get("/api/casos", params={"cliente": "acme", "limit": 2})

        body = response.json()
        assert len(body["data"]) == 2
        assert body["pagination"] == {
            "page": 1,
            "limit": 2,
            "total": 3,
            "total_pages": 2,
            "has_more": True,
        }

        by_priority = await http.get("/api/casos", params={"prioridad": "baja"})
        assert [c["id"] for c in by_priority.json()["data"]] == ["CASO-200"]

    @pytest.mark.asyncio
    async def test_concurrent_reads_share_one_query(self, app, http) -> None:
        await http.post("/api/casos", json=case_payload("CASO-300"))
        services = app.state.services
        before = services.database.health().query_count

        responses = await asyncio.gather(*(http.get("/api/estadisticas") for _ in range(5)))

        assert all(r.status_code == 200 for r in responses)
        assert services.database.health().query_count == before + 1


class TestStatistics:
    @pytest.mark.asyncio
    async def test_statistics_dashboard_and_clients(self, http) -> None:
        await http.post("/api/casos", json=case_payload("CASO-401"))
        await http.post("/api/casos", json=case_payload("CASO-402", cliente="Globex"))
        await http.put("/api/casos/CASO-402", json={"estado": "pausado"})

        stats = (await http.get("/api/estadisticas")).json()["data"]
        assert stats["total"] == 2
        assert {"estado": "pausado", "count": 1} in stats["por_estado"]

        dashboard = (await http.get("/api/dashboard/stats")).json()["data"]
        assert dashboard == {"total_casos": 2, "pausados": 1, "resueltos": 0, "cerrados": 0}

        clients = (await http.get("/api/clientes")).json()
        assert clients["count"] == 2
        assert [c["nombre"] for c in clients["data"]] == ["ACME", "Globex"]

    @pytest.mark.asyncio
    async def test_case_creation_invalidates_statistics(self, http) -> None:
        await http.get("/api/dashboard/stats")
        await http.post("/api/casos", json=case_payload("CASO-500"))

        response = await http.get("/api/dashboard/stats")

        assert response.headers["X-Cache"] == "MISS"
        assert response.json()["data"]["total_casos"] == 1


class TestUsers:
    @pytest.mark.asyncio
    async def test_create_user_hides_password(self, http) -> None:
        response = await http.post("/api/usuarios", json=user_payload())

        assert response.status_code == 201
        user = response.json()["data"]
        assert user["email"] == "ana@colsof.com"
        assert "password" not in user

        listing = await http.get("/api/usuarios")
        assert all("password" not in u for u in listing.json()["data"])

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, http) -> None:
        await http.post("/api/usuarios", json=user_payload())
        response = await http.post(
            "/api/usuarios", json=user_payload("ANA@colsof.com", nombre="Otra")
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_user_payload(self, http) -> None:
        response = await http.post("/api/usuarios", json=user_payload(password="short"))
        assert response.status_code == 400
        assert any("password" in e for e in response.json()["errors"])

    @pytest.mark.asyncio
    async def test_update_user_invalidates_user_reads(self, http) -> None:
        user_id = (await http.post("/api/usuarios", json=user_payload())).json()["data"]["id"]
        await http.get(f"/api/usuarios/{user_id}")
        await http.get("/api/usuarios-stats")

        await http.put(f"/api/usuarios/{user_id}", json={"rol": "gestor"})

        detail = await http.get(f"/api/usuarios/{user_id}")
        assert detail.headers["X-Cache"] == "MISS"
        assert detail.json()["data"]["rol"] == "gestor"
        stats = await http.get("/api/usuarios-stats")
        assert stats.headers["X-Cache"] == "MISS"
        assert stats.json()["data"]["total"] == 1

    @pytest.mark.asyncio
    async def test_unknown_user_is_404(self, http) -> None:
        assert (await http.get("/api/usuarios/999")).status_code == 404
        assert (await http.put("/api/usuarios/999", json={"nombre": "X"})).status_code == 404


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_success(self, http) -> None:
        await http.post("/api/usuarios", json=user_payload())

        response = await http.post(
            "/api/login", json={"email": "Ana@Colsof.com", "password": "secret123"}
        )

        assert response.status_code == 200
        user = response.json()["data"]
        assert user["email"] == "ana@colsof.com"
        assert "password" not in user

    @pytest.mark.asyncio
    async def test_wrong_password_is_401(self, http) -> None:
        await http.post("/api/usuarios", json=user_payload())
        response = await http.post(
            "/api/login", json={"email": "ana@colsof.com", "password": "nope-nope"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_user_is_401(self, http) -> None:
        response = await http.post(
            "/api/login", json={"email": "ghost@colsof.com", "password": "secret123"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_credentials_is_400(self, http) -> None:
        response = await http.post("/api/login", json={"email": "ana@colsof.com"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_deactivated_user_is_403(self, http) -> None:
        user_id = (await http.post("/api/usuarios", json=user_payload())).json()["data"]["id"]
        # Warm the login lookup cache, then deactivate
        await http.post("/api/login", json={"email": "ana@colsof.com", "password": "secret123"})
        await http.put(f"/api/usuarios/{user_id}", json={"activo": False})

        response = await http.post(
            "/api/login", json={"email": "ana@colsof.com", "password": "secret123"}
        )
        assert response.status_code == 403


class TestErrorEnvelope:
    @pytest.mark.asyncio
    async def test_unhandled_error_is_500_envelope(self, settings) -> None:
        async with serve(settings, raise_app_exceptions=False) as http:
            response = await http.get("/api/usuarios/99999999999999999999")

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Internal server error"}


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_security_and_timing_headers(self, http) -> None:
        response = await http.get("/api/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "max-age=31536000" in response.headers["Strict-Transport-Security"]
        assert response.headers["X-Response-Time"].endswith("ms")

    @pytest.mark.asyncio
    async def test_large_responses_are_gzipped(self, http) -> None:
        for n in range(6):
            await http.post(
                "/api/casos",
                json=case_payload(f"CASO-GZ{n}", descripcion="Paper jam " * 20),
            )

        response = await http.get("/api/casos", headers={"Accept-Encoding": "gzip"})

        assert response.status_code == 200
        assert response.headers["Content-Encoding"] == "gzip"
        assert len(response.json()["data"]) == 6

    @pytest.mark.asyncio
    async def test_small_responses_are_not_compressed(self, http) -> None:
        response = await http.get("/api/clientes", headers={"Accept-Encoding": "gzip"})
        assert "Content-Encoding" not in response.headers

    @pytest.mark.asyncio
    async def test_cors_preflight_for_allowed_origin(self, settings) -> None:
        origin = "https://colsof.example"
        configured = settings.model_copy(update={"cors_origins": origin})

        async with serve(configured) as http:
            allowed = await http.options(
                "/api/casos",
                headers={"Origin": origin, "Access-Control-Request-Method": "POST"},
            )
            blocked = await http.options(
                "/api/casos",
                headers={
                    "Origin": "https://evil.example",
                    "Access-Control-Request-Method": "POST",
                },
            )

        assert allowed.status_code == 200
        assert allowed.headers["Access-Control-Allow-Origin"] == origin
        assert blocked.status_code == 400


class TestRateLimits:
    @pytest.fixture
    async def limited(self, settings):
        limiter.reset()
        async with serve(settings.model_copy(update={"rate_limit_enabled": True})) as http:
            yield http
        limiter.reset()

    @pytest.mark.asyncio
    async def test_sixth_login_attempt_is_429(self, limited) -> None:
        credentials = {"email": "ghost@colsof.com", "password": "secret123"}
        for _ in range(5):
            assert (await limited.post("/api/login", json=credentials)).status_code == 401

        response = await limited.post("/api/login", json=credentials)

        assert response.status_code == 429
        assert response.json() == {"success": False, "error": LOGIN_MESSAGE}
        assert response.headers["Retry-After"] == "900"

    @pytest.mark.asyncio
    async def test_login_limit_is_per_email(self, limited) -> None:
        for _ in range(6):
            await limited.post(
                "/api/login", json={"email": "ghost@colsof.com", "password": "secret123"}
            )

        other = await limited.post(
            "/api/login", json={"email": "other@colsof.com", "password": "secret123"}
        )
        assert other.status_code == 401

    @pytest.mark.asyncio
    async def test_write_limit(self, limited) -> None:
        for _ in range(30):
            assert (await limited.put("/api/casos/CASO-1", json={})).status_code == 400

        response = await limited.put("/api/casos/CASO-1", json={})

        assert response.status_code == 429
        assert response.json()["error"] == WRITE_MESSAGE

    @pytest.mark.asyncio
    async def test_general_limit(self, limited) -> None:
        for _ in range(100):
            assert (await limited.get("/api/clientes")).status_code == 200

        response = await limited.get("/api/clientes")

        assert response.status_code == 429
        assert response.json() == {"success": False, "error": GENERAL_MESSAGE}

    @pytest.mark.asyncio
    async def test_disabled_limiter_lets_everything_through(self, http) -> None:
        for _ in range(7):
            response = await http.post(
                "/api/login", json={"email": "ghost@colsof.com", "password": "secret123"}
            )
        assert response.status_code == 401
