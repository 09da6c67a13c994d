from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gardenia import auth_api, main
from gardenia.api import router
from gardenia.config import settings
from gardenia.core.middleware import RequestContextMiddleware
from gardenia.db import Base, get_db
from gardenia.main import app


def test_health_ready_ok_without_redis():
    previous_redis = settings.REDIS_URL
    try:
        settings.REDIS_URL = ""
        client = TestClient(app)
        response = client.get("/health/ready")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ready"
        assert payload["checks"]["db"] == "ok"
        assert payload["checks"]["redis"] == "skipped"
    finally:
        settings.REDIS_URL = previous_redis


def test_health_ready_reports_unreachable_redis():
    previous_redis = settings.REDIS_URL
    try:
        settings.REDIS_URL = "redis://127.0.0.1:1/0"
        client = TestClient(app)
        response = client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
        assert response.json()["checks"]["redis"] == "error"
    finally:
        settings.REDIS_URL = previous_redis


def test_security_headers_are_present():
    previous_security_headers = bool(settings.SECURITY_HEADERS_ENABLED)
    try:
        settings.SECURITY_HEADERS_ENABLED = True
        client = TestClient(app)
        response = client.get("/health")
        assert response.status_code == 200
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("Referrer-Policy") == "no-referrer"
        assert response.headers.get("Cache-Control") == "no-store"
    finally:
        settings.SECURITY_HEADERS_ENABLED = previous_security_headers


def test_request_id_is_echoed_or_generated():
    client = TestClient(app)
    echoed = client.get("/health", headers={"X-Request-ID": "req-gardenia-1"})
    assert echoed.headers.get("X-Request-ID") == "req-gardenia-1"

    generated = client.get("/health")
    assert len(generated.headers.get("X-Request-ID") or "") == 36


def test_maintenance_mode_blocks_business_endpoints():
    previous_maintenance_mode = bool(settings.MAINTENANCE_MODE)
    previous_retry_after = int(settings.MAINTENANCE_RETRY_AFTER_SECONDS)
    try:
        settings.MAINTENANCE_MODE = True
        settings.MAINTENANCE_RETRY_AFTER_SECONDS = 30
        client = TestClient(app)
        blocked = client.post("/api/clinics", json={"name": "Clinica Sol"})
        assert blocked.status_code == 503
        assert blocked.headers.get("Retry-After") == "30"
        assert client.get("/api/clinics").status_code == 503

        health = client.get("/health")
        assert health.status_code == 200
    finally:
        settings.MAINTENANCE_MODE = previous_maintenance_mode
        settings.MAINTENANCE_RETRY_AFTER_SECONDS = previous_retry_after


def test_read_only_mode_blocks_mutations_but_allows_auth_login():
    previous_read_only = bool(settings.MAINTENANCE_READ_ONLY)
    try:
        settings.MAINTENANCE_READ_ONLY = True
        auth_api._login_failures.clear()
        client = TestClient(app)
        blocked = client.post("/api/clinics", json={"name": "Clinica Sol"})
        assert blocked.status_code == 503
        assert blocked.json()["detail"] == "Service is in read-only mode"

        reads_pass = client.get("/api/clinics")
        assert reads_pass.status_code == 401

        allowed_auth = client.post(
            "/api/auth/login",
            json={"email": "missing@gardenia.local", "password": "BadPass123"},
        )
        assert allowed_auth.status_code in {401, 429}
    finally:
        settings.MAINTENANCE_READ_ONLY = previous_read_only
        auth_api._login_failures.clear()


def _context_app(tmp_path):
    db_path = tmp_path / "test_gardenia_runtime.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    local_app = FastAPI()
    local_app.include_router(auth_api.router)
    local_app.include_router(router)
    local_app.add_middleware(RequestContextMiddleware)

    @local_app.get("/boom")
    def boom():
        raise RuntimeError("kaboom")

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    local_app.dependency_overrides[get_db] = override_get_db
    return TestClient(local_app, raise_server_exceptions=False)


def test_unhandled_error_returns_json_500_with_request_id(tmp_path):
    client = _context_app(tmp_path)
    r = client.get("/boom", headers={"X-Request-ID": "req-boom"})
    assert r.status_code == 500
    assert r.json() == {"detail": "Internal Server Error"}
    assert r.headers.get("X-Request-ID") == "req-boom"


def test_audit_entries_carry_request_id(tmp_path):
    client = _context_app(tmp_path)
    reg = client.post(
        "/api/auth/register",
        json={"name": "Olivia", "email": "owner@clinic.test", "password": "secret123"},
    )
    headers = {"Authorization": f"Bearer {reg.json()['token']}"}
    clinic_id = client.post("/api/clinics", headers=headers, json={"name": "Clinica Sol"}).json()["id"]

    invited = client.post(
        f"/api/clinics/{clinic_id}/invitations",
        headers={**headers, "X-Request-ID": "req-invite-7"},
        json={"email": "rita@clinic.test", "role": "STAFF"},
    )
    assert invited.status_code == 201

    logs = client.get(f"/api/clinics/{clinic_id}/audit-logs", headers=headers).json()
    assert logs[0]["action"] == "invitation.created"
    assert logs[0]["request_id"] == "req-invite-7"
    assert logs[0]["actor_email"] == "owner@clinic.test"


def test_run_serves_the_app_with_configured_host_and_port(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))
    monkeypatch.setattr(settings, "SERVER_HOST", "0.0.0.0")
    monkeypatch.setattr(settings, "SERVER_PORT", 8123)
    monkeypatch.setattr(settings, "LOG_LEVEL", "WARNING")

    main.run()

    assert calls == [("gardenia.main:app", {"host": "0.0.0.0", "port": 8123, "log_level": "warning"})]


def test_every_router_is_mounted():
    paths = {route.path for route in app.routes}
    assert "/api/clinics/{clinic_id}/leads" in paths
    assert "/api/clinics/{clinic_id}/inventory" in paths
    assert "/api/me/tasks" in paths
    assert "/api/clinics/{clinic_id}/financial/reports/cash-flow" in paths
