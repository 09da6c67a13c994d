from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gardenia import auth_api
from gardenia.api import router
from gardenia.db import Base, get_db


def make_client(tmp_path):
    db_path = tmp_path / "test_gardenia_clinics.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    auth_api._login_failures.clear()

    app = FastAPI()
    app.include_router(auth_api.router)
    app.include_router(router)

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _signup(client, email, name="Owner"):
    r = client.post("/api/auth/register", json={"name": name, "email": email, "password": "secret123"})
    assert r.status_code == 201
    return {"Authorization": f"Bearer {r.json()['token']}"}


def _join(client, owner_headers, clinic_id, email, role, name="Member"):
    inv = client.post(
        f"/api/clinics/{clinic_id}/invitations",
        headers=owner_headers,
        json={"email": email, "role": role},
    )
    assert inv.status_code == 201
    reg = client.post(
        f"/api/invitations/{inv.json()['token']}/register",
        json={"name": name, "password": "secret123"},
    )
    assert reg.status_code == 201
    return {"Authorization": f"Bearer {reg.json()['token']}"}


def _members(client, headers, clinic_id):
    return {m["email"]: m for m in client.get(f"/api/clinics/{clinic_id}/members", headers=headers).json()}


def test_clinic_create_list_and_update(tmp_path):
    client = make_client(tmp_path)
    owner = _signup(client, "owner@clinic.test")
    other = _signup(client, "other@clinic.test", name="Other")

    created = client.post(
        "/api/clinics",
        headers=owner,
        json={"name": "  Clinica Sol ", "address": "Rua A, 10", "opening_hours": "08:00-18:00"},
    )
    assert created.status_code == 201
    clinic = created.json()
    assert clinic["name"] == "Clinica Sol"
    assert clinic["role"] == "OWNER"

    client.post("/api/clinics", headers=other, json={"name": "Clinica Lua"})

    mine = client.get("/api/clinics", headers=owner).json()
    assert [c["name"] for c in mine] == ["Clinica Sol"]
    assert mine[0]["role"] == "OWNER"

    me = client.get("/api/auth/me", headers=owner).json()
    assert me["clinics"][0]["clinic_name"] == "Clinica Sol"
    assert me["clinics"][0]["role"] == "OWNER"

    patched = client.patch(f"/api/clinics/{clinic['id']}", headers=owner, json={"phone": "+55 11 3000-0000"})
    assert patched.status_code == 200
    assert patched.json()["phone"] == "+55 11 3000-0000"
    assert patched.json()["address"] == "Rua A, 10"

    empty = client.patch(f"/api/clinics/{clinic['id']}", headers=owner, json={})
    assert empty.status_code == 400

    assert client.patch(f"/api/clinics/{clinic['id']}", headers=other, json={"phone": "1"}).status_code == 403


def test_member_role_changes_keep_at_least_one_owner(tmp_path):
    client = make_client(tmp_path)
    owner = _signup(client, "owner@clinic.test")
    clinic_id = client.post("/api/clinics", headers=owner, json={"name": "Clinica Sol"}).json()["id"]
    _join(client, owner, clinic_id, "pro@clinic.test", "PROFESSIONAL", name="Paula")

    members = _members(client, owner, clinic_id)
    owner_member = members["owner@clinic.test"]["id"]
    pro_member = members["pro@clinic.test"]["id"]
    assert members["pro@clinic.test"]["invited_by"] is not None

    last_owner = client.patch(
        f"/api/clinics/{clinic_id}/members/{owner_member}/role",
        headers=owner,
        json={"role": "MANAGER"},
    )
    assert last_owner.status_code == 409

    bad_role = client.patch(
        f"/api/clinics/{clinic_id}/members/{pro_member}/role",
        headers=owner,
        json={"role": "WIZARD"},
    )
    assert bad_role.status_code == 400

    promoted = client.patch(
        f"/api/clinics/{clinic_id}/members/{pro_member}/role",
        headers=owner,
        json={"role": "OWNER"},
    )
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "OWNER"

    stepped_down = client.patch(
        f"/api/clinics/{clinic_id}/members/{owner_member}/role",
        headers=owner,
        json={"role": "MANAGER"},
    )
    assert stepped_down.status_code == 200

    missing = client.patch(
        f"/api/clinics/{clinic_id}/members/9999/role",
        headers=owner,
        json={"role": "STAFF"},
    )
    assert missing.status_code == 404

    logs = client.get(
        f"/api/clinics/{clinic_id}/audit-logs",
        headers=owner,
        params={"action": "member.role_changed"},
    ).json()
    assert len(logs) == 2


def test_role_change_resets_permissions_unless_kept(tmp_path):
    client = make_client(tmp_path)
    owner = _signup(client, "owner@clinic.test")
    clinic_id = client.post("/api/clinics", headers=owner, json={"name": "Clinica Sol"}).json()["id"]
    staff = _join(client, owner, clinic_id, "staff@clinic.test", "STAFF")
    staff_member = _members(client, owner, clinic_id)["staff@clinic.test"]["id"]

    client.patch(
        f"/api/clinics/{clinic_id}/members/{staff_member}/role",
        headers=owner,
        json={"role": "FINANCIAL", "keep_permissions": True},
    )
    kept = client.get(f"/api/clinics/{clinic_id}/me/permissions", headers=staff).json()
    assert kept["role"] == "FINANCIAL"
    assert ("financial", "view") not in {(p["module"], p["action"]) for p in kept["permissions"]}

    client.patch(
        f"/api/clinics/{clinic_id}/members/{staff_member}/role",
        headers=owner,
        json={"role": "RECEPTIONIST"},
    )
    reset = client.get(f"/api/clinics/{clinic_id}/me/permissions", headers=staff).json()
    assert ("appointments", "delete") in {(p["module"], p["action"]) for p in reset["permissions"]}


def test_remove_member_deactivates_professional_and_revokes_access(tmp_path):
    client = make_client(tmp_path)
    owner = _signup(client, "owner@clinic.test")
    clinic_id = client.post("/api/clinics", headers=owner, json={"name": "Clinica Sol"}).json()["id"]
    pro = _join(client, owner, clinic_id, "pro@clinic.test", "PROFESSIONAL", name="Paula")
    members = _members(client, owner, clinic_id)
    pro_member = members["pro@clinic.test"]
    owner_member = members["owner@clinic.test"]["id"]

    professional = client.post(
        f"/api/clinics/{clinic_id}/professionals",
        headers=owner,
        json={"user_id": pro_member["user_id"], "specialization": "Dermatologia", "commission_rate": 0.3},
    )
    assert professional.status_code == 201

    assert client.delete(f"/api/clinics/{clinic_id}/members/{owner_member}", headers=owner).status_code == 409

    removed = client.delete(f"/api/clinics/{clinic_id}/members/{pro_member['id']}", headers=owner)
    assert removed.status_code == 204
    assert client.get(f"/api/clinics/{clinic_id}", headers=pro).status_code == 403

    listed = client.get(
        f"/api/clinics/{clinic_id}/professionals",
        headers=owner,
        params={"include_inactive": True},
    ).json()
    assert listed[0]["is_active"] is False
    assert client.get(f"/api/clinics/{clinic_id}/professionals", headers=owner).json() == []


def test_client_crud_search_and_validation(tmp_path):
    client = make_client(tmp_path)
    owner = _signup(client, "owner@clinic.test")
    clinic_id = client.post("/api/clinics", headers=owner, json={"name": "Clinica Sol"}).json()["id"]
    base = f"/api/clinics/{clinic_id}/clients"

    blank = client.post(base, headers=owner, json={"name": "   "})
    assert blank.status_code == 422

    bad_email = client.post(base, headers=owner, json={"name": "Joana", "email": "joana-at-mail"})
    assert bad_email.status_code == 400

    joana = client.post(
        base,
        headers=owner,
        json={"name": "Joana Prado", "email": "Joana@Mail.com", "phone": "11999990000", "notes": "  "},
    )
    assert joana.status_code == 201
    assert joana.json()["email"] == "joana@mail.com"
    assert joana.json()["notes"] is None
    client.post(base, headers=owner, json={"name": "Bruno Lima", "phone": "11888880000"})
    client.post(base, headers=owner, json={"name": "Alice Souza"})

    everyone = client.get(base, headers=owner).json()
    assert [c["name"] for c in everyone] == ["Alice Souza", "Bruno Lima", "Joana Prado"]

    assert [c["name"] for c in client.get(base, headers=owner, params={"q": "PRADO"}).json()] == ["Joana Prado"]
    assert [c["name"] for c in client.get(base, headers=owner, params={"q": "8888"}).json()] == ["Bruno Lima"]
    assert [c["name"] for c in client.get(base, headers=owner, params={"q": "mail.com"}).json()] == ["Joana Prado"]
    assert len(client.get(base, headers=owner, params={"limit": 2, "offset": 2}).json()) == 1

    client_id = joana.json()["id"]
    patched = client.patch(f"{base}/{client_id}", headers=owner, json={"address": "Rua B, 20"})
    assert patched.status_code == 200
    assert patched.json()["address"] == "Rua B, 20"
    assert patched.json()["phone"] == "11999990000"

    assert client.get(f"{base}/9999", headers=owner).status_code == 404
    assert client.delete(f"{base}/{client_id}", headers=owner).status_code == 204
    assert client.get(f"{base}/{client_id}", headers=owner).status_code == 404


def test_clients_are_isolated_per_clinic(tmp_path):
    client = make_client(tmp_path)
    owner = _signup(client, "owner@clinic.test")
    first = client.post("/api/clinics", headers=owner, json={"name": "Clinica Sol"}).json()["id"]
    second = client.post("/api/clinics", headers=owner, json={"name": "Clinica Lua"}).json()["id"]

    created = client.post(f"/api/clinics/{first}/clients", headers=owner, json={"name": "Joana"}).json()
    assert client.get(f"/api/clinics/{second}/clients/{created['id']}", headers=owner).status_code == 404
    assert client.get(f"/api/clinics/{second}/clients", headers=owner).json() == []


def test_client_with_appointments_cannot_be_deleted(tmp_path):
    client = make_client(tmp_path)
    owner = _signup(client, "owner@clinic.test", name="Olivia")
    clinic_id = client.post("/api/clinics", headers=owner, json={"name": "Clinica Sol"}).json()["id"]
    owner_user = client.get("/api/auth/me", headers=owner).json()["user"]["id"]
    pro_id = client.post(
        f"/api/clinics/{clinic_id}/professionals", headers=owner, json={"user_id": owner_user}
    ).json()["id"]
    service_id = client.post(
        f"/api/clinics/{clinic_id}/services", headers=owner, json={"name": "Limpeza", "duration": 30, "price": 120}
    ).json()["id"]
    client_id = client.post(f"/api/clinics/{clinic_id}/clients", headers=owner, json={"name": "Joana"}).json()["id"]

    appt = client.post(
        f"/api/clinics/{clinic_id}/appointments",
        headers=owner,
        json={
            "client_id": client_id,
            "professional_id": pro_id,
            "service_id": service_id,
            "start_time": "2026-03-10T10:00:00",
        },
    )
    assert appt.status_code == 201

    blocked = client.delete(f"/api/clinics/{clinic_id}/clients/{client_id}", headers=owner)
    assert blocked.status_code == 409
    assert "appointments" in blocked.json()["detail"]


def test_professionals_and_services_management(tmp_path):
    client = make_client(tmp_path)
    owner = _signup(client, "owner@clinic.test", name="Olivia")
    clinic_id = client.post("/api/clinics", headers=owner, json={"name": "Clinica Sol"}).json()["id"]
    outsider = _signup(client, "outsider@clinic.test", name="Outsider")
    outsider_id = client.get("/api/auth/me", headers=outsider).json()["user"]["id"]
    owner_id = client.get("/api/auth/me", headers=owner).json()["user"]["id"]

    not_member = client.post(f"/api/clinics/{clinic_id}/professionals", headers=owner, json={"user_id": outsider_id})
    assert not_member.status_code == 400

    created = client.post(f"/api/clinics/{clinic_id}/professionals", headers=owner, json={"user_id": owner_id})
    assert created.status_code == 201
    assert created.json()["color"] == "#3498db"
    assert created.json()["name"] == "Olivia"
    again = client.post(f"/api/clinics/{clinic_id}/professionals", headers=owner, json={"user_id": owner_id})
    assert again.status_code == 409

    rate = client.patch(
        f"/api/clinics/{clinic_id}/professionals/{created.json()['id']}",
        headers=owner,
        json={"commission_rate": 1.5},
    )
    assert rate.status_code == 422

    svc = client.post(f"/api/clinics/{clinic_id}/services", headers=owner, json={"name": "Consulta", "duration": 45})
    assert svc.status_code == 201
    assert svc.json()["price"] == 0.0
    dup = client.post(f"/api/clinics/{clinic_id}/services", headers=owner, json={"name": "CONSULTA", "duration": 30})
    assert dup.status_code == 409
    zero = client.post(f"/api/clinics/{clinic_id}/services", headers=owner, json={"name": "Zero", "duration": 0})
    assert zero.status_code == 422

    deactivated = client.delete(f"/api/clinics/{clinic_id}/services/{svc.json()['id']}", headers=owner)
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False
    assert client.get(f"/api/clinics/{clinic_id}/services", headers=owner).json() == []
