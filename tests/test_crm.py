from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gardenia import auth_api
from gardenia.api import router
from gardenia.api_crm import router as crm_router
from gardenia.db import Base, get_db
from gardenia.models import AuditLog, Client, Lead


def make_client(tmp_path):
    db_path = tmp_path / "test_gardenia_crm.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    auth_api._login_failures.clear()

    app = FastAPI()
    app.include_router(auth_api.router)
    app.include_router(router)
    app.include_router(crm_router)

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), testing_session_local


def _signup(client, email, name="Owner"):
    r = client.post("/api/auth/register", json={"name": name, "email": email, "password": "secret123"})
    assert r.status_code == 201
    return {"Authorization": f"Bearer {r.json()['token']}"}


def _join(client, owner_headers, clinic_id, email, role):
    inv = client.post(
        f"/api/clinics/{clinic_id}/invitations",
        headers=owner_headers,
        json={"email": email, "role": role},
    )
    assert inv.status_code == 201
    reg = client.post(
        f"/api/invitations/{inv.json()['token']}/register",
        json={"name": role.title(), "password": "secret123"},
    )
    assert reg.status_code == 201
    return {"Authorization": f"Bearer {reg.json()['token']}"}


def _setup(client):
    owner = _signup(client, "owner@clinic.test")
    clinic = client.post("/api/clinics", headers=owner, json={"name": "Clinica Sol"}).json()
    return owner, clinic["id"]


def _lead(client, headers, clinic_id, **extra):
    body = {"name": "Marta Lima", "phone": "11999990000", "source": "instagram"}
    body.update(extra)
    r = client.post(f"/api/clinics/{clinic_id}/leads", headers=headers, json=body)
    assert r.status_code == 201, r.text
    return r.json()


def test_lead_crud_and_filters(tmp_path):
    client, _ = make_client(tmp_path)
    owner, clinic_id = _setup(client)

    first = _lead(client, owner, clinic_id, email="MARTA@Example.com", estimated_value=350)
    assert first["status"] == "new"
    assert first["email"] == "marta@example.com"
    _lead(client, owner, clinic_id, name="Rui Costa", phone="11988880000", source="referral")

    by_source = client.get(f"/api/clinics/{clinic_id}/leads?source=referral", headers=owner).json()
    assert [x["name"] for x in by_source] == ["Rui Costa"]
    found = client.get(f"/api/clinics/{clinic_id}/leads?q=marta", headers=owner).json()
    assert [x["id"] for x in found] == [first["id"]]

    bad_source = client.post(
        f"/api/clinics/{clinic_id}/leads",
        headers=owner,
        json={"name": "X", "phone": "1234", "source": "billboard"},
    )
    assert bad_source.status_code == 400

    patched = client.patch(
        f"/api/clinics/{clinic_id}/leads/{first['id']}",
        headers=owner,
        json={"status": "contacted", "interest": "botox"},
    )
    assert patched.status_code == 200
    assert patched.json()["status"] == "contacted"
    assert patched.json()["interest"] == "botox"

    shortcut = client.patch(
        f"/api/clinics/{clinic_id}/leads/{first['id']}",
        headers=owner,
        json={"status": "converted"},
    )
    assert shortcut.status_code == 400

    gone = client.delete(f"/api/clinics/{clinic_id}/leads/{first['id']}", headers=owner)
    assert gone.status_code == 204
    assert client.get(f"/api/clinics/{clinic_id}/leads/{first['id']}", headers=owner).status_code == 404


def test_interactions_and_booking_move_the_lead(tmp_path):
    client, _ = make_client(tmp_path)
    owner, clinic_id = _setup(client)
    lead = _lead(client, owner, clinic_id)
    base = f"/api/clinics/{clinic_id}/leads/{lead['id']}"

    note = client.post(
        f"{base}/interactions",
        headers=owner,
        json={"kind": "call", "description": "Asked about prices"},
    )
    assert note.status_code == 201
    assert note.json()["kind"] == "call"
    assert len(client.get(f"{base}/interactions", headers=owner).json()) == 1

    booking = client.post(
        f"{base}/appointments",
        headers=owner,
        json={"scheduled_for": "2026-11-03T14:00:00Z", "procedure": "Avaliacao"},
    )
    assert booking.status_code == 201
    assert booking.json()["status"] == "pending"
    assert client.get(base, headers=owner).json()["status"] == "scheduled"

    client.patch(base, headers=owner, json={"status": "lost"})
    blocked = client.post(
        f"{base}/appointments",
        headers=owner,
        json={"scheduled_for": "2026-11-04T14:00:00Z", "procedure": "Avaliacao"},
    )
    assert blocked.status_code == 400


def test_convert_lead_is_idempotent_and_audited(tmp_path):
    client, session_local = make_client(tmp_path)
    owner, clinic_id = _setup(client)
    lead = _lead(client, owner, clinic_id, email="marta@example.com", notes="prefers mornings")
    url = f"/api/clinics/{clinic_id}/leads/{lead['id']}/convert"

    first = client.post(url, headers=owner)
    assert first.status_code == 200
    body = first.json()
    assert body["lead"]["status"] == "converted"
    assert body["lead"]["converted_client_id"] == body["client"]["id"]
    assert body["client"]["name"] == "Marta Lima"
    assert body["client"]["notes"] == "prefers mornings"

    again = client.post(url, headers=owner)
    assert again.status_code == 200
    assert again.json()["client"]["id"] == body["client"]["id"]

    reopen = client.patch(
        f"/api/clinics/{clinic_id}/leads/{lead['id']}",
        headers=owner,
        json={"status": "new"},
    )
    assert reopen.status_code == 400

    with session_local() as db:
        assert db.query(Client).filter(Client.clinic_id == clinic_id).count() == 1
        actions = [a.action for a in db.query(AuditLog).filter(AuditLog.clinic_id == clinic_id).all()]
        assert actions.count("lead.converted") == 1

    # deleting the client keeps the lead but drops the link
    assert client.delete(f"/api/clinics/{clinic_id}/clients/{body['client']['id']}", headers=owner).status_code == 204
    with session_local() as db:
        assert db.get(Lead, lead["id"]).converted_client_id is None


def test_crm_grants_gate_lead_routes(tmp_path):
    client, _ = make_client(tmp_path)
    owner, clinic_id = _setup(client)
    staff = _join(client, owner, clinic_id, "staff@clinic.test", "STAFF")
    marketing = _join(client, owner, clinic_id, "mkt@clinic.test", "MARKETING")

    assert client.get(f"/api/clinics/{clinic_id}/leads", headers=staff).status_code == 403
    denied = client.post(
        f"/api/clinics/{clinic_id}/leads",
        headers=staff,
        json={"name": "Ana", "phone": "1234", "source": "website"},
    )
    assert denied.status_code == 403
    assert denied.json()["detail"] == "No access to this feature"

    lead = _lead(client, marketing, clinic_id)
    assert client.get(f"/api/clinics/{clinic_id}/leads", headers=marketing).status_code == 200
    # marketing has no crm:delete grant
    assert client.delete(f"/api/clinics/{clinic_id}/leads/{lead['id']}", headers=marketing).status_code == 403
    # conversion also needs clients:create
    assert client.post(f"/api/clinics/{clinic_id}/leads/{lead['id']}/convert", headers=marketing).status_code == 403


def test_crm_stats_counts_pipeline(tmp_path):
    client, _ = make_client(tmp_path)
    owner, clinic_id = _setup(client)
    a = _lead(client, owner, clinic_id, estimated_value=200)
    _lead(client, owner, clinic_id, name="Rui", source="referral", estimated_value=100)
    c = _lead(client, owner, clinic_id, name="Lia", source="referral", estimated_value=999)
    client.post(f"/api/clinics/{clinic_id}/leads/{a['id']}/convert", headers=owner)
    client.patch(f"/api/clinics/{clinic_id}/leads/{c['id']}", headers=owner, json={"status": "lost"})

    stats = client.get(f"/api/clinics/{clinic_id}/crm/stats", headers=owner).json()
    assert stats["total"] == 3
    assert stats["by_status"]["converted"] == 1
    assert stats["by_status"]["lost"] == 1
    assert stats["by_status"]["contacted"] == 0
    assert stats["by_source"] == {
        "instagram": 1,
        "facebook": 0,
        "website": 0,
        "referral": 2,
        "google": 0,
        "whatsapp": 0,
        "other": 0,
    }
    assert stats["conversion_rate"] == 33.3
    assert stats["open_pipeline_value"] == 100.0
