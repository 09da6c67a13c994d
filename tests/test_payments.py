import asyncio
from types import SimpleNamespace

import stripe
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gardenia import api_payments, auth_api, payments
from gardenia.api import router
from gardenia.api_payments import router as payments_router
from gardenia.config import settings
from gardenia.db import Base, get_db
from gardenia.stripe_gateway import PaymentProviderError, from_minor_units, localized_message, to_minor_units


def make_client(tmp_path):
    db_path = tmp_path / "test_gardenia_payments.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    auth_api._login_failures.clear()

    app = FastAPI()
    app.include_router(auth_api.router)
    app.include_router(router)
    app.include_router(payments_router)

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _bootstrap(client):
    r = client.post(
        "/api/auth/register",
        json={"name": "Dra. Olivia", "email": "owner@clinic.test", "password": "secret123"},
    )
    headers = {"Authorization": f"Bearer {r.json()['token']}"}
    user_id = r.json()["user"]["id"]
    clinic_id = client.post("/api/clinics", headers=headers, json={"name": "Clinica Sol"}).json()["id"]
    base = f"/api/clinics/{clinic_id}"
    pro_id = client.post(
        f"{base}/professionals", headers=headers, json={"user_id": user_id, "commission_rate": 0.4}
    ).json()["id"]
    service_id = client.post(
        f"{base}/services", headers=headers, json={"name": "Limpeza de pele", "duration": 30, "price": 150}
    ).json()["id"]
    client_id = client.post(f"{base}/clients", headers=headers, json={"name": "Joana Prado"}).json()["id"]
    appointment_id = client.post(
        f"{base}/appointments",
        headers=headers,
        json={
            "client_id": client_id,
            "professional_id": pro_id,
            "service_id": service_id,
            "start_time": "2026-03-10T10:00:00",
        },
    ).json()["id"]
    return headers, {
        "clinic_id": clinic_id,
        "professional_id": pro_id,
        "client_id": client_id,
        "appointment_id": appointment_id,
    }


def _stripe_configured(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_gardenia")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_gardenia")


def test_minor_unit_conversion():
    assert to_minor_units("150.00") == 15000
    assert to_minor_units(19.999) == 2000
    assert to_minor_units(0.1) == 10
    assert from_minor_units(12345) == 123.45
    assert from_minor_units(None) == 0.0


def test_provider_error_status_and_locale(monkeypatch):
    assert PaymentProviderError("card_error").status_code == 402
    assert PaymentProviderError("signature").status_code == 400
    assert PaymentProviderError("connection").status_code == 502

    monkeypatch.setattr(settings, "APP_LOCALE", "en")
    assert localized_message("not_confirmed", status="processing") == "Payment was not confirmed. Status: processing"
    monkeypatch.setattr(settings, "APP_LOCALE", "pt-BR")
    assert PaymentProviderError("card_error").message == "O cartão foi recusado."
    monkeypatch.setattr(settings, "APP_LOCALE", "fr")
    assert localized_message("unknown_code") == "Payment processor error."


def test_local_payment_confirm_creates_commission_once(tmp_path):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    base = f"/api/clinics/{ids['clinic_id']}"

    created = client.post(
        f"{base}/payments",
        headers=headers,
        json={
            "client_id": ids["client_id"],
            "appointment_id": ids["appointment_id"],
            "amount": 150,
            "payment_method": "PIX",
        },
    )
    assert created.status_code == 201
    payment = created.json()
    assert payment["status"] == "pending"
    assert payment["payment_method"] == "pix"
    assert payment["currency"] == "BRL"
    assert payment["provider"] == "local"
    assert payment["payment_date"] is None

    confirmed = client.post(f"{base}/payments/{payment['id']}/confirm", headers=headers)
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "paid"
    assert confirmed.json()["payment_date"] is not None
    assert client.post(f"{base}/payments/{payment['id']}/confirm", headers=headers).status_code == 200

    commissions = client.get(f"{base}/commissions", headers=headers).json()
    assert len(commissions) == 1
    assert commissions[0]["amount"] == 60.0
    assert commissions[0]["rate"] == 0.4
    assert commissions[0]["professional_id"] == ids["professional_id"]

    assert client.post(f"{base}/payments/{payment['id']}/cancel", headers=headers).status_code == 400
    assert client.delete(f"{base}/appointments/{ids['appointment_id']}", headers=headers).status_code == 409
    assert client.delete(f"{base}/clients/{ids['client_id']}", headers=headers).status_code == 409


def test_payment_validation(tmp_path):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    base = f"/api/clinics/{ids['clinic_id']}"
    other_client = client.post(f"{base}/clients", headers=headers, json={"name": "Bruno"}).json()["id"]

    assert client.post(f"{base}/payments", headers=headers, json={"client_id": ids["client_id"], "amount": 0}).status_code == 422
    wrong_method = client.post(
        f"{base}/payments",
        headers=headers,
        json={"client_id": ids["client_id"], "amount": 10, "payment_method": "barter"},
    )
    assert wrong_method.status_code == 400
    mismatch = client.post(
        f"{base}/payments",
        headers=headers,
        json={"client_id": other_client, "amount": 10, "appointment_id": ids["appointment_id"]},
    )
    assert mismatch.status_code == 400
    assert mismatch.json()["detail"] == "Appointment belongs to a different client"
    assert client.get(f"{base}/payments/999", headers=headers).status_code == 404
    assert client.get(f"{base}/payments", headers=headers, params={"status": "lost"}).status_code == 400


def test_partial_and_full_refund(tmp_path):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    base = f"/api/clinics/{ids['clinic_id']}"
    pid = client.post(f"{base}/payments", headers=headers, json={"client_id": ids["client_id"], "amount": 100}).json()["id"]

    assert client.post(f"{base}/payments/{pid}/refund", headers=headers, json={}).status_code == 400
    client.post(f"{base}/payments/{pid}/confirm", headers=headers)

    partial = client.post(f"{base}/payments/{pid}/refund", headers=headers, json={"amount": 30.5, "reason": "desconto"})
    assert partial.status_code == 200
    assert partial.json()["status"] == "partially_refunded"
    assert partial.json()["refund_amount"] == 30.5
    assert partial.json()["refund_reason"] == "desconto"

    too_much = client.post(f"{base}/payments/{pid}/refund", headers=headers, json={"amount": 80})
    assert too_much.status_code == 400
    assert "69.50" in too_much.json()["detail"]

    rest = client.post(f"{base}/payments/{pid}/refund", headers=headers, json={})
    assert rest.status_code == 200
    assert rest.json()["status"] == "refunded"
    assert rest.json()["refund_amount"] == 100.0

    assert client.post(f"{base}/payments/{pid}/refund", headers=headers, json={}).status_code == 400

    logs = client.get(f"{base}/audit-logs", headers=headers, params={"action": "payment.refunded"}).json()
    assert len(logs) == 2
    assert logs[0]["actor_email"] == "owner@clinic.test"


def test_cancel_pending_payment(tmp_path):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    base = f"/api/clinics/{ids['clinic_id']}"
    pid = client.post(f"{base}/payments", headers=headers, json={"client_id": ids["client_id"], "amount": 40}).json()["id"]

    cancelled = client.post(f"{base}/payments/{pid}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"{base}/payments/{pid}/confirm", headers=headers).status_code == 409

    listed = client.get(f"{base}/payments", headers=headers, params={"status": "cancelled"}).json()
    assert [p["id"] for p in listed] == [pid]


def test_financial_permission_required(tmp_path):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    inv = client.post(
        f"/api/clinics/{ids['clinic_id']}/invitations",
        headers=headers,
        json={"email": "desk@clinic.test", "role": "RECEPTIONIST"},
    ).json()
    reg = client.post(f"/api/invitations/{inv['token']}/register", json={"name": "Desk", "password": "secret123"})
    desk = {"Authorization": f"Bearer {reg.json()['token']}"}

    assert client.get(f"/api/clinics/{ids['clinic_id']}/payments", headers=desk).status_code == 403
    r = client.post(
        f"/api/clinics/{ids['clinic_id']}/payments",
        headers=desk,
        json={"client_id": ids["client_id"], "amount": 10},
    )
    assert r.status_code == 403


def test_stripe_not_configured_is_reported(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")

    r = client.post(
        f"/api/clinics/{ids['clinic_id']}/payments/intents",
        headers=headers,
        json={"client_id": ids["client_id"], "amount": 99.9},
    )
    assert r.status_code == 502
    assert r.json()["detail"]["code"] == "not_configured"


def test_stripe_intent_sync_and_refund(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    _stripe_configured(monkeypatch)
    base = f"/api/clinics/{ids['clinic_id']}"
    calls = {"create": [], "refund": []}
    intent_state = {"status": "requires_payment_method"}

    def fake_create(**params):
        calls["create"].append(params)
        key = params.get("idempotency_key") or str(len(calls["create"]))
        return SimpleNamespace(id=f"pi_{key}", client_secret=f"pi_{key}_secret")

    def fake_retrieve(intent_id):
        return SimpleNamespace(id=intent_id, status=intent_state["status"])

    def fake_refund(**params):
        calls["refund"].append(params)
        return SimpleNamespace(id="re_1")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    monkeypatch.setattr(stripe.Refund, "create", fake_refund)

    body = {"client_id": ids["client_id"], "appointment_id": ids["appointment_id"], "amount": 150}
    first = client.post(f"{base}/payments/intents", headers={**headers, "Idempotency-Key": "abc"}, json=body)
    assert first.status_code == 201
    assert first.json()["client_secret"] == "pi_abc_secret"
    payment = first.json()["payment"]
    assert payment["provider"] == "stripe"
    assert payment["provider_ref"] == "pi_abc"
    assert payment["payment_method"] == "card_online"
    assert calls["create"][0]["amount"] == 15000
    assert calls["create"][0]["currency"] == "brl"
    assert calls["create"][0]["metadata"]["clinic_id"] == str(ids["clinic_id"])

    replay = client.post(f"{base}/payments/intents", headers={**headers, "Idempotency-Key": "abc"}, json=body)
    assert replay.json()["payment"]["id"] == payment["id"]
    assert len(client.get(f"{base}/payments", headers=headers).json()) == 1

    pending = client.post(f"{base}/payments/{payment['id']}/sync", headers=headers)
    assert pending.status_code == 502
    assert pending.json()["detail"]["code"] == "not_confirmed"

    intent_state["status"] = "succeeded"
    synced = client.post(f"{base}/payments/{payment['id']}/sync", headers=headers)
    assert synced.status_code == 200
    assert synced.json()["status"] == "paid"
    assert len(client.get(f"{base}/commissions", headers=headers).json()) == 1

    refunded = client.post(f"{base}/payments/{payment['id']}/refund", headers=headers, json={"amount": 50})
    assert refunded.status_code == 200
    assert calls["refund"] == [{"payment_intent": "pi_abc", "reason": "requested_by_customer", "amount": 5000}]

    local = client.post(f"{base}/payments", headers=headers, json={"client_id": ids["client_id"], "amount": 10}).json()
    assert client.post(f"{base}/payments/{local['id']}/sync", headers=headers).status_code == 400


def test_stripe_card_error_is_wrapped(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    _stripe_configured(monkeypatch)
    monkeypatch.setattr(settings, "APP_LOCALE", "pt-BR")

    def declined(**params):
        raise stripe.CardError("Your card was declined.", "card", "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "create", declined)
    r = client.post(
        f"/api/clinics/{ids['clinic_id']}/payments/intents",
        headers=headers,
        json={"client_id": ids["client_id"], "amount": 10},
    )
    assert r.status_code == 402
    assert r.json()["detail"] == {"code": "card_error", "message": "O cartão foi recusado."}
    assert client.get(f"/api/clinics/{ids['clinic_id']}/payments", headers=headers).json() == []


def test_stripe_refund_failure_leaves_payment_untouched(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    _stripe_configured(monkeypatch)
    base = f"/api/clinics/{ids['clinic_id']}"

    monkeypatch.setattr(
        stripe.PaymentIntent,
        "create",
        lambda **params: SimpleNamespace(id="pi_refund", client_secret="secret"),
    )
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "retrieve",
        lambda intent_id: SimpleNamespace(id=intent_id, status="succeeded"),
    )

    def unreachable(**params):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Refund, "create", unreachable)

    pid = client.post(
        f"{base}/payments/intents", headers=headers, json={"client_id": ids["client_id"], "amount": 80}
    ).json()["payment"]["id"]
    client.post(f"{base}/payments/{pid}/sync", headers=headers)

    r = client.post(f"{base}/payments/{pid}/refund", headers=headers, json={})
    assert r.status_code == 502
    assert r.json()["detail"]["code"] == "connection"
    after = client.get(f"{base}/payments/{pid}", headers=headers).json()
    assert after["status"] == "paid"
    assert after["refund_amount"] == 0.0


def test_stripe_webhook_marks_paid_and_ignores_redelivery(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    _stripe_configured(monkeypatch)
    base = f"/api/clinics/{ids['clinic_id']}"
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "create",
        lambda **params: SimpleNamespace(id="pi_hook", client_secret="secret"),
    )
    pid = client.post(
        f"{base}/payments/intents",
        headers=headers,
        json={"client_id": ids["client_id"], "appointment_id": ids["appointment_id"], "amount": 150},
    ).json()["payment"]["id"]

    events = {"next": "payment_intent.payment_failed"}

    def fake_construct(payload, signature, secret):
        assert secret == "whsec_gardenia"
        if payload == b"not-json":
            raise ValueError("Invalid payload")
        if signature != "t=1,v1=good":
            raise stripe.SignatureVerificationError("No signatures found", signature)
        return SimpleNamespace(
            type=events["next"],
            data=SimpleNamespace(object=SimpleNamespace(id="pi_hook")),
        )

    monkeypatch.setattr(stripe.Webhook, "construct_event", fake_construct)
    url = "/api/payments/webhook"

    bad_sig = client.post(url, content=b"{}", headers={"Stripe-Signature": "t=1,v1=forged"})
    assert bad_sig.status_code == 400
    assert bad_sig.json()["detail"]["code"] == "signature"

    bad_payload = client.post(url, content=b"not-json", headers={"Stripe-Signature": "t=1,v1=good"})
    assert bad_payload.status_code == 400
    assert bad_payload.json()["detail"]["code"] == "invalid_payload"

    failed = client.post(url, content=b"{}", headers={"Stripe-Signature": "t=1,v1=good"})
    assert failed.json() == {"status": "success", "payment_id": pid}
    assert client.get(f"{base}/payments/{pid}", headers=headers).json()["status"] == "failed"

    events["next"] = "payment_intent.succeeded"
    for _ in range(2):
        ok = client.post(url, content=b"{}", headers={"Stripe-Signature": "t=1,v1=good"})
        assert ok.status_code == 200
    assert client.get(f"{base}/payments/{pid}", headers=headers).json()["status"] == "paid"
    assert len(client.get(f"{base}/commissions", headers=headers).json()) == 1

    events["next"] = "charge.refunded"
    ignored = client.post(url, content=b"{}", headers={"Stripe-Signature": "t=1,v1=good"})
    assert ignored.status_code == 200


def test_billing_subscription_lifecycle(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    headers, _ids = _bootstrap(client)
    _stripe_configured(monkeypatch)
    monkeypatch.setattr(settings, "STRIPE_DEFAULT_PRICE_ID", "")

    created_customers = []

    def fake_customer_create(**params):
        created_customers.append(params)
        return SimpleNamespace(id="cus_123")

    monkeypatch.setattr(stripe.Customer, "create", fake_customer_create)
    monkeypatch.setattr(
        stripe.Subscription,
        "create",
        lambda **params: SimpleNamespace(
            id="sub_123",
            status="incomplete",
            latest_invoice=SimpleNamespace(payment_intent=SimpleNamespace(client_secret="seti_secret")),
        ),
    )
    monkeypatch.setattr(
        stripe.Subscription,
        "retrieve",
        lambda subscription_id: SimpleNamespace(id=subscription_id, status="active"),
    )
    monkeypatch.setattr(
        stripe.Subscription,
        "cancel",
        lambda subscription_id: SimpleNamespace(id=subscription_id, status="canceled"),
    )

    assert client.get("/api/billing/subscription", headers=headers).status_code == 404
    assert client.post("/api/billing/subscription", headers=headers, json={}).status_code == 400

    created = client.post("/api/billing/subscription", headers=headers, json={"price_id": "price_basic"})
    assert created.status_code == 201
    assert created.json() == {"subscription_id": "sub_123", "status": "incomplete", "client_secret": "seti_secret"}
    assert created_customers[0]["email"] == "owner@clinic.test"

    again = client.post("/api/billing/subscription", headers=headers, json={"price_id": "price_basic"})
    assert again.status_code == 409

    current = client.get("/api/billing/subscription", headers=headers)
    assert current.json()["status"] == "active"

    cancelled = client.delete("/api/billing/subscription", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "canceled"
    assert client.get("/api/billing/subscription", headers=headers).status_code == 404


def test_concurrent_intent_with_same_idempotency_key_keeps_one_payment(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    headers, ids = _bootstrap(client)
    _stripe_configured(monkeypatch)
    base = f"/api/clinics/{ids['clinic_id']}"
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "create",
        lambda **params: SimpleNamespace(id="pi_same", client_secret="pi_same_secret"),
    )
    body = {"client_id": ids["client_id"], "appointment_id": ids["appointment_id"], "amount": 150}
    first = client.post(f"{base}/payments/intents", headers={**headers, "Idempotency-Key": "k1"}, json=body)
    assert first.status_code == 201

    # the second request looks up before the first one's row is visible
    real_lookup = payments.get_payment_by_provider_ref
    lookups = {"count": 0}

    def late_lookup(db, provider_ref):
        lookups["count"] += 1
        if lookups["count"] == 1:
            return None
        return real_lookup(db, provider_ref)

    monkeypatch.setattr(payments, "get_payment_by_provider_ref", late_lookup)
    second = client.post(f"{base}/payments/intents", headers={**headers, "Idempotency-Key": "k1"}, json=body)
    assert second.status_code == 201
    assert second.json()["payment"]["id"] == first.json()["payment"]["id"]
    assert lookups["count"] == 2
    monkeypatch.setattr(payments, "get_payment_by_provider_ref", real_lookup)

    assert len(client.get(f"{base}/payments", headers=headers).json()) == 1

    monkeypatch.setattr(
        stripe.Webhook,
        "construct_event",
        lambda payload, signature, secret: SimpleNamespace(
            type="payment_intent.succeeded",
            data=SimpleNamespace(object=SimpleNamespace(id="pi_same")),
        ),
    )
    hook = client.post("/api/payments/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=good"})
    assert hook.status_code == 200
    assert hook.json()["payment_id"] == first.json()["payment"]["id"]


def test_webhook_database_work_runs_off_the_event_loop(tmp_path, monkeypatch):
    client = make_client(tmp_path)
    _stripe_configured(monkeypatch)
    monkeypatch.setattr(
        stripe.Webhook,
        "construct_event",
        lambda payload, signature, secret: SimpleNamespace(
            type="payment_intent.succeeded",
            data=SimpleNamespace(object=SimpleNamespace(id="pi_unknown")),
        ),
    )
    seen = []
    real_handler = api_payments.handle_stripe_event

    def recording_handler(db, event):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            seen.append("worker")
        else:
            seen.append("event_loop")
        return real_handler(db, event)

    monkeypatch.setattr(api_payments, "handle_stripe_event", recording_handler)
    r = client.post("/api/payments/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=good"})
    assert r.status_code == 200
    assert r.json() == {"status": "success", "payment_id": None}
    assert seen == ["worker"]
