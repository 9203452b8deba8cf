"""
HTTP surface: health, metrics, admin, payment intent and gate webhook.
"""
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from paygate.core.config import settings
from paygate.features.engine import build_engine
from paygate.features.ledger.address import Address
from paygate.features.ledger.memory import InMemoryLedger
from paygate.features.ledger import wire
from paygate.main import app
from paygate.tests.fakes import FakeGate, deploy_escrow

ADMIN = {"X-Admin-Key": "test-admin-key"}
RESOURCE_ID = -100777
PRICE = wire.to_nano("1.5")

client = TestClient(app)


@pytest.fixture
def world():
    ledger = InMemoryLedger.with_factory()
    gate = FakeGate()
    engine = build_engine(ledger=ledger, gate=gate)
    app.state.engine = engine
    beneficiary = ledger.create_wallet("beneficiary", balance=wire.to_nano(5))
    yield SimpleNamespace(ledger=ledger, gate=gate, engine=engine, beneficiary=beneficiary)
    app.state.engine = None


def _register(world, **overrides):
    body = {
        "resource_id": RESOURCE_ID,
        "title": "Premium chat",
        "price": PRICE,
        "beneficiary_address": world.beneficiary.to_string(test_only=True),
    }
    body.update(overrides)
    return client.post("/v1/admin/resources", json=body, headers=ADMIN)


def _deploy(world):
    deploy_escrow(world.ledger, RESOURCE_ID, PRICE, world.beneficiary)
    response = client.post(f"/v1/admin/deployments/{RESOURCE_ID}/sync", headers=ADMIN)
    assert response.status_code == 200
    return response.json()


# ============================================================================
# Health & metrics
# ============================================================================

def test_liveness_and_readiness():
    assert client.get("/healthz").json() == {"status": "ok"}
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_db_health_is_deterministic_with_now():
    response = client.get("/api/health/db", params={"now": "2026-01-01T00:00:00+00:00"})
    data = response.json()
    assert data["ok"] is True
    assert data["computed_at"] == "2026-01-01T00:00:00+00:00"
    assert data["db"]["latency_ms"] is None
    assert "entitlements" in data["db"]["tables_present"]


def test_request_id_is_echoed():
    response = client.get("/healthz", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"


def test_metrics_exposition():
    client.get("/healthz")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text


def test_reconciler_health(world):
    response = client.get("/api/health/reconciler")
    assert response.status_code == 200
    assert response.json()["stalled"] is False


def test_gate_health(world):
    _register(world)
    world.gate.members = {RESOURCE_ID: {"status": "administrator", "can_invite_users": True}}
    response = client.get("/api/health/gate", params={"refresh": "true"})
    assert response.status_code == 200
    assert response.json()[0]["healthy"] is True


def test_components_not_ready_returns_503():
    app.state.engine = None
    response = client.get("/api/health/reconciler")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "not_ready"


# ============================================================================
# Admin
# ============================================================================

def test_admin_requires_key(world):
    response = client.post("/v1/admin/resources", json={"resource_id": 1, "title": "x", "price": 1})
    assert response.status_code == 401
    response = client.post(
        "/v1/admin/resources",
        json={"resource_id": 1, "title": "x", "price": 1},
        headers={"X-Admin-Key": "wrong"},
    )
    assert response.status_code == 401


def test_admin_registers_resource(world):
    response = _register(world, access_period_seconds=86400)
    assert response.status_code == 200
    data = response.json()
    assert data["price"] == PRICE
    assert data["tolerance_bps"] == settings.DEFAULT_TOLERANCE_BPS
    assert data["access_period_seconds"] == 86400
    assert data["beneficiary_address"] == world.beneficiary.to_raw()


def test_admin_rejects_bad_beneficiary(world):
    response = _register(world, beneficiary_address="not-an-address")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_deployment_sync_before_and_after_deploy(world):
    _register(world)
    response = client.post(f"/v1/admin/deployments/{RESOURCE_ID}/sync", headers=ADMIN)
    data = response.json()
    assert data["deployed"] is False
    assert data["registration_payload"]
    assert data["deploy_link"].startswith("ton://transfer/")

    data = _deploy(world)
    assert data["deployed"] is True
    assert data["recorded"] is True


# ============================================================================
# Payment intent
# ============================================================================

def test_intent_requires_deployment(world):
    _register(world)
    response = client.post("/v1/entitlements", json={"subject_id": 1, "resource_id": RESOURCE_ID})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "not_deployed"


def test_intent_unknown_resource(world):
    response = client.post("/v1/entitlements", json={"subject_id": 1, "resource_id": 404})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_intent_returns_payment_instructions(world):
    _register(world)
    _deploy(world)
    response = client.post("/v1/entitlements", json={"subject_id": 1, "resource_id": RESOURCE_ID})
    assert response.status_code == 200
    data = response.json()
    assert data["entitlement"]["status"] == "pending"
    payment = data["payment"]
    assert payment["amount"] == PRICE
    assert payment["amount_ton"] == "1.5"
    assert payment["minimum_amount"] == 1_485_000_000
    assert payment["marker"] == "Subscribe"
    assert wire.read_text_comment(wire.decode_boc(payment["payload"])) == "Subscribe"
    assert Address.parse(payment["contract_address"]).to_raw() == data["entitlement"]["contract_address"]


def test_full_payment_flow_and_verification(world):
    _register(world)
    _deploy(world)
    client.post("/v1/entitlements", json={"subject_id": 1, "resource_id": RESOURCE_ID})
    assert client.get(f"/v1/entitlements/1/{RESOURCE_ID}").json()["status"] == "pending"

    payer = world.ledger.create_wallet("payer", balance=wire.to_nano(10))
    escrow = world.engine.registry.contract_address(RESOURCE_ID)
    world.ledger.advance(5)
    world.ledger.send_comment(payer, escrow, PRICE, "Subscribe")
    ctx = world.engine.reconciler.run_cycle()
    assert ctx.activated == 1

    ent = client.get(f"/v1/entitlements/1/{RESOURCE_ID}").json()
    assert ent["status"] == "active"

    response = client.get(f"/v1/admin/entitlements/{ent['id']}/ledger", headers=ADMIN)
    data = response.json()
    assert data["on_ledger_active"] is True
    assert data["consistent"] is True
    assert data["subject_address"] == payer.to_raw()

    response = client.post(
        f"/v1/admin/entitlements/{ent['id']}/revoke", json={"reason": "refund requested"}, headers=ADMIN
    )
    assert response.json()["status"] == "revoked"
    data = client.get(f"/v1/admin/entitlements/{ent['id']}/ledger", headers=ADMIN).json()
    assert data["consistent"] is False


def test_missing_entitlement_is_404(world):
    response = client.get(f"/v1/entitlements/1/{RESOURCE_ID}")
    assert response.status_code == 404


# ============================================================================
# Gate webhook
# ============================================================================

def test_gate_update_join_request(world):
    _register(world)
    _deploy(world)
    update = {"update_id": 10, "chat_join_request": {"chat": {"id": RESOURCE_ID}, "from": {"id": 55}, "date": 0}}
    response = client.post("/v1/gate/updates", json=update)
    assert response.json() == {"ok": True, "outcome": "PAYMENT_REQUIRED"}
    assert world.gate.messages[-1][0] == 55


def test_gate_update_secret(world, monkeypatch):
    monkeypatch.setattr(settings, "GATE_WEBHOOK_SECRET", "s3cret")
    response = client.post("/v1/gate/updates", json={"update_id": 1})
    assert response.status_code == 403
    response = client.post(
        "/v1/gate/updates", json={"update_id": 1}, headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"}
    )
    assert response.json() == {"ok": True, "outcome": None}
