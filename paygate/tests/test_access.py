"""
Join-request coordination, gate health checks and deployment sync.
"""
from datetime import timedelta

import pytest

from paygate.core.errors import DuplicateDeploymentError, ValidationError
from paygate.core.metrics import gate_unhealthy_resources
from paygate.features.access.coordinator import (
    AccessGrantCoordinator,
    AccessOutcome,
    get_pending_request,
    payment_instructions,
)
from paygate.features.access.health import GateHealthMonitor
from paygate.features.deployments.service import (
    DeploymentRegistry,
    ensure_recorded,
    get_deployment,
    record_deployment,
)
from paygate.features.entitlements import service as store
from paygate.features.ledger.memory import InMemoryLedger
from paygate.features.ledger import wire
from paygate.features.resources.service import register_resource
from paygate.tests.fakes import FakeGate, deploy_and_record, deploy_escrow, ledger_clock

RESOURCE_ID = -100500
PRICE = wire.to_nano(2)


@pytest.fixture
def ledger():
    return InMemoryLedger.with_factory(now=1_760_000_000)


@pytest.fixture
def beneficiary(ledger):
    return ledger.create_wallet("beneficiary", balance=wire.to_nano(5))


@pytest.fixture
def gate():
    return FakeGate()


@pytest.fixture
def coordinator(gate, ledger):
    return AccessGrantCoordinator(gate, clock=ledger_clock(ledger))


def test_unmanaged_resource_is_ignored(coordinator, gate):
    assert coordinator.on_access_request(1, 12345) == AccessOutcome.IGNORED
    register_resource(12345, "Closed", PRICE, is_active=False)
    assert coordinator.on_access_request(1, 12345) == AccessOutcome.IGNORED
    assert gate.messages == []


def test_request_without_deployment_is_cached_without_prompt(coordinator, gate, ledger):
    register_resource(RESOURCE_ID, "Premium", PRICE)
    outcome = coordinator.on_access_request(1, RESOURCE_ID, ledger_clock(ledger)())
    assert outcome == AccessOutcome.PAYMENT_REQUIRED
    pending = get_pending_request(1, RESOURCE_ID)
    assert pending is not None
    assert not pending.payment_prompt_sent
    assert gate.messages == []
    assert store.find_entitlement(1, RESOURCE_ID) is None


def test_request_sends_instructions_and_records_intent(coordinator, gate, ledger, beneficiary):
    escrow = deploy_and_record(ledger, RESOURCE_ID, PRICE, beneficiary)
    register_resource(RESOURCE_ID, "Premium", PRICE, access_period_seconds=30 * 86400)

    coordinator.on_access_request(1, RESOURCE_ID)
    chat_id, text = gate.messages[-1]
    assert chat_id == 1
    assert "Premium" in text
    assert "30 days of access" in text
    assert "ton://transfer/" in text
    assert f"amount={PRICE}" in text

    ent = store.find_entitlement(1, RESOURCE_ID)
    assert ent.status == "pending"
    assert ent.contract_address == escrow
    assert get_pending_request(1, RESOURCE_ID).payment_prompt_sent


def test_repeated_request_refreshes_expiry(coordinator, ledger):
    register_resource(RESOURCE_ID, "Premium", PRICE)
    now = ledger_clock(ledger)()
    coordinator.on_access_request(1, RESOURCE_ID, now)
    first = get_pending_request(1, RESOURCE_ID)
    coordinator.on_access_request(1, RESOURCE_ID, now + timedelta(hours=1))
    second = get_pending_request(1, RESOURCE_ID)
    assert second.id == first.id
    assert second.expires_at == first.expires_at + timedelta(hours=1)


def test_revoked_subject_is_denied_without_instructions(coordinator, gate, ledger, beneficiary):
    escrow = deploy_and_record(ledger, RESOURCE_ID, PRICE, beneficiary)
    register_resource(RESOURCE_ID, "Premium", PRICE)
    ent = store.express_intent(1, RESOURCE_ID, price_expected=PRICE, tolerance_bps=100, contract_address=escrow)
    store.activate(ent.id, store.CreditedTransaction(hash="cc" * 32, amount=PRICE, confirmed_at=ent.created_at))
    store.revoke(ent.id, "abuse")

    assert coordinator.on_access_request(1, RESOURCE_ID) == AccessOutcome.DENIED
    assert gate.messages == [(1, "Your access to Premium has been revoked.")]
    assert gate.approved == []
    assert get_pending_request(1, RESOURCE_ID) is None


def test_expired_requests_are_not_approved_and_cleaned_up(gate, ledger):
    clock = ledger_clock(ledger)
    coordinator = AccessGrantCoordinator(gate, request_ttl=timedelta(minutes=10), clock=clock)
    register_resource(RESOURCE_ID, "Premium", PRICE)
    now = clock()
    coordinator.on_access_request(1, RESOURCE_ID, now)

    later = now + timedelta(minutes=11)
    assert coordinator.on_entitlement_activated(1, RESOURCE_ID, later) is False
    assert gate.approved == []
    assert coordinator.cleanup_expired(later) == 1
    assert get_pending_request(1, RESOURCE_ID) is None


def test_dispatch_gate_update(coordinator):
    register_resource(RESOURCE_ID, "Premium", PRICE)
    update = {"update_id": 1, "chat_join_request": {"chat": {"id": RESOURCE_ID}, "from": {"id": 9}, "date": 0}}
    assert coordinator.dispatch_gate_update(update) == AccessOutcome.PAYMENT_REQUIRED
    assert coordinator.dispatch_gate_update({"update_id": 2, "message": {"text": "hi"}}) is None
    assert coordinator.dispatch_gate_update({"chat_join_request": {"chat": {}}}) is None


def test_payment_instructions_for_lifetime_access(ledger, beneficiary):
    escrow = deploy_escrow(ledger, RESOURCE_ID, PRICE, beneficiary)
    resource = register_resource(RESOURCE_ID, "Premium", PRICE)
    text = payment_instructions(resource, escrow, "Subscribe")
    assert "lifetime access" in text
    assert "Price: 2 TON" in text
    assert '"Subscribe"' in text


# ============================================================================
# Gate health
# ============================================================================

def test_health_monitor_reports_privileges(gate, ledger):
    register_resource(1, "Healthy", PRICE)
    register_resource(2, "Member only", PRICE)
    register_resource(3, "Missing", PRICE)
    register_resource(4, "No invite", PRICE)
    gate.members = {
        1: {"status": "administrator", "can_invite_users": True},
        2: {"status": "member"},
        4: {"status": "administrator", "can_invite_users": False},
    }

    reports = {r.resource_id: r for r in GateHealthMonitor(gate).check_all()}
    assert reports[1].healthy
    assert not reports[2].healthy and reports[2].issues == ["Bot is not an administrator"]
    assert not reports[3].healthy and reports[3].error
    assert reports[4].issues == ["Bot lacks the invite users privilege"]
    assert gate_unhealthy_resources.value() == 3


def test_creator_is_always_healthy(gate):
    gate.members = {5: {"status": "creator"}}
    assert GateHealthMonitor(gate).check_resource(5).healthy


# ============================================================================
# Deployments
# ============================================================================

def test_record_deployment_is_write_once(ledger, beneficiary):
    escrow = deploy_escrow(ledger, RESOURCE_ID, PRICE, beneficiary)
    record_deployment(RESOURCE_ID, escrow)
    with pytest.raises(DuplicateDeploymentError) as exc_info:
        record_deployment(RESOURCE_ID, escrow)
    assert exc_info.value.address == escrow
    assert ensure_recorded(RESOURCE_ID, escrow).contract_address == escrow


def test_registry_sync_records_live_escrow(ledger, beneficiary):
    registry = DeploymentRegistry(ledger, ledger.factory_address)
    resource = register_resource(RESOURCE_ID, "Premium", PRICE, beneficiary_address=beneficiary.to_raw())

    status = registry.sync(resource)
    assert not status.deployed
    assert not status.recorded
    assert status.registration_payload
    assert status.deploy_link.startswith("ton://transfer/")
    assert get_deployment(RESOURCE_ID) is None

    escrow = deploy_escrow(ledger, RESOURCE_ID, PRICE, beneficiary)
    assert registry.address_for(RESOURCE_ID) == escrow
    status = registry.sync(resource)
    assert status.deployed and status.recorded
    assert get_deployment(RESOURCE_ID).contract_address == escrow
    assert registry.contract_address(RESOURCE_ID) == escrow


def test_registry_requires_factory(ledger):
    with pytest.raises(ValidationError):
        DeploymentRegistry(ledger, None).address_for(RESOURCE_ID)
