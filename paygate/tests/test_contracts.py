"""
Escrow and factory contract behaviour on the in-memory ledger.
"""
import pytest

from paygate.core.errors import DuplicateDeploymentError
from paygate.features.contracts.base import ExitCode, InboundMessage
from paygate.features.contracts.escrow import EscrowContract, meets_tolerance, minimum_accepted
from paygate.features.contracts.factory import DEPLOY_VALUE
from paygate.features.ledger.address import Address
from paygate.features.ledger.memory import InMemoryLedger
from paygate.features.ledger import wire
from paygate.tests.fakes import deploy_escrow

NOW = 1_700_000_000
PRICE = 1000


@pytest.fixture
def ledger():
    return InMemoryLedger.with_factory(now=NOW, escrow_options={"gas_reserve": 10, "refund_threshold": 100})


@pytest.fixture
def beneficiary(ledger):
    return ledger.create_wallet("beneficiary", balance=wire.to_nano(5))


@pytest.fixture
def escrow(ledger, beneficiary):
    return deploy_escrow(ledger, 42, PRICE, beneficiary)


def _is_active(ledger, escrow, wallet):
    return ledger.run_get_method(escrow, "isActive", [wallet]) == [-1]


def test_tolerance_math():
    assert meets_tolerance(990, 1000, 100)
    assert not meets_tolerance(989, 1000, 100)
    assert minimum_accepted(1000, 100) == 990
    assert minimum_accepted(1001, 100) == 991
    assert meets_tolerance(1000, 1000, 0)
    assert not meets_tolerance(999, 1000, 0)


def test_deploy_through_factory(ledger, escrow, beneficiary):
    assert ledger.get_account_state(escrow).is_active
    assert ledger.run_get_method(ledger.factory_address, "isDeployed", [42]) == [-1]
    assert ledger.run_get_method(ledger.factory_address, "getSubscriptionAddress", [42]) == [Address.parse(escrow)]
    assert ledger.run_get_method(escrow, "getPrice") == [PRICE]
    assert ledger.run_get_method(escrow, "getBeneficiary") == [beneficiary]


def test_payment_within_tolerance_is_accepted(ledger, escrow):
    payer = ledger.create_wallet("payer", balance=10_000)
    tx = ledger.send_comment(payer, escrow, 990, "Subscribe")
    assert not tx.aborted
    assert _is_active(ledger, escrow, payer)
    assert ledger.run_get_method(escrow, "getExpiry", [payer]) == [0]


def test_underpayment_is_rejected_and_bounced(ledger, escrow):
    payer = ledger.create_wallet("payer", balance=10_000)
    tx = ledger.send_comment(payer, escrow, 989, "Subscribe")
    assert tx.aborted
    assert ledger.last_results[0].exit_code == ExitCode.INSUFFICIENT_PAYMENT
    assert not _is_active(ledger, escrow, payer)
    assert ledger.balance(payer.to_raw()) == 10_000
    bounce = ledger.get_transactions(payer.to_raw(), limit=1)[0]
    assert bounce.bounced
    assert bounce.value == 989


def test_wrong_comment_is_rejected(ledger, escrow):
    payer = ledger.create_wallet("payer", balance=10_000)
    tx = ledger.send_comment(payer, escrow, PRICE, "hello")
    assert tx.aborted
    assert ledger.last_results[0].exit_code == ExitCode.UNKNOWN_MESSAGE


def test_forwards_to_beneficiary_and_refunds_large_excess(ledger, escrow, beneficiary):
    before = ledger.balance(beneficiary.to_raw())
    payer = ledger.create_wallet("payer", balance=10_000)

    ledger.send_comment(payer, escrow, 1100, "Subscribe")
    assert ledger.balance(payer.to_raw()) == 10_000 - 1100 + 90
    refund = ledger.get_transactions(payer.to_raw(), limit=1)[0]
    assert refund.comment == "Refund"
    assert ledger.balance(beneficiary.to_raw()) == before + 990


def test_small_excess_is_kept(ledger, escrow, beneficiary):
    before = ledger.balance(beneficiary.to_raw())
    payer = ledger.create_wallet("payer", balance=10_000)

    ledger.send_comment(payer, escrow, 1050, "Subscribe")
    assert ledger.balance(payer.to_raw()) == 10_000 - 1050
    assert ledger.balance(beneficiary.to_raw()) == before + 990


def test_stats_count_each_subscriber_once(ledger, escrow):
    payer = ledger.create_wallet("payer", balance=10_000)
    ledger.send_comment(payer, escrow, PRICE, "Subscribe")
    ledger.send_comment(payer, escrow, PRICE, "Subscribe")
    subscribers, forwarded, price = ledger.run_get_method(escrow, "getStats")
    assert subscribers == 1
    assert forwarded == 2 * (PRICE - 10)
    assert price == PRICE


def test_duplicate_deploy_is_rejected_with_existing_address(ledger, escrow, beneficiary):
    factory = ledger.factory
    with pytest.raises(DuplicateDeploymentError) as exc_info:
        factory.deploy(42, beneficiary, PRICE, DEPLOY_VALUE)
    assert exc_info.value.address == escrow

    msg = wire.RegisterDeployment(user_wallet=beneficiary, resource_id=42, price=PRICE)
    ledger.send(factory.owner, ledger.factory_address, wire.to_nano("0.05"), msg.to_cell())
    tx = ledger.send_comment(beneficiary, ledger.factory_address, DEPLOY_VALUE, wire.DEPLOY_MARKER)
    assert tx.aborted
    assert ledger.last_results[0].exit_code == ExitCode.ALREADY_DEPLOYED


def test_deploy_requires_fresh_registration(ledger, beneficiary):
    tx = ledger.send_comment(beneficiary, ledger.factory_address, DEPLOY_VALUE, wire.DEPLOY_MARKER)
    assert tx.aborted
    assert ledger.last_results[0].exit_code == ExitCode.NOT_REGISTERED

    msg = wire.RegisterDeployment(user_wallet=beneficiary, resource_id=7, price=PRICE)
    ledger.send(ledger.factory.owner, ledger.factory_address, wire.to_nano("0.05"), msg.to_cell())
    ledger.advance(3601)
    tx = ledger.send_comment(beneficiary, ledger.factory_address, DEPLOY_VALUE, wire.DEPLOY_MARKER)
    assert tx.aborted
    assert ledger.last_results[0].exit_code == ExitCode.REGISTRATION_EXPIRED


def test_registration_only_from_owner(ledger, beneficiary):
    msg = wire.RegisterDeployment(user_wallet=beneficiary, resource_id=7, price=PRICE)
    tx = ledger.send(beneficiary, ledger.factory_address, wire.to_nano("0.05"), msg.to_cell())
    assert tx.aborted
    assert ledger.last_results[0].exit_code == ExitCode.ACCESS_DENIED


def test_price_update_only_from_beneficiary(ledger, escrow, beneficiary):
    stranger = ledger.create_wallet("stranger", balance=wire.to_nano(1))
    tx = ledger.send(stranger, escrow, wire.to_nano("0.01"), wire.UpdatePrice(price=5).to_cell())
    assert tx.aborted
    assert ledger.run_get_method(escrow, "getPrice") == [PRICE]

    ledger.send(beneficiary, escrow, wire.to_nano("0.01"), wire.UpdatePrice(price=2000).to_cell())
    assert ledger.run_get_method(escrow, "getPrice") == [2000]


def test_time_bound_access_extends_from_current_expiry():
    factory = Address(0, bytes(32))
    beneficiary = Address(0, bytes([1]) * 32)
    subject = Address(0, bytes([2]) * 32)
    escrow = EscrowContract(Address(0, bytes([3]) * 32), factory, 1, gas_reserve=10)

    init = wire.EscrowInit(beneficiary=beneficiary, price=PRICE, tolerance_bps=0, access_period_seconds=100)
    assert escrow.execute(InboundMessage(sender=factory, value=0, body=init.to_cell(), now=1000)).accepted

    pay = wire.text_comment("Subscribe")
    assert escrow.execute(InboundMessage(sender=subject, value=PRICE, body=pay, now=1000)).accepted
    assert escrow.get_expiry(subject) == 1100
    assert escrow.execute(InboundMessage(sender=subject, value=PRICE, body=pay, now=1050)).accepted
    assert escrow.get_expiry(subject) == 1200
    assert escrow.get_method("isActive", [subject], 1199) == [-1]
    assert escrow.get_method("isActive", [subject], 1200) == [0]
    assert escrow.subscriber_count == 1


def test_escrow_rejects_payments_before_init():
    escrow = EscrowContract(Address(0, bytes([3]) * 32), Address(0, bytes(32)), 1)
    result = escrow.execute(InboundMessage(
        sender=Address(0, bytes([2]) * 32), value=PRICE, body=wire.text_comment("Subscribe"), now=0,
    ))
    assert result.exit_code == ExitCode.NOT_INITIALIZED


def test_escrow_init_only_from_factory():
    factory = Address(0, bytes(32))
    escrow = EscrowContract(Address(0, bytes([3]) * 32), factory, 1)
    init = wire.EscrowInit(beneficiary=factory, price=PRICE, tolerance_bps=0)
    result = escrow.execute(InboundMessage(sender=Address(0, bytes([9]) * 32), value=0, body=init.to_cell(), now=0))
    assert result.exit_code == ExitCode.ACCESS_DENIED
    assert not escrow.initialized
