"""
Outbound HTTP clients: access gate (Telegram Bot API) and ledger (TON Center v2).
"""
import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from paygate.core.errors import GateRequestError, LedgerRequestError
from paygate.core.metrics import gate_requests_total, ledger_requests_total
from paygate.core.retry import compute_backoff, is_retryable_status, send_with_retry
from paygate.features.access.gate import TelegramGate
from paygate.features.ledger.address import Address
from paygate.features.ledger.cells import begin_cell
from paygate.features.ledger.client import TonCenterLedger, normalize_tx_hash
from paygate.features.ledger import wire
from paygate.features.reconciler.service import match_transaction
from paygate.models.entitlement import Entitlement

CONTRACT = Address(0, bytes([5]) * 32)
PAYER = Address(0, bytes([6]) * 32)


def _gate(handler, sleeps=None):
    return TelegramGate(
        "123:tok",
        api_url="https://gate.test",
        max_retries=2,
        transport=httpx.MockTransport(handler),
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
    )


def _ledger(handler, sleeps=None):
    return TonCenterLedger(
        "https://ledger.test/api/v2",
        "key",
        max_retries=2,
        transport=httpx.MockTransport(handler),
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
    )


# ============================================================================
# Retry helper
# ============================================================================

def test_backoff_grows_and_caps():
    assert compute_backoff(0) == 0.5
    assert compute_backoff(1) == 1.0
    assert compute_backoff(10) == 8.0
    assert is_retryable_status(429)
    assert is_retryable_status(503)
    assert not is_retryable_status(400)


def test_retry_honours_retry_after():
    responses = iter([httpx.Response(429, headers={"Retry-After": "3"}), httpx.Response(200)])
    sleeps = []
    response = send_with_retry(lambda: next(responses), max_retries=2, label="test", sleep=sleeps.append)
    assert response.status_code == 200
    assert sleeps == [3.0]


def test_retry_returns_last_response_when_exhausted():
    sleeps = []
    response = send_with_retry(lambda: httpx.Response(503), max_retries=2, label="test", sleep=sleeps.append)
    assert response.status_code == 503
    assert sleeps == [0.5, 1.0]


# ============================================================================
# Gate
# ============================================================================

def test_gate_approve_posts_json():
    seen = []

    def handler(request):
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "result": True})

    assert _gate(handler).approve_request(-100123, 777) is True
    assert seen == [("/bot123:tok/approveChatJoinRequest", {"chat_id": -100123, "user_id": 777})]
    assert gate_requests_total.value({"method": "approveChatJoinRequest", "outcome": "ok"}) == 1


@pytest.mark.parametrize("description", [
    "Bad Request: USER_ALREADY_PARTICIPANT",
    "Bad Request: HIDE_REQUESTER_MISSING",
])
def test_gate_already_satisfied_approval_is_not_an_error(description):
    def handler(request):
        return httpx.Response(400, json={"ok": False, "error_code": 400, "description": description})

    assert _gate(handler).approve_request(-100123, 777) is False


def test_gate_other_errors_raise():
    def handler(request):
        return httpx.Response(403, json={"ok": False, "description": "Forbidden: bot is not a member"})

    with pytest.raises(GateRequestError) as exc_info:
        _gate(handler).approve_request(-100123, 777)
    assert not exc_info.value.retryable
    assert "not a member" in exc_info.value.description


def test_gate_retries_server_errors():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    _gate(handler, sleeps).send_message(777, "hello")
    assert len(calls) == 2
    assert sleeps == [0.5]


def test_gate_transport_failure_is_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GateRequestError) as exc_info:
        _gate(handler).send_message(777, "hello")
    assert exc_info.value.retryable


def test_gate_token_required():
    with pytest.raises(ValueError):
        TelegramGate("")


# ============================================================================
# Ledger
# ============================================================================

def test_ledger_account_state():
    def handler(request):
        assert request.url.path == "/api/v2/getAddressInformation"
        assert request.headers["X-API-Key"] == "key"
        return httpx.Response(200, json={"ok": True, "result": {"state": "active", "balance": "1500"}})

    state = _ledger(handler).get_account_state(CONTRACT.to_raw())
    assert state.is_active
    assert state.balance == 1500


def test_ledger_transactions_are_normalized():
    tx_hash = bytes(range(32))

    def handler(request):
        assert request.url.params["limit"] == "10"
        return httpx.Response(200, json={"ok": True, "result": [{
            "utime": 1760000005,
            "transaction_id": {"lt": "4000", "hash": base64.b64encode(tx_hash).decode()},
            "in_msg": {
                "source": PAYER.to_string(test_only=True),
                "destination": CONTRACT.to_string(test_only=True),
                "value": "1000000000",
                "msg_data": {"@type": "msg.dataText", "text": base64.b64encode(b"Subscribe").decode()},
            },
        }]})

    [tx] = _ledger(handler).get_transactions(CONTRACT.to_raw(), limit=10)
    assert tx.hash == tx_hash.hex()
    assert tx.lt == 4000
    assert tx.source == PAYER.to_raw()
    assert tx.destination == CONTRACT.to_raw()
    assert tx.value == 1_000_000_000
    assert tx.comment == "Subscribe"
    assert tx.is_inbound


def _marker_payment(lt, **extra):
    item = {
        "utime": 1760000000 + lt,
        "transaction_id": {"lt": str(lt), "hash": base64.b64encode(bytes([lt]) * 32).decode()},
        "in_msg": {
            "source": PAYER.to_string(test_only=True),
            "destination": CONTRACT.to_string(test_only=True),
            "value": "1000000000",
            "msg_data": {"@type": "msg.dataText", "text": base64.b64encode(b"Subscribe").decode()},
        },
        "out_msgs": [],
    }
    item.update(extra)
    return item


def test_ledger_marks_rejected_payments_aborted():
    bounce_body = wire.encode_boc(begin_cell().store_uint(wire.OP_BOUNCED, 32).store_uint(0, 32).end_cell())
    refund = {
        "source": CONTRACT.to_string(test_only=True),
        "destination": PAYER.to_string(test_only=True),
        "value": "90000000",
        "msg_data": {"@type": "msg.dataText", "text": base64.b64encode(b"Refund").decode()},
    }
    items = [
        _marker_payment(1),
        _marker_payment(2, out_msgs=[{
            "source": CONTRACT.to_string(test_only=True),
            "destination": PAYER.to_string(test_only=True),
            "value": "999000000",
            "msg_data": {"@type": "msg.dataRaw", "body": bounce_body},
        }]),
        _marker_payment(3, out_msgs=[{"destination": PAYER.to_raw(), "value": "999000000", "bounced": True}]),
        _marker_payment(4, description={"aborted": True, "compute_ph": {"success": False}}),
        _marker_payment(5, out_msgs=[refund]),
    ]

    def handler(request):
        return httpx.Response(200, json={"ok": True, "result": items})

    txs = _ledger(handler).get_transactions(CONTRACT.to_raw())
    assert [tx.aborted for tx in txs] == [False, True, True, True, False]
    # A bounced payment is never matched, even with the marker and full value
    assert match_transaction(_pending(), txs, set(), "Subscribe").lt == 1
    assert match_transaction(_pending(), txs[1:4], set(), "Subscribe") is None


def _pending():
    return Entitlement(
        id=1,
        subject_id=1,
        resource_id=1,
        status="pending",
        price_expected=1_000_000_000,
        tolerance_bps=100,
        contract_address=CONTRACT.to_raw(),
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


def test_ledger_get_method_stack():
    def handler(request):
        body = json.loads(request.content)
        assert body["method"] == "isActive"
        assert body["stack"][0][0] == "tvm.Slice"
        return httpx.Response(200, json={"ok": True, "result": {"exit_code": 0, "stack": [["num", "-0x1"]]}})

    assert _ledger(handler).run_get_method(CONTRACT.to_raw(), "isActive", [PAYER]) == [-1]


def test_ledger_get_method_failure_raises():
    def handler(request):
        return httpx.Response(200, json={"ok": True, "result": {"exit_code": 11, "stack": []}})

    with pytest.raises(LedgerRequestError):
        _ledger(handler).run_get_method(CONTRACT.to_raw(), "getPrice")


def test_ledger_error_payload_raises():
    def handler(request):
        return httpx.Response(500, json={"ok": False, "error": "internal"})

    sleeps = []
    with pytest.raises(LedgerRequestError):
        _ledger(handler, sleeps).get_account_state(CONTRACT.to_raw())
    assert len(sleeps) == 2
    assert ledger_requests_total.value({"method": "/getAddressInformation", "outcome": "error"}) == 1


def test_normalize_tx_hash_accepts_hex_and_base64():
    raw = bytes(range(32))
    assert normalize_tx_hash(raw.hex().upper()) == raw.hex()
    assert normalize_tx_hash(base64.urlsafe_b64encode(raw).decode()) == raw.hex()
