"""
Ledger access for the reconciler and deployment registry.

`LedgerClient` is the narrow read interface the rest of the service uses.
`TonCenterLedger` implements it over the TON Center v2 HTTP API.
"""
from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import httpx

from paygate.core.config import settings
from paygate.core.errors import LedgerRequestError, ValidationError
from paygate.core.metrics import ledger_requests_total
from paygate.core.retry import send_with_retry
from paygate.features.ledger.address import Address, normalize_address, same_address
from paygate.features.ledger.cells import Cell, begin_cell
from paygate.features.ledger import wire


logger = logging.getLogger("paygate.ledger")

TONCENTER_URLS = {
    "mainnet": "https://toncenter.com/api/v2",
    "testnet": "https://testnet.toncenter.com/api/v2",
}


@dataclass(frozen=True)
class AccountState:
    state: str  # active | uninitialized | frozen | nonexist
    balance: int = 0

    @property
    def is_active(self) -> bool:
        return self.state == "active"


@dataclass(frozen=True)
class LedgerTransaction:
    """Inbound side of a confirmed transaction on an account."""

    hash: str  # lowercase hex
    lt: int
    utime: int
    destination: str
    value: int
    source: Optional[str] = None  # raw form, None for external messages
    bounced: bool = False
    comment: Optional[str] = None
    aborted: bool = False  # compute phase failed; value was bounced back

    @property
    def is_inbound(self) -> bool:
        return self.source is not None


class LedgerClient(Protocol):
    def get_account_state(self, address: str) -> AccountState:
        ...

    def get_transactions(self, address: str, limit: int = 100) -> List[LedgerTransaction]:
        """Most recent first."""
        ...

    def run_get_method(self, address: str, method: str, stack: Sequence[Any] = ()) -> List[Any]:
        ...


def stack_address(value: Any) -> Optional[Address]:
    """Interpret a get-method result as an address (slice or Address)."""
    if value is None or isinstance(value, Address):
        return value
    if isinstance(value, Cell):
        return value.begin_parse().load_address()
    raise ValidationError(f"Stack value is not an address: {value!r}")


def normalize_tx_hash(value: str) -> str:
    """Transaction hashes are stored as lowercase hex; TON Center returns base64."""
    text = value.strip()
    if len(text) == 64:
        try:
            bytes.fromhex(text)
            return text.lower()
        except ValueError:
            pass
    try:
        raw = base64.b64decode(text.replace("-", "+").replace("_", "/"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Malformed transaction hash: {value!r}") from exc
    if len(raw) != 32:
        raise ValidationError(f"Malformed transaction hash: {value!r}")
    return raw.hex()


def _encode_stack_entry(value: Any) -> List[Any]:
    if isinstance(value, bool):
        return ["num", str(-1 if value else 0)]
    if isinstance(value, int):
        return ["num", str(value)]
    if isinstance(value, Address):
        return ["tvm.Slice", wire.encode_boc(begin_cell().store_address(value).end_cell())]
    if isinstance(value, Cell):
        return ["tvm.Cell", wire.encode_boc(value)]
    raise ValidationError(f"Unsupported stack argument: {value!r}")


def _decode_stack_entry(entry: Sequence[Any]) -> Any:
    kind, payload = entry[0], entry[1] if len(entry) > 1 else None
    if kind == "num":
        return int(payload, 16) if "x" in payload else int(payload)
    if kind in ("cell", "slice", "tvm.Cell", "tvm.Slice"):
        raw = payload.get("bytes") if isinstance(payload, dict) else payload
        return wire.decode_boc(raw)
    if kind == "null":
        return None
    raise ValidationError(f"Unsupported stack entry type: {kind}")


def _comment_from_msg_data(msg: Dict[str, Any]) -> Optional[str]:
    data = msg.get("msg_data") or {}
    kind = data.get("@type")
    try:
        if kind == "msg.dataText" and data.get("text"):
            return base64.b64decode(data["text"]).decode("utf-8")
        if kind == "msg.dataRaw" and data.get("body"):
            return wire.read_text_comment(wire.decode_boc(data["body"]))
    except (ValueError, ValidationError):
        return None
    return msg.get("message") or None


def _is_bounce_to(out_msg: Dict[str, Any], source: Optional[str]) -> bool:
    if not source or not same_address(out_msg.get("destination") or "", source):
        return False
    if out_msg.get("bounced"):
        return True
    data = out_msg.get("msg_data") or {}
    if data.get("@type") != "msg.dataRaw" or not data.get("body"):
        return False
    try:
        return wire.read_opcode(wire.decode_boc(data["body"])) == wire.OP_BOUNCED
    except (ValueError, ValidationError):
        return False


def _was_rejected(item: Dict[str, Any], source: Optional[str]) -> bool:
    """True when the account refused the inbound message and its value went back."""
    description = item.get("description") or {}
    compute = description.get("compute_ph") or {}
    if item.get("aborted") or description.get("aborted") or compute.get("success") is False:
        return True
    return any(_is_bounce_to(out_msg, source) for out_msg in item.get("out_msgs") or [])


class TonCenterLedger:
    """Blocking TON Center v2 client with retry on transient failures."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        network: str = "testnet",
        timeout: float = 10.0,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self.base_url = (base_url or TONCENTER_URLS[network]).rstrip("/")
        self.max_retries = max_retries
        self._sleep = sleep
        self._client = httpx.Client(base_url=self.base_url, headers=headers, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, cfg=None) -> "TonCenterLedger":
        cfg = cfg or settings
        return cls(
            cfg.LEDGER_API_URL,
            cfg.LEDGER_API_KEY,
            network=cfg.LEDGER_NETWORK,
            timeout=cfg.LEDGER_TIMEOUT_SECONDS,
            max_retries=cfg.LEDGER_MAX_RETRIES,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = send_with_retry(
                lambda: self._client.request(method, path, **kwargs),
                max_retries=self.max_retries,
                label=f"ledger {path}",
                sleep=self._sleep,
            )
        except httpx.HTTPError as exc:
            ledger_requests_total.inc(labels={"method": path, "outcome": "transport_error"})
            raise LedgerRequestError(f"Ledger request {path} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 400 or not payload.get("ok", False):
            ledger_requests_total.inc(labels={"method": path, "outcome": "error"})
            detail = payload.get("error") or response.text[:200]
            raise LedgerRequestError(f"Ledger request {path} returned {response.status_code}: {detail}")

        ledger_requests_total.inc(labels={"method": path, "outcome": "ok"})
        return payload.get("result")

    def get_account_state(self, address: str) -> AccountState:
        result = self._request("GET", "/getAddressInformation", params={"address": address}) or {}
        return AccountState(state=result.get("state", "nonexist"), balance=int(result.get("balance") or 0))

    def get_transactions(self, address: str, limit: int = 100) -> List[LedgerTransaction]:
        result = self._request(
            "GET",
            "/getTransactions",
            params={"address": address, "limit": limit, "archival": "true"},
        ) or []
        txs = []
        for item in result:
            in_msg = item.get("in_msg") or {}
            tx_id = item.get("transaction_id") or {}
            source = in_msg.get("source") or None
            txs.append(LedgerTransaction(
                hash=normalize_tx_hash(tx_id["hash"]),
                lt=int(tx_id["lt"]),
                utime=int(item.get("utime") or 0),
                destination=normalize_address(in_msg.get("destination") or address),
                value=int(in_msg.get("value") or 0),
                source=normalize_address(source) if source else None,
                bounced=bool(in_msg.get("bounced", False)),
                comment=_comment_from_msg_data(in_msg),
                aborted=_was_rejected(item, source),
            ))
        return txs

    def run_get_method(self, address: str, method: str, stack: Sequence[Any] = ()) -> List[Any]:
        result = self._request(
            "POST",
            "/runGetMethod",
            json={"address": address, "method": method, "stack": [_encode_stack_entry(v) for v in stack]},
        ) or {}
        exit_code = int(result.get("exit_code", 0))
        if exit_code not in (0, 1):
            raise LedgerRequestError(f"Get method {method} exited with code {exit_code}")
        return [_decode_stack_entry(entry) for entry in result.get("stack", [])]


def build_ledger(cfg=None) -> LedgerClient:
    """Ledger client selected by LEDGER_BACKEND."""
    cfg = cfg or settings
    if cfg.LEDGER_BACKEND == "memory":
        from paygate.features.ledger.memory import InMemoryLedger

        return InMemoryLedger.with_factory()
    return TonCenterLedger.from_settings(cfg)
