"""
Execution model shared by the escrow and factory contracts.

Contracts are deterministic state machines. `Contract.execute` runs a handler
against a snapshot of persistent state: a handler that exits with a non-zero
code leaves state untouched and the hosting ledger bounces the value back.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterator, List, Optional, Sequence, Tuple, TypeVar

from paygate.core.errors import InsufficientPaymentError, ValidationError
from paygate.features.ledger.address import Address
from paygate.features.ledger.cells import Cell, begin_cell


logger = logging.getLogger("paygate.contracts")

K = TypeVar("K")
V = TypeVar("V")

# Send modes
SEND_PAY_FEES_SEPARATELY = 1
SEND_IGNORE_ERRORS = 2


class ExitCode:
    OK = 0
    UNKNOWN_MESSAGE = 130
    ACCESS_DENIED = 132
    INSUFFICIENT_PAYMENT = 4429
    NOT_INITIALIZED = 9739
    ALREADY_DEPLOYED = 17062
    REGISTRATION_EXPIRED = 28410
    NOT_REGISTERED = 46284


class ContractExit(Exception):
    """Abort the handler with a non-zero exit code."""

    def __init__(self, exit_code: int, message: str = ""):
        super().__init__(message or f"exit code {exit_code}")
        self.exit_code = exit_code


@dataclass(frozen=True)
class StateInit:
    code: Cell
    data: Cell

    def to_cell(self) -> Cell:
        # split_depth:none special:none code:just data:just library:none
        return (
            begin_cell()
            .store_bit(False)
            .store_bit(False)
            .store_maybe_ref(self.code)
            .store_maybe_ref(self.data)
            .store_bit(False)
            .end_cell()
        )

    def address(self, workchain: int = 0) -> Address:
        return Address(workchain, self.to_cell().hash())


@dataclass(frozen=True)
class InboundMessage:
    sender: Address
    value: int
    body: Optional[Cell]
    now: int
    bounced: bool = False
    state_init: Optional[StateInit] = None


@dataclass(frozen=True)
class OutboundMessage:
    destination: Address
    value: int
    body: Optional[Cell] = None
    mode: int = SEND_PAY_FEES_SEPARATELY
    bounce: bool = True
    state_init: Optional[StateInit] = None


@dataclass
class ExecutionResult:
    exit_code: int = ExitCode.OK
    outbound: List[OutboundMessage] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.exit_code == ExitCode.OK


class PersistentMap(Generic[K, V]):
    """Key/value storage persisted in contract state."""

    def __init__(self, items: Optional[Dict[K, V]] = None):
        self._items: Dict[K, V] = dict(items or {})

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        return self._items.get(key, default)

    def set(self, key: K, value: V) -> None:
        self._items[key] = value

    def delete(self, key: K) -> None:
        self._items.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> Iterator[Tuple[K, V]]:
        return iter(list(self._items.items()))


class Contract:
    """Base for contract models hosted by a ledger."""

    def __init__(self, address: Address):
        self.address = address
        self._outbound: List[OutboundMessage] = []

    def send(self, message: OutboundMessage) -> None:
        self._outbound.append(message)

    def receive(self, msg: InboundMessage) -> None:
        raise NotImplementedError

    def _snapshot(self) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in self.__dict__.items() if k not in ("address", "_outbound")}

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.__dict__.update(snapshot)

    def execute(self, msg: InboundMessage) -> ExecutionResult:
        """Run one inbound message. Non-zero exits roll back state and emit nothing."""
        snapshot = self._snapshot()
        self._outbound = []
        try:
            self.receive(msg)
        except InsufficientPaymentError as exc:
            self._restore(snapshot)
            return ExecutionResult(exit_code=ExitCode.INSUFFICIENT_PAYMENT, error=exc.message)
        except ContractExit as exc:
            self._restore(snapshot)
            return ExecutionResult(exit_code=exc.exit_code, error=str(exc))
        except ValidationError as exc:
            # Malformed body
            self._restore(snapshot)
            return ExecutionResult(exit_code=ExitCode.UNKNOWN_MESSAGE, error=exc.message)
        outbound, self._outbound = self._outbound, []
        return ExecutionResult(outbound=outbound)

    def get_method(self, name: str, args: Sequence[Any], now: int) -> List[Any]:
        raise ContractExit(ExitCode.UNKNOWN_MESSAGE, f"unknown get method {name}")


def require_address(value: Any) -> Address:
    if isinstance(value, Address):
        return value
    if isinstance(value, Cell):
        addr = value.begin_parse().load_address()
        if addr is not None:
            return addr
    if isinstance(value, str):
        return Address.parse(value)
    raise ValidationError("Expected an address argument")
