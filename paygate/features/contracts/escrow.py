"""
Escrow contract: one per protected resource.

Accepts marker payments, records per-subject access, forwards funds to the
beneficiary and refunds large overpayments.
"""
from __future__ import annotations

from typing import Any, List, Optional, Sequence

from paygate.core.errors import InsufficientPaymentError
from paygate.features.contracts.base import (
    Contract,
    ContractExit,
    ExitCode,
    InboundMessage,
    OutboundMessage,
    PersistentMap,
    SEND_IGNORE_ERRORS,
    StateInit,
    require_address,
)
from paygate.features.ledger.address import Address
from paygate.features.ledger.cells import Cell, begin_cell
from paygate.features.ledger import wire


ESCROW_CODE = begin_cell().store_string_tail("paygate.escrow.v1").end_cell()

GAS_RESERVE = wire.to_nano("0.01")
REFUND_THRESHOLD = wire.to_nano("0.1")

LIFETIME = None


def escrow_data(factory: Address, resource_id: int) -> Cell:
    return begin_cell().store_address(factory).store_int(resource_id, 64).end_cell()


def escrow_state_init(factory: Address, resource_id: int, code: Cell = ESCROW_CODE) -> StateInit:
    return StateInit(code=code, data=escrow_data(factory, resource_id))


def minimum_accepted(price: int, tolerance_bps: int) -> int:
    """Smallest amount satisfying paid * 10000 >= price * (10000 - bps)."""
    return -(-price * (10000 - tolerance_bps) // 10000)


def meets_tolerance(paid: int, price: int, tolerance_bps: int) -> bool:
    return paid * 10000 >= price * (10000 - tolerance_bps)


class EscrowContract(Contract):
    def __init__(
        self,
        address: Address,
        factory: Address,
        resource_id: int,
        *,
        marker: str = wire.SUBSCRIBE_MARKER,
        gas_reserve: int = GAS_RESERVE,
        refund_threshold: int = REFUND_THRESHOLD,
    ):
        super().__init__(address)
        self.factory = factory
        self.resource_id = resource_id
        self.marker = marker
        self.gas_reserve = gas_reserve
        self.refund_threshold = refund_threshold
        self.initialized = False
        self.beneficiary: Optional[Address] = None
        self.price = 0
        self.tolerance_bps = 0
        self.access_period_seconds = 0
        # subject -> expiry unix time, None for lifetime
        self.subscribers: PersistentMap[Address, Optional[int]] = PersistentMap()
        self.subscriber_count = 0
        self.total_forwarded = 0

    @classmethod
    def from_state_init(cls, address: Address, state_init: StateInit, **kwargs) -> "EscrowContract":
        cs = state_init.data.begin_parse()
        factory = cs.load_address()
        resource_id = cs.load_int(64)
        return cls(address, factory, resource_id, **kwargs)

    def receive(self, msg: InboundMessage) -> None:
        if msg.bounced:
            return

        opcode = wire.read_opcode(msg.body)
        if opcode == wire.OP_ESCROW_INIT:
            self._on_init(msg)
            return
        if not self.initialized:
            raise ContractExit(ExitCode.NOT_INITIALIZED)

        if opcode == wire.OP_TEXT_COMMENT:
            if wire.read_text_comment(msg.body) != self.marker:
                raise ContractExit(ExitCode.UNKNOWN_MESSAGE, "unexpected comment")
            self._on_payment(msg)
        elif opcode == wire.OP_UPDATE_PRICE:
            self._require_admin(msg)
            cs = msg.body.begin_parse()
            cs.load_uint(32)
            self.price = wire.UpdatePrice.from_slice(cs).price
        elif opcode == wire.OP_UPDATE_BENEFICIARY:
            self._require_admin(msg)
            cs = msg.body.begin_parse()
            cs.load_uint(32)
            self.beneficiary = wire.UpdateBeneficiary.from_slice(cs).beneficiary
        else:
            raise ContractExit(ExitCode.UNKNOWN_MESSAGE)

    def _on_init(self, msg: InboundMessage) -> None:
        if msg.sender != self.factory or self.initialized:
            raise ContractExit(ExitCode.ACCESS_DENIED)
        cs = msg.body.begin_parse()
        cs.load_uint(32)
        init = wire.EscrowInit.from_slice(cs)
        self.beneficiary = init.beneficiary
        self.price = init.price
        self.tolerance_bps = init.tolerance_bps
        self.access_period_seconds = init.access_period_seconds
        self.initialized = True

    def _require_admin(self, msg: InboundMessage) -> None:
        if msg.sender != self.beneficiary:
            raise ContractExit(ExitCode.ACCESS_DENIED)

    def _on_payment(self, msg: InboundMessage) -> None:
        paid = msg.value
        if not meets_tolerance(paid, self.price, self.tolerance_bps):
            raise InsufficientPaymentError(paid, minimum_accepted(self.price, self.tolerance_bps))

        subject = msg.sender
        first_time = subject not in self.subscribers
        if self.access_period_seconds:
            current = self.subscribers.get(subject) or 0
            self.subscribers.set(subject, max(msg.now, current) + self.access_period_seconds)
        else:
            self.subscribers.set(subject, LIFETIME)
        if first_time:
            self.subscriber_count += 1

        forward = min(paid, self.price) - self.gas_reserve
        if forward > 0:
            self.send(OutboundMessage(
                destination=self.beneficiary,
                value=forward,
                mode=SEND_IGNORE_ERRORS,
                bounce=False,
            ))
            self.total_forwarded += forward

        excess = paid - self.price
        if excess >= self.refund_threshold and excess - self.gas_reserve > 0:
            self.send(OutboundMessage(
                destination=subject,
                value=excess - self.gas_reserve,
                body=wire.text_comment("Refund"),
                mode=SEND_IGNORE_ERRORS,
                bounce=False,
            ))

    def is_active(self, subject: Address, now: int) -> bool:
        if subject not in self.subscribers:
            return False
        expiry = self.subscribers.get(subject)
        return expiry is None or expiry > now

    def get_expiry(self, subject: Address) -> int:
        return self.subscribers.get(subject) or 0

    def get_stats(self):
        return self.subscriber_count, self.total_forwarded, self.price

    def get_method(self, name: str, args: Sequence[Any], now: int) -> List[Any]:
        if name == "isActive":
            return [-1 if self.is_active(require_address(args[0]), now) else 0]
        if name == "getExpiry":
            return [self.get_expiry(require_address(args[0]))]
        if name == "getStats":
            return list(self.get_stats())
        if name == "getPrice":
            return [self.price]
        if name == "getBeneficiary":
            return [self.beneficiary]
        return super().get_method(name, args, now)
