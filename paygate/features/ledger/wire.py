"""
Message layouts shared by the contracts and by off-chain callers.

Both sides build and parse payloads through this module so the bytes on the
ledger are identical regardless of who produced them.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union
from urllib.parse import quote

from paygate.core.errors import ValidationError
from paygate.features.ledger.address import Address
from paygate.features.ledger.cells import Cell, Slice, begin_cell, from_boc, to_boc


NANOTONS_PER_TON = 1_000_000_000

OP_TEXT_COMMENT = 0x00000000
OP_REGISTER_DEPLOYMENT = 0x132208FE
OP_ESCROW_INIT = 0x4E73D21B
OP_UPDATE_PRICE = 0x5D6E1F2A
OP_UPDATE_BENEFICIARY = 0x3B9A7C41
OP_BOUNCED = 0xFFFFFFFF  # prefix of a bounced message body

SUBSCRIBE_MARKER = "Subscribe"
DEPLOY_MARKER = "deploy"


def to_nano(amount: Union[int, float, str, Decimal]) -> int:
    """TON to nanotons, exact for decimal strings."""
    value = Decimal(str(amount)) * NANOTONS_PER_TON
    if value != value.to_integral_value():
        raise ValidationError(f"Amount {amount} has more than 9 decimal places")
    return int(value)


def from_nano(amount: int) -> str:
    value = Decimal(amount) / NANOTONS_PER_TON
    text = format(value.normalize(), "f")
    return text


def text_comment(text: str) -> Cell:
    """32-bit zero opcode followed by the UTF-8 text."""
    return begin_cell().store_uint(OP_TEXT_COMMENT, 32).store_string_tail(text).end_cell()


def read_text_comment(body: Optional[Cell]) -> Optional[str]:
    """Return the comment text, or None when the body is not a text comment."""
    if body is None:
        return None
    cs = body.begin_parse()
    if cs.remaining_bits < 32 or cs.load_uint(32) != OP_TEXT_COMMENT:
        return None
    try:
        return cs.load_string_tail()
    except ValidationError:
        return None


def read_opcode(body: Optional[Cell]) -> Optional[int]:
    if body is None or body.bit_length < 32:
        return None
    return body.begin_parse().preload_uint(32)


@dataclass(frozen=True)
class RegisterDeployment:
    user_wallet: Address
    resource_id: int
    price: int

    def to_cell(self) -> Cell:
        return (
            begin_cell()
            .store_uint(OP_REGISTER_DEPLOYMENT, 32)
            .store_address(self.user_wallet)
            .store_int(self.resource_id, 64)
            .store_coins(self.price)
            .end_cell()
        )

    @classmethod
    def from_slice(cls, cs: Slice) -> "RegisterDeployment":
        wallet = cs.load_address()
        if wallet is None:
            raise ValidationError("RegisterDeployment requires a wallet address")
        return cls(user_wallet=wallet, resource_id=cs.load_int(64), price=cs.load_coins())


@dataclass(frozen=True)
class EscrowInit:
    beneficiary: Address
    price: int
    tolerance_bps: int
    access_period_seconds: int = 0  # 0 means lifetime access

    def to_cell(self) -> Cell:
        return (
            begin_cell()
            .store_uint(OP_ESCROW_INIT, 32)
            .store_address(self.beneficiary)
            .store_coins(self.price)
            .store_uint(self.tolerance_bps, 16)
            .store_uint(self.access_period_seconds, 32)
            .end_cell()
        )

    @classmethod
    def from_slice(cls, cs: Slice) -> "EscrowInit":
        beneficiary = cs.load_address()
        if beneficiary is None:
            raise ValidationError("EscrowInit requires a beneficiary")
        return cls(
            beneficiary=beneficiary,
            price=cs.load_coins(),
            tolerance_bps=cs.load_uint(16),
            access_period_seconds=cs.load_uint(32),
        )


@dataclass(frozen=True)
class UpdatePrice:
    price: int

    def to_cell(self) -> Cell:
        return begin_cell().store_uint(OP_UPDATE_PRICE, 32).store_coins(self.price).end_cell()

    @classmethod
    def from_slice(cls, cs: Slice) -> "UpdatePrice":
        return cls(price=cs.load_coins())


@dataclass(frozen=True)
class UpdateBeneficiary:
    beneficiary: Address

    def to_cell(self) -> Cell:
        return begin_cell().store_uint(OP_UPDATE_BENEFICIARY, 32).store_address(self.beneficiary).end_cell()

    @classmethod
    def from_slice(cls, cs: Slice) -> "UpdateBeneficiary":
        beneficiary = cs.load_address()
        if beneficiary is None:
            raise ValidationError("UpdateBeneficiary requires an address")
        return cls(beneficiary=beneficiary)


def encode_boc(cell: Cell) -> str:
    return base64.b64encode(to_boc(cell)).decode("ascii")


def decode_boc(payload: str) -> Cell:
    try:
        raw = base64.b64decode(payload, validate=True)
    except ValueError as exc:
        raise ValidationError("Payload is not valid base64") from exc
    return from_boc(raw)


def subscribe_payload(marker: str = SUBSCRIBE_MARKER) -> str:
    """Base64 BOC a wallet attaches to the payment transfer."""
    return encode_boc(text_comment(marker))


def transfer_link(address: Union[str, Address], amount: int, text: Optional[str] = SUBSCRIBE_MARKER) -> str:
    """`ton://transfer` deep link with the amount in nanotons and a text comment."""
    addr = Address.parse(address)
    link = f"ton://transfer/{addr.to_string(bounceable=True, test_only=addr.is_test_only)}?amount={int(amount)}"
    if text:
        link += f"&text={quote(text)}"
    return link
