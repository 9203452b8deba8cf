"""
Standard TON addresses.

Raw form is `<workchain>:<64 hex chars>`. The user-friendly form is 36 bytes
(tag, workchain, 32-byte hash, CRC16-XMODEM) encoded as 48 base64 characters.
"""
from __future__ import annotations

import base64
import binascii
from typing import Union

from paygate.core.errors import ValidationError


BOUNCEABLE_TAG = 0x11
NON_BOUNCEABLE_TAG = 0x51
TEST_FLAG = 0x80


def crc16(data: bytes) -> int:
    """CRC-16/XMODEM."""
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            crc = ((crc << 1) ^ 0x1021) if crc & 0x8000 else crc << 1
            crc &= 0xFFFF
    return crc


class Address:
    """Workchain plus 256-bit account id. Friendly-form flags are kept from parsing."""

    __slots__ = ("workchain", "hash_part", "is_bounceable", "is_test_only")

    def __init__(self, workchain: int, hash_part: bytes, *, bounceable: bool = True, test_only: bool = False):
        if len(hash_part) != 32:
            raise ValidationError("Address hash must be 32 bytes")
        if not -128 <= workchain <= 127:
            raise ValidationError("Workchain out of range")
        self.workchain = workchain
        self.hash_part = bytes(hash_part)
        self.is_bounceable = bounceable
        self.is_test_only = test_only

    @classmethod
    def parse(cls, value: Union[str, "Address"]) -> "Address":
        if isinstance(value, Address):
            return value
        if not isinstance(value, str) or not value:
            raise ValidationError("Address must be a non-empty string")
        text = value.strip()
        if ":" in text:
            return cls._parse_raw(text)
        if len(text) == 48:
            return cls._parse_friendly(text)
        raise ValidationError(f"Malformed address: {value!r}")

    @classmethod
    def _parse_raw(cls, text: str) -> "Address":
        wc_part, _, hex_part = text.partition(":")
        try:
            workchain = int(wc_part)
            hash_part = bytes.fromhex(hex_part)
        except ValueError as exc:
            raise ValidationError(f"Malformed raw address: {text!r}") from exc
        if len(hash_part) != 32:
            raise ValidationError(f"Malformed raw address: {text!r}")
        return cls(workchain, hash_part)

    @classmethod
    def _parse_friendly(cls, text: str) -> "Address":
        normalized = text.replace("-", "+").replace("_", "/")
        try:
            raw = base64.b64decode(normalized, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError(f"Malformed address: {text!r}") from exc
        if len(raw) != 36:
            raise ValidationError(f"Malformed address: {text!r}")
        if crc16(raw[:34]) != int.from_bytes(raw[34:], "big"):
            raise ValidationError(f"Address checksum mismatch: {text!r}")
        tag = raw[0]
        test_only = bool(tag & TEST_FLAG)
        tag &= ~TEST_FLAG
        if tag not in (BOUNCEABLE_TAG, NON_BOUNCEABLE_TAG):
            raise ValidationError(f"Unknown address tag: {text!r}")
        workchain = raw[1] - 256 if raw[1] > 127 else raw[1]
        return cls(workchain, raw[2:34], bounceable=tag == BOUNCEABLE_TAG, test_only=test_only)

    @classmethod
    def is_valid(cls, value: str) -> bool:
        try:
            cls.parse(value)
        except ValidationError:
            return False
        return True

    def to_raw(self) -> str:
        return f"{self.workchain}:{self.hash_part.hex()}"

    def to_string(self, bounceable: bool = True, test_only: bool = False, url_safe: bool = True) -> str:
        tag = BOUNCEABLE_TAG if bounceable else NON_BOUNCEABLE_TAG
        if test_only:
            tag |= TEST_FLAG
        raw = bytes([tag, self.workchain & 0xFF]) + self.hash_part
        raw += crc16(raw).to_bytes(2, "big")
        if url_safe:
            return base64.urlsafe_b64encode(raw).decode("ascii")
        return base64.b64encode(raw).decode("ascii")

    def __eq__(self, other) -> bool:
        if isinstance(other, str):
            try:
                other = Address.parse(other)
            except ValidationError:
                return False
        if not isinstance(other, Address):
            return NotImplemented
        return self.workchain == other.workchain and self.hash_part == other.hash_part

    def __hash__(self) -> int:
        return hash((self.workchain, self.hash_part))

    def __str__(self) -> str:
        return self.to_string(self.is_bounceable, self.is_test_only)

    def __repr__(self) -> str:
        return f"Address({self.to_raw()})"


def normalize_address(value: str) -> str:
    """Canonical raw form, used as the storage key for addresses."""
    return Address.parse(value).to_raw()


def same_address(a: str, b: str) -> bool:
    try:
        return Address.parse(a) == Address.parse(b)
    except ValidationError:
        return False
