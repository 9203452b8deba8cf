"""
TON cells and bag-of-cells serialization.

A cell holds up to 1023 data bits and up to 4 references to other cells.
Builder writes cells, Slice reads them back, and to_boc/from_boc handle the
standard `b5ee9c72` container with a CRC32C trailer. Only ordinary (non-exotic)
cells are supported.
"""
from __future__ import annotations

import hashlib
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING

from paygate.core.errors import ValidationError

if TYPE_CHECKING:
    from paygate.features.ledger.address import Address


MAX_BITS = 1023
MAX_REFS = 4
BOC_MAGIC = bytes.fromhex("b5ee9c72")


def _crc32c_table() -> List[int]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = (crc >> 1) ^ 0x82F63B78 if crc & 1 else crc >> 1
        table.append(crc)
    return table


_CRC32C_TABLE = _crc32c_table()


def crc32c(data: bytes) -> int:
    """CRC-32C (Castagnoli)."""
    crc = 0xFFFFFFFF
    for byte in data:
        crc = _CRC32C_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


class Cell:
    """Immutable ordinary cell."""

    __slots__ = ("bits", "bit_length", "refs", "_hash", "_depth")

    def __init__(self, bits: int = 0, bit_length: int = 0, refs: Sequence["Cell"] = ()):
        if bit_length > MAX_BITS:
            raise ValidationError(f"Cell overflow: {bit_length} bits")
        if len(refs) > MAX_REFS:
            raise ValidationError(f"Cell overflow: {len(refs)} refs")
        self.bits = bits
        self.bit_length = bit_length
        self.refs: Tuple[Cell, ...] = tuple(refs)
        self._hash: Optional[bytes] = None
        self._depth: Optional[int] = None

    def descriptors(self) -> bytes:
        d1 = len(self.refs)
        d2 = (self.bit_length + 7) // 8 + self.bit_length // 8
        return bytes([d1, d2])

    def padded_data(self) -> bytes:
        """Data bits, completed with a 1 bit and zeros when not byte aligned."""
        length = self.bit_length
        value = self.bits
        rem = length % 8
        if rem:
            pad = 8 - rem
            value = (value << pad) | (1 << (pad - 1))
            length += pad
        return value.to_bytes(length // 8, "big")

    def depth(self) -> int:
        if self._depth is None:
            self._depth = 0 if not self.refs else 1 + max(ref.depth() for ref in self.refs)
        return self._depth

    def hash(self) -> bytes:
        """Representation hash."""
        if self._hash is None:
            h = hashlib.sha256()
            h.update(self.descriptors())
            h.update(self.padded_data())
            for ref in self.refs:
                h.update(ref.depth().to_bytes(2, "big"))
            for ref in self.refs:
                h.update(ref.hash())
            self._hash = h.digest()
        return self._hash

    def begin_parse(self) -> "Slice":
        return Slice(self)

    def bit_string(self) -> str:
        if not self.bit_length:
            return ""
        return format(self.bits, f"0{self.bit_length}b")

    def __eq__(self, other) -> bool:
        return isinstance(other, Cell) and self.hash() == other.hash()

    def __hash__(self) -> int:
        return hash(self.hash())

    def __repr__(self) -> str:
        return f"Cell(bits={self.bit_length}, refs={len(self.refs)}, hash={self.hash().hex()[:16]})"


class Builder:
    """Append-only cell writer."""

    def __init__(self):
        self._bits = 0
        self._length = 0
        self._refs: List[Cell] = []

    @property
    def bits_left(self) -> int:
        return MAX_BITS - self._length

    @property
    def refs_left(self) -> int:
        return MAX_REFS - len(self._refs)

    def store_uint(self, value: int, bits: int) -> "Builder":
        if value < 0 or value >> bits:
            raise ValidationError(f"Value {value} does not fit in uint{bits}")
        if self._length + bits > MAX_BITS:
            raise ValidationError("Cell overflow: bits")
        self._bits = (self._bits << bits) | value
        self._length += bits
        return self

    def store_int(self, value: int, bits: int) -> "Builder":
        limit = 1 << (bits - 1)
        if not -limit <= value < limit:
            raise ValidationError(f"Value {value} does not fit in int{bits}")
        return self.store_uint(value & ((1 << bits) - 1), bits)

    def store_bit(self, bit: bool) -> "Builder":
        return self.store_uint(1 if bit else 0, 1)

    def store_bytes(self, data: bytes) -> "Builder":
        if not data:
            return self
        return self.store_uint(int.from_bytes(data, "big"), len(data) * 8)

    def store_coins(self, amount: int) -> "Builder":
        """VarUInteger 16: 4-bit byte length then the value."""
        if amount < 0:
            raise ValidationError("Coins amount must be non-negative")
        size = (amount.bit_length() + 7) // 8
        if size > 15:
            raise ValidationError("Coins amount too large")
        self.store_uint(size, 4)
        if size:
            self.store_uint(amount, size * 8)
        return self

    def store_address(self, address: Optional["Address"]) -> "Builder":
        """MsgAddressInt std (addr_std without anycast) or addr_none."""
        if address is None:
            return self.store_uint(0, 2)
        self.store_uint(0b10, 2)
        self.store_uint(0, 1)
        self.store_int(address.workchain, 8)
        return self.store_bytes(address.hash_part)

    def store_ref(self, cell: Cell) -> "Builder":
        if len(self._refs) >= MAX_REFS:
            raise ValidationError("Cell overflow: refs")
        self._refs.append(cell)
        return self

    def store_maybe_ref(self, cell: Optional[Cell]) -> "Builder":
        if cell is None:
            return self.store_bit(False)
        self.store_bit(True)
        return self.store_ref(cell)

    def store_slice(self, src: "Slice") -> "Builder":
        length = src.remaining_bits
        if length:
            self.store_uint(src.preload_uint(length), length)
        for ref in src.remaining_refs():
            self.store_ref(ref)
        return self

    def store_string_tail(self, text: str) -> "Builder":
        """UTF-8 bytes, continued in a chain of refs when the cell is full."""
        data = text.encode("utf-8")
        room = self.bits_left // 8
        head, rest = data[:room], data[room:]
        self.store_bytes(head)
        if rest:
            self.store_ref(_snake_cell(rest))
        return self

    def end_cell(self) -> Cell:
        return Cell(self._bits, self._length, self._refs)


def _snake_cell(data: bytes) -> Cell:
    chunk = MAX_BITS // 8
    builder = Builder().store_bytes(data[:chunk])
    if len(data) > chunk:
        builder.store_ref(_snake_cell(data[chunk:]))
    return builder.end_cell()


def begin_cell() -> Builder:
    return Builder()


class Slice:
    """Sequential reader over a cell."""

    def __init__(self, cell: Cell):
        self._cell = cell
        self._pos = 0
        self._ref_pos = 0

    @property
    def remaining_bits(self) -> int:
        return self._cell.bit_length - self._pos

    @property
    def remaining_ref_count(self) -> int:
        return len(self._cell.refs) - self._ref_pos

    def remaining_refs(self) -> Tuple[Cell, ...]:
        return self._cell.refs[self._ref_pos:]

    def preload_uint(self, bits: int) -> int:
        if bits > self.remaining_bits:
            raise ValidationError("Cell underflow")
        shift = self._cell.bit_length - self._pos - bits
        return (self._cell.bits >> shift) & ((1 << bits) - 1)

    def load_uint(self, bits: int) -> int:
        value = self.preload_uint(bits)
        self._pos += bits
        return value

    def load_int(self, bits: int) -> int:
        value = self.load_uint(bits)
        if value >> (bits - 1):
            value -= 1 << bits
        return value

    def load_bit(self) -> bool:
        return bool(self.load_uint(1))

    def load_bytes(self, length: int) -> bytes:
        if not length:
            return b""
        return self.load_uint(length * 8).to_bytes(length, "big")

    def load_coins(self) -> int:
        size = self.load_uint(4)
        return self.load_uint(size * 8) if size else 0

    def load_address(self) -> Optional["Address"]:
        from paygate.features.ledger.address import Address

        tag = self.load_uint(2)
        if tag == 0:
            return None
        if tag != 0b10:
            raise ValidationError("Unsupported address kind")
        if self.load_bit():
            raise ValidationError("Anycast addresses are not supported")
        workchain = self.load_int(8)
        return Address(workchain, self.load_bytes(32))

    def load_ref(self) -> Cell:
        if self._ref_pos >= len(self._cell.refs):
            raise ValidationError("Cell underflow: refs")
        ref = self._cell.refs[self._ref_pos]
        self._ref_pos += 1
        return ref

    def load_maybe_ref(self) -> Optional[Cell]:
        return self.load_ref() if self.load_bit() else None

    def load_string_tail(self) -> str:
        chunks = []
        current = self
        while True:
            if current.remaining_bits % 8:
                raise ValidationError("String data is not byte aligned")
            chunks.append(current.load_bytes(current.remaining_bits // 8))
            if not current.remaining_ref_count:
                break
            current = current.load_ref().begin_parse()
        try:
            return b"".join(chunks).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("String data is not valid UTF-8") from exc


def _topological_order(root: Cell) -> List[Cell]:
    """Root first, every parent before its children, duplicates merged."""
    seen = set()
    order: List[Cell] = []

    def visit(cell: Cell) -> None:
        key = cell.hash()
        if key in seen:
            return
        seen.add(key)
        for ref in cell.refs:
            visit(ref)
        order.append(cell)

    visit(root)
    order.reverse()
    return order


def _byte_width(value: int) -> int:
    return max(1, (value.bit_length() + 7) // 8)


def to_boc(root: Cell) -> bytes:
    """Serialize a single-root bag of cells (no index, with CRC32C)."""
    cells = _topological_order(root)
    index = {cell.hash(): i for i, cell in enumerate(cells)}
    size_bytes = _byte_width(len(cells))

    body = bytearray()
    for cell in cells:
        body += cell.descriptors()
        body += cell.padded_data()
        for ref in cell.refs:
            body += index[ref.hash()].to_bytes(size_bytes, "big")

    off_bytes = _byte_width(len(body))
    out = bytearray(BOC_MAGIC)
    out.append(0x40 | size_bytes)  # has_crc32c
    out.append(off_bytes)
    out += len(cells).to_bytes(size_bytes, "big")
    out += (1).to_bytes(size_bytes, "big")  # roots
    out += (0).to_bytes(size_bytes, "big")  # absent
    out += len(body).to_bytes(off_bytes, "big")
    out += (0).to_bytes(size_bytes, "big")  # root index
    out += body
    out += crc32c(bytes(out)).to_bytes(4, "little")
    return bytes(out)


def from_boc(data: bytes) -> Cell:
    """Parse a bag of cells and return its first root."""
    if len(data) < 6 or data[:4] != BOC_MAGIC:
        raise ValidationError("Not a bag of cells")
    flags = data[4]
    has_idx = bool(flags & 0x80)
    has_crc = bool(flags & 0x40)
    size_bytes = flags & 0x07
    off_bytes = data[5]
    if not size_bytes or not off_bytes:
        raise ValidationError("Malformed bag of cells header")

    if has_crc:
        if len(data) < 10 or crc32c(data[:-4]) != int.from_bytes(data[-4:], "little"):
            raise ValidationError("Bag of cells checksum mismatch")
        data = data[:-4]

    pos = 6

    def read(width: int) -> int:
        nonlocal pos
        if pos + width > len(data):
            raise ValidationError("Truncated bag of cells")
        value = int.from_bytes(data[pos:pos + width], "big")
        pos += width
        return value

    cell_count = read(size_bytes)
    root_count = read(size_bytes)
    read(size_bytes)  # absent
    tot_size = read(off_bytes)
    if not root_count:
        raise ValidationError("Bag of cells has no roots")
    roots = [read(size_bytes) for _ in range(root_count)]
    if has_idx:
        pos += cell_count * off_bytes
    if pos + tot_size > len(data):
        raise ValidationError("Truncated bag of cells")

    raw: List[Tuple[int, int, List[int]]] = []
    for _ in range(cell_count):
        d1 = read(1)
        d2 = read(1)
        if d1 & 0x08:
            raise ValidationError("Exotic cells are not supported")
        ref_count = d1 & 0x07
        data_len = (d2 + 1) // 2
        payload = data[pos:pos + data_len]
        if len(payload) != data_len:
            raise ValidationError("Truncated bag of cells")
        pos += data_len
        value = int.from_bytes(payload, "big") if payload else 0
        bit_length = data_len * 8
        if d2 % 2 and payload:
            # Strip completion tag: trailing zeros and the marker 1 bit
            trailing = (value & -value).bit_length()
            if not trailing:
                raise ValidationError("Missing completion tag")
            value >>= trailing
            bit_length -= trailing
        refs = [read(size_bytes) for _ in range(ref_count)]
        raw.append((value, bit_length, refs))

    built: List[Optional[Cell]] = [None] * cell_count
    for i in range(cell_count - 1, -1, -1):
        value, bit_length, refs = raw[i]
        children = []
        for ref_index in refs:
            if ref_index <= i or ref_index >= cell_count:
                raise ValidationError("Bag of cells references are not topologically ordered")
            children.append(built[ref_index])
        built[i] = Cell(value, bit_length, children)

    if roots[0] >= cell_count:
        raise ValidationError("Root index out of range")
    return built[roots[0]]
