"""
Message database model and the bit-level signal codec.

Databases are parsed by cantools and converted once into the immutable
``MessageDatabase`` below, which is what the decode path and the synthetic
driver consume. A database is never mutated after construction so it can be
shared with entries that are still alive in the trace store.
"""

from __future__ import annotations

import enum
import logging
import math
import re
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import cantools

from .errors import DatabaseError, DatabaseIssue
from .frame import MAX_PAYLOAD

logger = logging.getLogger(__name__)


class ByteOrder(enum.Enum):
    LITTLE_ENDIAN = "little_endian"  # Intel
    BIG_ENDIAN = "big_endian"  # Motorola


class ValueKind(enum.Enum):
    UNSIGNED = "unsigned"
    SIGNED = "signed"
    FLOAT32 = "float32"
    FLOAT64 = "float64"


class MuxRole(enum.Enum):
    NONE = 0
    SELECTOR = 1
    MUXED = 2


def _motorola_position(start: int) -> int:
    """Map a DBC big-endian start bit (MSB, sawtooth numbering) to a linear MSB-first index."""
    return (start // 8) * 8 + (7 - start % 8)


@dataclass(frozen=True)
class Signal:
    name: str
    start: int
    length: int
    byte_order: ByteOrder = ByteOrder.LITTLE_ENDIAN
    kind: ValueKind = ValueKind.UNSIGNED
    scale: float = 1.0
    offset: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    unit: str = ""
    mux_role: MuxRole = MuxRole.NONE
    mux_values: Tuple[int, ...] = ()
    value_table: Mapping[int, str] = field(default_factory=dict)
    initial_value: Optional[float] = None

    @property
    def mask(self) -> int:
        return (1 << self.length) - 1

    @property
    def is_float(self) -> bool:
        return self.kind in (ValueKind.FLOAT32, ValueKind.FLOAT64)

    @property
    def mux_value(self) -> int:
        return self.mux_values[0] if self.mux_values else -1

    @property
    def has_range(self) -> bool:
        return (
            self.minimum is not None
            and self.maximum is not None
            and math.isfinite(self.minimum)
            and math.isfinite(self.maximum)
            and self.maximum > self.minimum
        )

    def is_active(self, selector_raw: Optional[int]) -> bool:
        """True when a muxed signal is valid for the given selector value."""
        if self.mux_role is not MuxRole.MUXED or not self.mux_values:
            return True
        return selector_raw is not None and selector_raw in self.mux_values

    # --- Decode ---

    def _bits(self, data: bytes) -> int:
        buf = bytes(data[:MAX_PAYLOAD]).ljust(MAX_PAYLOAD, b"\x00")
        if self.byte_order is ByteOrder.LITTLE_ENDIAN:
            return (int.from_bytes(buf, "little") >> self.start) & self.mask
        total = MAX_PAYLOAD * 8
        shift = total - (_motorola_position(self.start) + self.length)
        if shift < 0:
            return 0
        return (int.from_bytes(buf, "big") >> shift) & self.mask

    def raw_value(self, data: bytes) -> int:
        raw = self._bits(data)
        if self.kind is ValueKind.SIGNED and self.length > 0 and raw >> (self.length - 1):
            raw -= 1 << self.length
        return raw

    def physical(self, raw: int) -> float:
        if self.kind is ValueKind.FLOAT32:
            value = struct.unpack("<f", (raw & 0xFFFFFFFF).to_bytes(4, "little"))[0]
        elif self.kind is ValueKind.FLOAT64:
            value = struct.unpack("<d", (raw & (2**64 - 1)).to_bytes(8, "little"))[0]
        else:
            value = float(raw)
        value = value * self.scale + self.offset
        if self.has_range and math.isfinite(value):
            value = min(max(value, self.minimum), self.maximum)
        return value

    def decode(self, data: bytes) -> float:
        return self.physical(self.raw_value(data))

    # --- Encode ---

    def encode(self, physical: float) -> int:
        """Inverse of ``physical``: physical value to raw (bit pattern for floats)."""
        if self.has_range:
            physical = min(max(physical, self.minimum), self.maximum)
        scaled = (physical - self.offset) / self.scale if self.scale else 0.0
        if self.kind is ValueKind.FLOAT32:
            return int.from_bytes(struct.pack("<f", scaled), "little")
        if self.kind is ValueKind.FLOAT64:
            return int.from_bytes(struct.pack("<d", scaled), "little")
        if not math.isfinite(scaled):
            scaled = 0.0
        raw = int(round(scaled))
        if self.kind is ValueKind.SIGNED:
            low, high = -(1 << (self.length - 1)), (1 << (self.length - 1)) - 1
        else:
            low, high = 0, self.mask
        return min(max(raw, low), high)

    def insert(self, buffer: bytearray, raw: int) -> None:
        """Write ``raw`` into ``buffer`` at this signal's bit position."""
        size = len(buffer)
        bits = raw & self.mask
        if self.byte_order is ByteOrder.LITTLE_ENDIAN:
            if self.start + self.length > size * 8:
                return
            value = int.from_bytes(buffer, "little")
            value &= ~(self.mask << self.start)
            value |= bits << self.start
            buffer[:] = value.to_bytes(size, "little")
            return
        shift = size * 8 - (_motorola_position(self.start) + self.length)
        if shift < 0:
            return
        value = int.from_bytes(buffer, "big")
        value &= ~(self.mask << shift)
        value |= bits << shift
        buffer[:] = value.to_bytes(size, "big")

    def describe(self, raw: int) -> Optional[str]:
        return self.value_table.get(raw)


@dataclass(frozen=True)
class DecodedSignal:
    signal: Signal
    raw: int
    physical: float


@dataclass(frozen=True)
class Message:
    frame_id: int
    name: str
    length: int
    signals: Tuple[Signal, ...] = ()
    is_extended: bool = False
    is_fd: bool = False

    def mux_selector(self) -> Optional[Signal]:
        for signal in self.signals:
            if signal.mux_role is MuxRole.SELECTOR:
                return signal
        return None

    def decode(self, data: bytes) -> List[DecodedSignal]:
        """Decode all signals valid for the frame's active multiplexer value."""
        selector = self.mux_selector()
        selector_raw = selector.raw_value(data) if selector else None

        decoded = []
        for signal in self.signals:
            if selector is not None and not signal.is_active(selector_raw):
                continue
            raw = signal.raw_value(data)
            decoded.append(DecodedSignal(signal, raw, signal.physical(raw)))
        return decoded

    def encode(self, values: Mapping[str, float]) -> bytes:
        """Encode physical values by signal name; missing signals stay zero."""
        buffer = bytearray(self.length)
        for signal in self.signals:
            if signal.name in values:
                signal.insert(buffer, signal.encode(values[signal.name]))
        return bytes(buffer)


class MessageDatabase:
    """Read-only snapshot of a set of message definitions."""

    def __init__(self, messages: Iterable[Message] = (), source_info: str = ""):
        self.messages: Tuple[Message, ...] = tuple(messages)
        self.source_info = source_info
        self._by_id: Dict[int, Message] = {m.frame_id: m for m in self.messages}

    def __repr__(self):
        return f"MessageDatabase({len(self.messages)} messages)"

    def is_empty(self) -> bool:
        return not self.messages

    def message_by_id(self, frame_id: int) -> Optional[Message]:
        return self._by_id.get(frame_id)

    def total_signal_count(self) -> int:
        return sum(len(m.signals) for m in self.messages)

    @classmethod
    def merged(
        cls, databases: Iterable["MessageDatabase"], source_info: str = ""
    ) -> "MessageDatabase":
        """Concatenate databases; for duplicate ids the later database wins lookups."""
        messages: List[Message] = []
        for db in databases:
            messages.extend(db.messages)
        return cls(messages, source_info)


EMPTY_DATABASE = MessageDatabase()


# --- cantools adapter ---


def _convert_signal(sig) -> Signal:
    if sig.is_float:
        kind = ValueKind.FLOAT64 if sig.length == 64 else ValueKind.FLOAT32
    elif sig.is_signed:
        kind = ValueKind.SIGNED
    else:
        kind = ValueKind.UNSIGNED

    if sig.is_multiplexer:
        mux_role = MuxRole.SELECTOR
    elif sig.multiplexer_ids:
        mux_role = MuxRole.MUXED
    else:
        mux_role = MuxRole.NONE

    choices = {int(raw): str(text) for raw, text in (sig.choices or {}).items()}

    return Signal(
        name=sig.name,
        start=sig.start,
        length=sig.length,
        byte_order=ByteOrder(sig.byte_order),
        kind=kind,
        scale=float(sig.scale),
        offset=float(sig.offset),
        minimum=None if sig.minimum is None else float(sig.minimum),
        maximum=None if sig.maximum is None else float(sig.maximum),
        unit=sig.unit or "",
        mux_role=mux_role,
        mux_values=tuple(sig.multiplexer_ids or ()),
        value_table=choices,
        initial_value=getattr(sig, "initial", None),
    )


def from_cantools(db, source_info: str = "") -> MessageDatabase:
    """Convert a ``cantools.database.can.Database`` into a ``MessageDatabase``."""
    messages = []
    for msg in db.messages:
        messages.append(
            Message(
                frame_id=msg.frame_id,
                name=msg.name,
                length=msg.length,
                signals=tuple(_convert_signal(s) for s in msg.signals),
                is_extended=msg.is_extended_frame,
                is_fd=bool(getattr(msg, "is_fd", False)),
            )
        )
    return MessageDatabase(messages, source_info)


_LINE_RE = re.compile(r"line (\d+)")


def _issues_from_exception(exc: Exception) -> List[DatabaseIssue]:
    issues = []
    for part in str(exc).splitlines() or [str(exc)]:
        part = part.strip()
        if not part:
            continue
        match = _LINE_RE.search(part)
        issues.append(DatabaseIssue(int(match.group(1)) if match else 0, part))
    return issues or [DatabaseIssue(0, type(exc).__name__)]


def database_info(path: Path, db: MessageDatabase) -> str:
    return f"{path.name}  |  {len(db.messages)} msg  |  {db.total_signal_count()} sig"


def load_database(path) -> MessageDatabase:
    """Parse a DBC (or any cantools-supported CAN database) file."""
    path = Path(path)
    if not path.exists():
        raise DatabaseError(
            f"DBC file not found: {path}", [DatabaseIssue(0, "file not found")]
        )

    try:
        db = cantools.database.load_file(str(path), strict=False)
    except (cantools.database.UnsupportedDatabaseFormatError, ValueError, OSError) as e:
        issues = _issues_from_exception(e)
        for issue in issues:
            logger.warning("%s: %s", path.name, issue)
        raise DatabaseError(f"Failed to parse {path.name}", issues) from e

    if not hasattr(db, "messages"):
        raise DatabaseError(
            f"{path.name} is not a CAN message database",
            [DatabaseIssue(0, "unsupported database kind")],
        )

    converted = from_cantools(db)
    result = MessageDatabase(converted.messages, database_info(path, converted))
    logger.info("Loaded database %s", result.source_info)
    return result
