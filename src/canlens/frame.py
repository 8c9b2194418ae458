"""
Bus-level value types shared by drivers, the session controller and the trace codecs.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Generic, Optional, TypeVar

MAX_PAYLOAD = 64
CLASSIC_MAX_PAYLOAD = 8
STANDARD_ID_MASK = 0x7FF
EXTENDED_ID_MASK = 0x1FFFFFFF

# dlc -> payload bytes
DLC_TO_LENGTH = (0, 1, 2, 3, 4, 5, 6, 7, 8, 12, 16, 20, 24, 32, 48, 64)

T = TypeVar("T")


def payload_length(dlc: int, fd: bool = True) -> int:
    """Number of payload bytes a DLC stands for (classic frames cap at 8)."""
    dlc = max(0, min(int(dlc), 15))
    if not fd:
        return min(dlc, CLASSIC_MAX_PAYLOAD)
    return DLC_TO_LENGTH[dlc]


def dlc_for_length(length: int) -> int:
    """Smallest DLC whose payload can hold ``length`` bytes."""
    if length <= 8:
        return max(0, length)
    for dlc in range(9, 16):
        if DLC_TO_LENGTH[dlc] >= length:
            return dlc
    return 15


@dataclass(frozen=True)
class Frame:
    """One CAN / CAN-FD frame as produced by a driver or a trace importer."""

    id: int
    data: bytes = b""
    dlc: int = 0
    extended: bool = False
    fd: bool = False
    brs: bool = False
    remote: bool = False
    error: bool = False
    tx_echo: bool = False
    channel: int = 1
    timestamp: int = 0  # ns since session start

    def __post_init__(self):
        raw = bytes(self.data[:MAX_PAYLOAD])
        object.__setattr__(self, "data", raw.ljust(MAX_PAYLOAD, b"\x00"))
        object.__setattr__(self, "dlc", max(0, min(int(self.dlc), 15)))

    @property
    def data_length(self) -> int:
        return payload_length(self.dlc, self.fd)

    @property
    def payload(self) -> bytes:
        if self.remote or self.error:
            return b""
        return self.data[: self.data_length]

    def trace_key(self) -> int:
        """Identity of a trace row in in-place display mode."""
        return (
            (self.id & EXTENDED_ID_MASK)
            | (self.channel & 0xFF) << 32
            | int(self.extended) << 40
            | int(self.remote) << 41
            | int(self.error) << 42
            | int(self.fd) << 43
            | int(self.tx_echo) << 44
        )

    def with_timestamp(self, timestamp: int) -> "Frame":
        return replace(self, timestamp=timestamp)

    @classmethod
    def from_payload(cls, id: int, payload: bytes, **kwargs) -> "Frame":
        """Build a frame whose DLC is derived from the payload length."""
        payload = bytes(payload)
        if not kwargs.get("fd"):
            payload = payload[:CLASSIC_MAX_PAYLOAD]
        return cls(id=id, data=payload, dlc=dlc_for_length(len(payload)), **kwargs)


@dataclass(frozen=True)
class ChannelInfo:
    name: str
    hw_type_name: str = ""
    hw_type: int = 0
    hw_index: int = 0
    hw_channel: int = 0
    channel_index: int = 0
    channel_mask: int = 0
    serial_number: int = 0
    supports_fd: bool = False
    is_on_bus: bool = False
    transceiver_name: str = ""

    def display_string(self) -> str:
        if self.serial_number > 0:
            return f"{self.name}  [S/N: {self.serial_number}]"
        return self.name


@dataclass(frozen=True)
class BusConfig:
    bitrate: int = 500_000
    fd_enabled: bool = False
    fd_data_bitrate: int = 2_000_000
    listen_only: bool = False


@dataclass
class Result(Generic[T]):
    """Outcome of a driver or session operation."""

    ok: bool
    value: Optional[T] = None
    error: str = ""

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(True, value)

    @classmethod
    def failure(cls, message: str) -> "Result":
        return cls(False, None, message)
