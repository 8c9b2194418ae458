"""
Trace rows with their display strings pre-formatted at insertion time, so the
item model's data() is a plain attribute lookup.
"""

import enum
from dataclasses import dataclass, field
from typing import List, Optional

from canlens.database import DecodedSignal, MessageDatabase
from canlens.frame import Frame


class TraceColumn(enum.IntEnum):
    """Defines the columns for the TraceStore."""

    TIME = 0
    NAME = 1
    ID = 2
    CHN = 3
    EVENT_TYPE = 4
    DIR = 5
    DLC = 6
    DATA = 7


COLUMN_HEADERS = ["Time (ms)", "Name", "ID", "Chn", "Event Type", "Dir", "DLC", "Data"]


@dataclass(frozen=True)
class SignalRow:
    name: str
    value: str
    raw: str


@dataclass
class TraceEntry:
    frame: Frame
    time: str
    name: str
    id: str
    channel: str
    event_type: str
    direction: str
    dlc: str
    data: str
    signals: List[SignalRow] = field(default_factory=list)

    @property
    def key(self) -> int:
        return self.frame.trace_key()

    def column_text(self, column: int) -> str:
        return (
            self.time,
            self.name,
            self.id,
            self.channel,
            self.event_type,
            self.direction,
            self.dlc,
            self.data,
        )[column]

    def csv_row(self) -> List[str]:
        return [self.column_text(c) for c in TraceColumn]


def format_id(frame: Frame) -> str:
    return f"{frame.id:08X}h" if frame.extended else f"{frame.id:03X}h"


def event_type(frame: Frame) -> str:
    if frame.error:
        return "Error Frame"
    if frame.remote:
        return "Remote Frame"
    if frame.fd:
        return "CAN FD BRS" if frame.brs else "CAN FD"
    return "CAN"


def format_value(decoded: DecodedSignal) -> str:
    signal = decoded.signal
    text = f"{decoded.physical:.8g}"
    if signal.unit:
        text += f" {signal.unit}"
    description = signal.describe(decoded.raw)
    if description is not None:
        text += f" ({description})"
    return text


def format_raw(raw: int) -> str:
    if raw < 0:
        return f"-0x{-raw:X}"
    return f"0x{raw:X}"


def build_entry(frame: Frame, db: Optional[MessageDatabase] = None) -> TraceEntry:
    """Format a frame and decode its signals against ``db``."""
    if frame.fd and frame.dlc > 8:
        dlc_text = str(frame.data_length)
    else:
        dlc_text = str(frame.dlc)

    entry = TraceEntry(
        frame=frame,
        time=f"{frame.timestamp / 1e6:.6f}",
        name="",
        id=format_id(frame),
        channel=str(frame.channel),
        event_type=event_type(frame),
        direction="Tx" if frame.tx_echo else "Rx",
        dlc=dlc_text,
        data=frame.payload.hex(" ").upper(),
    )

    if db is None or frame.error or frame.remote:
        return entry
    message = db.message_by_id(frame.id)
    if message is None:
        return entry

    entry.name = message.name
    entry.signals = [
        SignalRow(d.signal.name, format_value(d), format_raw(d.raw))
        for d in message.decode(frame.payload)
    ]
    return entry
