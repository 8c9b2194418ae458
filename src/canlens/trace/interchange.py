"""
Trace import/export by file extension.

ASC and BLF use the in-tree codecs, CSV writes the formatted trace rows, and
the remaining log formats python-can knows about go through
``can.LogReader`` / ``can.Logger``.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import can

from canlens.database import MessageDatabase
from canlens.errors import TraceFormatError
from canlens.frame import EXTENDED_ID_MASK, Frame, dlc_for_length
from canlens.trace import asc, blf, csv_export
from canlens.trace.entry import TraceEntry, build_entry

logger = logging.getLogger(__name__)

PYTHON_CAN_FORMATS = (".log", ".trc")
IMPORT_FORMATS = (".asc", ".blf") + PYTHON_CAN_FORMATS
EXPORT_FORMATS = (".asc", ".blf", ".csv") + PYTHON_CAN_FORMATS

IMPORT_FILTER = "CAN Traces (*.asc *.blf *.log *.trc);;All Files (*)"
EXPORT_FILTER = (
    "Vector ASC (*.asc);;Vector BLF (*.blf);;CSV (*.csv);;"
    "candump log (*.log);;PCAN trace (*.trc)"
)


# --- python-can bridge ---


def _channel_number(channel) -> int:
    if isinstance(channel, int):
        return min(max(channel, 1), 255)
    digits = "".join(c for c in str(channel or "") if c.isdigit())
    return min(max(int(digits), 1), 255) if digits else 1


def frame_from_message(msg: can.Message, start: float) -> Frame:
    payload = bytes(msg.data or b"")
    fd = bool(msg.is_fd)
    dlc = dlc_for_length(len(payload)) if payload else min(msg.dlc, 15 if fd else 8)
    return Frame(
        id=msg.arbitration_id & EXTENDED_ID_MASK,
        data=payload,
        dlc=dlc,
        extended=bool(msg.is_extended_id),
        fd=fd,
        brs=bool(msg.bitrate_switch),
        remote=bool(msg.is_remote_frame),
        error=bool(msg.is_error_frame),
        tx_echo=not msg.is_rx,
        channel=_channel_number(msg.channel),
        timestamp=max(0, round((msg.timestamp - start) * 1e9)),
    )


def message_from_frame(frame: Frame) -> can.Message:
    return can.Message(
        timestamp=frame.timestamp / 1e9,
        arbitration_id=frame.id,
        is_extended_id=frame.extended,
        is_remote_frame=frame.remote,
        is_error_frame=frame.error,
        is_fd=frame.fd,
        bitrate_switch=frame.brs,
        is_rx=not frame.tx_echo,
        dlc=frame.data_length,
        data=frame.payload,
        channel=frame.channel,
        check=False,
    )


def load_python_can(path: Path) -> List[Frame]:
    frames = []
    start: Optional[float] = None
    try:
        for msg in can.LogReader(str(path)):
            if start is None:
                start = msg.timestamp
            frames.append(frame_from_message(msg, start))
    except (OSError, ValueError) as e:
        raise TraceFormatError(f"Failed to read {path.name}: {e}") from e
    if not frames:
        raise TraceFormatError(f"No CAN frames found in {path.name}")
    return frames


def save_python_can(path: Path, frames: Sequence[Frame]) -> int:
    writer = can.Logger(str(path))
    try:
        for frame in frames:
            writer.on_message_received(message_from_frame(frame))
    finally:
        writer.stop()
    return len(frames)


# --- Dispatch ---


def import_trace(path) -> List[Frame]:
    """Read every frame from ``path``; raises ``TraceFormatError``."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".asc":
        return asc.load_asc(path)
    if suffix == ".blf":
        return blf.load_blf(path)
    if suffix in PYTHON_CAN_FORMATS:
        return load_python_can(path)
    raise TraceFormatError(f"Unsupported trace format: {suffix or path.name}")


def export_trace(path, entries: Sequence[TraceEntry]) -> int:
    """Write trace rows to ``path``; anything that is not ASC/BLF/log/trc is CSV."""
    path = Path(path)
    suffix = path.suffix.lower()
    frames = [entry.frame for entry in entries]
    try:
        if suffix == ".asc":
            return asc.save_asc(path, frames)
        if suffix == ".blf":
            return blf.save_blf(path, frames)
        if suffix in PYTHON_CAN_FORMATS:
            return save_python_can(path, frames)
        count = csv_export.save_csv(path, entries)
    except OSError as e:
        raise TraceFormatError(f"Cannot open for writing: {path}") from e
    logger.info("Wrote %d rows to %s", count, path.name)
    return count


def convert_trace(source, destination, db: Optional[MessageDatabase] = None) -> int:
    frames = import_trace(source)
    return export_trace(destination, [build_entry(frame, db) for frame in frames])
