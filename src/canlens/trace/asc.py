"""
Vector ASC (ASCII log) reader and writer.

The reader is tolerant: metadata, comments and lines that fail token
validation are skipped, and only a file without a single frame is an error.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, TextIO, Tuple

from canlens.errors import TraceFormatError
from canlens.frame import (
    EXTENDED_ID_MASK,
    STANDARD_ID_MASK,
    Frame,
    dlc_for_length,
    payload_length,
)

logger = logging.getLogger(__name__)

APPLICATION = "canlens"

_METADATA_PREFIXES = ("date ", "base ", "no internal events")
_METADATA_LINES = (
    "begin triggerblock",
    "end triggerblock",
    "begin trigger block",
    "end trigger block",
)


# --- Writer ---


def format_date(moment: datetime) -> str:
    """Header date in the form ``Thu Mar 05 02:14:07.123 pm 2026``."""
    hour = moment.hour % 12 or 12
    am_pm = "am" if moment.hour < 12 else "pm"
    return (
        f"{moment:%a %b %d} {hour:02d}:{moment:%M:%S}.{moment.microsecond // 1000:03d}"
        f" {am_pm} {moment.year}"
    )


def format_id(frame: Frame) -> str:
    if frame.extended:
        return f"{frame.id:08X}x"
    return f"{frame.id:03X}"


def format_line(frame: Frame) -> str:
    prefix = (
        f"   {frame.timestamp / 1e9:12.6f} {frame.channel}  {format_id(frame)}"
        f"  {'Tx' if frame.tx_echo else 'Rx':<4}"
    )
    if frame.error:
        return f"{prefix}   ErrorFrame"
    if frame.remote:
        return f"{prefix}   r {frame.dlc}"
    data = frame.payload.hex(" ").upper()
    if frame.fd:
        flags = "  BRS" if frame.brs else ""
        return f"{prefix}   CANFD {frame.dlc} {data}{flags}"
    return f"{prefix}   d {frame.dlc} {data}"


def write_asc(stream: TextIO, frames: Iterable[Frame], now: Optional[datetime] = None):
    now = now or datetime.now()
    stream.write(f"date {format_date(now)}\n")
    stream.write("base hex  timestamps absolute\n")
    stream.write("no internal events logged\n")
    stream.write("// version 9.0.0\n")
    stream.write(f"// Application: {APPLICATION}\n")
    stream.write("Begin Triggerblock\n")
    count = 0
    for frame in frames:
        stream.write(format_line(frame) + "\n")
        count += 1
    stream.write("End TriggerBlock\n")
    return count


def save_asc(path, frames: Iterable[Frame]) -> int:
    path = Path(path)
    with open(path, "w", encoding="ascii", newline="\n") as f:
        count = write_asc(f, frames)
    logger.info("Wrote %d frames to %s", count, path.name)
    return count


# --- Reader ---


def _is_metadata(line: str) -> bool:
    if line.startswith("//"):
        return True
    lower = line.lower()
    return lower.startswith(_METADATA_PREFIXES) or lower in _METADATA_LINES


def parse_channel(token: str) -> Optional[int]:
    digits = "".join(c for c in token if c.isdigit())
    if not digits:
        return None
    channel = int(digits)
    return channel if 0 < channel <= 255 else None


def parse_id(token: str) -> Optional[Tuple[int, bool]]:
    token = token.strip()
    if not token:
        return None
    extended = token[-1] in "xX"
    if extended:
        token = token[:-1]
    if token[-1:] in ("h", "H"):
        token = token[:-1]
    if token[:2].lower() == "0x":
        token = token[2:]
    try:
        value = int(token, 16)
    except ValueError:
        return None
    if value < 0 or value > EXTENDED_ID_MASK:
        return None
    return value, extended or value > STANDARD_ID_MASK


def parse_byte(token: str) -> Optional[int]:
    if token[:2].lower() == "0x":
        token = token[2:]
    try:
        value = int(token, 16)
    except ValueError:
        return None
    return value if 0 <= value <= 0xFF else None


def parse_dlc(token: str, fd: bool) -> Optional[int]:
    try:
        value = int(token, 10)
    except ValueError:
        try:
            value = int(token, 16)
        except ValueError:
            return None
    if value < 0:
        return None
    if fd:
        return value if value <= 15 else dlc_for_length(value)
    return min(value, 8)


def _read_bytes(tokens: List[str], cursor: int, limit: int) -> Tuple[bytes, int]:
    data = bytearray()
    while cursor < len(tokens) and len(data) < limit:
        value = parse_byte(tokens[cursor])
        if value is None:
            break
        data.append(value)
        cursor += 1
    return bytes(data), cursor


def parse_line(line: str) -> Optional[Frame]:
    """Parse one trace line; ``None`` for anything that is not a valid frame."""
    line = line.strip()
    if not line or _is_metadata(line):
        return None
    tokens = line.split()
    if len(tokens) < 5:
        return None

    try:
        seconds = float(tokens[0])
    except ValueError:
        return None
    if seconds < 0:
        return None

    channel = parse_channel(tokens[1]) or 1
    parsed_id = parse_id(tokens[2])
    if parsed_id is None:
        return None
    frame_id, extended = parsed_id

    direction = tokens[3].lower()
    if direction not in ("rx", "tx"):
        return None

    common = dict(
        id=frame_id,
        extended=extended,
        channel=channel,
        tx_echo=direction == "tx",
        timestamp=round(seconds * 1e9),
    )
    kind = tokens[4].lower()

    if kind in ("errorframe", "error"):
        return Frame(error=True, **common)

    if len(tokens) < 6:
        return None

    if kind == "r":
        dlc = parse_dlc(tokens[5], fd=False)
        if dlc is None:
            return None
        return Frame(dlc=dlc, remote=True, **common)

    if kind in ("canfd", "fd"):
        dlc = parse_dlc(tokens[5], fd=True)
        if dlc is None:
            return None
        data, cursor = _read_bytes(tokens, 6, 64)
        if data and len(data) != payload_length(dlc):
            dlc = dlc_for_length(len(data))
        brs = any(t.upper() == "BRS" for t in tokens[cursor:])
        return Frame(data=data, dlc=dlc, fd=True, brs=brs, **common)

    if kind != "d":
        return None
    dlc = parse_dlc(tokens[5], fd=False)
    if dlc is None:
        return None
    data, _ = _read_bytes(tokens, 6, dlc)
    if len(data) != dlc:
        dlc = len(data)
    return Frame(data=data, dlc=dlc, **common)


def read_asc(lines: Iterable[str]) -> List[Frame]:
    frames = []
    skipped = 0
    for line in lines:
        frame = parse_line(line)
        if frame is not None:
            frames.append(frame)
        elif line.strip() and not _is_metadata(line.strip()):
            skipped += 1
    if skipped:
        logger.debug("Skipped %d unrecognized ASC lines", skipped)
    return frames


def load_asc(path) -> List[Frame]:
    path = Path(path)
    try:
        with open(path, "r", encoding="latin-1") as f:
            frames = read_asc(f)
    except OSError as e:
        raise TraceFormatError(f"Cannot open for reading: {path}") from e
    if not frames:
        raise TraceFormatError(f"No CAN frames found in ASC file: {path.name}")
    logger.info("Read %d frames from %s", len(frames), path.name)
    return frames
