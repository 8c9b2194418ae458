"""
Uncompressed Vector BLF (binary log) reader and writer.

Only CAN_MESSAGE (type 1) and CAN_FD_MESSAGE (type 86) objects are written.
The reader skips every other object type by its declared size.
"""

import logging
import struct
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional

from canlens.errors import TraceFormatError
from canlens.frame import EXTENDED_ID_MASK, Frame

logger = logging.getLogger(__name__)

FILE_SIGNATURE = b"BLF\0"
OBJECT_SIGNATURE = b"LOBJ"
FILE_HEADER_SIZE = 144
OBJECT_HEADER_SIZE = 24
API_VERSION = 0x0403

CAN_MESSAGE = 1
CAN_FD_MESSAGE = 86

FLAG_BRS = 0x01
FLAG_EXTENDED = 0x04
FLAG_TX = 0x10

# signature, stats size, api, object count, objects read, unspecified,
# measurement start, last object timestamp
FILE_HEADER = struct.Struct("<4sIIIIIQQ")
SYSTEMTIME = struct.Struct("<8H")
OBJECT_HEADER = struct.Struct("<4sHHIIQ")
CAN_MESSAGE_BODY = struct.Struct("<IHBB8s")
CAN_FD_MESSAGE_BODY = struct.Struct("<IHBBI64s")

_COUNTS_OFFSET = 12
_LAST_TS_OFFSET = 32
_END_TIME_OFFSET = 56


def systemtime(moment: datetime) -> bytes:
    return SYSTEMTIME.pack(
        moment.year,
        moment.month,
        moment.isoweekday() % 7,
        moment.day,
        moment.hour,
        moment.minute,
        moment.second,
        moment.microsecond // 1000,
    )


def file_header(start: datetime) -> bytes:
    header = FILE_HEADER.pack(FILE_SIGNATURE, FILE_HEADER_SIZE, API_VERSION, 0, 0, 0, 0, 0)
    header += systemtime(start) + systemtime(start)
    return header.ljust(FILE_HEADER_SIZE, b"\0")


def encode_object(frame: Frame) -> Optional[bytes]:
    """BLF object for ``frame``, or None for frame kinds the format omits."""
    if frame.error or frame.remote:
        return None

    flags = FLAG_EXTENDED if frame.extended else 0
    if frame.tx_echo:
        flags |= FLAG_TX
    channel = frame.channel & 0xFFFF

    if frame.fd:
        if frame.brs:
            flags |= FLAG_BRS
        body = CAN_FD_MESSAGE_BODY.pack(
            frame.id, channel, frame.dlc, flags, 0, frame.payload.ljust(64, b"\0")
        )
        object_type = CAN_FD_MESSAGE
    else:
        body = CAN_MESSAGE_BODY.pack(
            frame.id, channel, frame.dlc, flags, frame.payload[:8].ljust(8, b"\0")
        )
        object_type = CAN_MESSAGE

    header = OBJECT_HEADER.pack(
        OBJECT_SIGNATURE,
        OBJECT_HEADER_SIZE,
        1,
        OBJECT_HEADER_SIZE + len(body),
        object_type,
        frame.timestamp // 10,
    )
    return header + body


def write_blf(stream: BinaryIO, frames: Iterable[Frame], now: Optional[datetime] = None) -> int:
    """Write header, objects, then back-patch counts, last timestamp and end time."""
    now = now or datetime.now()
    stream.write(file_header(now))

    count = 0
    last_ts10 = 0
    for frame in frames:
        obj = encode_object(frame)
        if obj is None:
            continue
        stream.write(obj)
        count += 1
        last_ts10 = frame.timestamp // 10

    stream.seek(_COUNTS_OFFSET)
    stream.write(struct.pack("<II", count, count))
    stream.seek(_LAST_TS_OFFSET)
    stream.write(struct.pack("<Q", last_ts10))
    stream.seek(_END_TIME_OFFSET)
    stream.write(systemtime(datetime.now()))
    stream.seek(0, 2)
    return count


def save_blf(path, frames: Iterable[Frame]) -> int:
    path = Path(path)
    with open(path, "wb") as f:
        count = write_blf(f, frames)
    logger.info("Wrote %d frames to %s", count, path.name)
    return count


# --- Reader ---


def _decode_can(body: bytes, ts10: int) -> Frame:
    frame_id, channel, dlc, flags, data = CAN_MESSAGE_BODY.unpack_from(body)
    dlc = min(dlc, 8)
    return Frame(
        id=frame_id & EXTENDED_ID_MASK,
        data=data[:dlc],
        dlc=dlc,
        extended=bool(flags & FLAG_EXTENDED),
        tx_echo=bool(flags & FLAG_TX),
        channel=min(max(channel, 1), 255),
        timestamp=ts10 * 10,
    )


def _decode_can_fd(body: bytes, ts10: int) -> Frame:
    frame_id, channel, dlc, flags, _, data = CAN_FD_MESSAGE_BODY.unpack_from(body)
    return Frame(
        id=frame_id & EXTENDED_ID_MASK,
        data=data,
        dlc=min(dlc, 15),
        extended=bool(flags & FLAG_EXTENDED),
        fd=True,
        brs=bool(flags & FLAG_BRS),
        tx_echo=bool(flags & FLAG_TX),
        channel=min(max(channel, 1), 255),
        timestamp=ts10 * 10,
    )


def read_blf(blob: bytes, name: str = "<memory>") -> List[Frame]:
    size = len(blob)
    if size < FILE_HEADER.size or blob[:4] != FILE_SIGNATURE:
        raise TraceFormatError(f"Invalid BLF header in {name}")
    stats_size = struct.unpack_from("<I", blob, 4)[0]
    if stats_size < OBJECT_HEADER_SIZE or stats_size > size:
        raise TraceFormatError(f"Invalid BLF header in {name}")

    frames = []
    pos = stats_size
    while pos + OBJECT_HEADER_SIZE <= size:
        signature, header_size, _, obj_size, obj_type, ts10 = OBJECT_HEADER.unpack_from(blob, pos)
        if signature != OBJECT_SIGNATURE:
            raise TraceFormatError(f"Unexpected BLF object signature at offset {pos}")
        if header_size < OBJECT_HEADER_SIZE or obj_size < header_size:
            raise TraceFormatError(f"Invalid BLF object size at offset {pos}")
        if pos + obj_size > size:
            raise TraceFormatError(f"Truncated BLF object at offset {pos}")

        body = blob[pos + header_size : pos + obj_size]
        if obj_type == CAN_MESSAGE and len(body) >= CAN_MESSAGE_BODY.size:
            frames.append(_decode_can(body, ts10))
        elif obj_type == CAN_FD_MESSAGE and len(body) >= CAN_FD_MESSAGE_BODY.size:
            frames.append(_decode_can_fd(body, ts10))
        pos += obj_size
    return frames


def load_blf(path) -> List[Frame]:
    path = Path(path)
    try:
        blob = path.read_bytes()
    except OSError as e:
        raise TraceFormatError(f"Cannot open for reading: {path}") from e
    frames = read_blf(blob, path.name)
    if not frames:
        raise TraceFormatError(f"No CAN frames found in BLF file: {path.name}")
    logger.info("Read %d frames from %s", len(frames), path.name)
    return frames
