"""
Two-level trace model: frame rows at the top level, decoded signals below them.

Top-level rows live in a flat arena. Every row carries a sequence number that
increases by one per appended row, so the arena is always a contiguous run of
sequence numbers starting at ``_first_seq``. Child indexes store the sequence
number of their parent row in ``internalId`` (offset by one, zero marks a
top-level index), which makes ``parent()`` a subtraction instead of a search.
"""

import enum
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from PySide6.QtCore import QAbstractItemModel, QModelIndex, Qt

from canlens.frame import Frame
from canlens.trace.entry import COLUMN_HEADERS, TraceColumn, TraceEntry

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100_000
DEFAULT_PURGE_CHUNK = 5_000


class DisplayMode(enum.Enum):
    APPEND = "append"
    IN_PLACE = "in_place"


class TraceRole(enum.IntEnum):
    IS_FRAME = int(Qt.UserRole) + 1
    IS_ERROR = int(Qt.UserRole) + 2
    IS_FD = int(Qt.UserRole) + 3
    IS_DECODED = int(Qt.UserRole) + 4
    CHANNEL = int(Qt.UserRole) + 5
    SIG_NAME = int(Qt.UserRole) + 6
    SIG_VALUE = int(Qt.UserRole) + 7
    SIG_RAW = int(Qt.UserRole) + 8


_CENTERED = (TraceColumn.CHN, TraceColumn.DIR, TraceColumn.DLC)


class TraceStore(QAbstractItemModel):
    """Bounded frame/signal tree with append and in-place display modes."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        purge_chunk: int = DEFAULT_PURGE_CHUNK,
        parent=None,
    ):
        super().__init__(parent)
        self.capacity = max(1, capacity)
        self.purge_chunk = max(1, purge_chunk)
        self._mode = DisplayMode.APPEND
        self._rows: List[TraceEntry] = []
        self._first_seq = 0
        self._key_seq: Dict[int, int] = {}  # in-place only: trace key -> row sequence

    # --- Mode ---

    @property
    def display_mode(self) -> DisplayMode:
        return self._mode

    def set_display_mode(self, mode: DisplayMode):
        if mode is self._mode:
            return
        self._mode = mode
        if mode is DisplayMode.IN_PLACE:
            self._collapse_by_key()
        else:
            self._key_seq.clear()
        logger.debug("Trace display mode: %s", mode.value)

    def _collapse_by_key(self):
        """Keep one row per key: first-seen position, last-written content."""
        order: List[int] = []
        latest: Dict[int, TraceEntry] = {}
        for entry in self._rows:
            key = entry.key
            if key not in latest:
                order.append(key)
            latest[key] = entry

        self.beginResetModel()
        self._rows = [latest[key] for key in order]
        self._first_seq = 0
        self._key_seq = {key: seq for seq, key in enumerate(order)}
        self.endResetModel()

    # --- Mutation ---

    def add_entries(self, entries: Sequence[TraceEntry]):
        """Insert one flushed batch."""
        if not entries:
            return
        if self._mode is DisplayMode.APPEND:
            self._append_rows(list(entries))
        else:
            self._add_in_place(entries)

    def _purge_for(self, incoming: int):
        current = len(self._rows)
        if current + incoming <= self.capacity:
            return
        to_remove = min(max(current + incoming - self.capacity, self.purge_chunk), current)
        if to_remove <= 0:
            return

        self.beginRemoveRows(QModelIndex(), 0, to_remove - 1)
        removed = self._rows[:to_remove]
        del self._rows[:to_remove]
        self._first_seq += to_remove
        if self._key_seq:
            for entry in removed:
                self._key_seq.pop(entry.key, None)
        self.endRemoveRows()

    def _append_rows(self, entries: List[TraceEntry]):
        if len(entries) > self.capacity:
            entries = entries[-self.capacity :]
        self._purge_for(len(entries))

        first = len(self._rows)
        self.beginInsertRows(QModelIndex(), first, first + len(entries) - 1)
        if self._mode is DisplayMode.IN_PLACE:
            seq = self._first_seq + first
            for offset, entry in enumerate(entries):
                self._key_seq[entry.key] = seq + offset
        self._rows.extend(entries)
        self.endInsertRows()

    def _add_in_place(self, entries: Iterable[TraceEntry]):
        fresh: Dict[int, TraceEntry] = {}
        for entry in entries:
            key = entry.key
            seq = self._key_seq.get(key)
            if seq is not None:
                self._replace_row(seq - self._first_seq, entry)
            else:
                # dict keeps first-seen order, value is the latest entry
                fresh[key] = entry
        if fresh:
            self._append_rows(list(fresh.values()))

    def _replace_row(self, row: int, entry: TraceEntry):
        old_count = len(self._rows[row].signals)
        new_count = len(entry.signals)
        parent = self.index(row, 0)

        if new_count < old_count:
            self.beginRemoveRows(parent, new_count, old_count - 1)
            self._rows[row] = entry
            self.endRemoveRows()
        elif new_count > old_count:
            self.beginInsertRows(parent, old_count, new_count - 1)
            self._rows[row] = entry
            self.endInsertRows()
        else:
            self._rows[row] = entry

        last_column = len(COLUMN_HEADERS) - 1
        self.dataChanged.emit(self.index(row, 0), self.index(row, last_column))
        kept = min(old_count, new_count)
        if kept:
            self.dataChanged.emit(
                self.index(0, 0, parent), self.index(kept - 1, last_column, parent)
            )

    def clear(self):
        self.beginResetModel()
        self._rows = []
        self._first_seq = 0
        self._key_seq.clear()
        self.endResetModel()

    # --- Access ---

    def frame_count(self) -> int:
        return len(self._rows)

    def entry(self, row: int) -> TraceEntry:
        return self._rows[row]

    def entries(self) -> List[TraceEntry]:
        return list(self._rows)

    def frames(self) -> List[Frame]:
        return [entry.frame for entry in self._rows]

    def row_for_key(self, key: int) -> int:
        seq = self._key_seq.get(key)
        return -1 if seq is None else seq - self._first_seq

    # --- Qt Model Interface ---

    def _parent_row(self, index: QModelIndex) -> Optional[int]:
        """Row of the parent frame for a signal index, None for a frame index."""
        tag = index.internalId()
        if tag == 0:
            return None
        return tag - 1 - self._first_seq

    def index(self, row, column, parent=QModelIndex()):
        if column < 0 or column >= len(COLUMN_HEADERS) or row < 0:
            return QModelIndex()

        if not parent.isValid():
            if row >= len(self._rows):
                return QModelIndex()
            return self.createIndex(row, column, 0)

        if self._parent_row(parent) is not None:
            return QModelIndex()  # signal rows have no children
        frame_row = parent.row()
        if frame_row >= len(self._rows) or row >= len(self._rows[frame_row].signals):
            return QModelIndex()
        return self.createIndex(row, column, self._first_seq + frame_row + 1)

    def parent(self, index):
        if not index.isValid():
            return QModelIndex()
        frame_row = self._parent_row(index)
        if frame_row is None or not 0 <= frame_row < len(self._rows):
            return QModelIndex()
        return self.createIndex(frame_row, 0, 0)

    def rowCount(self, parent=QModelIndex()):
        if not parent.isValid():
            return len(self._rows)
        if parent.column() > 0 or self._parent_row(parent) is not None:
            return 0
        row = parent.row()
        if row >= len(self._rows):
            return 0
        return len(self._rows[row].signals)

    def columnCount(self, parent=QModelIndex()):
        return len(COLUMN_HEADERS)

    def data(self, index, role=Qt.DisplayRole):
        if not index.isValid():
            return None
        column = index.column()
        frame_row = self._parent_row(index)

        if frame_row is not None:
            if not 0 <= frame_row < len(self._rows):
                return None
            signals = self._rows[frame_row].signals
            if index.row() >= len(signals):
                return None
            sig = signals[index.row()]
            if role == Qt.DisplayRole:
                if column == TraceColumn.NAME:
                    return sig.name
                if column == TraceColumn.ID:
                    return sig.value
                if column == TraceColumn.DATA:
                    return sig.raw
                return None
            if role == TraceRole.IS_FRAME:
                return False
            if role == TraceRole.SIG_NAME:
                return sig.name
            if role == TraceRole.SIG_VALUE:
                return sig.value
            if role == TraceRole.SIG_RAW:
                return sig.raw
            return None

        if index.row() >= len(self._rows):
            return None
        entry = self._rows[index.row()]
        if role == Qt.DisplayRole:
            return entry.column_text(column)
        if role == Qt.TextAlignmentRole:
            if column == TraceColumn.TIME:
                return Qt.AlignRight | Qt.AlignVCenter
            if column in _CENTERED:
                return Qt.AlignHCenter | Qt.AlignVCenter
            return Qt.AlignLeft | Qt.AlignVCenter
        if role == TraceRole.IS_FRAME:
            return True
        if role == TraceRole.IS_ERROR:
            return entry.frame.error
        if role == TraceRole.IS_FD:
            return entry.frame.fd
        if role == TraceRole.IS_DECODED:
            return bool(entry.name)
        if role == TraceRole.CHANNEL:
            return entry.frame.channel
        return None

    def headerData(self, section, orientation, role=Qt.DisplayRole):
        if orientation == Qt.Horizontal and role == Qt.DisplayRole:
            if 0 <= section < len(COLUMN_HEADERS):
                return COLUMN_HEADERS[section]
        return None

    def roleNames(self):
        roles = super().roleNames()
        for role in TraceRole:
            roles[int(role)] = role.name.lower().encode()
        return roles
