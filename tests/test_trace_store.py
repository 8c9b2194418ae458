"""
Tests for trace entry formatting and the two-level trace store.
"""

from PySide6.QtCore import QModelIndex, Qt

from canlens.database import Message, MessageDatabase, Signal
from canlens.frame import Frame
from canlens.trace.entry import TraceColumn, build_entry, format_raw
from canlens.trace.store import DisplayMode, TraceRole, TraceStore

from conftest import make_frame

DB = MessageDatabase(
    [
        Message(
            0x0C4,
            "EngineData",
            8,
            (
                Signal("EngineSpeed", 0, 16, scale=0.25, unit="rpm"),
                Signal("Gear", 16, 4, value_table={3: "D"}),
            ),
        )
    ]
)


def entries(*frames, db=DB):
    return [build_entry(f, db) for f in frames]


class TestBuildEntry:
    """Test trace entry formatting"""

    def test_formats_columns(self):
        """Test column text"""
        entry = build_entry(make_frame(0x0C4, bytes([0xA0, 0x0F, 0x03]), timestamp=1_500_000), DB)
        assert entry.time == "1.500000"
        assert entry.name == "EngineData"
        assert entry.id == "0C4h"
        assert entry.channel == "1"
        assert entry.event_type == "CAN"
        assert entry.direction == "Rx"
        assert entry.dlc == "3"
        assert entry.data == "A0 0F 03"

    def test_signal_rows(self):
        """Test decoded signal rows"""
        entry = build_entry(make_frame(0x0C4, bytes([0xA0, 0x0F, 0x03])), DB)
        assert [(s.name, s.value, s.raw) for s in entry.signals] == [
            ("EngineSpeed", "1000 rpm", "0xFA0"),
            ("Gear", "3 (D)", "0x3"),
        ]

    def test_extended_fd_brs(self):
        """Test extended FD frame columns"""
        frame = make_frame(0x18DB33F1, bytes(20), extended=True, fd=True, brs=True, tx_echo=True)
        entry = build_entry(frame)
        assert entry.id == "18DB33F1h"
        assert entry.event_type == "CAN FD BRS"
        assert entry.direction == "Tx"
        assert entry.dlc == "20"

    def test_error_and_remote_are_not_decoded(self):
        """Test that error and remote frames skip decoding"""
        error = build_entry(Frame(0x0C4, error=True), DB)
        remote = build_entry(Frame(0x0C4, dlc=8, remote=True), DB)
        assert error.event_type == "Error Frame" and not error.signals and not error.name
        assert remote.event_type == "Remote Frame" and remote.data == ""

    def test_negative_raw(self):
        """Test negative raw values"""
        assert format_raw(-16) == "-0x10"


class TestAppendMode:
    """Test append display mode"""

    def test_batch_insert_emits_once(self, qtbot):
        """Test one insert per batch"""
        store = TraceStore()
        with qtbot.waitSignal(store.rowsInserted) as blocker:
            store.add_entries(entries(*(make_frame(0x100 + i) for i in range(10))))
        assert blocker.args[1:] == [0, 9]
        assert store.rowCount() == 10

    def test_purges_a_chunk_when_full(self, qtbot):
        """Test chunked purge"""
        store = TraceStore(capacity=10, purge_chunk=4)
        store.add_entries(entries(*(make_frame(i) for i in range(10))))
        removed = []
        store.rowsRemoved.connect(lambda parent, first, last: removed.append((first, last)))
        store.add_entries(entries(make_frame(0x7FF)))
        assert removed == [(0, 3)]
        assert store.frame_count() == 7
        assert store.entry(0).frame.id == 4
        assert store.entry(6).frame.id == 0x7FF

    def test_purge_removes_at_least_the_overflow(self):
        """Test purge size"""
        store = TraceStore(capacity=10, purge_chunk=2)
        store.add_entries(entries(*(make_frame(i) for i in range(10))))
        store.add_entries(entries(*(make_frame(0x100 + i) for i in range(5))))
        assert store.frame_count() == 10
        assert store.entry(0).frame.id == 5

    def test_oversized_batch_keeps_newest(self):
        """Test batches above capacity"""
        store = TraceStore(capacity=5, purge_chunk=2)
        store.add_entries(entries(*(make_frame(i) for i in range(12))))
        assert [store.entry(r).frame.id for r in range(5)] == [7, 8, 9, 10, 11]

    def test_clear_is_a_reset(self, qtbot):
        """Test clearing the store"""
        store = TraceStore()
        store.add_entries(entries(make_frame()))
        with qtbot.waitSignal(store.modelReset):
            store.clear()
        assert store.rowCount() == 0


class TestInPlaceMode:
    """Test in-place display mode"""

    def test_same_key_overwrites(self):
        """Test row overwrite per key"""
        store = TraceStore()
        store.set_display_mode(DisplayMode.IN_PLACE)
        store.add_entries(entries(make_frame(0x0C4, b"\x01"), make_frame(0x200, b"\x02")))
        store.add_entries(entries(make_frame(0x0C4, b"\x09")))
        assert store.frame_count() == 2
        assert store.entry(0).data == "09"
        assert store.row_for_key(make_frame(0x200).trace_key()) == 1

    def test_duplicates_inside_one_batch_collapse(self):
        """Test duplicates within a batch"""
        store = TraceStore()
        store.set_display_mode(DisplayMode.IN_PLACE)
        store.add_entries(entries(make_frame(0x1, b"\x01"), make_frame(0x2), make_frame(0x1, b"\x05")))
        assert store.frame_count() == 2
        assert store.entry(0).data == "05"

    def test_child_count_reconciled(self, qtbot):
        """Test signal row count changes"""
        store = TraceStore()
        store.set_display_mode(DisplayMode.IN_PLACE)
        store.add_entries(entries(make_frame(0x0C4, bytes(3)), db=None))
        parent = store.index(0, 0)
        assert store.rowCount(parent) == 0

        with qtbot.waitSignal(store.rowsInserted) as blocker:
            store.add_entries(entries(make_frame(0x0C4, bytes(3))))
        assert blocker.args[0] == parent
        assert store.rowCount(store.index(0, 0)) == 2

        store.add_entries(entries(make_frame(0x0C4, bytes(3)), db=None))
        assert store.rowCount(store.index(0, 0)) == 0

    def test_switch_collapses_keeping_first_position(self):
        """Test switching from append mode"""
        store = TraceStore()
        store.add_entries(
            entries(make_frame(0xA, b"\x01"), make_frame(0xB), make_frame(0xA, b"\x02"), make_frame(0xC))
        )
        store.set_display_mode(DisplayMode.IN_PLACE)
        assert [store.entry(r).frame.id for r in range(store.frame_count())] == [0xA, 0xB, 0xC]
        assert store.entry(0).data == "02"

    def test_purge_drops_purged_keys(self):
        """Test key cleanup on purge"""
        store = TraceStore(capacity=3, purge_chunk=1)
        store.set_display_mode(DisplayMode.IN_PLACE)
        store.add_entries(entries(make_frame(1), make_frame(2), make_frame(3)))
        store.add_entries(entries(make_frame(4)))
        assert store.row_for_key(make_frame(1).trace_key()) == -1
        assert store.row_for_key(make_frame(4).trace_key()) == 2
        store.add_entries(entries(make_frame(2, b"\xAA")))
        assert store.entry(0).data == "AA"


class TestModelInterface:
    """Test the item model interface"""

    def test_signal_rows(self):
        """Test child signal indexes"""
        store = TraceStore()
        store.add_entries(entries(make_frame(0x0C4, bytes([0xA0, 0x0F, 0x03]))))
        parent = store.index(0, 0)
        child = store.index(1, TraceColumn.NAME, parent)
        assert store.data(child) == "Gear"
        assert store.data(store.index(1, TraceColumn.ID, parent)) == "3 (D)"
        assert store.data(store.index(1, TraceColumn.DATA, parent)) == "0x3"
        assert store.parent(child) == parent
        assert store.data(child, TraceRole.IS_FRAME) is False
        assert store.rowCount(child) == 0

    def test_parent_survives_purge(self):
        """Test parent lookup after a purge"""
        store = TraceStore(capacity=2, purge_chunk=1)
        store.add_entries(entries(make_frame(0x0C4, bytes(3)), make_frame(0x0C4, bytes(3))))
        store.add_entries(entries(make_frame(0x0C4, bytes(3))))
        parent = store.index(1, 0)
        child = store.index(0, 0, parent)
        assert store.parent(child).row() == 1

    def test_roles_and_headers(self):
        """Test custom roles and headers"""
        store = TraceStore()
        store.add_entries(entries(make_frame(0x0C4, bytes(3), fd=True), Frame(0x1, error=True)))
        assert store.data(store.index(0, 0), TraceRole.IS_FD) is True
        assert store.data(store.index(0, 0), TraceRole.IS_DECODED) is True
        assert store.data(store.index(1, 0), TraceRole.IS_ERROR) is True
        assert store.data(store.index(1, 0), TraceRole.CHANNEL) == 1
        assert store.headerData(0, Qt.Horizontal) == "Time (ms)"
        assert store.roleNames()[int(TraceRole.SIG_VALUE)] == b"sig_value"

    def test_out_of_range_indexes(self):
        """Test invalid indexes"""
        store = TraceStore()
        assert not store.index(0, 0).isValid()
        assert store.data(QModelIndex()) is None
        assert store.columnCount() == 8
