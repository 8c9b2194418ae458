"""
Tests for the bus session controller: initialization, connection, measurement
batching, databases, trace files and transmit.
"""

import threading

import pytest

from canlens.config import SessionSettings
from canlens.drivers.base import CanDriver
from canlens.drivers.synthetic import SyntheticDriver
from canlens.errors import ConfigError
from canlens.frame import BusConfig, ChannelInfo, Frame, Result
from canlens.session import BusSessionController, SessionState, format_bitrate, parse_hex_bytes
from canlens.trace.asc import save_asc
from canlens.trace.store import DisplayMode

from conftest import make_frame


class FakeHardwareDriver(CanDriver):
    """Non-synthetic driver that answers immediately."""

    name = "Fake HW"

    def __init__(self, channels=None, init_error=""):
        super().__init__()
        self.channels = list(channels or [ChannelInfo("HW Channel 1", serial_number=7)])
        self.init_error = init_error
        self.opened = False
        self.config = None
        self.sent = []
        self.tx_error = ""

    def initialize(self):
        if self.init_error:
            self._last_error = self.init_error
            return Result.failure(self.init_error)
        return Result.success()

    def shutdown(self):
        self.close_channel()

    def is_available(self):
        return True

    def detect_channels(self):
        return list(self.channels)

    def open_channel(self, info, config):
        self.opened = True
        self.config = config
        return Result.success()

    def close_channel(self):
        self.opened = False

    def is_open(self):
        return self.opened

    def transmit(self, frame):
        if self.tx_error:
            return Result.failure(self.tx_error)
        self.sent.append(frame)
        return Result.success()


class BlockingDriver(FakeHardwareDriver):
    """Driver whose initialize() hangs until released."""

    name = "Stuck HW"

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def initialize(self):
        self.release.wait(10)
        return Result.success()


class UnavailableDriver(FakeHardwareDriver):
    def is_available(self):
        return False


@pytest.fixture
def make_session(qtbot):
    sessions = []

    def factory(driver=None, **settings):
        driver = driver if driver is not None else SyntheticDriver()
        session = BusSessionController(SessionSettings(**settings), driver_factory=lambda: driver)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.shutdown()


def initialized(qtbot, session):
    with qtbot.waitSignal(session.initialization_finished, timeout=3000) as blocker:
        session.start_initialization()
    return blocker.args[0]


def measuring(session):
    assert session.start_measurement()
    return session.driver


class TestHelpers:
    """Test session helper functions"""

    def test_parse_hex_bytes(self):
        """Test hex payload parsing"""
        assert parse_hex_bytes("01 2 ff") == b"\x01\x02\xff"
        assert parse_hex_bytes(" ".join(["AA"] * 10)) == b"\xaa" * 8
        with pytest.raises(ValueError):
            parse_hex_bytes("01 XY")
        with pytest.raises(ValueError):
            parse_hex_bytes("100")

    def test_format_bitrate(self):
        """Test bitrate formatting"""
        assert format_bitrate(BusConfig(bitrate=250_000)) == "250k"
        assert format_bitrate(BusConfig(fd_enabled=True)) == "500k / 2000k FD"


class TestInitialization:
    """Test driver initialization"""

    def test_synthetic_initializes_synchronously(self, qtbot, make_session):
        """Test synchronous synthetic startup"""
        session = make_session()
        assert initialized(qtbot, session) is True
        assert session.state is SessionState.READY
        assert session.init_complete
        assert [c.name for c in session.channels] == ["Demo Channel 1"]
        assert session.status == "Demo (synthetic) | 1 channel(s) available"

    def test_hardware_initializes_in_background(self, qtbot, make_session):
        """Test background hardware startup"""
        driver = FakeHardwareDriver()
        session = make_session(driver)
        assert initialized(qtbot, session) is True
        assert session.driver is driver
        assert session.channels == (ChannelInfo("HW Channel 1", serial_number=7),)
        assert session.status == "Fake HW | 1 channel(s) available"

    def test_unavailable_hardware_falls_back(self, qtbot, make_session):
        """Test fallback to the synthetic driver"""
        session = make_session(UnavailableDriver())
        initialized(qtbot, session)
        assert session.driver.is_synthetic

    def test_init_failure(self, qtbot, make_session):
        """Test reporting an initialization failure"""
        session = make_session(FakeHardwareDriver(init_error="vendor library missing"))
        errors = []
        session.error_occurred.connect(errors.append)
        assert initialized(qtbot, session) is False
        assert session.state is SessionState.IDLE
        assert errors == ["Driver init failed: vendor library missing"]

    def test_watchdog_replaces_stuck_driver(self, qtbot, make_session):
        """Test the initialization watchdog"""
        stuck = BlockingDriver()
        session = make_session(stuck, init_timeout_ms=100)
        try:
            assert initialized(qtbot, session) is True
            assert session.driver.is_synthetic
            assert session.abandoned_drivers == [stuck]
            assert session.status == "Hardware unavailable (timeout), using Demo (synthetic) | 1 channel(s)"
        finally:
            stuck.release.set()

    def test_late_result_of_stuck_driver_is_ignored(self, qtbot, make_session):
        """Test that an abandoned driver cannot report back"""
        stuck = BlockingDriver()
        session = make_session(stuck, init_timeout_ms=100)
        initialized(qtbot, session)
        finished = []
        session.initialization_finished.connect(finished.append)
        stuck.release.set()
        qtbot.wait(200)
        assert finished == []
        assert session.driver.is_synthetic

    def test_port_list_refresh(self, qtbot, make_session):
        """Test port list updates"""
        driver = FakeHardwareDriver()
        session = make_session(driver)
        initialized(qtbot, session)
        driver.channels.append(ChannelInfo("HW Channel 2"))
        with qtbot.waitSignal(session.channels_changed, timeout=3000):
            session.check_port_health()
        assert len(session.channels) == 2
        assert session.status == "Fake HW | 2 channel(s) available"


class TestConnection:
    """Test connecting and disconnecting"""

    def test_connect_uses_first_enabled_slot(self, qtbot, make_session):
        """Test connection settings from the first enabled slot"""
        driver = FakeHardwareDriver()
        session = make_session(driver)
        initialized(qtbot, session)
        session.settings.slots[0].bitrate = 250_000
        result = session.connect_channels()
        assert result.value.name == "HW Channel 1"
        assert driver.config.bitrate == 250_000 and driver.config.listen_only
        assert session.state is SessionState.CONNECTED
        assert session.status == "Connected: HW Channel 1 | 250k | listen-only | press Start to measure"

    def test_connect_toggles(self, qtbot, make_session):
        """Test connect toggling"""
        session = make_session()
        session.connect_channels()
        assert session.is_connected
        session.connect_channels()
        assert not session.is_connected
        assert session.status == "Disconnected"

    def test_defaults_without_enabled_slot(self, qtbot, make_session):
        """Test default settings without an enabled slot"""
        session = make_session()
        session.settings.slots[0].enabled = False
        statuses = []
        session.status_changed.connect(statuses.append)
        session.connect_channels()
        assert "Using defaults: Demo (synthetic) | 500 kbit/s | listen-only" in statuses

    def test_no_channels(self, qtbot, make_session):
        """Test connecting with no channels"""
        driver = FakeHardwareDriver()
        driver.channels = []
        session = make_session(driver)
        initialized(qtbot, session)
        assert session.connect_channels().error == "No CAN channels available"

    def test_fatal_driver_error_disconnects(self, qtbot, make_session):
        """Test auto-disconnect on fatal errors"""
        driver = FakeHardwareDriver()
        session = make_session(driver)
        initialized(qtbot, session)
        measuring(session)
        with qtbot.waitSignal(session.connected_changed, timeout=3000):
            driver.error_occurred.emit("xlReceive: HW_NOT_PRESENT")
        assert not session.is_connected and not session.is_measuring
        assert session.status == "CAN hardware removed, port closed"

    def test_lost_port_disconnects(self, qtbot, make_session):
        """Test auto-disconnect when the port disappears"""
        driver = FakeHardwareDriver()
        session = make_session(driver)
        initialized(qtbot, session)
        session.connect_channels()
        driver.opened = False
        session.check_port_health()
        assert not session.is_connected
        assert session.status == "CAN hardware port lost, disconnected"


class TestMeasurement:
    """Test measurement control"""

    def test_start_connects_and_captures(self, qtbot, make_session):
        """Test live capture"""
        session = make_session()
        assert session.start_measurement()
        assert session.is_connected and session.is_measuring
        qtbot.waitUntil(lambda: session.trace.frame_count() > 0, timeout=3000)

    def test_pending_frames_flush_as_one_insert(self, qtbot, make_session):
        """Test batched trace inserts"""
        session = make_session()
        driver = measuring(session)
        inserts = []
        session.trace.rowsInserted.connect(lambda parent, first, last: inserts.append((first, last)))
        for i in range(5):
            driver.frame_received.emit(make_frame(0x100 + i))
        assert session.pending_count == 5
        session.flush_pending()
        assert inserts == [(0, 4)]
        assert session.pending_count == 0

    def test_pause_queues_and_resume_flushes(self, qtbot, make_session):
        """Test pause and resume"""
        session = make_session()
        driver = measuring(session)
        session.pause_measurement()
        assert session.state is SessionState.PAUSED
        for i in range(3):
            driver.frame_received.emit(make_frame(0x200 + i))
        session.flush_pending()
        assert session.trace.frame_count() == 0
        session.pause_measurement()
        assert session.state is SessionState.MEASURING
        assert session.trace.frame_count() == 3

    def test_stop_drops_pending_and_ignores_later_frames(self, qtbot, make_session):
        """Test stopping a measurement"""
        session = make_session()
        driver = measuring(session)
        driver.frame_received.emit(make_frame())
        session.stop_measurement()
        driver.frame_received.emit(make_frame())
        assert session.pending_count == 0
        assert session.trace.frame_count() == 0
        assert session.state is SessionState.CONNECTED
        assert session.status == "Stopped, 0 frames captured"

    def test_frames_decode_with_loaded_database(self, qtbot, make_session, dbc_file):
        """Test decoding during capture"""
        session = make_session()
        session.load_dbc(dbc_file)
        driver = measuring(session)
        driver.frame_received.emit(make_frame(0x0C4, bytes([0xA0, 0x0F, 0x00, 0x01])))
        session.flush_pending()
        entry = session.trace.entry(0)
        assert entry.name == "EngineData"
        assert [s.name for s in entry.signals] == ["EngineSpeed", "CoolantTemp", "Running"]

    def test_in_place_display(self, qtbot, make_session):
        """Test in-place display mode"""
        session = make_session()
        driver = measuring(session)
        session.set_in_place_display(True)
        for _ in range(3):
            driver.frame_received.emit(make_frame(0x0C4))
        session.flush_pending()
        assert session.trace.display_mode is DisplayMode.IN_PLACE
        assert session.trace.frame_count() == 1
        assert session.settings.in_place_display

    def test_filter_text_reaches_proxy(self, qtbot, make_session):
        """Test the trace filter"""
        session = make_session()
        driver = measuring(session)
        driver.frame_received.emit(make_frame(0x0C4))
        driver.frame_received.emit(make_frame(0x7DF))
        session.flush_pending()
        session.set_filter_text("7DF")
        assert session.filter_model.rowCount() == 1


class TestTransmit:
    """Test sending frames"""

    def test_requires_connection(self, qtbot, make_session):
        """Test sending without a connection"""
        session = make_session()
        assert session.send_frame(0x123, "01").error == "Not connected, cannot send"

    def test_rejects_bad_input(self, qtbot, make_session):
        """Test input validation"""
        session = make_session()
        session.connect_channels()
        assert session.send_frame(0x800, "01").error == "Invalid CAN ID: 0x800"
        assert session.send_frame(0x800, "01", extended=True)
        assert session.send_frame(0x123, "01 QQ").error.startswith("Invalid data:")

    def test_echo_enters_trace(self, qtbot, make_session):
        """Test that the echo reaches the trace"""
        session = make_session()
        measuring(session)
        result = session.send_frame(0x123, "01 02 0a")
        assert result.value == Frame.from_payload(0x123, b"\x01\x02\x0a")
        session.flush_pending()
        entry = session.trace.entry(0)
        assert entry.direction == "Tx"
        assert entry.data == "01 02 0A"

    def test_transmit_failure(self, qtbot, make_session):
        """Test reporting a driver transmit error"""
        driver = FakeHardwareDriver()
        driver.tx_error = "TX queue full"
        session = make_session(driver)
        initialized(qtbot, session)
        session.connect_channels()
        assert session.send_frame(0x123, "01").error == "TX failed: TX queue full"


class TestDatabases:
    """Test database handling"""

    def test_slot_database(self, qtbot, make_session, dbc_file):
        """Test per-slot databases"""
        session = make_session()
        result = session.preload_slot_dbc(0, dbc_file)
        assert result.value == "vehicle.dbc  |  3 msg  |  8 sig"
        session.rebuild_merged_dbc()
        assert session.database.source_info == "CH1: vehicle.dbc  [3 msg, 8 sig total]"

    def test_global_database_is_merged_last(self, qtbot, make_session, dbc_file):
        """Test global database precedence"""
        session = make_session()
        session.preload_slot_dbc(0, dbc_file)
        with qtbot.waitSignal(session.dbc_changed):
            session.load_dbc(dbc_file)
        assert session.database.source_info == "CH1: vehicle.dbc | vehicle.dbc  [6 msg, 16 sig total]"
        session.rebuild_merged_dbc()
        assert session.database.message_by_id(0x0C4).name == "EngineData"

    def test_disabled_slot_is_ignored(self, qtbot, make_session, dbc_file):
        """Test that disabled slots load nothing"""
        session = make_session()
        session.preload_slot_dbc(1, dbc_file)
        session.rebuild_merged_dbc()
        assert session.database.is_empty()

    def test_missing_database(self, qtbot, make_session, tmp_path):
        """Test loading a missing database"""
        session = make_session()
        result = session.load_dbc(tmp_path / "missing.dbc")
        assert result.error.startswith("DBC file not found")

    def test_apply_settings(self, qtbot, make_session):
        """Test applying new settings"""
        session = make_session()
        settings = SessionSettings(in_place_display=True, trace_capacity=10)
        session.apply_settings(settings)
        assert session.trace.display_mode is DisplayMode.IN_PLACE
        assert session.trace.capacity == 10
        assert session.status == "Channel configuration applied"
        with pytest.raises(ConfigError):
            session.apply_settings(SessionSettings(flush_interval_ms=0))


class TestTraceFiles:
    """Test trace import, export and clear"""

    def write_asc(self, tmp_path, name="trace.asc"):
        path = tmp_path / name
        save_asc(path, [make_frame(0x0C4, b"\x01", timestamp=1_000), make_frame(0x7DF, b"\x02", timestamp=2_000)])
        return path

    def test_import_replaces_and_append_adds(self, qtbot, make_session, tmp_path):
        """Test import replace and append modes"""
        session = make_session()
        path = self.write_asc(tmp_path)
        assert session.import_trace(path).value == 2
        assert session.status == "Offline trace loaded: trace.asc (2 frames)"
        session.import_trace(path, append=True)
        assert session.trace.frame_count() == 4
        assert session.status == "Offline trace appended: trace.asc (2 frames)"
        session.import_trace(path)
        assert session.trace.frame_count() == 2

    def test_import_stops_measurement(self, qtbot, make_session, tmp_path):
        """Test that importing stops capture"""
        session = make_session()
        measuring(session)
        session.import_trace(self.write_asc(tmp_path))
        assert not session.is_measuring
        assert session.is_connected

    def test_import_errors(self, qtbot, make_session, tmp_path):
        """Test import error reporting"""
        session = make_session()
        assert session.import_trace(tmp_path / "nope.asc").error.startswith("Trace file not found")
        bad = tmp_path / "bad.asc"
        bad.write_text("nothing here\n")
        assert session.import_trace(bad).error == "No CAN frames found in ASC file: bad.asc"
        assert session.status.startswith("Import failed")

    def test_save(self, qtbot, make_session, tmp_path):
        """Test saving the trace"""
        session = make_session()
        session.import_trace(self.write_asc(tmp_path))
        out = tmp_path / "out.blf"
        assert session.save_trace(out).value == 2
        assert session.status == "Trace saved: out.blf  (2 frames)  [BLF]"
        session.import_trace(out)
        assert session.trace.frame_count() == 2

    def test_clear(self, qtbot, make_session, tmp_path):
        """Test clearing the trace"""
        session = make_session()
        session.import_trace(self.write_asc(tmp_path))
        with qtbot.waitSignal(session.frame_count_changed) as blocker:
            session.clear_trace()
        assert blocker.args == [0]
        assert session.trace.frame_count() == 0
