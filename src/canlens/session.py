"""
Bus session controller: owns the active driver, the pending frame queue and
the trace store, and drives them through the measurement state machine.

Everything here runs on the thread that owns the controller (the Qt main
thread). Driver initialization and port re-detection run on short-lived
worker threads whose results come back through queued signals.
"""

import enum
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from PySide6.QtCore import QObject, Qt, QTimer, Signal

from canlens.config import SessionSettings
from canlens.database import EMPTY_DATABASE, MessageDatabase, load_database
from canlens.drivers.base import CanDriver
from canlens.drivers.synthetic import SyntheticDriver
from canlens.drivers.vector import default_driver_factory
from canlens.errors import DatabaseError, TraceFormatError
from canlens.frame import (
    CLASSIC_MAX_PAYLOAD,
    EXTENDED_ID_MASK,
    BusConfig,
    ChannelInfo,
    Frame,
    Result,
)
from canlens.trace import interchange
from canlens.trace.entry import build_entry
from canlens.trace.proxy import TraceFilterProxy
from canlens.trace.store import DisplayMode, TraceStore

logger = logging.getLogger(__name__)

RATE_INTERVAL_MS = 1000
FATAL_HW_ERRORS = ("HW_NOT_PRESENT", "HW_NOT_READY", "CANNOT_OPEN_DRIVER")


class SessionState(enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    CONNECTED = "connected"
    MEASURING = "measuring"
    PAUSED = "paused"


def format_bitrate(config: BusConfig) -> str:
    if config.fd_enabled:
        return f"{config.bitrate // 1000}k / {config.fd_data_bitrate // 1000}k FD"
    return f"{config.bitrate // 1000}k"


def parse_hex_bytes(text: str, limit: int = CLASSIC_MAX_PAYLOAD) -> bytes:
    """Whitespace separated hex tokens; raises ValueError on a bad token."""
    payload = bytearray()
    for token in text.split()[:limit]:
        value = int(token, 16)
        if not 0 <= value <= 0xFF:
            raise ValueError(f"byte out of range: {token}")
        payload.append(value)
    return bytes(payload)


def _same_channels(a: Sequence[ChannelInfo], b: Sequence[ChannelInfo]) -> bool:
    if len(a) != len(b):
        return False
    return all(x.name == y.name and x.serial_number == y.serial_number for x, y in zip(a, b))


class BusSessionController(QObject):
    status_changed = Signal(str)
    state_changed = Signal(object)  # SessionState
    connected_changed = Signal(bool)
    measuring_changed = Signal(bool)
    paused_changed = Signal(bool)
    channels_changed = Signal(object)  # Tuple[ChannelInfo, ...]
    frame_rate_changed = Signal(int)
    frame_count_changed = Signal(int)
    driver_changed = Signal(str)
    dbc_changed = Signal(str)
    error_occurred = Signal(str)
    initialization_finished = Signal(bool)

    # worker thread -> controller thread
    _init_result = Signal(object, bool, object)
    _ports_detected = Signal(object)

    def __init__(
        self,
        settings: Optional[SessionSettings] = None,
        driver_factory: Callable[[], CanDriver] = default_driver_factory,
        parent=None,
    ):
        super().__init__(parent)
        self.settings = settings or SessionSettings()
        self._driver_factory = driver_factory
        self._driver: Optional[CanDriver] = None
        # Drivers abandoned by the init watchdog. Never shut down or released:
        # their init thread may still be blocked inside a native call.
        self._abandoned_drivers: List[CanDriver] = []

        self._state = SessionState.IDLE
        self._status = ""
        self._connected = False
        self._measuring = False
        self._paused = False
        self._init_complete = False
        self._port_checking = False

        self._channels: Tuple[ChannelInfo, ...] = ()
        self._connected_channel: Optional[ChannelInfo] = None
        self._pending: List[Frame] = []
        self._frames_since_tick = 0
        self._frame_rate = 0

        self._slot_dbs: Dict[int, MessageDatabase] = {}
        self._global_db: Optional[MessageDatabase] = None
        self._db: MessageDatabase = EMPTY_DATABASE

        self.trace = TraceStore(self.settings.trace_capacity, self.settings.purge_chunk, self)
        self.filter_model = TraceFilterProxy(self)
        self.filter_model.setSourceModel(self.trace)
        if self.settings.in_place_display:
            self.trace.set_display_mode(DisplayMode.IN_PLACE)

        self._init_thread: Optional[threading.Thread] = None
        self._init_cancel: Optional[threading.Event] = None
        self._watchdog = QTimer(self)
        self._watchdog.setSingleShot(True)
        self._watchdog.timeout.connect(self._on_init_timeout)

        self._flush_timer = QTimer(self)
        self._flush_timer.setInterval(self.settings.flush_interval_ms)
        self._flush_timer.timeout.connect(self.flush_pending)

        self._rate_timer = QTimer(self)
        self._rate_timer.setInterval(RATE_INTERVAL_MS)
        self._rate_timer.timeout.connect(self._update_frame_rate)

        self._port_timer = QTimer(self)
        self._port_timer.setInterval(self.settings.port_check_interval_ms)
        self._port_timer.timeout.connect(self.check_port_health)

        self._init_result.connect(self._on_init_result, Qt.QueuedConnection)
        self._ports_detected.connect(self._on_ports_detected, Qt.QueuedConnection)

    # --- Properties ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return self._status

    @property
    def driver(self) -> Optional[CanDriver]:
        return self._driver

    @property
    def driver_name(self) -> str:
        return self._driver.name if self._driver is not None else "None"

    @property
    def abandoned_drivers(self) -> List[CanDriver]:
        return list(self._abandoned_drivers)

    @property
    def channels(self) -> Tuple[ChannelInfo, ...]:
        return self._channels

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_measuring(self) -> bool:
        return self._measuring

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def frame_rate(self) -> int:
        return self._frame_rate

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def database(self) -> MessageDatabase:
        return self._db

    @property
    def init_complete(self) -> bool:
        return self._init_complete

    # --- Helpers ---

    def _set_status(self, text: str):
        if text == self._status:
            return
        self._status = text
        logger.info("%s", text)
        self.status_changed.emit(text)

    def _set_state(self, state: SessionState):
        if state is self._state:
            return
        logger.debug("Session state %s -> %s", self._state.value, state.value)
        self._state = state
        self.state_changed.emit(state)

    def _report(self, message: str) -> Result:
        self._set_status(message)
        self.error_occurred.emit(message)
        return Result.failure(message)

    # --- Driver Wiring ---

    def _attach_driver(self, driver: CanDriver):
        driver.frame_received.connect(self._on_frame_received)
        # Drivers emit errors while holding their own lock
        driver.error_occurred.connect(self._on_driver_error, Qt.QueuedConnection)
        self._driver = driver

    def _detach_driver(self, driver: CanDriver):
        driver.frame_received.disconnect(self._on_frame_received)
        driver.error_occurred.disconnect(self._on_driver_error)

    def _install_synthetic(self) -> CanDriver:
        driver = SyntheticDriver(self)
        driver.set_simulation_database(self._db)
        self._attach_driver(driver)
        return driver

    def _select_driver(self) -> CanDriver:
        driver = self._driver_factory()
        if driver.is_available():
            logger.info("Using %s", driver.name)
            self._attach_driver(driver)
            return driver
        logger.info("%s not available, using synthetic driver", driver.name)
        return self._install_synthetic()

    # --- Initialization ---

    def start_initialization(self):
        """Load configured databases, then initialize and detect in the background."""
        if self._init_thread is not None and self._init_thread.is_alive():
            logger.debug("Initialization already in progress")
            return
        self._set_state(SessionState.INITIALIZING)
        self.rebuild_merged_dbc()

        if self._driver is None:
            self._select_driver()
            self.driver_changed.emit(self.driver_name)
        driver = self._driver

        if driver.is_synthetic:
            result = driver.initialize()
            channels = tuple(driver.detect_channels()) if result.ok else ()
            self._apply_init_result(result.ok, channels)
            return

        self._set_status("Initializing driver...")
        cancel = threading.Event()

        def run():
            result = driver.initialize()
            if cancel.is_set():
                return
            channels = tuple(driver.detect_channels()) if result.ok else ()
            if cancel.is_set():
                return
            self._init_result.emit(cancel, result.ok, channels)

        self._init_cancel = cancel
        self._init_thread = threading.Thread(target=run, name="canlens-init", daemon=True)
        self._init_thread.start()
        self._watchdog.start(self.settings.init_timeout_ms)

    def _on_init_result(self, cancel: threading.Event, ok: bool, channels: tuple):
        if cancel.is_set():
            return
        self._watchdog.stop()
        self._init_thread = None
        self._init_cancel = None
        self._apply_init_result(ok, channels)

    def _on_init_timeout(self):
        thread, cancel = self._init_thread, self._init_cancel
        if thread is None or cancel is None or not thread.is_alive():
            return

        logger.warning(
            "%s initialization timed out after %d ms, falling back to synthetic driver",
            self.driver_name,
            self.settings.init_timeout_ms,
        )
        cancel.set()
        stuck = self._driver
        self._detach_driver(stuck)
        stuck.setParent(None)
        self._abandoned_drivers.append(stuck)
        self._init_thread = None
        self._init_cancel = None

        driver = self._install_synthetic()
        driver.initialize()
        self._apply_init_result(True, tuple(driver.detect_channels()))
        self._set_status(
            f"Hardware unavailable (timeout), using {driver.name} | "
            f"{len(self._channels)} channel(s)"
        )
        self.driver_changed.emit(self.driver_name)

    def _apply_init_result(self, ok: bool, channels: tuple):
        if not ok:
            self._set_state(SessionState.IDLE)
            self._report(f"Driver init failed: {self._driver.last_error()}")
            self.initialization_finished.emit(False)
            return

        self._set_channels(channels)
        self.driver_changed.emit(self.driver_name)
        if channels:
            self._set_status(f"{self.driver_name} | {len(channels)} channel(s) available")
        else:
            self._set_status("No CAN channels found, connect hardware or use the synthetic driver")
        self._set_state(SessionState.READY)

        if not self._init_complete:
            self._init_complete = True
            self._port_timer.start()
        self.initialization_finished.emit(True)

    def _set_channels(self, channels: Tuple[ChannelInfo, ...]):
        self._channels = tuple(channels)
        self.channels_changed.emit(self._channels)

    # --- Port Health ---

    def check_port_health(self):
        if self._port_checking or self._driver is None:
            return

        if not self._connected:
            if self._driver.is_synthetic:
                return
            if self._init_thread is not None and self._init_thread.is_alive():
                return
            self._port_checking = True
            driver = self._driver

            def run():
                self._ports_detected.emit(tuple(driver.detect_channels()))

            threading.Thread(target=run, name="canlens-ports", daemon=True).start()
            return

        if not self._driver.is_synthetic and not self._driver.is_open():
            logger.warning("Health check: port closed unexpectedly")
            self._force_disconnect()
            self._set_status("CAN hardware port lost, disconnected")
            self.error_occurred.emit("CAN hardware was disconnected while in use")

    def _on_ports_detected(self, channels: tuple):
        self._port_checking = False
        if _same_channels(channels, self._channels):
            return
        self._set_channels(channels)
        if channels:
            self._set_status(f"{self.driver_name} | {len(channels)} channel(s) available")
        else:
            self._set_status("No CAN hardware found, connect a device")
        logger.info("Port list updated: %d channel(s)", len(channels))

    def _force_disconnect(self):
        """Reset connection state without calling into a driver whose port is gone."""
        self._stop_timers()
        self._pending.clear()
        was_measuring = self._measuring
        self._measuring = False
        self._paused = False
        self._connected = False
        self._connected_channel = None
        if was_measuring:
            self.measuring_changed.emit(False)
            self.paused_changed.emit(False)
        self.connected_changed.emit(False)
        self._set_state(SessionState.READY)

    def _on_driver_error(self, message: str):
        if self._connected and self._driver is not None and not self._driver.is_synthetic:
            if any(code in message for code in FATAL_HW_ERRORS):
                logger.warning("Fatal hardware error, disconnecting: %s", message)
                self.disconnect_channels()
                self._set_status("CAN hardware removed, port closed")
        self.error_occurred.emit(message)

    # --- Connection ---

    def _bus_settings(self) -> Tuple[BusConfig, int, bool]:
        for slot in self.settings.slots:
            if slot.enabled:
                index = max(slot.hw_channel_index, 0)
                return slot.bus_config(self.settings.listen_only), index, True
        return BusConfig(listen_only=self.settings.listen_only), 0, False

    def connect_channels(self) -> Result:
        """Open the first enabled slot's channel; disconnects when already connected."""
        if self._connected:
            self.disconnect_channels()
            return Result.success()
        if self._init_thread is not None and self._init_thread.is_alive():
            return self._report("Driver initialization still in progress")
        if self._driver is None:
            self._select_driver()
            self.driver_changed.emit(self.driver_name)

        result = self._driver.initialize()
        if not result:
            return self._report(f"Driver init failed: {self._driver.last_error()}")

        config, index, configured = self._bus_settings()
        if not configured:
            self._set_status(f"Using defaults: {self.driver_name} | 500 kbit/s | listen-only")

        if not self._channels and self._driver.is_synthetic:
            self._set_channels(tuple(self._driver.detect_channels()))
        if not self._channels:
            return self._report("No CAN channels available")

        channel = self._channels[min(max(index, 0), len(self._channels) - 1)]
        self.rebuild_merged_dbc()
        if isinstance(self._driver, SyntheticDriver):
            self._driver.set_simulation_database(self._db)

        result = self._driver.open_channel(channel, config)
        if not result:
            self._set_status(f"Connect failed: {result.error}")
            self.error_occurred.emit(result.error)
            return result

        self._connected = True
        self._connected_channel = channel
        self.connected_changed.emit(True)
        self._set_state(SessionState.CONNECTED)
        self._driver.start_async_receive()

        mode = "listen-only" if config.listen_only else "normal"
        self._set_status(
            f"Connected: {channel.name} | {format_bitrate(config)} | {mode} | press Start to measure"
        )
        return Result.success(channel)

    def disconnect_channels(self):
        if not self._connected:
            return
        if self._measuring:
            self.stop_measurement()
        self._driver.stop_async_receive()
        self._driver.close_channel()

        self._connected = False
        self._connected_channel = None
        self._paused = False
        self.connected_changed.emit(False)
        self.paused_changed.emit(False)
        self._set_state(SessionState.READY)
        self._set_status("Disconnected")

    # --- Measurement ---

    def _stop_timers(self):
        self._flush_timer.stop()
        self._rate_timer.stop()

    def start_measurement(self) -> Result:
        """Start capturing; stops when already measuring. Connects first if needed."""
        if self._measuring:
            self.stop_measurement()
            return Result.success()
        if not self._connected:
            result = self.connect_channels()
            if not self._connected:
                return result if not result else Result.failure("Not connected")

        self._measuring = True
        self._paused = False
        self._pending.clear()
        self._frames_since_tick = 0
        self._flush_timer.start()
        self._rate_timer.start()

        self.measuring_changed.emit(True)
        self.paused_changed.emit(False)
        self._set_state(SessionState.MEASURING)
        self._set_status("Measuring, capturing CAN frames...")
        return Result.success()

    def stop_measurement(self):
        if not self._measuring:
            return
        self._stop_timers()
        self._pending.clear()
        self._measuring = False
        self._paused = False
        self._frame_rate = 0

        self.measuring_changed.emit(False)
        self.paused_changed.emit(False)
        self.frame_rate_changed.emit(0)
        self._set_state(SessionState.CONNECTED if self._connected else SessionState.READY)
        self._set_status(f"Stopped, {self.trace.frame_count()} frames captured")

    def pause_measurement(self):
        """Toggle pause. Paused frames queue up and are flushed in one batch on resume."""
        if not self._measuring:
            return
        self._paused = not self._paused
        self.paused_changed.emit(self._paused)
        if self._paused:
            self._set_state(SessionState.PAUSED)
            self._set_status("Measurement paused, frames queuing")
        else:
            self._set_state(SessionState.MEASURING)
            self.flush_pending()
            self._set_status("Measurement resumed")

    def _on_frame_received(self, frame: Frame):
        if not self._measuring:
            return
        self._pending.append(frame)
        self._frames_since_tick += 1

    def flush_pending(self):
        """Decode the whole pending batch and hand it to the trace in one insert."""
        if self._paused or not self._pending:
            return
        batch, self._pending = self._pending, []
        db = self._db
        self.trace.add_entries([build_entry(frame, db) for frame in batch])
        self.frame_count_changed.emit(self.trace.frame_count())

    def _update_frame_rate(self):
        self._frame_rate = self._frames_since_tick
        self._frames_since_tick = 0
        self.frame_rate_changed.emit(self._frame_rate)
        self._set_status(
            f"Measuring: {self._frame_rate} fps  |  {self.trace.frame_count()} frames total"
        )

    # --- Display ---

    def set_in_place_display(self, enabled: bool):
        self.settings.in_place_display = enabled
        if (self.trace.display_mode is DisplayMode.IN_PLACE) == enabled:
            return
        before = self.trace.frame_count()
        self.trace.set_display_mode(DisplayMode.IN_PLACE if enabled else DisplayMode.APPEND)
        if self.trace.frame_count() != before:
            self.frame_count_changed.emit(self.trace.frame_count())
        self._set_status(
            "Display mode: In-Place (latest value per frame)"
            if enabled
            else "Display mode: Append (every frame as new row)"
        )

    def set_filter_text(self, text: str):
        self.filter_model.set_filter_text(text)

    # --- Settings And Databases ---

    def apply_settings(self, settings: SessionSettings):
        settings.validate()
        self.settings = settings
        self._flush_timer.setInterval(settings.flush_interval_ms)
        self._port_timer.setInterval(settings.port_check_interval_ms)
        self.trace.capacity = settings.trace_capacity
        self.trace.purge_chunk = settings.purge_chunk
        self._slot_dbs.clear()
        self.set_in_place_display(settings.in_place_display)
        self.rebuild_merged_dbc()
        if self._connected and isinstance(self._driver, SyntheticDriver):
            self._driver.set_simulation_database(self._db)
        self._set_status("Channel configuration applied")

    def preload_slot_dbc(self, index: int, path) -> Result:
        """Parse a slot's database now and return its info string."""
        slot = self.settings.slot(index)
        try:
            db = load_database(path)
        except DatabaseError as e:
            return self._report(str(e))
        slot.dbc_path = Path(path)
        self._slot_dbs[index] = db
        return Result.success(db.source_info)

    def rebuild_merged_dbc(self):
        """Merge enabled slots' databases, plus a global database loaded last."""
        parts = []
        databases = []
        for index, slot in enumerate(self.settings.slots):
            if not slot.enabled or slot.dbc_path is None:
                continue
            db = self._slot_dbs.get(index)
            if db is None:
                try:
                    db = load_database(slot.dbc_path)
                except DatabaseError as e:
                    logger.warning("%s: %s", slot.alias, e)
                    self.error_occurred.emit(str(e))
                    continue
                self._slot_dbs[index] = db
            if db.is_empty():
                continue
            databases.append(db)
            parts.append(f"{slot.alias}: {slot.dbc_path.name}")

        if self._global_db is not None and not self._global_db.is_empty():
            databases.append(self._global_db)
            parts.append(self._global_db.source_info.split("  |  ")[0])

        if not databases:
            self._set_database(EMPTY_DATABASE)
            return
        messages = sum(len(db.messages) for db in databases)
        signals = sum(db.total_signal_count() for db in databases)
        info = " | ".join(parts) + f"  [{messages} msg, {signals} sig total]"
        self._set_database(MessageDatabase.merged(databases, info))

    def _set_database(self, db: MessageDatabase):
        changed = db.source_info != self._db.source_info
        self._db = db
        if changed:
            logger.info("Decode database: %s", db.source_info or "none")
            self.dbc_changed.emit(db.source_info)

    def load_dbc(self, path) -> Result:
        try:
            db = load_database(path)
        except DatabaseError as e:
            return self._report(str(e))
        self._global_db = db
        self.rebuild_merged_dbc()
        if isinstance(self._driver, SyntheticDriver):
            self._driver.set_simulation_database(self._db)
        self._set_status(f"DBC loaded: {db.source_info}")
        return Result.success(db.source_info)

    # --- Trace Files ---

    def clear_trace(self):
        self.trace.clear()
        self.frame_count_changed.emit(0)
        self._set_status("Trace cleared")

    def import_trace(self, path, append: bool = False) -> Result:
        path = Path(path)
        if not path.exists():
            return self._report(f"Trace file not found: {path}")
        try:
            frames = interchange.import_trace(path)
        except TraceFormatError as e:
            self._set_status(f"Import failed: {e}")
            self.error_occurred.emit(str(e))
            return Result.failure(str(e))

        if self._measuring:
            self.stop_measurement()
        self._pending.clear()
        self._frames_since_tick = 0
        if self._frame_rate:
            self._frame_rate = 0
            self.frame_rate_changed.emit(0)

        if not append:
            self.trace.clear()
        db = self._db
        self.trace.add_entries([build_entry(frame, db) for frame in frames])
        self.frame_count_changed.emit(self.trace.frame_count())
        self._set_status(
            f"Offline trace {'appended' if append else 'loaded'}: {path.name} ({len(frames)} frames)"
        )
        return Result.success(len(frames))

    def save_trace(self, path) -> Result:
        path = Path(path)
        try:
            count = interchange.export_trace(path, self.trace.entries())
        except TraceFormatError as e:
            self._set_status(f"Save failed: {e}")
            self.error_occurred.emit(str(e))
            return Result.failure(str(e))
        ext = path.suffix.lstrip(".").upper() or "CSV"
        self._set_status(f"Trace saved: {path.name}  ({count} frames)  [{ext}]")
        return Result.success(count)

    # --- Transmit ---

    def send_frame(self, frame_id: int, hex_text: str, extended: bool = False) -> Result:
        if not self._connected:
            message = "Not connected, cannot send"
            self.error_occurred.emit(message)
            return Result.failure(message)
        if not 0 <= frame_id <= (EXTENDED_ID_MASK if extended else 0x7FF):
            message = f"Invalid CAN ID: 0x{frame_id:X}"
            self.error_occurred.emit(message)
            return Result.failure(message)
        try:
            payload = parse_hex_bytes(hex_text)
        except ValueError as e:
            message = f"Invalid data: {e}"
            self.error_occurred.emit(message)
            return Result.failure(message)

        frame = Frame.from_payload(frame_id, payload, extended=extended)
        result = self._driver.transmit(frame)
        if not result:
            message = f"TX failed: {result.error}"
            self.error_occurred.emit(message)
            return Result.failure(message)
        return Result.success(frame)

    # --- Teardown ---

    def shutdown(self):
        self._port_timer.stop()
        self._watchdog.stop()
        self.disconnect_channels()
        if self._driver is not None:
            self._driver.shutdown()
        logger.info("Session shut down")
