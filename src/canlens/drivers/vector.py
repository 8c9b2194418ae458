"""
Hardware driver for Vector interfaces through the vendor XL driver library.

The library is located and loaded at runtime with ctypes. Structure layouts and
constants come from python-can's Vector backend (``xlclass`` / ``xldefine``),
but the library is driven directly so that optional entry points can be
probed individually and recorded in a ``CapabilitySet``.
"""

import ctypes
import ctypes.util
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from can.interfaces.vector import xlclass, xldefine

from canlens.drivers.base import CanDriver
from canlens.frame import (
    BusConfig,
    ChannelInfo,
    EXTENDED_ID_MASK,
    Frame,
    Result,
    payload_length,
)

# Same wait strategy as python-can's Vector backend: kernel event where the
# platform has one, short polling everywhere else.
try:
    from _winapi import WaitForSingleObject

    HAS_EVENTS = True
except ImportError:
    WaitForSingleObject = None
    HAS_EVENTS = False

logger = logging.getLogger(__name__)

LIBRARY_CANDIDATES = ("vxlapi64", "vxlapi")
APP_NAME = b"canlens"
RX_QUEUE_SIZE = 256
RX_TIMEOUT_MS = 100
RX_JOIN_TIMEOUT_S = 3.0
POLL_INTERVAL_S = 0.01
INVALID_PORT = -1
WAIT_OBJECT_0 = 0x0
WAIT_TIMEOUT = 0x102

XL_SUCCESS = xldefine.XL_Status.XL_SUCCESS
XL_ERR_QUEUE_IS_EMPTY = xldefine.XL_Status.XL_ERR_QUEUE_IS_EMPTY
EXT_MSG_ID = xldefine.XL_MessageFlagsExtended.XL_CAN_EXT_MSG_ID

_S = xlclass.XLstatus
_PORT = xlclass.XLportHandle
_ACCESS = xlclass.XLaccess
_P = ctypes.POINTER

# name -> (restype, argtypes)
MANDATORY_FUNCTIONS = {
    "xlOpenDriver": (_S, []),
    "xlCloseDriver": (_S, []),
    "xlGetDriverConfig": (_S, [_P(xlclass.XLdriverConfig)]),
    "xlOpenPort": (
        _S,
        [_P(_PORT), ctypes.c_char_p, _ACCESS, _P(_ACCESS), ctypes.c_uint, ctypes.c_uint, ctypes.c_uint],
    ),
    "xlClosePort": (_S, [_PORT]),
    "xlActivateChannel": (_S, [_PORT, _ACCESS, ctypes.c_uint, ctypes.c_uint]),
    "xlDeactivateChannel": (_S, [_PORT, _ACCESS]),
    "xlCanSetChannelBitrate": (_S, [_PORT, _ACCESS, ctypes.c_ulong]),
    "xlCanSetChannelOutput": (_S, [_PORT, _ACCESS, ctypes.c_int]),
    "xlSetNotification": (_S, [_PORT, _P(xlclass.XLhandle), ctypes.c_int]),
    "xlFlushReceiveQueue": (_S, [_PORT]),
    "xlCanTransmit": (_S, [_PORT, _ACCESS, _P(ctypes.c_uint), ctypes.c_void_p]),
    "xlReceive": (_S, [_PORT, _P(ctypes.c_uint), _P(xlclass.XLevent)]),
}

OPTIONAL_FUNCTIONS = {
    "xlGetApplConfig": (
        _S,
        [ctypes.c_char_p, ctypes.c_uint, _P(ctypes.c_uint), _P(ctypes.c_uint), _P(ctypes.c_uint), ctypes.c_uint],
    ),
    "xlSetApplConfig": (
        _S,
        [ctypes.c_char_p, ctypes.c_uint, ctypes.c_uint, ctypes.c_uint, ctypes.c_uint, ctypes.c_uint],
    ),
    "xlGetChannelIndex": (ctypes.c_int, [ctypes.c_int, ctypes.c_int, ctypes.c_int]),
    "xlGetChannelMask": (_ACCESS, [ctypes.c_int, ctypes.c_int, ctypes.c_int]),
    "xlCanSetChannelMode": (_S, [_PORT, _ACCESS, ctypes.c_int, ctypes.c_int]),
    "xlCanFdSetConfiguration": (_S, [_PORT, _ACCESS, _P(xlclass.XLcanFdConf)]),
    "xlCanTransmitEx": (_S, [_PORT, _ACCESS, ctypes.c_uint, _P(ctypes.c_uint), _P(xlclass.XLcanTxEvent)]),
    "xlCanReceive": (_S, [_PORT, _P(xlclass.XLcanRxEvent)]),
    "xlGetErrorString": (ctypes.c_char_p, [_S]),
    "xlGetEventString": (ctypes.c_char_p, [_P(xlclass.XLevent)]),
}

_STATUS_NAMES = {
    status.value: status.name.replace("XL_ERR_", "").replace("XL_", "")
    for status in xldefine.XL_Status
}


def status_text(status: int) -> str:
    """Fixed name of an XL status code, or a generic text for unknown codes."""
    try:
        return _STATUS_NAMES[int(status)]
    except KeyError:
        return f"vendor error {int(status)}"


def hardware_type_name(hw_type: int) -> str:
    try:
        return xldefine.XL_HardwareType(hw_type).name.replace("XL_HWTYPE_", "")
    except ValueError:
        return f"HW_0x{hw_type:02X}"


@dataclass(frozen=True)
class CapabilitySet:
    """Optional library features, computed once when the library is loaded."""

    fd_config: bool = False
    extended_tx: bool = False
    extended_rx: bool = False
    channel_queries: bool = False
    appl_config: bool = False
    channel_mode: bool = False
    error_strings: bool = False
    event_strings: bool = False

    @classmethod
    def from_functions(cls, functions) -> "CapabilitySet":
        return cls(
            fd_config="xlCanFdSetConfiguration" in functions,
            extended_tx="xlCanTransmitEx" in functions,
            extended_rx="xlCanReceive" in functions,
            channel_queries="xlGetChannelIndex" in functions and "xlGetChannelMask" in functions,
            appl_config="xlGetApplConfig" in functions and "xlSetApplConfig" in functions,
            channel_mode="xlCanSetChannelMode" in functions,
            error_strings="xlGetErrorString" in functions,
            event_strings="xlGetEventString" in functions,
        )


def load_vendor_library(candidates=LIBRARY_CANDIDATES):
    """Load the first vendor library that can be found, or return None."""
    loader = getattr(ctypes, "WinDLL", ctypes.CDLL)
    for name in candidates:
        path = ctypes.util.find_library(name) or name
        try:
            return loader(path)
        except OSError:
            continue
    return None


# --- Event conversion ---


def frame_from_event(event) -> Frame:
    """Convert a classic ``XLevent`` receive event."""
    msg = event.tagData.msg
    flags = msg.flags
    dlc = min(msg.dlc, 8)
    return Frame(
        id=msg.id & EXTENDED_ID_MASK,
        data=bytes(msg.data)[:dlc],
        dlc=dlc,
        extended=bool(msg.id & EXT_MSG_ID),
        remote=bool(flags & xldefine.XL_MessageFlags.XL_CAN_MSG_FLAG_REMOTE_FRAME),
        error=bool(flags & xldefine.XL_MessageFlags.XL_CAN_MSG_FLAG_ERROR_FRAME),
        tx_echo=bool(flags & xldefine.XL_MessageFlags.XL_CAN_MSG_FLAG_TX_COMPLETED),
        channel=event.chanIndex + 1,
        timestamp=event.timeStamp,
    )


def frame_from_rx_event(event) -> Frame:
    """Convert an ``XLcanRxEvent`` (FD-capable receive path)."""
    msg = event.tagData.canRxOkMsg
    flags = msg.msgFlags
    rx_flags = xldefine.XL_CANFD_RX_MessageFlags
    fd = bool(flags & rx_flags.XL_CAN_RXMSG_FLAG_EDL)
    length = payload_length(msg.dlc, fd)
    return Frame(
        id=msg.canId & EXTENDED_ID_MASK,
        data=bytes(msg.data)[:length],
        dlc=msg.dlc,
        extended=bool(msg.canId & EXT_MSG_ID),
        fd=fd,
        brs=bool(flags & rx_flags.XL_CAN_RXMSG_FLAG_BRS),
        remote=bool(flags & rx_flags.XL_CAN_RXMSG_FLAG_RTR),
        error=bool(flags & rx_flags.XL_CAN_RXMSG_FLAG_EF),
        tx_echo=event.tag == xldefine.XL_CANFD_RX_EventTags.XL_CAN_EV_TAG_TX_OK,
        channel=event.chanIndex + 1,
        timestamp=event.timeStamp,
    )


def event_from_frame(frame: Frame):
    """Build a classic ``XLevent`` transmit request."""
    event = xlclass.XLevent()
    event.tag = xldefine.XL_EventTags.XL_TRANSMIT_MSG
    msg = event.tagData.msg
    msg.id = frame.id | (EXT_MSG_ID if frame.extended else 0)
    msg.dlc = min(frame.dlc, 8)
    if frame.remote:
        msg.flags |= xldefine.XL_MessageFlags.XL_CAN_MSG_FLAG_REMOTE_FRAME
    for i in range(msg.dlc):
        msg.data[i] = frame.data[i]
    return event


def tx_event_from_frame(frame: Frame):
    """Build an ``XLcanTxEvent`` for the extended (FD) transmit path."""
    tx_flags = xldefine.XL_CANFD_TX_MessageFlags
    event = xlclass.XLcanTxEvent()
    event.tag = xldefine.XL_CANFD_TX_EventTags.XL_CAN_EV_TAG_TX_MSG
    msg = event.tagData.canMsg
    msg.canId = frame.id | (EXT_MSG_ID if frame.extended else 0)
    flags = tx_flags.XL_CAN_TXMSG_FLAG_EDL
    if frame.brs:
        flags |= tx_flags.XL_CAN_TXMSG_FLAG_BRS
    if frame.remote:
        flags |= tx_flags.XL_CAN_TXMSG_FLAG_RTR
    msg.msgFlags = flags
    msg.dlc = frame.dlc
    for i in range(payload_length(frame.dlc)):
        msg.data[i] = frame.data[i]
    return event


class VectorDriver(CanDriver):
    name = "Vector XL"

    def __init__(self, library_loader: Optional[Callable] = None, parent=None):
        super().__init__(parent)
        self._loader = library_loader or load_vendor_library
        self._lock = threading.Lock()
        self._lib = None
        self._fn = {}
        self.capabilities = CapabilitySet()
        self._driver_open = False
        self._available: Optional[bool] = None

        self._port = _PORT(INVALID_PORT)
        self._channel_mask = 0
        self._permission_mask = 0
        self._notify_handle = xlclass.XLhandle()
        self._is_fd = False

        self._rx_thread: Optional[threading.Thread] = None
        self._rx_stop = threading.Event()

    # --- Library handling ---

    def _resolve_functions(self) -> Result:
        functions = {}
        missing = []
        for table, mandatory in ((MANDATORY_FUNCTIONS, True), (OPTIONAL_FUNCTIONS, False)):
            for fname, (restype, argtypes) in table.items():
                try:
                    func = getattr(self._lib, fname)
                except AttributeError:
                    if mandatory:
                        missing.append(fname)
                    continue
                func.restype = restype
                func.argtypes = argtypes
                functions[fname] = func

        if missing:
            return Result.failure("Missing entry points: " + ", ".join(missing))

        self._fn = functions
        self.capabilities = CapabilitySet.from_functions(functions)
        absent = sorted(set(OPTIONAL_FUNCTIONS) - set(functions))
        if absent:
            logger.warning("Vendor library lacks optional entry points: %s", ", ".join(absent))
        return Result.success()

    def _unload(self):
        self._fn = {}
        self._lib = None
        self.capabilities = CapabilitySet()

    def is_available(self) -> bool:
        if self._available is None:
            self._available = self._lib is not None or self._loader() is not None
        return self._available

    def initialize(self) -> Result:
        with self._lock:
            if self._driver_open:
                return Result.success()

            self._lib = self._loader()
            if self._lib is None:
                self._available = False
                self._last_error = "vxlapi64 not found, is the Vector driver installed?"
                return Result.failure(self._last_error)
            self._available = True

            resolved = self._resolve_functions()
            if not resolved:
                self._unload()
                self._last_error = resolved.error
                return resolved

            status = self._fn["xlOpenDriver"]()
            if status != XL_SUCCESS:
                self._unload()
                return self._fail("xlOpenDriver", self._status_string(status))

            self._driver_open = True
        logger.info("Vector driver opened (capabilities: %s)", self.capabilities)
        return Result.success()

    def shutdown(self) -> None:
        self.close_channel()
        with self._lock:
            if self._driver_open:
                self._fn["xlCloseDriver"]()
                self._driver_open = False
            self._unload()
        logger.info("Vector driver shut down")

    def _status_string(self, status: int) -> str:
        if self.capabilities.error_strings:
            text = self._fn["xlGetErrorString"](status)
            if text:
                return text.decode("latin-1") if isinstance(text, bytes) else str(text)
        return status_text(status)

    def driver_version(self) -> str:
        with self._lock:
            if not self._driver_open:
                return ""
            config = xlclass.XLdriverConfig()
            if self._fn["xlGetDriverConfig"](ctypes.byref(config)) != XL_SUCCESS:
                return ""
        v = config.dllVersion
        return f"{(v >> 24) & 0xFF}.{(v >> 16) & 0xFF}.{v & 0xFFFF}"

    # --- Channels ---

    def detect_channels(self) -> List[ChannelInfo]:
        with self._lock:
            if not self._driver_open:
                self._last_error = "Driver not initialized"
                return []
            config = xlclass.XLdriverConfig()
            status = self._fn["xlGetDriverConfig"](ctypes.byref(config))
            if status != XL_SUCCESS:
                self._last_error = f"xlGetDriverConfig: {self._status_string(status)}"
                logger.warning(self._last_error)
                return []

        fd_flags = (
            xldefine.XL_ChannelCapabilities.XL_CHANNEL_FLAG_CANFD_ISO_SUPPORT
            | xldefine.XL_ChannelCapabilities.XL_CHANNEL_FLAG_CANFD_BOSCH_SUPPORT
        )
        channels = []
        for i in range(min(config.channelCount, len(config.channel))):
            ch = config.channel[i]
            if not ch.channelBusCapabilities & xldefine.XL_BusCapabilities.XL_BUS_COMPATIBLE_CAN:
                continue
            channels.append(
                ChannelInfo(
                    name=ch.name.decode("latin-1"),
                    hw_type_name=hardware_type_name(ch.hwType),
                    hw_type=ch.hwType,
                    hw_index=ch.hwIndex,
                    hw_channel=ch.hwChannel,
                    channel_index=ch.channelIndex,
                    channel_mask=ch.channelMask,
                    serial_number=ch.serialNumber,
                    supports_fd=bool(ch.channelCapabilities & fd_flags),
                    is_on_bus=bool(ch.isOnBus),
                    transceiver_name=ch.transceiverName.decode("latin-1"),
                )
            )
        logger.info("Detected %d CAN channel(s) of %d", len(channels), config.channelCount)
        return channels

    def open_channel(self, info: ChannelInfo, config: BusConfig) -> Result:
        with self._lock:
            if not self._driver_open:
                return Result.failure("Driver not initialized")
            if self._port.value != INVALID_PORT:
                return Result.failure("Channel already open, close it first")

            self._is_fd = config.fd_enabled and info.supports_fd
            self._channel_mask = info.channel_mask
            permission = _ACCESS(info.channel_mask)
            if self._is_fd:
                version = xldefine.XL_InterfaceVersion.XL_INTERFACE_VERSION_V4
            else:
                version = xldefine.XL_InterfaceVersion.XL_INTERFACE_VERSION
            bus_type = xldefine.XL_BusTypes.XL_BUS_TYPE_CAN

            port = _PORT(INVALID_PORT)
            status = self._fn["xlOpenPort"](
                ctypes.byref(port),
                APP_NAME,
                self._channel_mask,
                ctypes.byref(permission),
                RX_QUEUE_SIZE,
                version,
                bus_type,
            )
            if status != XL_SUCCESS:
                return self._fail("xlOpenPort", self._status_string(status))
            self._port = port
            self._permission_mask = permission.value

            if self._permission_mask & self._channel_mask:
                self._configure_bus(config)
            else:
                logger.warning("No init access to %s, listen-only (another application owns it)", info.name)

            self._fn["xlSetNotification"](self._port, ctypes.byref(self._notify_handle), 1)

            status = self._fn["xlActivateChannel"](
                self._port,
                self._channel_mask,
                bus_type,
                xldefine.XL_AC_Flags.XL_ACTIVATE_RESET_CLOCK,
            )
            if status != XL_SUCCESS:
                self._fn["xlClosePort"](self._port)
                self._reset_port()
                return self._fail("xlActivateChannel", self._status_string(status))

            self._fn["xlFlushReceiveQueue"](self._port)

        logger.info("Channel %s open (FD: %s, bitrate: %d)", info.name, self._is_fd, config.bitrate)
        self.channel_opened.emit(info.name)
        return Result.success()

    def _configure_bus(self, config: BusConfig):
        if self._is_fd:
            if self.capabilities.fd_config:
                fd_conf = xlclass.XLcanFdConf()
                fd_conf.arbitrationBitRate = config.bitrate
                fd_conf.dataBitRate = config.fd_data_bitrate
                status = self._fn["xlCanFdSetConfiguration"](
                    self._port, self._channel_mask, ctypes.byref(fd_conf)
                )
                if status != XL_SUCCESS:
                    logger.warning(
                        "FD configuration rejected (%s), using classic CAN", self._status_string(status)
                    )
                    self._is_fd = False
            else:
                logger.warning("FD configuration not supported by the library, using classic CAN")
                self._is_fd = False

        if not self._is_fd:
            self._fn["xlCanSetChannelBitrate"](self._port, self._channel_mask, config.bitrate)

        mode = (
            xldefine.XL_OutputMode.XL_OUTPUT_MODE_SILENT
            if config.listen_only
            else xldefine.XL_OutputMode.XL_OUTPUT_MODE_NORMAL
        )
        self._fn["xlCanSetChannelOutput"](self._port, self._channel_mask, mode)

    def _reset_port(self):
        self._port = _PORT(INVALID_PORT)
        self._channel_mask = 0
        self._permission_mask = 0
        self._notify_handle = xlclass.XLhandle()
        self._is_fd = False

    def close_channel(self) -> None:
        self.stop_async_receive()
        with self._lock:
            if self._port.value == INVALID_PORT:
                return
            self._fn["xlDeactivateChannel"](self._port, self._channel_mask)
            self._fn["xlClosePort"](self._port)
            self._reset_port()
        logger.info("Channel closed")
        self.channel_closed.emit()

    def is_open(self) -> bool:
        with self._lock:
            return self._port.value != INVALID_PORT

    @property
    def fd_active(self) -> bool:
        return self._is_fd

    # --- Transmit ---

    def transmit(self, frame: Frame) -> Result:
        with self._lock:
            if self._port.value == INVALID_PORT:
                return Result.failure("Channel not open")
            if not self._permission_mask & self._channel_mask:
                return Result.failure("No TX access (listen-only)")
            if frame.fd and self._is_fd:
                return self._transmit_fd(frame)
            return self._transmit_classic(frame)

    def _transmit_classic(self, frame: Frame) -> Result:
        event = event_from_frame(frame)
        count = ctypes.c_uint(1)
        status = self._fn["xlCanTransmit"](
            self._port, self._channel_mask, ctypes.byref(count), ctypes.byref(event)
        )
        if status != XL_SUCCESS:
            return self._fail("xlCanTransmit", self._status_string(status))
        return Result.success()

    def _transmit_fd(self, frame: Frame) -> Result:
        if not self.capabilities.extended_tx:
            return Result.failure("FD transmit not available")
        event = tx_event_from_frame(frame)
        sent = ctypes.c_uint(0)
        status = self._fn["xlCanTransmitEx"](
            self._port, self._channel_mask, 1, ctypes.byref(sent), ctypes.byref(event)
        )
        if status != XL_SUCCESS:
            return self._fail("xlCanTransmitEx", self._status_string(status))
        if sent.value == 0:
            return Result.failure("TX queue full")
        return Result.success()

    # --- Receive ---

    def _wait(self, timeout_ms: int) -> Optional[str]:
        """Block until the library signals data. Runs without holding the lock."""
        handle = self._notify_handle.value
        if HAS_EVENTS and handle:
            result = WaitForSingleObject(handle, max(0, int(timeout_ms)))
            if result == WAIT_TIMEOUT:
                return "Timeout"
            if result != WAIT_OBJECT_0:
                return "Wait error"
        return None

    def receive(self, timeout_ms: int = RX_TIMEOUT_MS) -> Result:
        if not self.is_open():
            return Result.failure("Channel not open")

        wait_error = self._wait(timeout_ms)
        if wait_error:
            return Result.failure(wait_error)

        with self._lock:
            if self._port.value == INVALID_PORT:
                return Result.failure("Channel not open")
            if self._is_fd and self.capabilities.extended_rx:
                result = self._receive_fd()
            else:
                result = self._receive_classic()

        if not result and result.error == "Empty" and not HAS_EVENTS:
            time.sleep(min(POLL_INTERVAL_S, timeout_ms / 1000.0))
        return result

    def _receive_classic(self) -> Result:
        event = xlclass.XLevent()
        count = ctypes.c_uint(1)
        status = self._fn["xlReceive"](self._port, ctypes.byref(count), ctypes.byref(event))
        if status == XL_ERR_QUEUE_IS_EMPTY:
            return Result.failure("Empty")
        if status != XL_SUCCESS:
            return self._fail("xlReceive", self._status_string(status))
        if event.tag != xldefine.XL_EventTags.XL_RECEIVE_MSG:
            return Result.failure("Not a CAN msg event")
        return Result.success(frame_from_event(event))

    def _receive_fd(self) -> Result:
        event = xlclass.XLcanRxEvent()
        status = self._fn["xlCanReceive"](self._port, ctypes.byref(event))
        if status == XL_ERR_QUEUE_IS_EMPTY:
            return Result.failure("Empty")
        if status != XL_SUCCESS:
            return self._fail("xlCanReceive", self._status_string(status))
        tags = xldefine.XL_CANFD_RX_EventTags
        if event.tag not in (tags.XL_CAN_EV_TAG_RX_OK, tags.XL_CAN_EV_TAG_TX_OK):
            return Result.failure("Non-data FD event")
        return Result.success(frame_from_rx_event(event))

    def flush_receive_queue(self) -> Result:
        with self._lock:
            if self._port.value == INVALID_PORT:
                return Result.failure("Not open")
            status = self._fn["xlFlushReceiveQueue"](self._port)
            if status != XL_SUCCESS:
                return self._fail("xlFlushReceiveQueue", self._status_string(status))
        return Result.success()

    def start_async_receive(self) -> None:
        if self._rx_thread is not None and self._rx_thread.is_alive():
            return
        if not self.is_open():
            logger.warning("start_async_receive: channel not open")
            return
        self._rx_stop.clear()
        self._rx_thread = threading.Thread(target=self._receive_loop, name="canlens-rx", daemon=True)
        self._rx_thread.start()

    def stop_async_receive(self) -> None:
        thread = self._rx_thread
        if thread is None:
            return
        self._rx_stop.set()
        if thread is not threading.current_thread():
            thread.join(RX_JOIN_TIMEOUT_S)
            if thread.is_alive():
                logger.error("Receive worker did not stop within %.0f s", RX_JOIN_TIMEOUT_S)
        self._rx_thread = None

    def _receive_loop(self):
        logger.debug("Receive worker started")
        while not self._rx_stop.is_set():
            result = self.receive(RX_TIMEOUT_MS)
            if result:
                if not result.value.tx_echo:
                    self.frame_received.emit(result.value)
            elif result.error not in ("Empty", "Timeout", "Not a CAN msg event", "Non-data FD event"):
                # hardware errors repeat on every call until the session disconnects
                self._rx_stop.wait(RX_TIMEOUT_MS / 1000.0)
        logger.debug("Receive worker stopped")


def default_driver_factory() -> CanDriver:
    """Hardware driver used by the session when none is injected."""
    return VectorDriver()

