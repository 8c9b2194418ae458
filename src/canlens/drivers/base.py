"""
Common interface implemented by every bus driver.

Drivers are QObjects so that frames produced on a worker thread reach the
session controller through queued signal delivery, in production order.
"""

from typing import List

from PySide6.QtCore import QObject, Signal

from canlens.frame import BusConfig, ChannelInfo, Frame, Result


class CanDriver(QObject):
    frame_received = Signal(object)  # Frame
    error_occurred = Signal(str)
    channel_opened = Signal(str)
    channel_closed = Signal()

    name = "driver"
    is_synthetic = False

    def __init__(self, parent=None):
        super().__init__(parent)
        self._last_error = ""

    # --- Lifecycle ---

    def initialize(self) -> Result:
        raise NotImplementedError

    def shutdown(self) -> None:
        raise NotImplementedError

    def is_available(self) -> bool:
        raise NotImplementedError

    # --- Channels ---

    def detect_channels(self) -> List[ChannelInfo]:
        raise NotImplementedError

    def open_channel(self, info: ChannelInfo, config: BusConfig) -> Result:
        raise NotImplementedError

    def close_channel(self) -> None:
        raise NotImplementedError

    def is_open(self) -> bool:
        raise NotImplementedError

    # --- Traffic ---

    def transmit(self, frame: Frame) -> Result:
        raise NotImplementedError

    def receive(self, timeout_ms: int = 100) -> Result:
        raise NotImplementedError

    def flush_receive_queue(self) -> Result:
        raise NotImplementedError

    def start_async_receive(self) -> None:
        """Start delivering frames through ``frame_received``. No-op by default."""

    def stop_async_receive(self) -> None:
        pass

    def last_error(self) -> str:
        return self._last_error

    def _fail(self, context: str, detail: str = "") -> Result:
        """Record, announce and return a failure."""
        message = f"{context}: {detail}" if detail else context
        self._last_error = message
        self.error_occurred.emit(message)
        return Result.failure(message)
