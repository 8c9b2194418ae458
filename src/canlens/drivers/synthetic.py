"""
Synthetic driver producing realistic traffic without hardware.

With a message database it simulates up to eight of its messages; without one
it falls back to a fixed set of powertrain-like frames.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

from PySide6.QtCore import QElapsedTimer, Qt, QTimer

from canlens.database import Message, MessageDatabase, MuxRole, Signal
from canlens.drivers.base import CanDriver
from canlens.frame import BusConfig, ChannelInfo, Frame, Result

logger = logging.getLogger(__name__)

TICK_MS = 10
SIM_PERIODS = (1, 2, 5, 10, 20, 50, 100, 200)  # in ticks
MAX_SIM_MESSAGES = 8


@dataclass(frozen=True)
class SimulationPlan:
    message: Message
    period_ticks: int


def build_plans(db: Optional[MessageDatabase]) -> List[SimulationPlan]:
    """Pick the classic, signal-bearing messages to simulate, lowest id first."""
    if db is None or db.is_empty():
        return []
    candidates = [m for m in db.messages if 0 < m.length <= 8 and m.signals]
    candidates.sort(key=lambda m: (m.frame_id, m.name))
    return [
        SimulationPlan(msg, SIM_PERIODS[i % len(SIM_PERIODS)])
        for i, msg in enumerate(candidates[:MAX_SIM_MESSAGES])
    ]


def _clamp(value: float, signal: Signal) -> float:
    if signal.has_range:
        return min(max(value, signal.minimum), signal.maximum)
    return value


def simulate_values(
    plan: SimulationPlan, plan_index: int, tick: int, seconds: float
) -> Dict[str, float]:
    """Physical values for every signal of ``plan`` that is active on this tick."""
    message = plan.message
    period = max(1, plan.period_ticks)
    values: Dict[str, float] = {}

    selector = message.mux_selector()
    mux_raw_values: List[int] = []
    for sig in message.signals:
        if sig.mux_role is MuxRole.MUXED and sig.mux_value >= 0:
            if sig.mux_value not in mux_raw_values:
                mux_raw_values.append(sig.mux_value)

    active_mux = -1
    if selector is not None:
        if mux_raw_values:
            active_mux = mux_raw_values[(tick // period + plan_index) % len(mux_raw_values)]
        else:
            active_mux = 0
        values[selector.name] = _clamp(selector.physical(active_mux), selector)

    for signal_index, sig in enumerate(message.signals, start=1):
        if sig.mux_role is MuxRole.SELECTOR:
            continue
        if sig.mux_role is MuxRole.MUXED and active_mux >= 0 and not sig.is_active(active_mux):
            continue

        if sig.value_table:
            keys = sorted(sig.value_table)
            raw = keys[(tick // period + plan_index + signal_index) % len(keys)]
            value = sig.physical(raw)
        elif sig.length == 1 and not sig.is_float:
            value = sig.physical((tick // (5 + plan_index + signal_index)) % 2)
        elif sig.has_range:
            center = (sig.minimum + sig.maximum) * 0.5
            amplitude = (sig.maximum - sig.minimum) * 0.35
            freq = 0.12 + plan_index * 0.03 + signal_index * 0.015
            value = center + amplitude * math.sin(seconds * freq + plan_index)
        elif sig.initial_value is not None and abs(sig.initial_value) > 1e-9:
            value = sig.initial_value
        else:
            value = sig.offset

        values[sig.name] = _clamp(value, sig)
    return values


def builtin_frames(tick: int, seconds: float) -> List[Frame]:
    """Hard-coded fallback traffic for when no database is loaded."""
    frames = []

    rpm = 800.0 + 1200.0 * (0.5 + 0.5 * math.sin(seconds * 0.5))
    throttle = 10.0 + 40.0 * (0.5 + 0.5 * math.sin(seconds * 0.3))
    coolant = 85.0 + 5.0 * math.sin(seconds * 0.1)
    frames.append(
        Frame(
            0x0C4,
            int(rpm / 0.25).to_bytes(2, "little")
            + bytes([int(throttle / 0.5) & 0xFF, int(coolant + 40.0) & 0xFF, 0, 0, 0, 0]),
            8,
        )
    )

    if tick % 2 == 0:
        speed = 60.0 + 30.0 * math.sin(seconds * 0.2)
        brake = 20.0 if speed < 50.0 else 5.0
        steering = 15.0 * math.sin(seconds * 0.7)
        frames.append(
            Frame(
                0x153,
                (int(speed / 0.01) & 0xFFFF).to_bytes(2, "little")
                + bytes([int(brake)])
                + int(steering / 0.1).to_bytes(2, "little", signed=True)
                + bytes(3),
                8,
            )
        )

    if tick % 10 == 0:
        fuel = min(max(65.0 - tick / 10000.0, 0.0), 100.0)
        odo = (tick // 10) * 0.002778
        ambient = 22.0 + 3.0 * math.sin(seconds * 0.05)
        data = bytes([int(fuel / 0.4) & 0xFF, int(odo) & 0xFF, int((ambient + 40.0) / 0.5) & 0xFF])
        frames.append(Frame(0x1A0, data + bytes(5), 8))

    if tick % 50 == 0:
        voltage = 13.8 + 0.2 * math.sin(seconds * 2.0)
        data = bytes([0x02]) + int(voltage / 0.1).to_bytes(2, "little")
        frames.append(Frame(0x6B2, data + bytes(5), 8))

    if tick % 500 == 0:
        frames.append(Frame(0x7DF, bytes([0x02, 0x01, 0, 0, 0, 0, 0, 0]), 8))

    return frames


class SyntheticDriver(CanDriver):
    """Always-available driver ticking on a QTimer instead of touching hardware."""

    name = "Demo (synthetic)"
    is_synthetic = True

    def __init__(self, parent=None):
        super().__init__(parent)
        self._open = False
        self._tick = 0
        self._elapsed = QElapsedTimer()
        self._elapsed.start()
        self._timer: Optional[QTimer] = None
        self._plans: List[SimulationPlan] = []

    def set_simulation_database(self, db: Optional[MessageDatabase]):
        self._plans = build_plans(db)
        if self._plans:
            summary = ", ".join(
                f"0x{p.message.frame_id:X}({p.message.name}/{p.period_ticks * TICK_MS}ms)"
                for p in self._plans
            )
            logger.info("Simulating database messages: %s", summary)
        elif db is not None and not db.is_empty():
            logger.info("Database has no usable classic messages, using built-in traffic")

    @property
    def simulation_plans(self) -> List[SimulationPlan]:
        return list(self._plans)

    def initialize(self) -> Result:
        logger.info("Synthetic driver initialized")
        return Result.success()

    def shutdown(self) -> None:
        self.close_channel()

    def is_available(self) -> bool:
        return True

    def detect_channels(self) -> List[ChannelInfo]:
        return [ChannelInfo(name="Demo Channel 1", hw_type_name="Simulated", channel_mask=1)]

    def open_channel(self, info: ChannelInfo, config: BusConfig) -> Result:
        if self._open:
            return Result.failure("Already open")
        self._open = True
        self._tick = 0
        self._elapsed.restart()

        self._timer = QTimer(self)
        self._timer.setInterval(TICK_MS)
        self._timer.setTimerType(Qt.PreciseTimer)
        self._timer.timeout.connect(self.tick)
        self._timer.start()

        logger.info("Synthetic channel opened")
        self.channel_opened.emit(info.name)
        return Result.success()

    def close_channel(self) -> None:
        if not self._open:
            return
        if self._timer is not None:
            self._timer.stop()
            self._timer.deleteLater()
            self._timer = None
        self._open = False
        logger.info("Synthetic channel closed")
        self.channel_closed.emit()

    def is_open(self) -> bool:
        return self._open

    def transmit(self, frame: Frame) -> Result:
        self.frame_received.emit(
            Frame(
                frame.id,
                frame.data,
                frame.dlc,
                extended=frame.extended,
                fd=frame.fd,
                brs=frame.brs,
                remote=frame.remote,
                tx_echo=True,
                channel=frame.channel,
                timestamp=self._elapsed.nsecsElapsed(),
            )
        )
        return Result.success()

    def receive(self, timeout_ms: int = 100) -> Result:
        return Result.failure("Synthetic driver does not support blocking receive")

    def flush_receive_queue(self) -> Result:
        return Result.success()

    def tick(self):
        """Advance one tick and emit the frames due on it."""
        self._tick += 1
        seconds = self._elapsed.elapsed() / 1000.0
        timestamp = self._elapsed.nsecsElapsed()

        if self._plans:
            for index, plan in enumerate(self._plans):
                if self._tick % plan.period_ticks:
                    continue
                values = simulate_values(plan, index, self._tick, seconds)
                msg = plan.message
                self.frame_received.emit(
                    Frame(
                        msg.frame_id,
                        msg.encode(values),
                        msg.length,
                        extended=msg.is_extended,
                        timestamp=timestamp,
                    )
                )
            return

        for frame in builtin_frames(self._tick, seconds):
            self.frame_received.emit(frame.with_timestamp(timestamp))
