import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from canlens.errors import ConfigError
from canlens.frame import BusConfig

logger = logging.getLogger(__name__)

SLOT_COUNT = 4


@dataclass
class ChannelSlot:
    alias: str = "CH1"
    enabled: bool = False
    hw_channel_index: int = -1  # -1 = first detected channel
    fd_enabled: bool = False
    bitrate: int = 500_000
    data_bitrate: int = 2_000_000
    dbc_path: Optional[Path] = None

    def validate(self):
        if self.bitrate <= 0:
            raise ConfigError(f"{self.alias}: bitrate must be positive, got {self.bitrate}")
        if self.fd_enabled and self.data_bitrate < self.bitrate:
            raise ConfigError(
                f"{self.alias}: data bitrate {self.data_bitrate} is below "
                f"nominal bitrate {self.bitrate}"
            )
        if self.hw_channel_index < -1:
            raise ConfigError(f"{self.alias}: invalid channel index {self.hw_channel_index}")

    def bus_config(self, listen_only: bool = True) -> BusConfig:
        return BusConfig(
            bitrate=self.bitrate,
            fd_enabled=self.fd_enabled,
            fd_data_bitrate=self.data_bitrate,
            listen_only=listen_only,
        )

    def to_dict(self) -> Dict:
        return {
            "alias": self.alias,
            "enabled": self.enabled,
            "hw_channel_index": self.hw_channel_index,
            "fd_enabled": self.fd_enabled,
            "bitrate": self.bitrate,
            "data_bitrate": self.data_bitrate,
            "dbc_path": str(self.dbc_path) if self.dbc_path else None,
        }

    @classmethod
    def from_dict(cls, data: Dict, alias: str = "CH1") -> "ChannelSlot":
        dbc_path = data.get("dbc_path")
        try:
            slot = cls(
                alias=data.get("alias", alias),
                enabled=bool(data.get("enabled", False)),
                hw_channel_index=int(data.get("hw_channel_index", -1)),
                fd_enabled=bool(data.get("fd_enabled", False)),
                bitrate=int(data.get("bitrate", 500_000)),
                data_bitrate=int(data.get("data_bitrate", 2_000_000)),
                dbc_path=Path(dbc_path) if dbc_path else None,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{alias}: {e}") from e
        slot.validate()
        return slot


def default_slots() -> List[ChannelSlot]:
    return [ChannelSlot(alias=f"CH{i + 1}", enabled=(i == 0)) for i in range(SLOT_COUNT)]


@dataclass
class SessionSettings:
    slots: List[ChannelSlot] = field(default_factory=default_slots)
    in_place_display: bool = False
    listen_only: bool = True
    init_timeout_ms: int = 3000
    flush_interval_ms: int = 50
    port_check_interval_ms: int = 2000
    trace_capacity: int = 100_000
    purge_chunk: int = 5_000

    def validate(self):
        if len(self.slots) != SLOT_COUNT:
            raise ConfigError(f"Expected {SLOT_COUNT} channel slots, got {len(self.slots)}")
        for slot in self.slots:
            slot.validate()
        for name in ("init_timeout_ms", "flush_interval_ms", "port_check_interval_ms",
                     "trace_capacity", "purge_chunk"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")

    def enabled_slots(self) -> List[ChannelSlot]:
        return [slot for slot in self.slots if slot.enabled]

    def slot(self, index: int) -> ChannelSlot:
        if not 0 <= index < len(self.slots):
            raise ConfigError(f"Channel slot index out of range: {index}")
        return self.slots[index]

    def to_dict(self) -> Dict:
        return {
            "slots": [slot.to_dict() for slot in self.slots],
            "in_place_display": self.in_place_display,
            "listen_only": self.listen_only,
            "init_timeout_ms": self.init_timeout_ms,
            "flush_interval_ms": self.flush_interval_ms,
            "port_check_interval_ms": self.port_check_interval_ms,
            "trace_capacity": self.trace_capacity,
            "purge_chunk": self.purge_chunk,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionSettings":
        if not isinstance(data, dict):
            raise ConfigError("Settings must be a JSON object")
        slots = default_slots()
        for i, slot_data in enumerate(data.get("slots", [])[:SLOT_COUNT]):
            slots[i] = ChannelSlot.from_dict(slot_data, alias=f"CH{i + 1}")

        defaults = cls()
        try:
            settings = cls(
                slots=slots,
                in_place_display=bool(data.get("in_place_display", defaults.in_place_display)),
                listen_only=bool(data.get("listen_only", defaults.listen_only)),
                init_timeout_ms=int(data.get("init_timeout_ms", defaults.init_timeout_ms)),
                flush_interval_ms=int(data.get("flush_interval_ms", defaults.flush_interval_ms)),
                port_check_interval_ms=int(
                    data.get("port_check_interval_ms", defaults.port_check_interval_ms)
                ),
                trace_capacity=int(data.get("trace_capacity", defaults.trace_capacity)),
                purge_chunk=int(data.get("purge_chunk", defaults.purge_chunk)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings value: {e}") from e
        settings.validate()
        return settings

    @classmethod
    def load(cls, path) -> "SessionSettings":
        path = Path(path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read settings file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
        logger.info("Loaded settings from %s", path)
        return cls.from_dict(data)

    def save(self, path):
        path = Path(path)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=4)
        logger.info("Saved settings to %s", path)
