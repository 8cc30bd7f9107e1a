"""Core data models used across catalog, encoder, ledger, dispatcher, and CLI."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Union

AttributeValue = Union[int, bool, Decimal, "OffsetValue"]


@dataclass(frozen=True)
class RegisterEntry:
    name: str
    code: int


@dataclass(frozen=True)
class FrameLayout:
    """Fixed byte layout of one frame type.

    `header` occupies the first bytes and `footer` the last ones. Register and
    value positions only apply to individual-register frames.
    """

    length: int
    header: bytes
    footer: bytes
    checksum_offset: int
    register_offset: int | None = None
    value_offset: int | None = None
    zero_offsets: tuple[int, ...] = ()


@dataclass(frozen=True)
class ProtocolGeneration:
    id: str
    name: str
    individual: FrameLayout
    settings: FrameLayout
    status_request: FrameLayout
    registers: tuple[RegisterEntry, ...]
    settings_offsets: tuple[RegisterEntry, ...]
    offset_register: str


@dataclass(frozen=True)
class OffsetValue:
    """Two-field value of the compound temperature offset register."""

    sign: bool
    magnitude: int


@dataclass(frozen=True)
class CommandFrame:
    data: bytes

    def __len__(self) -> int:
        return len(self.data)

    def __bytes__(self) -> bytes:
        return self.data

    def hex(self) -> str:
        return "".join(f"{byte:02X}" for byte in self.data)

    @classmethod
    def from_hex(cls, text: str) -> CommandFrame:
        return cls(bytes.fromhex(text))


@dataclass(frozen=True)
class ChangeSet:
    device_id: int
    user_id: int
    attributes: Mapping[str, AttributeValue]
    channel_tag: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))


@dataclass(frozen=True)
class CommandRecord:
    user_id: int
    device_id: int
    register_name: str
    value: AttributeValue | Mapping[str, AttributeValue]
    frame: str
    channel_tag: int | None = None
    executed: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None


@dataclass(frozen=True)
class ScheduleRequest:
    day: int
    start_hour: int
    start_minute: int
    end_day: int
    end_hour: int
    end_minute: int
    command_name: str
    command_value: AttributeValue
    extra: Mapping[str, AttributeValue] = field(default_factory=dict)


@dataclass(frozen=True)
class ScheduleWindow:
    device_id: int
    user_id: int
    command_name: str
    command_value: AttributeValue
    start_time: str
    end_time: str
    start_day: int
    end_day: int
    timezone: str
    frame: str
    id: int | None = None


@dataclass(frozen=True)
class DeviceEndpoint:
    device_id: int
    ip_address: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.ip_address}:{self.port}"


class DeviceRole(Enum):
    STANDALONE = "standalone"
    MASTER = "master"
    SLAVE = "slave"

    @classmethod
    def from_type_id(cls, type_id: int | None) -> DeviceRole:
        """Map the legacy thermostat type id onto a role (5 = pump, 7 = slave unit)."""
        if type_id == 5:
            return cls.MASTER
        if type_id == 7:
            return cls.SLAVE
        return cls.STANDALONE


@dataclass(frozen=True)
class ThermostatSettings:
    """Current value of every attribute carried by the settings block."""

    mode: int = 0
    sensors_mode: int = 0
    temp_measurement: int = 0
    relay_opera: int = 0
    relay_limit: int = 0
    sensitivity: int = 0
    differential: int = 0
    cool_heat_mode: int = 0
    boiler_duration: int = 0
    home_router_mac_address: int = 0
    bathroom_on_low_heat: int = 0
    bathroom_delay_stby_low_heat: int = 0
    bathroom_on_med_heat: int = 0
    bathroom_delay_stby_med_heat: int = 0
    bathroom_on_high_heat: int = 0
    bathroom_delay_stby_high_heat: int = 0
    cool_room_check: int = 0
    boost: int = 0
    light_intensity: int = 0
    enab_vibration: int = 0
    enab_matrix: int = 0
    enab_heartbeat_led: int = 0
    enab_lock: int = 0


@dataclass(frozen=True)
class Device:
    id: int
    endpoint: DeviceEndpoint
    role: DeviceRole = DeviceRole.STANDALONE
    parent_id: int | None = None
    property_id: int | None = None
    mode: int | None = None
    settings: ThermostatSettings = field(default_factory=ThermostatSettings)


class CommandState(Enum):
    CREATED = "created"
    DISPATCHED = "dispatched"
    EXECUTED = "executed"
    PENDING_TIMEOUT = "pending_timeout"


class ResendOutcome(Enum):
    RESENT = "resent"
    ALREADY_EXECUTED = "already_executed"


@dataclass(frozen=True)
class IssuedCommand:
    record: CommandRecord
    frame: CommandFrame
    delay_s: float
