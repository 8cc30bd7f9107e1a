"""Stable public API for building tooling on top of thermoctl.

This module is the supported integration surface for API layers and scripts.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from thermoctl.core.config import Settings
from thermoctl.core.devices import DeviceDirectory, InMemoryDeviceDirectory
from thermoctl.core.errors import (
    CatalogLoadError,
    CatalogValidationError,
    ConfigError,
    DeliveryFailed,
    DeviceResolutionError,
    LedgerError,
    ThermoctlError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
    UnknownRegister,
)
from thermoctl.core.ledger import CommandLedger, InMemoryLedger, SQLiteLedger
from thermoctl.core.model import (
    ChangeSet,
    CommandFrame,
    CommandRecord,
    CommandState,
    Device,
    DeviceEndpoint,
    DeviceRole,
    IssuedCommand,
    OffsetValue,
    RegisterEntry,
    ResendOutcome,
    ScheduleRequest,
    ScheduleWindow,
    ThermostatSettings,
)
from thermoctl.core.schedule import TimezoneLocator, utcnow
from thermoctl.core.service import ThermostatService
from thermoctl.transports.base import Transport

__all__ = [
    "ThermoctlError",
    "CatalogLoadError",
    "CatalogValidationError",
    "ConfigError",
    "DeliveryFailed",
    "DeviceResolutionError",
    "LedgerError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "UnknownRegister",
    "ChangeSet",
    "CommandFrame",
    "CommandLedger",
    "CommandRecord",
    "CommandState",
    "Device",
    "DeviceDirectory",
    "DeviceEndpoint",
    "DeviceRole",
    "InMemoryDeviceDirectory",
    "InMemoryLedger",
    "IssuedCommand",
    "OffsetValue",
    "RegisterEntry",
    "RegisterListing",
    "ResendOutcome",
    "ScheduleRequest",
    "ScheduleWindow",
    "Settings",
    "SQLiteLedger",
    "ThermostatSettings",
    "Transport",
    "Client",
]


@dataclass(frozen=True)
class RegisterListing:
    """Both register catalogs of the active protocol generation."""

    generation: str
    registers: tuple[RegisterEntry, ...]
    settings_offsets: tuple[RegisterEntry, ...]


class Client:
    """Public client for interacting with thermoctl core capabilities.

    A `Client` instance wraps catalog loading, frame encoding, the command
    ledger, schedule normalization, and gateway delivery behind a stable API
    intended for REST layers, workers, and scripts. Delivery methods are
    coroutines and must run inside an event loop.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: Transport | None = None,
        ledger: CommandLedger | None = None,
        directory: DeviceDirectory | None = None,
        clock: Callable[[], datetime] = utcnow,
        locator: TimezoneLocator | None = None,
    ) -> None:
        self._service = ThermostatService(
            settings=settings,
            transport=transport,
            ledger=ledger,
            directory=directory,
            clock=clock,
            locator=locator,
        )

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def ledger(self) -> CommandLedger:
        return self._service.ledger

    def get_register_listing(self) -> RegisterListing:
        return RegisterListing(
            generation=self._service.tables.generation.id,
            registers=tuple(self._service.list_registers()),
            settings_offsets=tuple(self._service.list_settings_offsets()),
        )

    def encode(self, name: str, value: object) -> CommandFrame:
        return self._service.encoder.encode_named(name, value)

    async def apply_change_set(self, change_set: ChangeSet) -> list[IssuedCommand]:
        return await self._service.apply_change_set(change_set)

    async def apply_settings(self, change_set: ChangeSet, *, all_devices: bool = False) -> list[IssuedCommand]:
        return await self._service.apply_settings(change_set, all_devices=all_devices)

    async def request_status(self, device_id: int) -> CommandFrame:
        return await self._service.request_status(device_id)

    def schedule(
        self,
        device_id: int,
        user_id: int,
        requests: list[ScheduleRequest],
        *,
        timezone_name: str | None = None,
        now: datetime | None = None,
    ) -> list[ScheduleWindow]:
        return self._service.schedule(device_id, user_id, requests, timezone_name, now=now)

    def list_windows(self, device_id: int, *, include_mode: bool = False) -> list[ScheduleWindow]:
        return self._service.list_windows(device_id, include_mode=include_mode)

    async def apply_active_schedule(self, device_id: int, *, now: datetime | None = None) -> IssuedCommand | None:
        return await self._service.apply_active_schedule(device_id, now=now)

    def acknowledge(self, command_id: int) -> CommandRecord:
        return self._service.acknowledge(command_id)

    async def check_and_resend(self, command_id: int) -> ResendOutcome:
        return await self._service.check_and_resend(command_id)

    def command_state(self, command_id: int) -> CommandState:
        return self._service.dispatcher.state(command_id)

    def list_commands(self, device_id: int) -> list[CommandRecord]:
        return self._service.list_commands(device_id)

    async def drain(self) -> list[DeliveryFailed]:
        return await self._service.drain()
