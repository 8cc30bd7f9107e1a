"""Service layer used by the CLI and by API front ends."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from thermoctl.core.catalog import apply_changes, load_tables
from thermoctl.core.config import Settings, load_settings
from thermoctl.core.devices import DeviceDirectory, InMemoryDeviceDirectory, master_of
from thermoctl.core.dispatcher import (
    CASCADE_REGISTER,
    Dispatcher,
    composite_master_mode,
    order_attributes,
)
from thermoctl.core.encoder import CommandEncoder
from thermoctl.core.errors import DeliveryFailed
from thermoctl.core.ledger import CommandLedger, InMemoryLedger, SQLiteLedger
from thermoctl.core.model import (
    ChangeSet,
    CommandFrame,
    CommandRecord,
    Device,
    IssuedCommand,
    OffsetValue,
    RegisterEntry,
    ResendOutcome,
    ScheduleRequest,
    ScheduleWindow,
)
from thermoctl.core.schedule import ScheduleWindowNormalizer, TimezoneLocator, utcnow
from thermoctl.transports.base import Transport
from thermoctl.transports.tcp_gateway import TCPGatewayTransport

SZ_OFFSET_SIGN = "offset_sign"
SZ_OFFSET_TEMP = "offset_temp"
SZ_SETTINGS = "settings"
LOGGER = logging.getLogger(__name__)


class ThermostatService:
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
        self.settings = settings or load_settings()
        self.tables, self.load_warnings = load_tables(self.settings.generation)
        self.encoder = CommandEncoder(self.tables)
        if ledger is None:
            ledger = SQLiteLedger(self.settings.ledger_path) if self.settings.ledger_path else InMemoryLedger()
        self.ledger = ledger
        self.directory = directory or InMemoryDeviceDirectory()
        self.transport = transport or TCPGatewayTransport(
            self.settings.gateway_host,
            self.settings.gateway_port,
            connect_timeout_s=self.settings.connect_timeout_s,
        )
        self.dispatcher = Dispatcher(
            self.transport,
            self.ledger,
            self.directory,
            resend_wait_s=self.settings.resend_wait_s,
        )
        self.normalizer = ScheduleWindowNormalizer(
            self.settings.operating_timezone,
            self.settings.default_timezone,
            clock=clock,
            locator=locator,
        )

    def list_registers(self) -> list[RegisterEntry]:
        return list(self.tables.individual_registers)

    def list_settings_offsets(self) -> list[RegisterEntry]:
        return list(self.tables.settings_offsets)

    def plan(self, attributes: Mapping[str, Any]) -> list[tuple[str, Any]]:
        """Resolve a change-set's attributes into ordered (register name, value) pairs.

        `offset_sign`/`offset_temp` fold into the compound offset register.
        Every name is resolved before anything is returned, so an unknown
        attribute fails the whole change-set.
        """
        values = dict(attributes)
        if SZ_OFFSET_SIGN in values or SZ_OFFSET_TEMP in values:
            values[self.tables.generation.offset_register] = OffsetValue(
                sign=bool(values.pop(SZ_OFFSET_SIGN, False)),
                magnitude=int(values.pop(SZ_OFFSET_TEMP, 0)),
            )
        for name in values:
            self.tables.individual_registers.resolve(name)
        return [(name, values[name]) for name in order_attributes(values)]

    async def apply_change_set(self, change_set: ChangeSet) -> list[IssuedCommand]:
        """Encode, record, and schedule one command per attribute, staggered per packet."""
        device = self.directory.get(change_set.device_id)
        issued: list[IssuedCommand] = []
        for position, (name, value) in enumerate(self.plan(change_set.attributes)):
            delay = position * self.settings.command_stagger_s
            issued.append(
                self._issue(device, change_set.user_id, name, value, change_set.channel_tag, delay)
            )
            if name == "mode":
                issued.extend(self._cascade(device, change_set, value, delay))
        return issued

    def _cascade(
        self,
        device: Device,
        change_set: ChangeSet,
        slave_mode: Any,
        delay: float,
    ) -> list[IssuedCommand]:
        master = master_of(device, self.directory)
        if master is None:
            return []
        value = composite_master_mode(int(slave_mode), master.mode)
        LOGGER.info(
            "Slave %s mode %s with master %s mode %s -> %s=%s",
            device.id, slave_mode, master.id, master.mode, CASCADE_REGISTER, value,
        )
        return [self._issue(master, change_set.user_id, CASCADE_REGISTER, value, change_set.channel_tag, delay)]

    def _issue(
        self,
        device: Device,
        user_id: int,
        name: str,
        value: Any,
        channel_tag: int | None,
        delay: float,
    ) -> IssuedCommand:
        frame = self.encoder.encode_named(name, value)
        return self._record_and_send(device, user_id, name, value, frame, channel_tag, delay)

    def _record_and_send(
        self,
        device: Device,
        user_id: int,
        name: str,
        value: Any,
        frame: CommandFrame,
        channel_tag: int | None,
        delay: float,
    ) -> IssuedCommand:
        record = self.ledger.append(
            CommandRecord(
                user_id=user_id,
                device_id=device.id,
                register_name=name,
                value=value,
                frame=frame.hex(),
                channel_tag=channel_tag,
            )
        )
        endpoint = self.directory.endpoint(device.id)
        self.dispatcher.send_with_delay(frame, endpoint, delay, command_id=record.id)
        return IssuedCommand(record=record, frame=frame, delay_s=delay)

    async def apply_settings(self, change_set: ChangeSet, *, all_devices: bool = False) -> list[IssuedCommand]:
        """Send one settings block per target device, built from its current settings."""
        offsets = self.tables.settings_offsets
        for name in change_set.attributes:
            offsets.resolve(name)

        device = self.directory.get(change_set.device_id)
        targets = self.directory.property_devices(device.id) if all_devices else [device]
        issued: list[IssuedCommand] = []
        for target in targets:
            merged = apply_changes(target.settings, change_set.attributes, offsets)
            values = {k: v for k, v in dataclasses.asdict(merged).items() if k in offsets}
            frame = self.encoder.encode_settings_block(values)
            issued.append(
                self._record_and_send(
                    target,
                    change_set.user_id,
                    SZ_SETTINGS,
                    dict(change_set.attributes),
                    frame,
                    change_set.channel_tag,
                    0.0,
                )
            )
        return issued

    async def request_status(self, device_id: int) -> CommandFrame:
        """Ask the device to report all of its registers."""
        frame = self.encoder.encode_status_request()
        await self.dispatcher.send_now(frame, self.directory.endpoint(device_id))
        return frame

    def schedule(
        self,
        device_id: int,
        user_id: int,
        requests: list[ScheduleRequest],
        timezone_name: str | None = None,
        *,
        now: datetime | None = None,
    ) -> list[ScheduleWindow]:
        """Replace every schedule window of the device with the normalized `requests`."""
        windows: list[ScheduleWindow] = []
        for request in requests:
            canonical = self.normalizer.normalize_window(request, timezone_name, now=now)
            attributes = {**request.extra, request.command_name: request.command_value}
            for name, value in self.plan(attributes):
                frame = self.encoder.encode_named(name, value)
                windows.append(
                    ScheduleWindow(
                        device_id=device_id,
                        user_id=user_id,
                        command_name=request.command_name,
                        command_value=request.command_value,
                        start_time=canonical.start_time,
                        end_time=canonical.end_time,
                        start_day=canonical.start_day,
                        end_day=canonical.end_day,
                        timezone=canonical.timezone,
                        frame=frame.hex(),
                    )
                )
        return self.ledger.replace_windows(device_id, windows)

    def list_windows(self, device_id: int, *, include_mode: bool = False) -> list[ScheduleWindow]:
        windows = self.ledger.windows_for(device_id)
        if include_mode:
            return windows
        return [w for w in windows if w.command_name != "mode"]

    def active_window(self, device_id: int, *, now: datetime | None = None) -> ScheduleWindow | None:
        return self.normalizer.active_window(self.ledger.windows_for(device_id), now=now)

    async def apply_active_schedule(
        self,
        device_id: int,
        *,
        now: datetime | None = None,
    ) -> IssuedCommand | None:
        window = self.active_window(device_id, now=now)
        if window is None:
            return None
        device = self.directory.get(device_id)
        return self._record_and_send(
            device,
            window.user_id,
            window.command_name,
            window.command_value,
            CommandFrame.from_hex(window.frame),
            None,
            0.0,
        )

    def acknowledge(self, command_id: int) -> CommandRecord:
        record = self.ledger.mark_executed(command_id)
        self.dispatcher.release(command_id)
        return record

    async def check_and_resend(self, command_id: int) -> ResendOutcome:
        return await self.dispatcher.check_and_resend(command_id)

    def list_commands(self, device_id: int) -> list[CommandRecord]:
        return self.ledger.list_for_device(device_id)

    async def drain(self) -> list[DeliveryFailed]:
        return await self.dispatcher.drain()
