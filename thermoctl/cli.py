"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

import typer

from thermoctl.core.devices import InMemoryDeviceDirectory
from thermoctl.core.errors import ThermoctlError
from thermoctl.core.model import ChangeSet, Device, DeviceEndpoint, IssuedCommand, OffsetValue, ScheduleRequest
from thermoctl.core.service import ThermostatService

app = typer.Typer(help="Thermostat control over the proprietary gateway protocol")


def _build_service(directory: InMemoryDeviceDirectory | None = None) -> ThermostatService:
    service = ThermostatService(directory=directory)
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _single_device(device_id: int, ip: str, port: int) -> InMemoryDeviceDirectory:
    endpoint = DeviceEndpoint(device_id=device_id, ip_address=ip, port=port)
    return InMemoryDeviceDirectory([Device(id=device_id, endpoint=endpoint)])


def parse_value(text: str) -> Any:
    lowered = text.strip().lower()
    if lowered in {"true", "on"}:
        return True
    if lowered in {"false", "off"}:
        return False
    try:
        number = Decimal(lowered)
    except InvalidOperation:
        raise typer.BadParameter(f"'{text}' is not a number or boolean") from None
    return int(number) if number == number.to_integral_value() else number


def parse_assignments(pairs: list[str]) -> dict[str, Any]:
    attributes: dict[str, Any] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"Expected NAME=VALUE, got '{pair}'")
        attributes[name.strip()] = parse_value(value)
    return attributes


def parse_clock(text: str) -> tuple[int, int]:
    hour, sep, minute = text.partition(":")
    if not sep or not hour.isdigit() or not minute.isdigit():
        raise typer.BadParameter(f"Expected HH:MM, got '{text}'")
    if not (0 <= int(hour) < 24 and 0 <= int(minute) < 60):
        raise typer.BadParameter(f"Time out of range: '{text}'")
    return int(hour), int(minute)


async def _drain_or_raise(service: ThermostatService) -> None:
    failures = await service.drain()
    if failures:
        if len(failures) > 1:
            typer.echo(f"Warning: {len(failures)} of the queued frames were not delivered", err=True)
        raise failures[0]


def _echo_issued(issued: list[IssuedCommand]) -> None:
    for command in issued:
        record = command.record
        typer.echo(
            f"#{record.id} device={record.device_id} {record.register_name}={record.value} "
            f"frame={record.frame} delay={command.delay_s:g}s"
        )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("registers")
def list_registers(
    settings: bool = typer.Option(False, "--settings", help="Show settings-block offsets instead"),
) -> None:
    """List the register catalog of the configured protocol generation."""
    try:
        service = _build_service()
        entries = service.list_settings_offsets() if settings else service.list_registers()
        for entry in entries:
            typer.echo(f"{entry.code:3d}  {entry.name}")
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("encode")
def encode(name: str, value: str) -> None:
    """Print the frame for one register. The offset register takes a signed value."""
    try:
        service = _build_service()
        parsed = parse_value(value)
        if name == service.tables.generation.offset_register:
            parsed = OffsetValue(sign=parsed < 0, magnitude=abs(int(parsed)))
        frame = service.encoder.encode_named(name, parsed)
        typer.echo(frame.hex())
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("send")
def send(
    device_id: int,
    assignments: list[str] = typer.Argument(..., help="NAME=VALUE pairs"),
    ip: str = typer.Option(..., "--ip", help="Device IP address"),
    port: int = typer.Option(..., "--port", help="Device port"),
    user: int = typer.Option(0, "--user", help="Acting user id"),
    channel: int | None = typer.Option(None, "--channel", help="Channel tag stored with each record"),
) -> None:
    """Send individual register commands for a change-set."""
    try:
        service = _build_service(_single_device(device_id, ip, port))
        change_set = ChangeSet(
            device_id=device_id,
            user_id=user,
            attributes=parse_assignments(assignments),
            channel_tag=channel,
        )

        async def _run() -> list[IssuedCommand]:
            issued = await service.apply_change_set(change_set)
            await _drain_or_raise(service)
            return issued

        _echo_issued(asyncio.run(_run()))
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("settings")
def send_settings(
    device_id: int,
    assignments: list[str] = typer.Argument(..., help="NAME=VALUE pairs"),
    ip: str = typer.Option(..., "--ip", help="Device IP address"),
    port: int = typer.Option(..., "--port", help="Device port"),
    user: int = typer.Option(0, "--user", help="Acting user id"),
) -> None:
    """Send one settings block carrying every given attribute."""
    try:
        service = _build_service(_single_device(device_id, ip, port))
        change_set = ChangeSet(device_id=device_id, user_id=user, attributes=parse_assignments(assignments))

        async def _run() -> list[IssuedCommand]:
            issued = await service.apply_settings(change_set)
            await _drain_or_raise(service)
            return issued

        _echo_issued(asyncio.run(_run()))
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("status")
def request_status(
    device_id: int,
    ip: str = typer.Option(..., "--ip", help="Device IP address"),
    port: int = typer.Option(..., "--port", help="Device port"),
) -> None:
    """Ask a device to report all of its registers."""
    try:
        service = _build_service(_single_device(device_id, ip, port))
        frame = asyncio.run(service.request_status(device_id))
        typer.echo(f"Sent status request {frame.hex()} to device {device_id}")
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("schedule")
def schedule(
    device_id: int,
    day: int = typer.Option(..., "--day", min=0, max=6, help="Start day, 0=Sunday"),
    start: str = typer.Option(..., "--start", help="Start time HH:MM"),
    end_day: int | None = typer.Option(None, "--end-day", min=0, max=6, help="End day, defaults to --day"),
    end: str = typer.Option(..., "--end", help="End time HH:MM"),
    command: str = typer.Option(..., "--command", help="Register name"),
    value: str = typer.Option(..., "--value", help="Register value"),
    timezone: str | None = typer.Option(None, "--timezone", help="Caller timezone"),
    user: int = typer.Option(0, "--user", help="Acting user id"),
) -> None:
    """Replace the device's schedule with one window."""
    try:
        service = _build_service()
        start_hour, start_minute = parse_clock(start)
        end_hour, end_minute = parse_clock(end)
        request = ScheduleRequest(
            day=day,
            start_hour=start_hour,
            start_minute=start_minute,
            end_day=day if end_day is None else end_day,
            end_hour=end_hour,
            end_minute=end_minute,
            command_name=command,
            command_value=parse_value(value),
        )
        for window in service.schedule(device_id, user, [request], timezone):
            typer.echo(
                f"#{window.id} {window.command_name}={window.command_value} "
                f"day {window.start_day} {window.start_time} -> day {window.end_day} {window.end_time} "
                f"({window.timezone}) frame={window.frame}"
            )
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("windows")
def list_windows(
    device_id: int,
    include_mode: bool = typer.Option(False, "--all", help="Include mode windows"),
) -> None:
    """List the stored schedule windows of a device."""
    try:
        service = _build_service()
        windows = service.list_windows(device_id, include_mode=include_mode)
        if not windows:
            typer.echo("No schedule windows")
            return
        for window in windows:
            typer.echo(
                f"#{window.id} {window.command_name}={window.command_value} "
                f"day {window.start_day} {window.start_time} -> day {window.end_day} {window.end_time}"
            )
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("commands")
def list_commands(device_id: int) -> None:
    """List ledger records of a device."""
    try:
        service = _build_service()
        records = service.list_commands(device_id)
        if not records:
            typer.echo("No commands")
            return
        for record in records:
            state = "executed" if record.executed else "pending"
            typer.echo(f"#{record.id} {record.register_name}={record.value} frame={record.frame} {state}")
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("ack")
def acknowledge(command_id: int) -> None:
    """Mark a command as executed by the device."""
    try:
        record = _build_service().acknowledge(command_id)
        typer.echo(f"#{record.id} marked executed")
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("resend")
def resend(
    command_id: int,
    ip: str = typer.Option(..., "--ip", help="Current device IP address"),
    port: int = typer.Option(..., "--port", help="Current device port"),
) -> None:
    """Wait, then resend a command once if it is still unacknowledged."""
    try:
        service = _build_service()
        record = service.ledger.get(command_id)
        service.directory.add(
            Device(
                id=record.device_id,
                endpoint=DeviceEndpoint(device_id=record.device_id, ip_address=ip, port=port),
            )
        )
        outcome = asyncio.run(service.check_and_resend(command_id))
        typer.echo(f"#{command_id} {outcome.value}")
    except ThermoctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
