"""Shared fixtures: isolated XDG dirs, a recording transport, and a small device topology."""

from __future__ import annotations

from pathlib import Path

import pytest

from thermoctl.core.config import Settings
from thermoctl.core.devices import InMemoryDeviceDirectory
from thermoctl.core.errors import TransportConnectError
from thermoctl.core.model import CommandFrame, Device, DeviceEndpoint, DeviceRole

SLAVE_ID = 11
MASTER_ID = 10
NEIGHBOUR_ID = 12


class FakeTransport:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[DeviceEndpoint, CommandFrame]] = []

    async def send(self, endpoint: DeviceEndpoint, frame: CommandFrame) -> None:
        if self.fail:
            raise TransportConnectError("gateway unreachable")
        self.calls.append((endpoint, frame))

    def frames_for(self, device_id: int) -> list[CommandFrame]:
        return [frame for endpoint, frame in self.calls if endpoint.device_id == device_id]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for name in (
        "THERMOCTL_GATEWAY_HOST",
        "THERMOCTL_GATEWAY_PORT",
        "THERMOCTL_DEFAULT_TIMEZONE",
        "THERMOCTL_LEDGER",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> Settings:
    return Settings(command_stagger_s=0.0, resend_wait_s=0.0)


def endpoint(device_id: int) -> DeviceEndpoint:
    return DeviceEndpoint(device_id=device_id, ip_address=f"10.0.0.{device_id}", port=5000 + device_id)


@pytest.fixture
def directory() -> InMemoryDeviceDirectory:
    return InMemoryDeviceDirectory(
        [
            Device(id=MASTER_ID, endpoint=endpoint(MASTER_ID), role=DeviceRole.MASTER, property_id=1, mode=0),
            Device(
                id=SLAVE_ID,
                endpoint=endpoint(SLAVE_ID),
                role=DeviceRole.SLAVE,
                parent_id=MASTER_ID,
                property_id=1,
                mode=0,
            ),
            Device(id=NEIGHBOUR_ID, endpoint=endpoint(NEIGHBOUR_ID), property_id=1),
        ]
    )
