"""Device lookup: endpoints, roles, and property membership."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import replace
from typing import Protocol

from thermoctl.core.errors import DeviceResolutionError
from thermoctl.core.model import Device, DeviceEndpoint, DeviceRole


class DeviceDirectory(Protocol):
    def get(self, device_id: int) -> Device:
        """Return the device or raise DeviceResolutionError."""

    def endpoint(self, device_id: int) -> DeviceEndpoint:
        """Current network endpoint of the device; may change between calls."""

    def property_devices(self, device_id: int) -> list[Device]:
        """Every device sharing the property of `device_id`, itself included."""


class InMemoryDeviceDirectory:
    def __init__(self, devices: Iterable[Device] = ()) -> None:
        self._lock = threading.Lock()
        self._devices = {device.id: device for device in devices}

    def add(self, device: Device) -> None:
        with self._lock:
            self._devices[device.id] = device

    def move(self, device_id: int, ip_address: str, port: int) -> None:
        """Record a new endpoint for a roaming device."""
        with self._lock:
            device = self._require(device_id)
            endpoint = DeviceEndpoint(device_id=device_id, ip_address=ip_address, port=port)
            self._devices[device_id] = replace(device, endpoint=endpoint)

    def get(self, device_id: int) -> Device:
        with self._lock:
            return self._require(device_id)

    def endpoint(self, device_id: int) -> DeviceEndpoint:
        return self.get(device_id).endpoint

    def property_devices(self, device_id: int) -> list[Device]:
        with self._lock:
            device = self._require(device_id)
            if device.property_id is None:
                return [device]
            return [
                d for d in sorted(self._devices.values(), key=lambda d: d.id)
                if d.property_id == device.property_id
            ]

    def _require(self, device_id: int) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceResolutionError(f"Unknown device {device_id}")
        return device


def master_of(device: Device, directory: DeviceDirectory) -> Device | None:
    """Return the master device a slave unit is bound to, if any."""
    if device.role is not DeviceRole.SLAVE or device.parent_id is None:
        return None
    return directory.get(device.parent_id)
