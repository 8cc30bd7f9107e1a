"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol

from thermoctl.core.model import CommandFrame, DeviceEndpoint


class Transport(Protocol):
    async def send(self, endpoint: DeviceEndpoint, frame: CommandFrame) -> None:
        """Deliver one frame to the device at `endpoint`; return once the write completes."""
