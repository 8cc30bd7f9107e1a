"""TCP gateway transport implementation using asyncio streams.

The gateway multiplexes many devices over one listening socket, so every
message is tagged with the device address:

    <ip>:<port>|||<frame bytes>|||send
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from thermoctl.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)
from thermoctl.core.model import CommandFrame, DeviceEndpoint

DELIMITER = b"|||"
TERMINATOR = b"send"
LOGGER = logging.getLogger(__name__)


def build_gateway_message(endpoint: DeviceEndpoint, frame: CommandFrame) -> bytes:
    return endpoint.address.encode("ascii") + DELIMITER + frame.data + DELIMITER + TERMINATOR


def split_gateway_message(message: bytes) -> tuple[str, bytes]:
    """Return the device address and the frame bytes of one gateway message."""
    address, sep, rest = message.partition(DELIMITER)
    if not sep or not rest.endswith(DELIMITER + TERMINATOR):
        raise ValueError("Not a gateway message")
    return address.decode("ascii"), rest[: -len(DELIMITER + TERMINATOR)]


class TCPGatewayTransport:
    def __init__(self, host: str, port: int, *, connect_timeout_s: float = 3.0) -> None:
        self.host = host
        self.port = port
        self.connect_timeout_s = connect_timeout_s

    async def send(self, endpoint: DeviceEndpoint, frame: CommandFrame) -> None:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(
                f"Gateway connect timed out for {self.host}:{self.port}"
            ) from exc
        except OSError as exc:
            raise TransportConnectError(
                f"Gateway connect failed for {self.host}:{self.port}: {exc}"
            ) from exc

        try:
            writer.write(build_gateway_message(endpoint, frame))
            await writer.drain()
        except OSError as exc:
            raise TransportSendError(f"Gateway write failed for {endpoint.address}: {exc}") from exc
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
        LOGGER.debug("Wrote %s to %s via %s:%s", frame.hex(), endpoint.address, self.host, self.port)
