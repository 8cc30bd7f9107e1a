"""Delivery of encoded frames to devices through the gateway transport."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from thermoctl.core.devices import DeviceDirectory
from thermoctl.core.errors import DeliveryFailed
from thermoctl.core.ledger import CommandLedger
from thermoctl.core.model import CommandFrame, CommandState, DeviceEndpoint, ResendOutcome
from thermoctl.transports.base import Transport

LOGGER = logging.getLogger(__name__)

PRIORITY_PAIR = ("set_temp", "mode")
CASCADE_REGISTER = "relay_opera"

# (slave mode, master mode) -> value written to the master's relay register
MASTER_COMPOSITE_MODE = {
    (1, 1): 3,
    (1, 0): 2,
    (0, 1): 1,
    (0, 0): 0,
}


def order_attributes(names: Iterable[str]) -> list[str]:
    """Submission order for one change-set.

    When both `set_temp` and `mode` are present they go first, in that order;
    everything else follows in descending key order.
    """
    ordered = sorted(names, reverse=True)
    if all(name in ordered for name in PRIORITY_PAIR):
        rest = [name for name in ordered if name not in PRIORITY_PAIR]
        return [*PRIORITY_PAIR, *rest]
    return ordered


def composite_master_mode(slave_mode: int | None, master_mode: int | None) -> int:
    return MASTER_COMPOSITE_MODE.get((slave_mode, master_mode), 0)


class Dispatcher:
    """Sends frames now or after a delay, and resends unacknowledged commands once."""

    def __init__(
        self,
        transport: Transport,
        ledger: CommandLedger,
        directory: DeviceDirectory,
        *,
        resend_wait_s: float = 5.0,
    ) -> None:
        self.transport = transport
        self.ledger = ledger
        self.directory = directory
        self.resend_wait_s = resend_wait_s
        self._pending: dict[int, list[tuple[float, asyncio.Task[None]]]] = {}
        self._states: dict[int, CommandState] = {}

    async def send_now(
        self,
        frame: CommandFrame,
        endpoint: DeviceEndpoint,
        *,
        command_id: int | None = None,
    ) -> None:
        LOGGER.info("Sending %s to device %s at %s", frame.hex(), endpoint.device_id, endpoint.address)
        try:
            await self.transport.send(endpoint, frame)
        except DeliveryFailed as exc:
            LOGGER.warning("Delivery to device %s failed: %s", endpoint.device_id, exc)
            if command_id is not None:
                self._states.setdefault(command_id, CommandState.DISPATCHED)
            raise
        if command_id is not None:
            self._states[command_id] = CommandState.DISPATCHED

    def send_with_delay(
        self,
        frame: CommandFrame,
        endpoint: DeviceEndpoint,
        delay: float,
        *,
        command_id: int | None = None,
    ) -> asyncio.Task[None]:
        """Schedule `send_now` after `delay` seconds without blocking the caller.

        Sends to one device whose deadlines are equal go out in submission order.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(delay, 0.0)
        queue = self._pending.setdefault(endpoint.device_id, [])
        predecessors = [task for due, task in queue if due <= deadline and not task.done()]

        task = loop.create_task(
            self._send_at(frame, endpoint, deadline, predecessors, command_id),
            name=f"send:{endpoint.device_id}:{frame.hex()}",
        )
        queue.append((deadline, task))
        task.add_done_callback(lambda t: self._forget(endpoint.device_id, t))
        return task

    async def _send_at(
        self,
        frame: CommandFrame,
        endpoint: DeviceEndpoint,
        deadline: float,
        predecessors: list[asyncio.Task[None]],
        command_id: int | None,
    ) -> None:
        await asyncio.sleep(max(deadline - asyncio.get_running_loop().time(), 0.0))
        if predecessors:
            await asyncio.wait(predecessors)
        await self.send_now(frame, endpoint, command_id=command_id)

    def _forget(self, device_id: int, task: asyncio.Task[None]) -> None:
        queue = self._pending.get(device_id, [])
        queue[:] = [(due, t) for due, t in queue if t is not task]
        if not queue:
            self._pending.pop(device_id, None)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.debug("Delayed send to device %s ended with %r", device_id, task.exception())

    def pending(self, device_id: int) -> int:
        return len(self._pending.get(device_id, []))

    def cancel_pending(self, device_id: int) -> int:
        """Cancel delayed sends to one device that have not been written yet."""
        cancelled = 0
        for _, task in list(self._pending.get(device_id, [])):
            if task.cancel():
                cancelled += 1
        return cancelled

    async def drain(self) -> list[DeliveryFailed]:
        """Wait until every delayed send has completed, failed, or been cancelled.

        Returns the delivery failures of the drained sends, in submission order.
        Any other exception raised by a send is re-raised.
        """
        tasks = [task for queue in self._pending.values() for _, task in queue]
        if not tasks:
            return []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        failures: list[DeliveryFailed] = []
        for result in results:
            if isinstance(result, DeliveryFailed):
                failures.append(result)
            elif isinstance(result, Exception):
                raise result
        return failures

    async def check_and_resend(self, command_id: int) -> ResendOutcome:
        """After the resend wait, resend the command once if it is still unacknowledged."""
        await asyncio.sleep(self.resend_wait_s)
        record = self.ledger.get(command_id)
        if record.executed:
            self.release(command_id)
            return ResendOutcome.ALREADY_EXECUTED

        self._states[command_id] = CommandState.PENDING_TIMEOUT
        LOGGER.info("Command %s not executed after %ss, resending", command_id, self.resend_wait_s)
        endpoint = self.directory.endpoint(record.device_id)
        await self.send_now(CommandFrame.from_hex(record.frame), endpoint, command_id=command_id)
        return ResendOutcome.RESENT

    def release(self, command_id: int) -> None:
        """Drop the tracked state of a command the device has executed."""
        self._states.pop(command_id, None)

    def tracked(self) -> int:
        return len(self._states)

    def state(self, command_id: int) -> CommandState:
        if self.ledger.get(command_id).executed:
            self.release(command_id)
            return CommandState.EXECUTED
        return self._states.get(command_id, CommandState.CREATED)
