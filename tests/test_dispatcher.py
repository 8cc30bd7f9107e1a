from __future__ import annotations

import asyncio

import pytest

from conftest import MASTER_ID, SLAVE_ID, FakeTransport
from thermoctl.core.devices import InMemoryDeviceDirectory
from thermoctl.core.dispatcher import (
    MASTER_COMPOSITE_MODE,
    Dispatcher,
    composite_master_mode,
    order_attributes,
)
from thermoctl.core.errors import DeliveryFailed
from thermoctl.core.ledger import InMemoryLedger
from thermoctl.core.model import CommandFrame, CommandRecord, CommandState, ResendOutcome


def _frame(value: int) -> CommandFrame:
    return CommandFrame(bytes([0xF1, 0xF2, 0xA1, 0x0A, value, 0, 0, 0, 0, 0xFE, 0xFF]))


def _dispatcher(transport, directory, ledger=None) -> Dispatcher:
    return Dispatcher(transport, ledger or InMemoryLedger(), directory, resend_wait_s=0.0)


def test_order_puts_set_temp_then_mode_first() -> None:
    assert order_attributes(["mode", "set_temp", "differential"]) == ["set_temp", "mode", "differential"]
    assert order_attributes(["boost", "mode", "set_temp", "sensitivity"]) == [
        "set_temp",
        "mode",
        "sensitivity",
        "boost",
    ]


def test_order_without_both_priority_keys_is_descending() -> None:
    assert order_attributes(["mode", "differential", "boost"]) == ["mode", "differential", "boost"]
    assert order_attributes(["set_temp", "boost", "sensitivity"]) == ["set_temp", "sensitivity", "boost"]


def test_composite_master_mode_table() -> None:
    values = {
        (slave, master): composite_master_mode(slave, master)
        for slave in (0, 1)
        for master in (0, 1)
    }
    assert values == {(1, 1): 3, (1, 0): 2, (0, 1): 1, (0, 0): 0}
    assert len(set(values.values())) == 4
    assert values == MASTER_COMPOSITE_MODE
    assert composite_master_mode(1, None) == 0


@pytest.mark.asyncio
async def test_send_now_marks_dispatched(transport: FakeTransport, directory: InMemoryDeviceDirectory) -> None:
    ledger = InMemoryLedger()
    record = ledger.append(CommandRecord(1, SLAVE_ID, "mode", 1, _frame(1).hex()))
    dispatcher = _dispatcher(transport, directory, ledger)

    assert dispatcher.state(record.id) is CommandState.CREATED
    await dispatcher.send_now(_frame(1), directory.endpoint(SLAVE_ID), command_id=record.id)

    assert transport.calls == [(directory.endpoint(SLAVE_ID), _frame(1))]
    assert dispatcher.state(record.id) is CommandState.DISPATCHED


@pytest.mark.asyncio
async def test_send_now_propagates_delivery_failure(directory: InMemoryDeviceDirectory) -> None:
    dispatcher = _dispatcher(FakeTransport(fail=True), directory)

    with pytest.raises(DeliveryFailed):
        await dispatcher.send_now(_frame(1), directory.endpoint(SLAVE_ID))


@pytest.mark.asyncio
async def test_delayed_sends_keep_submission_order(
    transport: FakeTransport, directory: InMemoryDeviceDirectory
) -> None:
    dispatcher = _dispatcher(transport, directory)
    target = directory.endpoint(SLAVE_ID)

    for value in range(5):
        dispatcher.send_with_delay(_frame(value), target, 0.0)
    assert dispatcher.pending(SLAVE_ID) == 5

    await dispatcher.drain()

    assert [frame.data[4] for frame in transport.frames_for(SLAVE_ID)] == [0, 1, 2, 3, 4]
    assert dispatcher.pending(SLAVE_ID) == 0


@pytest.mark.asyncio
async def test_delayed_send_honours_deadline(transport: FakeTransport, directory: InMemoryDeviceDirectory) -> None:
    dispatcher = _dispatcher(transport, directory)
    target = directory.endpoint(SLAVE_ID)

    dispatcher.send_with_delay(_frame(2), target, 0.05)
    dispatcher.send_with_delay(_frame(1), target, 0.0)
    await asyncio.sleep(0.01)

    assert [frame.data[4] for frame in transport.frames_for(SLAVE_ID)] == [1]
    await dispatcher.drain()
    assert [frame.data[4] for frame in transport.frames_for(SLAVE_ID)] == [1, 2]


@pytest.mark.asyncio
async def test_send_with_delay_returns_immediately(
    transport: FakeTransport, directory: InMemoryDeviceDirectory
) -> None:
    dispatcher = _dispatcher(transport, directory)

    task = dispatcher.send_with_delay(_frame(1), directory.endpoint(SLAVE_ID), 10.0)

    assert not task.done()
    assert transport.calls == []
    assert dispatcher.cancel_pending(SLAVE_ID) == 1
    await dispatcher.drain()
    assert task.cancelled()
    assert transport.calls == []


@pytest.mark.asyncio
async def test_failed_delayed_send_does_not_block_successors(directory: InMemoryDeviceDirectory) -> None:
    class FailOnceTransport(FakeTransport):
        async def send(self, endpoint, frame):
            failing, self.fail = self.fail, False
            if failing:
                raise DeliveryFailed("first write lost")
            await super().send(endpoint, frame)

    transport = FailOnceTransport(fail=True)
    dispatcher = _dispatcher(transport, directory)
    target = directory.endpoint(SLAVE_ID)

    first = dispatcher.send_with_delay(_frame(1), target, 0.0)
    second = dispatcher.send_with_delay(_frame(2), target, 0.0)
    other = dispatcher.send_with_delay(_frame(3), directory.endpoint(MASTER_ID), 0.0)
    failures = await dispatcher.drain()

    assert failures == [first.exception()]
    assert isinstance(first.exception(), DeliveryFailed)
    assert second.exception() is None
    assert other.exception() is None
    assert transport.frames_for(SLAVE_ID) == [_frame(2)]
    assert transport.frames_for(MASTER_ID) == [_frame(3)]


@pytest.mark.asyncio
async def test_check_and_resend_resends_unexecuted_once(
    transport: FakeTransport, directory: InMemoryDeviceDirectory
) -> None:
    ledger = InMemoryLedger()
    record = ledger.append(CommandRecord(1, SLAVE_ID, "mode", 1, _frame(1).hex()))
    dispatcher = _dispatcher(transport, directory, ledger)

    outcome = await dispatcher.check_and_resend(record.id)

    assert outcome is ResendOutcome.RESENT
    assert transport.frames_for(SLAVE_ID) == [_frame(1)]
    assert dispatcher.state(record.id) is CommandState.DISPATCHED


@pytest.mark.asyncio
async def test_check_and_resend_uses_current_endpoint(
    transport: FakeTransport, directory: InMemoryDeviceDirectory
) -> None:
    ledger = InMemoryLedger()
    record = ledger.append(CommandRecord(1, SLAVE_ID, "mode", 1, _frame(1).hex()))
    dispatcher = _dispatcher(transport, directory, ledger)

    directory.move(SLAVE_ID, "192.168.1.50", 6000)
    await dispatcher.check_and_resend(record.id)

    sent_to, _ = transport.calls[0]
    assert sent_to.address == "192.168.1.50:6000"


@pytest.mark.asyncio
async def test_check_and_resend_skips_executed(
    transport: FakeTransport, directory: InMemoryDeviceDirectory
) -> None:
    ledger = InMemoryLedger()
    record = ledger.append(CommandRecord(1, SLAVE_ID, "mode", 1, _frame(1).hex()))
    ledger.mark_executed(record.id)
    dispatcher = _dispatcher(transport, directory, ledger)

    outcome = await dispatcher.check_and_resend(record.id)

    assert outcome is ResendOutcome.ALREADY_EXECUTED
    assert transport.calls == []
    assert dispatcher.state(record.id) is CommandState.EXECUTED


@pytest.mark.asyncio
async def test_check_and_resend_failure_leaves_pending_timeout(directory: InMemoryDeviceDirectory) -> None:
    ledger = InMemoryLedger()
    record = ledger.append(CommandRecord(1, SLAVE_ID, "mode", 1, _frame(1).hex()))
    dispatcher = _dispatcher(FakeTransport(fail=True), directory, ledger)

    with pytest.raises(DeliveryFailed):
        await dispatcher.check_and_resend(record.id)
    assert dispatcher.state(record.id) is CommandState.PENDING_TIMEOUT


@pytest.mark.asyncio
async def test_drain_reports_nothing_when_all_delivered(
    transport: FakeTransport, directory: InMemoryDeviceDirectory
) -> None:
    dispatcher = _dispatcher(transport, directory)
    dispatcher.send_with_delay(_frame(1), directory.endpoint(SLAVE_ID), 0.0)

    assert await dispatcher.drain() == []
    assert await dispatcher.drain() == []


@pytest.mark.asyncio
async def test_executed_command_state_is_released(
    transport: FakeTransport, directory: InMemoryDeviceDirectory
) -> None:
    ledger = InMemoryLedger()
    records = [ledger.append(CommandRecord(1, SLAVE_ID, "mode", 1, _frame(1).hex())) for _ in range(3)]
    dispatcher = _dispatcher(transport, directory, ledger)
    for record in records:
        await dispatcher.send_now(_frame(1), directory.endpoint(SLAVE_ID), command_id=record.id)
    assert dispatcher.tracked() == 3

    ledger.mark_executed(records[0].id)
    assert dispatcher.state(records[0].id) is CommandState.EXECUTED
    ledger.mark_executed(records[1].id)
    assert await dispatcher.check_and_resend(records[1].id) is ResendOutcome.ALREADY_EXECUTED

    assert dispatcher.tracked() == 1
    assert dispatcher.state(records[2].id) is CommandState.DISPATCHED
