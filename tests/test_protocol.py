import asyncio

import pytest

from hwicontrol import (ConnectionState, DimLevel, FrameType, HwiConnectionError, HwiProtocol, HwiSendError,
                        Priority)
from hwicontrol.api import Const

from helpers import FakePanel, wait_until


def make_protocol(panel: FakePanel, **kwargs) -> HwiProtocol:
    kwargs.setdefault("min_cmd_delay", 0)
    kwargs.setdefault("ipc_server", False)
    return HwiProtocol(host="127.0.0.1", port=panel.port, connect_timeout=1, **kwargs)


async def drain_priming(panel: FakePanel, protocol: HwiProtocol) -> None:
    assert await panel.next_command() == ""
    assert await panel.next_command() == "DLMON"
    await wait_until(lambda: not protocol.queue.is_busy())


def test_telnet_mode_needs_a_host():
    with pytest.raises(ValueError):
        HwiProtocol()


@pytest.mark.asyncio
async def test_connect_wakes_panel_and_enables_monitoring(panel):
    async with make_protocol(panel) as protocol:
        await protocol.connect()
        assert protocol.state == ConnectionState.CONNECTED
        await drain_priming(panel, protocol)


@pytest.mark.asyncio
async def test_connect_failure_raises():
    closed = FakePanel()
    await closed.start()
    await closed.close()

    protocol = make_protocol(closed)
    with pytest.raises(HwiConnectionError):
        await protocol.connect()
    assert protocol.state == ConnectionState.DISCONNECTED
    await protocol.aclose()


@pytest.mark.asyncio
async def test_send_while_disconnected_returns_none(panel):
    protocol = make_protocol(panel)
    assert await protocol.send("DLMON") is None
    assert await protocol.request_dim_level("1.1.2.4") is None


@pytest.mark.asyncio
async def test_commands_written_in_priority_order(panel):
    async with make_protocol(panel) as protocol:
        await protocol.connect()
        await drain_priming(panel, protocol)

        async with protocol.queue.turn(Priority.HIGH):
            tasks = [
                protocol.submit("RDL, [1.1.2.1]", Priority.LOW),
                protocol.submit("RDL, [1.1.2.2]", Priority.STANDARD),
                protocol.submit("FADEDIM, 50, 2, 0, [1.1.2.3]", Priority.HIGH),
                protocol.submit("RDL, [1.1.2.4]", Priority.STANDARD),
            ]
            await wait_until(lambda: len(protocol.queue) == 4)

        results = await asyncio.gather(*tasks)
        assert all(result.ok for result in results)
        assert [await panel.next_command() for _ in range(4)] == [
            "FADEDIM, 50, 2, 0, [1.1.2.3]",
            "RDL, [1.1.2.2]",
            "RDL, [1.1.2.4]",
            "RDL, [1.1.2.1]",
        ]


@pytest.mark.asyncio
async def test_command_builders_reach_the_wire(panel):
    async with make_protocol(panel) as protocol:
        await protocol.connect()
        await drain_priming(panel, protocol)

        result = await protocol.fade_dim("1.1.2.4", 75, fade=1)
        assert result.ok
        assert result.command.priority == Priority.HIGH
        assert await panel.next_command() == "FADEDIM, 75, 1, 0, [1.1.2.4]"

        await protocol.request_dim_level("1.1.2.4")
        assert await panel.next_command() == "RDL, [1.1.2.4]"


@pytest.mark.asyncio
async def test_failed_write_reported_and_turn_released(panel):
    async with make_protocol(panel) as protocol:
        await protocol.connect()
        await drain_priming(panel, protocol)

        # Transport gone without the protocol noticing
        await protocol.telnet.close()
        result = await protocol.send("RDL, [1.1.2.4]")
        assert not result.ok
        assert isinstance(result.error, HwiSendError)
        assert not protocol.queue.is_busy()

        again = await asyncio.wait_for(protocol.send("RDL, [1.1.2.4]"), 1)
        assert not again.ok


@pytest.mark.asyncio
async def test_frames_dispatched_to_handler(panel):
    received = []
    async with make_protocol(panel) as protocol:
        protocol.register_handler(FrameType.DIM_LEVEL, received.append)
        await protocol.connect()

        await panel.push(b"L232> DL, [01:01:02")
        await asyncio.sleep(0.05)
        await panel.push(b":04], 50\r\nDL, [1.1.2.5], 0\r\n")
        await wait_until(lambda: len(received) == 2)

        assert [f.message for f in received] == [DimLevel("01:01:02:04", 50), DimLevel("01:01:02:05", 0)]
        assert [f.counter for f in received] == [1, 2]


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_the_listener(panel):
    received = []

    async def handler(frame):
        received.append(frame)
        if len(received) == 1:
            raise RuntimeError("handler bug")

    async with make_protocol(panel) as protocol:
        protocol.register_handler(FrameType.DIM_LEVEL, handler)
        await protocol.connect()
        await panel.push(b"DL, [1.1.2.4], 10\r")
        await panel.push(b"DL, [1.1.2.4], 20\r")
        await wait_until(lambda: len(received) == 2)
        assert received[1].message.level == 20


@pytest.mark.asyncio
async def test_connection_lost_reported(panel):
    lost = asyncio.Event()
    async with make_protocol(panel) as protocol:
        protocol.on_connection_lost = lost.set
        await protocol.connect()
        await drain_priming(panel, protocol)

        await panel.drop_clients()
        await asyncio.wait_for(lost.wait(), 2)
        assert protocol.state == ConnectionState.DISCONNECTED
        assert await protocol.send("DLMON") is None


@pytest.mark.asyncio
async def test_reconnects_after_connection_lost(panel, monkeypatch):
    monkeypatch.setattr(Const, "RECONNECT_MIN_DELAY", 0.05)
    async with make_protocol(panel, reconnect=True) as protocol:
        await protocol.connect()
        await drain_priming(panel, protocol)

        await panel.drop_clients()
        # A fresh connection primes the panel again
        assert await panel.next_command() == ""
        assert await panel.next_command() == "DLMON"
        assert panel.connections == 2
        assert protocol.is_connected()


@pytest.mark.asyncio
async def test_settle_delay_spaces_commands(panel):
    async with make_protocol(panel, min_cmd_delay=0.1) as protocol:
        await protocol.connect()
        await drain_priming(panel, protocol)
        start = len(panel.received_at)

        first = protocol.submit("RDL, [1.1.2.4]")
        second = protocol.submit("RDL, [1.1.2.5]")
        assert await panel.next_command() == "RDL, [1.1.2.4]"
        # The first command keeps its turn until the delay has passed
        assert protocol.queue.is_busy()
        assert not second.done()
        assert await panel.next_command() == "RDL, [1.1.2.5]"
        await asyncio.gather(first, second)

        first_at, second_at = panel.received_at[start:start + 2]
        assert second_at - first_at >= 0.09


@pytest.mark.asyncio
async def test_non_ascii_command_reported_not_raised(panel):
    async with make_protocol(panel) as protocol:
        await protocol.connect()
        await drain_priming(panel, protocol)

        result = await protocol.send("FADEDIM, 50, 2, 0, [1.1.2.4] é")
        assert not result.ok
        assert isinstance(result.error, HwiSendError)
        assert not protocol.queue.is_busy()

        assert (await protocol.send("RDL, [1.1.2.4]")).ok
        assert await panel.next_command() == "RDL, [1.1.2.4]"


@pytest.mark.asyncio
async def test_stalled_satellite_does_not_block_frame_handling(panel, ipc_path):
    received = []
    async with make_protocol(panel, ipc_server=True, ipc_path=ipc_path) as protocol:
        protocol.register_handler(FrameType.DIM_LEVEL, lambda frame: received.append(frame.message))
        await protocol.connect()

        # Connects and never reads
        _, stalled = await asyncio.open_unix_connection(ipc_path)
        await wait_until(lambda: protocol.ipc_server.client_count == 1)

        for _ in range(200):
            await panel.push(b"DL, [1.1.2.4], 40\r\n" * 100)
            await asyncio.sleep(0.001)
        await panel.push(b"DL, [1.1.2.5], 99\r\n")

        await wait_until(lambda: received and received[-1] == DimLevel("01:01:02:05", 99), timeout=20)
        assert len(received) == 20001
        assert protocol.ipc_server.client_count == 0
        stalled.close()
