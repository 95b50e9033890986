import asyncio
import json

import pytest

from hwicontrol import DimLevel, FrameType, HwiConfigurationError, HwiControl, DecodedFrame

from helpers import wait_until

CIRCUITS_YAML = """
- comment: Ground floor
- address: 1.1.2.4
  name: Kitchen Downlights
  room: Kitchen
- address: "[01:01:02:04]"
  name: Duplicate of the kitchen
- address: 1.1.3.1
  name: Exhaust Fan
  dimmable: false
- name: No address here
- address: 1.x.3
  name: Bad address
- address: 1.1.3.2
  name: Odd dimmable
  dimmable: maybe
- just a string
"""


def dim_level_frame(address: str, level: int) -> DecodedFrame:
    return DecodedFrame(type_id=FrameType.DIM_LEVEL, counter=1, matches=[], message=DimLevel(address, level))


@pytest.fixture
def control():
    return HwiControl(disabled=True, comm_mode="ipc")


def test_load_circuits_skips_bad_records(control, tmp_path):
    path = tmp_path / "circuits.yaml"
    path.write_text(CIRCUITS_YAML)

    added = control.load_circuits(str(path))

    assert [c.name for c in added] == ["Kitchen Downlights", "Exhaust Fan"]
    assert list(control.circuits) == ["01:01:02:04", "01:01:03:01"]
    kitchen = control.circuit("1.1.2.4")
    assert kitchen.room == "Kitchen"
    assert kitchen.dimmable
    assert not control.circuit("01:01:03:01").dimmable


def test_load_circuits_from_json(control, tmp_path):
    path = tmp_path / "circuits.json"
    path.write_text(json.dumps({"circuits": [{"address": "2.1.1.1", "name": "Hall"}]}))
    assert [c.std_address for c in control.load_circuits(str(path))] == ["02:01:01:01"]


def test_load_circuits_missing_file(control, tmp_path):
    assert control.load_circuits(str(tmp_path / "nope.yaml")) == []
    assert control.circuits == {}


def test_add_circuit_rejects_duplicates(control):
    control.add_circuit("1.1.2.4", "Kitchen")
    with pytest.raises(HwiConfigurationError):
        control.add_circuit("01:01:02:04", "Kitchen again")
    with pytest.raises(HwiConfigurationError):
        control.add_circuit("kitchen", "Kitchen by name")


def test_circuit_lookup_with_bad_address(control):
    assert control.circuit("not an address") is None


@pytest.mark.asyncio
async def test_set_level_dimmable(control):
    circuit = control.add_circuit("1.1.2.4", "Kitchen")
    assert await circuit.set_level(40) is None  # disabled, nothing sent
    assert circuit.level == 40
    assert circuit.on

    await circuit.set_level(0)
    assert circuit.level == 0
    assert not circuit.on

    with pytest.raises(ValueError):
        await circuit.set_level(101)


@pytest.mark.asyncio
async def test_set_level_non_dimmable_snaps(control):
    fan = control.add_circuit("1.1.3.1", "Fan", dimmable=False)
    await fan.set_level(40)
    assert fan.level == 100
    await fan.set_level(0)
    assert fan.level == 0


@pytest.mark.asyncio
async def test_turn_on_restores_last_level(control):
    circuit = control.add_circuit("1.1.2.4", "Kitchen")
    await circuit.turn_on()
    assert circuit.level == 100

    await circuit.set_level(30)
    await circuit.turn_off()
    assert not circuit.on
    await circuit.turn_on()
    assert circuit.level == 30
    assert circuit.on


@pytest.mark.asyncio
async def test_dim_level_event_updates_matching_circuit(control):
    changes = []

    async def light_change(circuit, level):
        changes.append((circuit.name, level))

    control.light_change = light_change
    control.add_circuit("1.1.2.4", "Kitchen")
    control.add_circuit("1.1.2.5", "Dining")

    await control.dim_level_event(dim_level_frame("01:01:02:05", 65))
    await control.dim_level_event(dim_level_frame("09:09:09:09", 10))

    assert changes == [("Dining", 65)]
    assert control.circuit("1.1.2.5").level == 65
    assert control.circuit("1.1.2.4").level == 0


@pytest.mark.asyncio
async def test_start_when_disabled_does_not_connect(control):
    connected = []
    control.on_connect = lambda: connected.append(True)
    await control.start()
    assert connected == []
    assert not control.protocol.is_connected()


@pytest.mark.asyncio
async def test_get_level_queries_panel_with_debounce(panel, ipc_path):
    control = HwiControl(host="127.0.0.1", port=panel.port, min_cmd_delay=0, ipc_path=ipc_path)
    circuit = control.add_circuit("1.1.2.4", "Kitchen")

    async with control:
        # Priming, then the start-up level query
        assert [await panel.next_command() for _ in range(3)] == ["", "DLMON", "RDL, [1.1.2.4]"]

        await panel.push(b"DL, [01:01:02:04], 80\r\n")
        await wait_until(lambda: circuit.level == 80)

        assert circuit.get_level() == 80
        assert circuit.get_level() == 80
        assert await panel.next_command() == "RDL, [1.1.2.4]"
        with pytest.raises(asyncio.TimeoutError):
            await panel.next_command(timeout=0.1)


@pytest.mark.asyncio
async def test_set_level_sends_fade_dim(panel, ipc_path):
    control = HwiControl(host="127.0.0.1", port=panel.port, min_cmd_delay=0, ipc_path=ipc_path)
    fan = control.add_circuit("1.1.3.1", "Fan", dimmable=False)
    disconnected = asyncio.Event()
    control.on_disconnect = disconnected.set

    async with control:
        assert [await panel.next_command() for _ in range(3)] == ["", "DLMON", "RDL, [1.1.3.1]"]
        result = await fan.set_level(25)
        assert result.ok
        assert await panel.next_command() == "FADEDIM, 100, 0, 0, [1.1.3.1]"

    assert disconnected.is_set()


@pytest.mark.asyncio
async def test_satellite_syncs_levels_once_server_appears(panel, ipc_path):
    satellite = HwiControl(comm_mode="ipc", ipc_path=ipc_path, ipc_retry=0.05)
    satellite.add_circuit("1.1.2.4", "Kitchen")
    server = HwiControl(host="127.0.0.1", port=panel.port, min_cmd_delay=0, ipc_path=ipc_path)

    async with satellite:
        assert satellite.protocol.is_connected()
        async with server:
            assert [await panel.next_command() for _ in range(2)] == ["", "DLMON"]
            # The satellite's level query, forwarded once it reaches the server
            assert await panel.next_command() == "RDL, [1.1.2.4]"

            await panel.push(b"DL, [01:01:02:04], 35\r\n")
            await wait_until(lambda: satellite.circuit("1.1.2.4").level == 35)
