import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import yaml

from ..api import HwiProtocol, DimLevel, FrameType, CommMode, Const, canonical_address, fade_dim_command, request_dim_level_command
from ..io import DecodedFrame, IpcConst, Priority, SendResult
from ..exceptions import HwiConfigurationError

"""
===================================================================================
This module takes the HWI protocol and provides a higher level interface
intended for use in a control interface or home automation system written in Python.
===================================================================================

Terms:
HwiProtocol = A class which implements the HWI protocol using hwi_io.
HwiControl = Owns an HwiProtocol and the circuits configured for this process.
HwiCircuit = A lighting load at one panel address, dimmable or not.
"""

CallbackLightChange = Callable[["HwiCircuit", int], Optional[Awaitable[None]]]
CallbackOnConnect = Callable[[], Optional[Awaitable[None]]]
CallbackOnDisconnect = Callable[[], Optional[Awaitable[None]]]


async def _call(func: Optional[Callable[..., Any]], *args) -> None:
    if callable(func):
        result = func(*args)
        if inspect.isawaitable(result):
            await result


class HwiControl:
    def __init__(self,
                 host: Optional[str] = None,
                 port: int = Const.DEFAULT_PORT,
                 comm_mode: CommMode | str = CommMode.TELNET,
                 min_cmd_delay: float = Const.DEFAULT_MIN_CMD_DELAY,
                 disabled: bool = False,
                 reconnect: bool = False,
                 ipc_channel: str = IpcConst.DEFAULT_CHANNEL,
                 ipc_path: Optional[str] = None,
                 ipc_retry: float = IpcConst.DEFAULT_RETRY_INTERVAL,
                 print_traffic: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.disabled = disabled
        self.protocol: HwiProtocol = HwiProtocol(host=host, port=port, comm_mode=comm_mode, min_cmd_delay=min_cmd_delay,
                                                 reconnect=reconnect, ipc_channel=ipc_channel, ipc_path=ipc_path, ipc_retry=ipc_retry,
                                                 print_traffic=print_traffic, logger=self.logger)
        self.protocol.register_handler(FrameType.DIM_LEVEL, self.dim_level_event)
        self.protocol.on_connection_lost = self._connection_lost
        self.protocol.on_connected = self._sync_levels
        self.circuits: dict[str, HwiCircuit] = {}  # keyed by canonical address

        self.light_change: Optional[CallbackLightChange] = None
        self.on_connect: Optional[CallbackOnConnect] = None
        self.on_disconnect: Optional[CallbackOnDisconnect] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # ============================
    # Circuits
    # ============================

    def add_circuit(self, address: str, name: str, room: Optional[str] = None, dimmable: bool = True) -> "HwiCircuit":
        try:
            std_address = canonical_address(address)
        except ValueError as e:
            raise HwiConfigurationError(f"Circuit {name!r}: {e}")
        if std_address in self.circuits:
            raise HwiConfigurationError(f"Duplicate address {address} for circuit {name!r}, keeping {self.circuits[std_address].name!r}")
        circuit = HwiCircuit(control=self, address=address, name=name, room=room, dimmable=dimmable)
        self.circuits[std_address] = circuit
        return circuit

    def load_circuits(self, path: str) -> list["HwiCircuit"]:
        """
        Add every circuit listed in a YAML or JSON file.

        The file holds a list of records with address and name, and optionally
        room and dimmable (default true). Records carrying only a comment are
        skipped quietly; invalid and duplicate records are skipped with a
        warning. An unreadable file adds nothing.
        """
        try:
            with open(path, encoding="utf-8") as f:
                records = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            self.logger.error(f"Unable to read circuits file {path}: {e}")
            return []

        if isinstance(records, dict):
            records = records.get("circuits")
        if records is None:
            records = []
        if not isinstance(records, list):
            self.logger.error(f"Circuits file {path} must contain a list of circuits")
            return []

        added = []
        for record in records:
            try:
                circuit = self._add_circuit_record(record)
            except HwiConfigurationError as e:
                self.logger.warning(f"Skipping circuit record: {e}")
                continue
            if circuit is not None:
                added.append(circuit)

        self.logger.info(f"Added {len(added)} circuits from {path}")
        return added

    def _add_circuit_record(self, record: Any) -> Optional["HwiCircuit"]:
        if not isinstance(record, dict):
            raise HwiConfigurationError(f"Invalid circuit record: {record!r}")
        if record.get("address") is None or record.get("name") is None:
            if "comment" in record:
                return None
            raise HwiConfigurationError(f"Invalid circuit record: {record!r}")
        dimmable = record.get("dimmable", True)
        if not isinstance(dimmable, bool):
            raise HwiConfigurationError(f"dimmable must be true or false: {record!r}")
        room = record.get("room")
        return self.add_circuit(address=str(record["address"]), name=str(record["name"]), room=str(room) if room else None, dimmable=dimmable)

    def circuit(self, address: str) -> Optional["HwiCircuit"]:
        try:
            return self.circuits.get(canonical_address(address))
        except ValueError:
            return None

    # ============================
    # Start / Stop
    # ============================

    async def start(self) -> None:
        if self.disabled:
            self.logger.warning("Connection disabled, commands will be logged but not sent")
            return
        await self.protocol.connect()
        await _call(self.on_connect)

    async def stop(self) -> None:
        await self.protocol.aclose()
        await _call(self.on_disconnect)

    # ============================
    # HwiProtocol callbacks
    # ============================

    async def dim_level_event(self, frame: DecodedFrame) -> None:
        message: DimLevel = frame.message
        circuit = self.circuits.get(message.address)
        if circuit is None:
            # Probably a circuit configured in another process
            return
        await circuit.handle_dim_level(message.level)

    def _sync_levels(self) -> None:
        # Runs on every (re)connection, level changes made meanwhile were missed.
        # The replies arrive as dim level frames.
        for circuit in self.circuits.values():
            self.protocol.submit(request_dim_level_command(circuit.address), Priority.LOW)

    async def _connection_lost(self) -> None:
        await _call(self.on_disconnect)


class HwiCircuit:
    """A lighting circuit. Supports on/off and, where the load allows, dimming."""

    def __init__(self, control: HwiControl, address: str, name: str, room: Optional[str] = None, dimmable: bool = True):
        self.control = control
        self.address = address
        self.std_address = canonical_address(address)
        self.name = name
        self.room = room
        self.dimmable = dimmable
        self.on: bool = False
        self.level: int = 0
        self._last_query: float = 0.0

    def __repr__(self) -> str:
        return f"HwiCircuit({self.name!r}, [{self.address}], level={self.level})"

    async def turn_on(self) -> Optional[SendResult]:
        # Come back at the last known level, if there is one
        if self.level == 0 or not self.dimmable:
            self.level = Const.MAX_LEVEL
        self.on = True
        return await self._send_dim(self.level, Const.DEFAULT_FADE)

    async def turn_off(self) -> Optional[SendResult]:
        self.on = False
        return await self._send_dim(0, Const.DEFAULT_FADE)

    async def set_level(self, level: int) -> Optional[SendResult]:
        if not Const.MIN_LEVEL <= level <= Const.MAX_LEVEL:
            raise ValueError(f"Level must be {Const.MIN_LEVEL}-{Const.MAX_LEVEL}, received {level}")
        if self.dimmable:
            fade = Const.DEFAULT_FADE
        else:
            level = Const.MAX_LEVEL if level > 0 else 0
            fade = 0
        self.level = level
        self.on = level > 0
        return await self._send_dim(level, fade)

    def get_level(self) -> int:
        """
        Return the last known level straight away.

        Querying the panel can take a while when many circuits are refreshed at
        once, so the query is only kicked off here; the answer updates this
        circuit later through a dim level frame. Queries within
        LEVEL_QUERY_DEBOUNCE seconds of the previous one are skipped.
        """
        now = time.monotonic()
        if now - self._last_query >= Const.LEVEL_QUERY_DEBOUNCE:
            self._last_query = now
            if not self.control.disabled:
                self.control.protocol.submit(request_dim_level_command(self.address), Priority.STANDARD)
        return self.level

    async def handle_dim_level(self, level: int) -> None:
        self.control.logger.info(f"UPD Dim level for {self.name}[{self.address}] to {level}")
        self.level = level
        self.on = level > 0
        await _call(self.control.light_change, self, level)

    async def _send_dim(self, level: int, fade: float) -> Optional[SendResult]:
        cmd = fade_dim_command(self.address, level, fade)
        kind = "dimmable" if self.dimmable else "non-dimmable"
        if self.control.disabled:
            self.control.logger.debug(f"[CONNECTION DISABLED] {cmd}: {self.name} lighting ({kind}) to => {level}")
            return None
        self.control.logger.debug(f"{cmd}: {self.name} lighting ({kind}) to => {level}")
        return await self.control.protocol.send(cmd, Priority.HIGH)
