"""
hwicontrol inter-process bridge.

Only one process can hold the telnet connection to the panel. Other processes
on the same host (satellites) reach the panel through that process: they
forward commands to it and receive every frame it decodes.

Transport: Unix domain socket, one JSON object per line.

Terms:
- Server = The process that owns the telnet connection
- Satellite = A process using IpcClient instead of its own connection
- Request = A command forwarded from a satellite to the server
- Output = A decoded frame broadcast from the server to every satellite

Delivery is at-most-once. There are no acknowledgements and nothing is
replayed, so a satellite that was disconnected has missed whatever was
broadcast in the meantime.
"""

import asyncio
import inspect
import json
import logging
import os
import tempfile
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .command import Priority


# Constants
class IpcConst:
    """Constants for the IPC bridge"""
    DEFAULT_CHANNEL = "hwicontrol"
    DEFAULT_RETRY_INTERVAL = 1.5
    # Bytes a satellite may leave unread before it is dropped
    MAX_BACKLOG = 256 * 1024
    REQUEST = "hwi_request"
    OUTPUT = "hwi_output"


def socket_path(channel: str = IpcConst.DEFAULT_CHANNEL) -> str:
    """Filesystem path of the socket for a named channel"""
    return os.path.join(tempfile.gettempdir(), f"{channel}.ipc.sock")


def encode_message(msg_type: str, data: dict[str, Any]) -> bytes:
    """Serialize a message to JSON bytes + newline"""
    return json.dumps({"type": msg_type, "data": data}, separators=(",", ":")).encode() + b"\n"


def decode_message(line: bytes) -> tuple[str, dict[str, Any]]:
    """Deserialize a newline-delimited message into (type, data)"""
    msg = json.loads(line.decode().strip())
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str) or not isinstance(msg.get("data"), dict):
        raise ValueError(f"Malformed IPC message: {msg!r}")
    return msg["type"], msg["data"]


@dataclass
class IpcRequest:
    """A command forwarded by a satellite"""
    counter: int
    priority: Priority
    cmd: str

    def to_dict(self) -> dict[str, Any]:
        return {"counter": self.counter, "priority": int(self.priority), "cmd": self.cmd}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IpcRequest":
        if not isinstance(data.get("cmd"), str):
            raise ValueError(f"IPC request has no command: {data!r}")
        return cls(counter=int(data.get("counter", 0)), priority=Priority(int(data["priority"])), cmd=data["cmd"])


@dataclass
class IpcOutput:
    """A decoded frame as broadcast to satellites"""
    counter: int
    out_type: int
    matches: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"counter": self.counter, "outType": self.out_type, "matches": list(self.matches)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IpcOutput":
        matches = data.get("matches") or []
        if not isinstance(matches, list):
            raise ValueError(f"IPC output matches must be a list: {data!r}")
        return cls(counter=int(data["counter"]), out_type=int(data["outType"]), matches=[str(m) for m in matches])


class IpcServer:
    """Accepts satellites on a named channel, runs their requests and broadcasts outputs to them"""

    def __init__(self,
                 request_handler: Callable[[IpcRequest], Any],
                 channel: str = IpcConst.DEFAULT_CHANNEL,
                 path: Optional[str] = None,
                 max_backlog: int = IpcConst.MAX_BACKLOG,
                 logger: Optional[logging.Logger] = None):
        self.request_handler = request_handler
        self.channel = channel
        self.path = path or socket_path(channel)
        self.max_backlog = max_backlog
        self.logger = logger or logging.getLogger(__name__)
        self._server: Optional[asyncio.AbstractServer] = None
        self._clients: set[asyncio.StreamWriter] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        if self.is_serving():
            self.logger.warning("IPC server already running")
            return
        # A previous server that died leaves its socket file behind
        if os.path.exists(self.path):
            os.unlink(self.path)
        self._server = await asyncio.start_unix_server(self._handle_client, path=self.path)
        self.logger.info(f"IPC server listening on {self.path}")

    async def broadcast(self, output: IpcOutput) -> int:
        """
        Send an output to every connected satellite. Returns how many were reached.

        Never waits on a satellite. One that has left more than max_backlog
        bytes unread is dropped, it can reconnect and query what it missed.
        """
        line = encode_message(IpcConst.OUTPUT, output.to_dict())
        sent = 0
        for writer in list(self._clients):
            if writer.is_closing():
                self._clients.discard(writer)
                continue
            if writer.transport.get_write_buffer_size() > self.max_backlog:
                self.logger.warning(f"Dropping IPC satellite with more than {self.max_backlog} bytes unread")
                self._drop(writer)
                continue
            try:
                writer.write(line)
                sent += 1
            except (ConnectionError, OSError) as e:
                self.logger.debug(f"Dropping IPC satellite after failed broadcast: {e}")
                self._drop(writer)
        return sent

    def _drop(self, writer: asyncio.StreamWriter) -> None:
        self._clients.discard(writer)
        # abort() rather than close(), close() would wait for the backlog to flush
        writer.transport.abort()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._clients.add(writer)
        self.logger.debug(f"IPC satellite connected ({len(self._clients)} total)")
        try:
            while line := await reader.readline():
                try:
                    msg_type, data = decode_message(line)
                    if msg_type != IpcConst.REQUEST:
                        self.logger.warning(f"Ignoring IPC message of type {msg_type}")
                        continue
                    request = IpcRequest.from_dict(data)
                except (ValueError, KeyError, TypeError) as e:
                    self.logger.warning(f"Ignoring malformed IPC message: {e}")
                    continue
                self.logger.info(f"IPC RCV server {request.to_dict()}")
                try:
                    self.request_handler(request)
                except Exception as e:
                    self.logger.error(f"IPC request handler error: {e}")
        except (ConnectionError, OSError) as e:
            self.logger.debug(f"IPC satellite connection error: {e}")
        finally:
            self._clients.discard(writer)
            writer.close()
            self.logger.debug(f"IPC satellite disconnected ({len(self._clients)} remaining)")

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._clients):
            writer.close()
        self._clients.clear()
        await self._server.wait_closed()
        self._server = None
        if os.path.exists(self.path):
            os.unlink(self.path)
        self.logger.info("IPC server stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class IpcClient:
    """
    Satellite side of the bridge.

    Keeps one connection to the server, reconnecting every retry_interval
    seconds after it drops. Outputs are passed to output_handler in the order
    they arrive. on_connect, if set, is called (sync or async, no arguments)
    after every successful connection; anything broadcast while disconnected
    is lost, so that is the moment to query current state.
    """

    def __init__(self,
                 output_handler: Callable[[IpcOutput], Optional[Awaitable[None]]],
                 channel: str = IpcConst.DEFAULT_CHANNEL,
                 path: Optional[str] = None,
                 retry_interval: float = IpcConst.DEFAULT_RETRY_INTERVAL,
                 logger: Optional[logging.Logger] = None):
        self.output_handler = output_handler
        self.channel = channel
        self.path = path or socket_path(channel)
        self.retry_interval = retry_interval
        self.logger = logger or logging.getLogger(__name__)
        self._writer: Optional[asyncio.StreamWriter] = None
        self._task: Optional[asyncio.Task] = None
        self._attempted = asyncio.Event()
        self._counter: int = 0
        self.on_connect: Optional[Callable[[], Optional[Awaitable[None]]]] = None

    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> bool:
        """Start the connection loop and wait for its first attempt. Returns True if connected."""
        if self._task is None or self._task.done():
            self._attempted = asyncio.Event()
            self._task = asyncio.create_task(self._run())
        await self._attempted.wait()
        return self.is_connected()

    async def send(self, cmd: str, priority: Priority = Priority.STANDARD) -> bool:
        """Forward a command to the server. Returns False if it could not be handed over."""
        request = IpcRequest(counter=self._counter, priority=Priority(priority), cmd=cmd)
        self._counter += 1
        if not self.is_connected():
            self.logger.warning(f"IPC not connected, dropping {request.to_dict()}")
            return False
        self.logger.info(f"IPC XMT {request.to_dict()}")
        try:
            self._writer.write(encode_message(IpcConst.REQUEST, request.to_dict()))
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            self.logger.error(f"IPC send failed: {e}")
            return False
        return True

    async def _run(self) -> None:
        while True:
            try:
                reader, self._writer = await asyncio.open_unix_connection(self.path)
            except (ConnectionError, OSError) as e:
                self.logger.debug(f"IPC connect to {self.path} failed: {e}")
                self._attempted.set()
                await asyncio.sleep(self.retry_interval)
                continue

            self.logger.debug("IPC client connected to server")
            await self._notify_connect()
            self._attempted.set()
            try:
                while line := await reader.readline():
                    await self._receive_line(line)
            except (ConnectionError, OSError) as e:
                self.logger.debug(f"IPC client connection error: {e}")
            finally:
                writer, self._writer = self._writer, None
                writer.close()
            self.logger.debug("IPC client disconnected from server")
            await asyncio.sleep(self.retry_interval)

    async def _notify_connect(self) -> None:
        if not callable(self.on_connect):
            return
        try:
            result = self.on_connect()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"IPC on_connect handler error: {e}")
            self.logger.error(traceback.format_exc())

    async def _receive_line(self, line: bytes) -> None:
        try:
            msg_type, data = decode_message(line)
            if msg_type != IpcConst.OUTPUT:
                return
            output = IpcOutput.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Ignoring malformed IPC broadcast: {e}")
            return
        try:
            result = self.output_handler(output)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"IPC output handler error: {e}")
            self.logger.error(traceback.format_exc())

    async def close(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._writer:
            self._writer.close()
            self._writer = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
