import asyncio
import inspect
import logging
import time
import traceback
from typing import Any, Awaitable, Callable, Optional

from colorama import Fore, Style

from ..io import (AdmissionQueue, ClientConst, Command, DecodedFrame, HwiTelnet, IpcClient, IpcConst, IpcOutput,
                  IpcRequest, IpcServer, Priority, SendResult, StreamDecoder)
from .models import GRAMMARS, fade_dim_command, request_dim_level_command
from .types import CommMode, ConnectionState, Const, FrameType
from ..exceptions import HwiConnectionError, HwiSendError

"""
===================================================================================
This module implements the Lutron Homeworks Interactive protocol using hwi_io.
===================================================================================
"""

FrameHandler = Callable[[DecodedFrame], Optional[Awaitable[None]]]


class FrameRegistry:
    """Maps frame types to their handler. The last registration for a type wins."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: dict[int, FrameHandler] = {}

    def __contains__(self, type_id: int) -> bool:
        return int(type_id) in self._handlers

    def register(self, type_id: int, handler: FrameHandler) -> None:
        self._handlers[int(type_id)] = handler

    def unregister(self, type_id: int) -> None:
        self._handlers.pop(int(type_id), None)

    def handler(self, type_id: int) -> Optional[FrameHandler]:
        return self._handlers.get(int(type_id))

    async def dispatch(self, frame: DecodedFrame) -> bool:
        """Deliver a frame to its handler. Returns False if no handler is registered."""
        handler = self._handlers.get(int(frame.type_id))
        if handler is None:
            return False
        try:
            result = handler(frame)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"Handler for frame type {frame.type_id} failed: {e}")
            self.logger.error(traceback.format_exc())
        return True


class HwiProtocol:
    """
    One process's view of the panel.

    In telnet mode it owns the TCP connection, serialises commands through an
    AdmissionQueue, decodes inbound frames, and (unless ipc_server is False)
    shares all of that with satellite processes. In ipc mode it has no
    connection of its own and goes through the IPC server instead; handlers
    see exactly the same frames either way.
    """

    def __init__(self,
                 host: Optional[str] = None,
                 port: int = Const.DEFAULT_PORT,
                 comm_mode: CommMode | str = CommMode.TELNET,
                 min_cmd_delay: float = Const.DEFAULT_MIN_CMD_DELAY,
                 connect_timeout: float = Const.DEFAULT_CONNECT_TIMEOUT,
                 ipc_server: bool = True,
                 ipc_channel: str = IpcConst.DEFAULT_CHANNEL,
                 ipc_path: Optional[str] = None,
                 ipc_retry: float = IpcConst.DEFAULT_RETRY_INTERVAL,
                 reconnect: bool = False,
                 print_traffic: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.comm_mode = CommMode(comm_mode)
        if self.comm_mode == CommMode.TELNET and not host:
            raise ValueError("A host is required in telnet mode")
        self.host = host
        self.port = port
        self.min_cmd_delay = max(ClientConst.MIN_CMD_DELAY, min(float(min_cmd_delay), ClientConst.MAX_CMD_DELAY))
        self.connect_timeout = connect_timeout
        self.reconnect = reconnect
        self.print_traffic = print_traffic

        self.state = ConnectionState.DISCONNECTED
        self.queue = AdmissionQueue(logger=self.logger)
        self.decoder = StreamDecoder(GRAMMARS, logger=self.logger)
        self.registry = FrameRegistry(logger=self.logger)

        self.telnet: Optional[HwiTelnet] = None
        self.ipc_server: Optional[IpcServer] = None
        self.ipc_client: Optional[IpcClient] = None
        if self.comm_mode == CommMode.TELNET:
            self.telnet = HwiTelnet(host, port, logger=self.logger)
            if ipc_server:
                self.ipc_server = IpcServer(self._ipc_request, channel=ipc_channel, path=ipc_path, logger=self.logger)
        else:
            self.ipc_client = IpcClient(self._ipc_output, channel=ipc_channel, path=ipc_path, retry_interval=ipc_retry, logger=self.logger)
            self.ipc_client.on_connect = self._link_up

        # Called with no arguments when the telnet connection drops
        self.on_connection_lost: Optional[Callable[[], Any]] = None
        # Called with no arguments every time a link is (re)established: telnet
        # connect or reconnect, or each connection to the IPC server
        self.on_connected: Optional[Callable[[], Any]] = None

        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._next_seq: int = 0
        self._req_time: float = time.time()

    async def __aenter__(self):
        """Async context manager entry"""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.aclose()

    def register_handler(self, type_id: FrameType | int, handler: FrameHandler) -> None:
        self.registry.register(type_id, handler)

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    # ============================
    # CONNECTION
    # ============================

    async def connect(self) -> None:
        """Connect to the panel (telnet mode) or to the IPC server (ipc mode)"""
        if self.state != ConnectionState.DISCONNECTED:
            self.logger.warning(f"connect() called while {self.state.value}")
            return
        self.state = ConnectionState.CONNECTING

        if self.comm_mode == CommMode.IPC:
            # The client keeps retrying in the background, so this never fails.
            # CONNECTED first, so commands issued from on_connected are not refused.
            self.state = ConnectionState.CONNECTED
            if not await self.ipc_client.connect():
                self.logger.warning(f"IPC server at {self.ipc_client.path} not reachable yet, will keep trying")
            return

        try:
            await self.telnet.connect(timeout=self.connect_timeout)
        except HwiConnectionError as e:
            self.state = ConnectionState.DISCONNECTED
            self.logger.error(f"Unable to connect to HWI panel via telnet: {e}")
            raise

        self.telnet.on_connection_lost = self._connection_lost
        self.decoder.reset()
        self.state = ConnectionState.CONNECTED
        self._reader_task = asyncio.create_task(self._async_data_listener())

        self.submit(Const.WAKE_CMD, Priority.HIGH)
        self.submit(Const.MONITOR_CMD, Priority.HIGH)
        # Let the priming commands take their place in the queue before anyone else
        await asyncio.sleep(0)

        if self.ipc_server and not self.ipc_server.is_serving():
            try:
                await self.ipc_server.start()
            except OSError as e:
                self.logger.error(f"Unable to start IPC server on {self.ipc_server.path}: {e}")

        self._link_up()

    def _link_up(self) -> None:
        if callable(self.on_connected):
            result = self.on_connected()
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))

    def _connection_lost(self, exc: Optional[Exception]) -> None:
        self.state = ConnectionState.DISCONNECTED
        if self.reconnect:
            self.logger.warning("Connection to HWI panel lost, reconnecting")
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())
        else:
            self.logger.error("Connection to HWI panel lost, not reconnecting")
        if callable(self.on_connection_lost):
            result = self.on_connection_lost()
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))

    async def _reconnect_loop(self) -> None:
        delay = Const.RECONNECT_MIN_DELAY
        while self.state == ConnectionState.DISCONNECTED:
            await asyncio.sleep(delay)
            try:
                await self.connect()
            except HwiConnectionError:
                delay = min(delay * 2, Const.RECONNECT_MAX_DELAY)
                self.logger.info(f"Next reconnect attempt in {delay}s")

    async def aclose(self) -> None:
        """Close the connection and stop everything this instance started"""
        if self._reconnect_task:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        self.state = ConnectionState.DISCONNECTED

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.telnet:
            await self.telnet.close()
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self.ipc_server:
            await self.ipc_server.close()
        if self.ipc_client:
            await self.ipc_client.close()

    # ============================
    # SENDING
    # ============================

    async def send(self, cmd: str, priority: Priority = Priority.STANDARD) -> Optional[SendResult]:
        """
        Send a command and wait until its turn has been released.

        Returns None when not connected. Otherwise returns a SendResult; a
        failed transmission is logged and reported there, never raised.
        """
        if not self.is_connected():
            return None
        command = Command(text=cmd, priority=Priority(priority), seq=self._alloc_seq())
        try:
            wire = command.to_wire()
        except UnicodeEncodeError as e:
            error = HwiSendError(f"Command is not ASCII: {command.text!r}")
            self.logger.error(f"ERR {error}")
            return SendResult(command=command, ok=False, error=error)
        if self.comm_mode == CommMode.IPC:
            return await self._ipc_send(command)
        return await self._telnet_send(command, wire)

    def submit(self, cmd: str, priority: Priority = Priority.STANDARD) -> asyncio.Task:
        """Fire and forget. The returned task resolves to the result of send()."""
        return self._track(asyncio.create_task(self.send(cmd, priority)))

    async def fade_dim(self, address: str, level: int, fade: float = Const.DEFAULT_FADE, delay: float = 0, priority: Priority = Priority.HIGH) -> Optional[SendResult]:
        """Fade a circuit to a level (0-100) over fade seconds, starting after delay seconds"""
        return await self.send(fade_dim_command(address, level, fade, delay), priority)

    async def request_dim_level(self, address: str, priority: Priority = Priority.STANDARD) -> Optional[SendResult]:
        """Ask the panel for a circuit's level. The answer arrives as a DIM_LEVEL frame."""
        return await self.send(request_dim_level_command(address), priority)

    async def _telnet_send(self, command: Command, wire: bytes) -> SendResult:
        error: Optional[HwiSendError] = None
        async with self.queue.turn(command.priority):
            self._req_time = time.time()
            self.logger.info(f"XMT 0ms: {command.text}")
            self._print_traffic("XMT", command.text)
            try:
                await self.telnet.write(wire)
            except HwiSendError as e:
                error = e
                self.logger.error(f"ERR {self._elapsed_ms():.0f}ms: {e}")
            # Give RS-232 time to communicate and the panel time to act
            await asyncio.sleep(self.min_cmd_delay)
        return SendResult(command=command, ok=error is None, error=error, elapsed=time.time() - command.timestamp)

    async def _ipc_send(self, command: Command) -> SendResult:
        ok = await self.ipc_client.send(command.text, command.priority)
        error = None if ok else HwiSendError(f"Unable to forward over IPC: {command.text}")
        return SendResult(command=command, ok=ok, error=error, elapsed=time.time() - command.timestamp)

    def _ipc_request(self, request: IpcRequest) -> None:
        # No acknowledgement goes back to the satellite
        self.submit(request.cmd, request.priority)

    # ============================
    # RECEIVING
    # ============================

    async def _async_data_listener(self) -> None:
        """Feed inbound chunks to the decoder and dispatch what it finds"""
        try:
            async for chunk in self.telnet.chunks():
                for frame in self.decoder.feed(chunk):
                    await self._process_frame(frame)
        except Exception as e:
            self.logger.error(f"Telnet data listener error: {e}")
            self.logger.error(traceback.format_exc())

    async def _process_frame(self, frame: DecodedFrame) -> None:
        self.logger.info(f"RCV {self._elapsed_ms():.0f}ms: {frame.body}")
        self._print_traffic("RCV", frame.body)
        await self.registry.dispatch(frame)
        if self.ipc_server and self.ipc_server.is_serving():
            await self.ipc_server.broadcast(IpcOutput(counter=frame.counter, out_type=int(frame.type_id), matches=frame.matches))

    async def _ipc_output(self, output: IpcOutput) -> None:
        grammar = self.decoder.grammar(output.out_type)
        if grammar is None:
            self.logger.debug(f"Ignoring IPC output of unknown type {output.out_type}")
            return
        try:
            frame = grammar.frame(output.counter, output.matches)
        except ValueError as e:
            self.logger.warning(f"Ignoring IPC output {output.to_dict()}: {e}")
            return
        await self.registry.dispatch(frame)

    # ============================
    # HELPERS
    # ============================

    def _alloc_seq(self) -> int:
        seq = self._next_seq
        self._next_seq += 1
        return seq

    def _elapsed_ms(self) -> float:
        return (time.time() - self._req_time) * 1000

    def _track(self, task: asyncio.Future) -> asyncio.Future:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Background command failed: {task.exception()}")

    def _print_traffic(self, direction: str, text: str) -> None:
        if not self.print_traffic:
            return
        print(Fore.MAGENTA + f"{direction}: "
              + Fore.WHITE + Style.DIM + f"{self._elapsed_ms():.0f}ms".ljust(8)
              + Style.BRIGHT + Fore.CYAN + f"  {text!r}"
              + Style.RESET_ALL)
