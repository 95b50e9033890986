"""
hwicontrol wire-level telnet transport.

This module implements the TCP side of the HWI protocol using asyncio. The
panel (or its Ethernet to RS-232 adapter) accepts one persistent telnet-style
connection; no option negotiation is required.

Example usage:
async def main():
    telnet = await HwiTelnet.create("192.0.2.10", 23)
    async with telnet:
        await telnet.write(b"RDL, [1.1.2.4]\\r")
        async for chunk in telnet.chunks():
            print("Received:", chunk)

asyncio.run(main())
"""

import asyncio
import logging
from typing import AsyncGenerator, Callable, Optional, Self

from ..exceptions import HwiConnectionError, HwiSendError


# Constants
class TelnetConst:
    """Constants for the telnet transport"""
    DEFAULT_PORT = 23
    DEFAULT_CONNECT_TIMEOUT = 1.5


class HwiTelnetProtocol(asyncio.Protocol):
    def __init__(self, data_handler: Callable[[bytes], None], lost_handler: Callable[[Optional[Exception]], None], logger: Optional[logging.Logger] = None):
        self.data_handler = data_handler
        self.lost_handler = lost_handler
        self.logger = logger or logging.getLogger(__name__)
        self.transport: Optional[asyncio.Transport] = None

    def connection_made(self, transport):
        self.transport = transport

    def data_received(self, data):
        self.data_handler(data)

    def connection_lost(self, exc):
        if exc:
            self.logger.error(f"Telnet connection lost: {exc}")
        else:
            self.logger.info("Telnet connection closed")
        self.lost_handler(exc)


class HwiTelnet:
    """
    One TCP connection to the panel.

    Inbound chunks are queued in arrival order and consumed with chunks().
    The generator ends when the connection closes. There is no reconnect here;
    a lost connection stays lost until connect() is called again.
    """

    def __init__(self, host: str, port: int = TelnetConst.DEFAULT_PORT, logger: Optional[logging.Logger] = None):
        self.host = host
        self.port = port
        self.logger = logger or logging.getLogger(__name__)
        self._transport: Optional[asyncio.Transport] = None
        self._chunk_queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self.on_connection_lost: Optional[Callable[[Optional[Exception]], None]] = None

    @classmethod
    async def create(cls,
                     host: str,
                     port: int = TelnetConst.DEFAULT_PORT,
                     timeout: float = TelnetConst.DEFAULT_CONNECT_TIMEOUT,
                     logger: Optional[logging.Logger] = None) -> Self:
        self = cls(host, port, logger)
        await self.connect(timeout=timeout)
        return self

    async def connect(self, timeout: float = TelnetConst.DEFAULT_CONNECT_TIMEOUT) -> None:
        if self.is_connected():
            self.logger.warning("Telnet connection already open")
            return
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._chunk_queue = queue
        try:
            transport, _ = await asyncio.wait_for(
                loop.create_connection(
                    lambda: HwiTelnetProtocol(queue.put_nowait, lambda exc: self._connection_lost(queue, exc), self.logger),
                    self.host, self.port,
                ),
                timeout=timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise HwiConnectionError(f"Unable to connect to {self.host}:{self.port}: {e or 'timed out'}") from e
        self._transport = transport
        self.logger.info(f"Connected to HWI panel at {self.host}:{self.port}")

    async def write(self, data: bytes) -> None:
        if not self.is_connected():
            raise HwiSendError(f"Not connected to {self.host}:{self.port}")
        try:
            self._transport.write(data)
        except Exception as e:
            raise HwiSendError(f"Write to {self.host}:{self.port} failed: {e}") from e

    async def chunks(self) -> AsyncGenerator[bytes, None]:
        """Async generator yielding inbound chunks until the connection closes"""
        queue = self._chunk_queue
        while True:
            chunk = await queue.get()
            if chunk is None:
                break
            yield chunk

    def _connection_lost(self, queue: asyncio.Queue, exc: Optional[Exception]) -> None:
        queue.put_nowait(None)
        # Stale connection, or closed on purpose
        if queue is not self._chunk_queue or self._transport is None:
            return
        self._transport = None
        if callable(self.on_connection_lost):
            self.on_connection_lost(exc)

    def is_connected(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    async def close(self) -> None:
        if self._transport:
            transport = self._transport
            self._transport = None
            transport.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
