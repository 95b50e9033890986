"""
Shared helpers for the hwicontrol tests.

FakePanel is a real TCP server on localhost that stands in for the panel's
telnet bridge: it records every command line it receives and can push
arbitrary bytes back to its clients.
"""

import asyncio
import time
from typing import Callable, Optional


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until it returns True, failing the test on timeout"""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


class FakePanel:
    def __init__(self):
        self.server: Optional[asyncio.AbstractServer] = None
        self.port: int = 0
        self.writers: list[asyncio.StreamWriter] = []
        self.commands: asyncio.Queue[str] = asyncio.Queue()
        self.received_at: list[float] = []  # monotonic arrival time of each command
        self.connections: int = 0

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writers.append(writer)
        self.connections += 1
        buffer = ""
        try:
            while data := await reader.read(1024):
                buffer += data.decode("ascii")
                *lines, buffer = buffer.split("\r")
                for line in lines:
                    self.received_at.append(time.monotonic())
                    await self.commands.put(line)
        except ConnectionError:
            pass
        finally:
            if writer in self.writers:
                self.writers.remove(writer)
            writer.close()

    async def next_command(self, timeout: float = 2.0) -> str:
        return await asyncio.wait_for(self.commands.get(), timeout)

    async def push(self, data: bytes) -> None:
        for writer in list(self.writers):
            writer.write(data)
            await writer.drain()

    async def drop_clients(self) -> None:
        for writer in list(self.writers):
            writer.close()
        self.writers.clear()

    async def close(self) -> None:
        await self.drop_clients()
        if self.server:
            self.server.close()
            await self.server.wait_closed()
