"""
hwicontrol command admission.

This module implements the outbound side of the HWI protocol engine. The panel
can only process one command at a time, so every command has to wait for its
turn in an AdmissionQueue before it is written to the wire.

Terms:
- Command = A single line of text sent to the panel
- Turn = The exclusive right to transmit, held by at most one Command at a time
- Settle delay = Time the holder keeps its turn after transmitting, giving the
  RS-232 link and the panel time to act on the command

Example usage:
async def main():
    queue = AdmissionQueue()
    async with queue.turn(Priority.HIGH):
        writer.write(b"DLMON\\r")
        await asyncio.sleep(ClientConst.DEFAULT_MIN_CMD_DELAY)

asyncio.run(main())
"""

import asyncio
import contextlib
import heapq
import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import AsyncIterator, Optional


# Constants
class ClientConst:
    """Constants for command transmission"""
    TERMINATOR = "\r"
    DEFAULT_MIN_CMD_DELAY = 0.2
    MIN_CMD_DELAY = 0.0
    MAX_CMD_DELAY = 10.0


class Priority(IntEnum):
    """Command priority, lower values are more urgent"""
    HIGH = 1
    STANDARD = 2
    LOW = 3


@dataclass
class Command:
    """Represents a command waiting for, or holding, a turn"""
    text: str
    priority: Priority = Priority.STANDARD
    seq: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        self.priority = Priority(self.priority)
        if "\r" in self.text or "\n" in self.text:
            raise ValueError("Command text must be a single line")

    def to_wire(self) -> bytes:
        """Convert command to wire format"""
        return (self.text + ClientConst.TERMINATOR).encode("ascii")


@dataclass
class SendResult:
    """Outcome of a command once its turn has been released"""
    command: Command
    ok: bool
    error: Optional[BaseException] = None
    elapsed: float = 0.0


class AdmissionQueue:
    """
    Grants turns one at a time.

    Waiters are admitted by priority, then in arrival order. The holder of the
    turn is never preempted; it keeps the turn until release() is called,
    which must happen exactly once per grant. Prefer turn(), which releases on
    every exit path.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._waiters: list[tuple[int, int, object, asyncio.Future]] = []
        self._holder: Optional[object] = None
        self._next_seq: int = 0

    def __len__(self) -> int:
        return sum(1 for *_, fut in self._waiters if not fut.done())

    @property
    def holder(self) -> Optional[object]:
        """Token currently holding the turn, or None"""
        return self._holder

    def is_busy(self) -> bool:
        return self._holder is not None

    async def wait(self, token: object, priority: Priority = Priority.STANDARD) -> object:
        """Suspend until token holds the turn. Returns the token."""
        priority = Priority(priority)

        # Idle and nobody queued, take the turn straight away
        if self._holder is None and not self._waiters:
            self._holder = token
            return token

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        seq = self._next_seq
        self._next_seq += 1
        heapq.heappush(self._waiters, (int(priority), seq, token, fut))

        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Granted, but the waiter went away before it could run
                self.logger.debug(f"Turn granted to a cancelled waiter (priority {priority.name}), passing it on")
                self._holder = None
                self._grant_next()
            else:
                self._discard(fut)
            raise
        return token

    def release(self, token: object) -> None:
        """Give up the turn held by token and admit the next waiter"""
        if self._holder is not token:
            raise RuntimeError("release() called by a token that does not hold the turn")
        self._holder = None
        self._grant_next()

    @contextlib.asynccontextmanager
    async def turn(self, priority: Priority = Priority.STANDARD) -> AsyncIterator[object]:
        """Hold the turn for the duration of an async with block"""
        token = object()
        await self.wait(token, priority)
        try:
            yield token
        finally:
            self.release(token)

    def _grant_next(self) -> None:
        while self._waiters:
            _, _, token, fut = heapq.heappop(self._waiters)
            if fut.done():
                continue  # Cancelled while waiting
            self._holder = token
            fut.set_result(None)
            return

    def _discard(self, fut: asyncio.Future) -> None:
        self._waiters = [w for w in self._waiters if w[3] is not fut]
        heapq.heapify(self._waiters)
