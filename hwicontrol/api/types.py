"""
API-level type definitions.

This module contains types and enums that belong to the API layer:
- Frame types recognised by the protocol
- Communication modes and connection states
- Constants used by the API layer
"""

from enum import Enum, IntEnum


class FrameType(IntEnum):
    DIM_LEVEL = 1  # DL, [01:01:00:02:04], 50


class CommMode(Enum):
    TELNET = "telnet"  # Own the connection to the panel
    IPC = "ipc"        # Reach the panel through another process


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Const:

    # Telnet
    DEFAULT_PORT = 23
    DEFAULT_CONNECT_TIMEOUT = 1.5

    # Minimum time between commands, in seconds
    DEFAULT_MIN_CMD_DELAY = 0.2

    # Sent on connect: a bare CR brings up the prompt, DLMON turns on dim level monitoring
    WAKE_CMD = ""
    MONITOR_CMD = "DLMON"

    # Levels
    MIN_LEVEL = 0
    MAX_LEVEL = 100
    DEFAULT_FADE = 2  # seconds

    # At most one level query per circuit in this many seconds
    LEVEL_QUERY_DEBOUNCE = 0.25

    # Optional reconnect backoff, in seconds
    RECONNECT_MIN_DELAY = 1
    RECONNECT_MAX_DELAY = 60
