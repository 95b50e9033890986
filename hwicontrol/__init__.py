"""
hwicontrol Python Library

A Python library for interfacing with Lutron Homeworks Interactive (HWI)
lighting panels over their telnet (RS-232 bridged) command interface.

This library provides three distinct layers of abstraction:

1. **hwi_io**: Wire-level protocol implementation (telnet transport, command admission, frame decoding, IPC)
2. **hwi_api**: HWI commands and frame types using hwi_io (FADEDIM, RDL, DL frames)
3. **hwi_interface**: Pythonic interface to circuits using hwi_api (high-level objects)

Example usage:
    import hwicontrol

    # High-level interface (recommended for most users)
    hwi = hwicontrol.HwiControl(host="192.168.1.100", port=23)
    hwi.load_circuits("circuits.yaml")
    async with hwi:
        await hwi.circuit("1.1.2.4").set_level(50)

    # Low-level API access (for advanced users)
    async with hwicontrol.HwiProtocol(host="192.168.1.100") as protocol:
        await protocol.connect()
        await protocol.fade_dim("1.1.2.4", 50)

    # A second process sharing the first one's connection
    async with hwicontrol.HwiProtocol(comm_mode="ipc") as protocol:
        await protocol.connect()
        await protocol.request_dim_level("1.1.2.4")
"""

# High-level interface (recommended for most users)
from .interface import HwiControl, HwiCircuit

# API-level models
from .api import HwiProtocol, FrameRegistry, DimLevel, canonical_address, fade_dim_command, request_dim_level_command

# Low-level models
from .io import (AdmissionQueue, Command, Priority, SendResult, StreamDecoder, FrameGrammar, DecodedFrame,
                 HwiTelnet, IpcServer, IpcClient, IpcRequest, IpcOutput)

# Shared types and exceptions
from .api.types import FrameType, CommMode, ConnectionState
from .exceptions import HwiError, HwiConnectionError, HwiSendError, HwiConfigurationError

# Utilities
from .utils import run_with_keyboard_interrupt

__version__ = "0.1.0"

# Public API - these are the main classes users should import
__all__ = [
    # High-level interface (recommended)
    "HwiControl",
    "HwiCircuit",

    # API-level models (for advanced users)
    "HwiProtocol",
    "FrameRegistry",
    "DimLevel",
    "canonical_address",
    "fade_dim_command",
    "request_dim_level_command",

    # Low-level models (for advanced users)
    "AdmissionQueue",
    "Command",
    "Priority",
    "SendResult",
    "StreamDecoder",
    "FrameGrammar",
    "DecodedFrame",
    "HwiTelnet",
    "IpcServer",
    "IpcClient",
    "IpcRequest",
    "IpcOutput",

    # Exceptions
    "HwiError",
    "HwiConnectionError",
    "HwiSendError",
    "HwiConfigurationError",

    # Types and enums
    "FrameType",
    "CommMode",
    "ConnectionState",

    # Utilities
    "run_with_keyboard_interrupt",
]
