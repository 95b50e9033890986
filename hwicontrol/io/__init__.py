"""
Wire-level protocol implementation.

This module contains the lowest-level communication components:
- HwiTelnet - Raw TCP connection to the panel
- AdmissionQueue, Command, Priority - One-at-a-time command admission
- StreamDecoder, FrameGrammar, DecodedFrame - Inbound frame extraction
- IpcServer, IpcClient - Sharing one connection between processes
"""

from .command import AdmissionQueue, Command, Priority, SendResult, ClientConst
from .frame import StreamDecoder, FrameGrammar, DecodedFrame, DecoderConst
from .telnet import HwiTelnet, TelnetConst
from .ipc import IpcServer, IpcClient, IpcRequest, IpcOutput, IpcConst, socket_path

__all__ = [
    "AdmissionQueue",
    "Command",
    "Priority",
    "SendResult",
    "ClientConst",
    "StreamDecoder",
    "FrameGrammar",
    "DecodedFrame",
    "DecoderConst",
    "HwiTelnet",
    "TelnetConst",
    "IpcServer",
    "IpcClient",
    "IpcRequest",
    "IpcOutput",
    "IpcConst",
    "socket_path",
]
