"""
API-level models and protocol implementation.

This module contains models and types that belong to the API layer:
- HwiProtocol (implements the HWI command set on top of hwi_io)
- FrameRegistry (frame type to handler dispatch)
- DimLevel, canonical_address, command builders
- Types and enums used by the API layer
"""

from .models import DimLevel, canonical_address, fade_dim_command, request_dim_level_command, DIM_LEVEL_GRAMMAR, GRAMMARS
from .protocol import HwiProtocol, FrameRegistry
from .types import FrameType, CommMode, ConnectionState, Const

__all__ = [
    # API-level models
    "DimLevel",
    "canonical_address",
    "fade_dim_command",
    "request_dim_level_command",
    "DIM_LEVEL_GRAMMAR",
    "GRAMMARS",
    "HwiProtocol",
    "FrameRegistry",

    # API-level types
    "FrameType",
    "CommMode",
    "ConnectionState",
    "Const",
]
