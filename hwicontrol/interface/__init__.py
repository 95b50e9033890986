"""
High-level interface models and client.

This module contains models that belong to the hwi_interface layer:
- HwiControl (main client for high-level usage)
- HwiCircuit (a lighting circuit as a Pythonic object)
- Circuit list loading and level bookkeeping
"""

from .interface import (
    HwiControl,
    HwiCircuit,
)

__all__ = [
    # High-level client
    "HwiControl",

    # High-level models
    "HwiCircuit",
]
