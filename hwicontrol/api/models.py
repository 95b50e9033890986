"""
hwicontrol API-level models.

This module contains models that belong to the API layer:
- canonical_address(), the correlation key between circuits and frames
- DimLevel, the typed result of a dim level frame
- The grammars of every frame type the protocol decodes
"""

import re
from dataclasses import dataclass

from ..io import FrameGrammar
from .types import FrameType, Const


def canonical_address(address: str) -> str:
    """
    Convert a panel address to its canonical form.

    "1.1.2.4" and "[01:01:02:04]" both become "01:01:02:04". Each part is
    zero-padded to two digits. Already canonical addresses are unchanged.
    """
    stripped = address.strip().strip("[]").strip()
    parts = re.split(r"[.:]", stripped)
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        raise ValueError(f"Invalid address: {address!r}")
    if any(n < 0 for n in numbers):
        raise ValueError(f"Invalid address: {address!r}")
    return ":".join(f"{n:02d}" for n in numbers)


@dataclass(frozen=True)
class DimLevel:
    """A circuit reporting its level, either unprompted or in reply to RDL"""
    address: str
    level: int

    def __post_init__(self):
        if not Const.MIN_LEVEL <= self.level <= Const.MAX_LEVEL:
            raise ValueError(f"Level must be {Const.MIN_LEVEL}-{Const.MAX_LEVEL}, received {self.level}")

    @classmethod
    def from_fields(cls, address: str, level: str) -> "DimLevel":
        return cls(address=canonical_address(address), level=int(level))


# The level must be followed by a non-digit, otherwise it may still be arriving
DIM_LEVEL_GRAMMAR = FrameGrammar(
    type_id=FrameType.DIM_LEVEL,
    pattern=re.compile(r"DL\s*,\s*\[([\d:.]+)\]\s*,\s*(\d+)(?=\D)"),
    fields=("address", "level"),
    factory=DimLevel.from_fields,
)

GRAMMARS: list[FrameGrammar] = [DIM_LEVEL_GRAMMAR]


def fade_dim_command(address: str, level: int, fade: float = Const.DEFAULT_FADE, delay: float = 0) -> str:
    """FADEDIM, <level>, <fade>, <delay>, [<address>]"""
    if not Const.MIN_LEVEL <= level <= Const.MAX_LEVEL:
        raise ValueError(f"Level must be {Const.MIN_LEVEL}-{Const.MAX_LEVEL}, received {level}")
    if fade < 0 or delay < 0:
        raise ValueError("Fade and delay times cannot be negative")
    return f"FADEDIM, {level:g}, {fade:g}, {delay:g}, [{address}]"


def request_dim_level_command(address: str) -> str:
    """RDL, [<address>]"""
    return f"RDL, [{address}]"
