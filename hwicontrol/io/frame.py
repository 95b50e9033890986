"""
hwicontrol stream decoder.

The panel talks in unframed ASCII. Replies and unsolicited notifications
arrive in arbitrary chunks, with CR, LF or CRLF line endings, interleaved with
prompts and echoed commands. The StreamDecoder accumulates the text and pulls
out every frame that one of its registered grammars recognises.

Terms:
- Grammar = A regex describing one kind of frame, plus names for its captures
- Frame = One complete unit of inbound data recognised by a grammar
- Buffer = Normalised text received so far that has not been consumed

Example usage:
    decoder = StreamDecoder([dim_level_grammar])
    for chunk in (b"DL, [01:01:00:02:04", b"], 50\\r\\n"):
        for frame in decoder.feed(chunk):
            print(frame.type_id, frame.counter, frame.matches)
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence


# Constants
class DecoderConst:
    """Constants for the StreamDecoder"""
    SEPARATOR = ";"
    MAX_BUFFER = 4096
    ENCODING = "ascii"


@dataclass(frozen=True)
class FrameGrammar:
    """
    Describes one kind of inbound frame.

    The pattern must match the frame body only and should end with a
    look-ahead for whatever terminates the frame, so that a frame which has
    only partly arrived is left alone. Each capture group is named, in order,
    by fields. factory, if given, is called with the captures as keyword
    arguments to build a typed message.
    """
    type_id: int
    pattern: re.Pattern
    fields: tuple[str, ...]
    factory: Optional[Callable[..., Any]] = None

    def __post_init__(self):
        if self.pattern.groups != len(self.fields):
            raise ValueError(f"Grammar {self.type_id} has {self.pattern.groups} capture groups but {len(self.fields)} field names")

    def build(self, matches: Sequence[str]) -> Any:
        """Build the typed message from wire-form matches ([body, capture...])"""
        if len(matches) != len(self.fields) + 1:
            raise ValueError(f"Grammar {self.type_id} expects {len(self.fields) + 1} matches, got {len(matches)}")
        if self.factory is None:
            return None
        return self.factory(**dict(zip(self.fields, matches[1:])))

    def frame(self, counter: int, matches: Sequence[str]) -> "DecodedFrame":
        return DecodedFrame(type_id=self.type_id, counter=counter, matches=list(matches), message=self.build(matches))


@dataclass
class DecodedFrame:
    """Represents a decoded frame"""
    type_id: int
    counter: int
    matches: list[str]  # [body, capture1, ..., captureN]
    message: Any = None
    timestamp: float = field(default_factory=time.time)

    @property
    def body(self) -> str:
        return self.matches[0] if self.matches else ""

    @property
    def captures(self) -> list[str]:
        return self.matches[1:]


class StreamDecoder:
    """
    Incremental multi-grammar frame extractor.

    Every chunk is normalised (LF becomes CR, runs of CR become a single
    separator) and appended to the buffer. The buffer is then scanned
    repeatedly: the earliest match of any grammar is consumed, leaving
    leading + separator + trailing text behind, until nothing matches. Frames
    therefore come out in stream order, whatever their type.
    """

    def __init__(self,
                 grammars: Iterable[FrameGrammar] = (),
                 max_buffer: int = DecoderConst.MAX_BUFFER,
                 logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.max_buffer = max_buffer
        self.buffer: str = ""
        self.counter: int = 0
        self._grammars: dict[int, FrameGrammar] = {}
        for grammar in grammars:
            self.add_grammar(grammar)

    @property
    def grammars(self) -> list[FrameGrammar]:
        return list(self._grammars.values())

    def add_grammar(self, grammar: FrameGrammar) -> None:
        self._grammars[grammar.type_id] = grammar

    def grammar(self, type_id: int) -> Optional[FrameGrammar]:
        return self._grammars.get(type_id)

    @staticmethod
    def normalize(text: str) -> str:
        """Map every line ending convention onto a single separator"""
        return re.sub(r"\r+", DecoderConst.SEPARATOR, text.replace("\n", "\r"))

    def feed(self, data: bytes | str) -> list[DecodedFrame]:
        """Add a chunk of inbound data and return any frames it completed"""
        if isinstance(data, (bytes, bytearray)):
            data = bytes(data).decode(DecoderConst.ENCODING, errors="replace")
        if not data:
            return []

        self.buffer += self.normalize(data)

        frames: list[DecodedFrame] = []
        while (found := self._earliest_match()) is not None:
            grammar, match = found
            matches = [match.group(0)] + [g if g is not None else "" for g in match.groups()]
            self.buffer = self.buffer[:match.start()] + DecoderConst.SEPARATOR + self.buffer[match.end():]
            try:
                frame = grammar.frame(self.counter + 1, matches)
            except ValueError as e:
                self.logger.warning(f"Discarding frame {matches[0]!r}: {e}")
                continue
            self.counter += 1
            frames.append(frame)

        self._trim()
        return frames

    def reset(self) -> None:
        """Forget buffered text, the counter keeps running"""
        self.buffer = ""

    def _earliest_match(self) -> Optional[tuple[FrameGrammar, re.Match]]:
        best: Optional[tuple[FrameGrammar, re.Match]] = None
        for grammar in self._grammars.values():
            match = grammar.pattern.search(self.buffer)
            if match is None:
                continue
            if match.end() == match.start():
                raise ValueError(f"Grammar {grammar.type_id} matched an empty frame")
            # Ties go to the grammar registered first
            if best is None or match.start() < best[1].start():
                best = (grammar, match)
        return best

    def _trim(self) -> None:
        if len(self.buffer) <= self.max_buffer:
            return
        # Complete lines that matched nothing never will, keep the partial tail
        tail = self.buffer.rsplit(DecoderConst.SEPARATOR, 1)[-1]
        self.logger.debug(f"Decoder buffer exceeded {self.max_buffer} chars, discarding {len(self.buffer) - len(tail)} unmatched chars")
        self.buffer = tail[-self.max_buffer:]
