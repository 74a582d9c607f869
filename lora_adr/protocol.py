"""
Wire codec between the simulator and the controller.

Payloads are ASCII, comma separated:
  observation:  deviceId[#seq],previousActionId,delivery,energy[,feature...]
                previousActionId empty or -1 -> no previous action/outcome
  decision:     actionId[#seq]

Framing (one payload per frame):
  "length": 4-byte big-endian unsigned length, then the payload (default)
  "line":   payload terminated by '\n'
Both framers buffer partial reads and split merged ones.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Type
import math
import struct
import time

from .errors import FrameError
from .reward import Outcome

DEFAULT_MAX_FRAME = 64 * 1024


class StreamDesync(FrameError):
    """Framing can no longer be trusted; the session must be closed."""


@dataclass
class DecisionRequest:
    device_id: str
    prev_action: Optional[int]
    outcome: Outcome
    features: Tuple[float, ...] = ()
    seq: Optional[int] = None
    arrived: float = field(default_factory=time.monotonic)


class LengthPrefixFramer:
    name = "length"
    HEADER = struct.Struct("!I")

    def __init__(self, max_frame: int = DEFAULT_MAX_FRAME) -> None:
        self.max_frame = int(max_frame)
        self._buf = bytearray()

    def feed(self, data: bytes) -> List[bytes]:
        self._buf.extend(data)
        frames: List[bytes] = []
        hs = self.HEADER.size
        while len(self._buf) >= hs:
            (n,) = self.HEADER.unpack_from(self._buf, 0)
            if n > self.max_frame:
                raise StreamDesync(f"frame of {n} bytes exceeds limit {self.max_frame}")
            if len(self._buf) < hs + n:
                break
            frames.append(bytes(self._buf[hs:hs + n]))
            del self._buf[:hs + n]
        return frames

    def encode(self, payload: bytes) -> bytes:
        if len(payload) > self.max_frame:
            raise FrameError(f"payload of {len(payload)} bytes exceeds limit {self.max_frame}")
        return self.HEADER.pack(len(payload)) + payload

    @property
    def buffered(self) -> int:
        return len(self._buf)


class LineFramer:
    name = "line"

    def __init__(self, max_frame: int = DEFAULT_MAX_FRAME) -> None:
        self.max_frame = int(max_frame)
        self._buf = bytearray()

    def feed(self, data: bytes) -> List[bytes]:
        self._buf.extend(data)
        frames: List[bytes] = []
        while True:
            pos = self._buf.find(b"\n")
            if pos < 0:
                break
            line = bytes(self._buf[:pos]).rstrip(b"\r")
            del self._buf[:pos + 1]
            if line:
                frames.append(line)
        if len(self._buf) > self.max_frame:
            raise StreamDesync(f"unterminated line longer than {self.max_frame} bytes")
        return frames

    def encode(self, payload: bytes) -> bytes:
        if b"\n" in payload:
            raise FrameError("payload must not contain a newline")
        return payload + b"\n"

    @property
    def buffered(self) -> int:
        return len(self._buf)


FRAMERS: Dict[str, Type] = {
    LengthPrefixFramer.name: LengthPrefixFramer,
    LineFramer.name: LineFramer,
}


def make_framer(kind: str, max_frame: int = DEFAULT_MAX_FRAME):
    try:
        return FRAMERS[kind](max_frame)
    except KeyError:
        raise ValueError(f"unknown framing {kind!r}; choose from {sorted(FRAMERS)}") from None


def _outcome_field(tok: Optional[str]) -> Optional[float]:
    if tok is None or tok == "":
        return None
    try:
        return float(tok)
    except ValueError:
        # kept as NaN so the reward aggregator reports it
        return math.nan


def parse_observation(payload: bytes) -> DecisionRequest:
    try:
        text = payload.decode("ascii")
    except UnicodeDecodeError:
        raise FrameError("observation is not ASCII") from None
    parts = [p.strip() for p in text.strip().split(",")]
    if len(parts) < 2:
        raise FrameError(f"observation needs at least deviceId,previousActionId: {text!r}")

    dev_tok = parts[0]
    seq: Optional[int] = None
    if "#" in dev_tok:
        dev_tok, seq_tok = dev_tok.split("#", 1)
        try:
            seq = int(seq_tok)
        except ValueError:
            raise FrameError(f"bad sequence number {seq_tok!r}") from None
    if not dev_tok:
        raise FrameError("empty device id")

    prev_tok = parts[1]
    prev: Optional[int]
    if prev_tok in ("", "-1"):
        prev = None
    else:
        try:
            prev = int(prev_tok)
        except ValueError:
            raise FrameError(f"device {dev_tok}: bad previous action id {prev_tok!r}") from None

    delivery = _outcome_field(parts[2] if len(parts) > 2 else None)
    energy = _outcome_field(parts[3] if len(parts) > 3 else None)
    try:
        features = tuple(float(p) for p in parts[4:] if p != "")
    except ValueError:
        raise FrameError(f"device {dev_tok}: non-numeric feature in {parts[4:]!r}") from None

    return DecisionRequest(device_id=dev_tok, prev_action=prev,
                           outcome=Outcome(delivery, energy),
                           features=features, seq=seq)


def format_observation(device_id: str, prev_action: Optional[int],
                       delivery: Optional[float] = None, energy: Optional[float] = None,
                       features: Tuple[float, ...] = (), seq: Optional[int] = None) -> bytes:
    """Client-side encoder, used by the toy environment and tests."""
    dev = device_id if seq is None else f"{device_id}#{seq}"
    fields = [dev,
              "-1" if prev_action is None else str(int(prev_action)),
              "" if delivery is None else repr(float(delivery)),
              "" if energy is None else repr(float(energy))]
    fields.extend(repr(float(f)) for f in features)
    return ",".join(fields).encode("ascii")


def format_decision(action_id: int, seq: Optional[int] = None) -> bytes:
    if seq is None:
        return str(int(action_id)).encode("ascii")
    return f"{int(action_id)}#{seq}".encode("ascii")


def parse_decision(payload: bytes) -> Tuple[int, Optional[int]]:
    text = payload.decode("ascii").strip()
    if "#" in text:
        a, s = text.split("#", 1)
        return int(a), int(s)
    return int(text), None
