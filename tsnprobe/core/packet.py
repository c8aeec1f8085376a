"""
FlowPacket wire format for tsnprobe.

Every probe datagram carries exactly one packed record in network byte order:

    offset  size  field
    0       1     flow          (1 = CONTROL, 2 = LOGGING, others reserved)
    1       8     sequence      (unsigned, 0-based per sender run)
    9       8     send_time_ns  (signed, nanoseconds on the sender's clock)

There is no version field; a datagram is recognised by its length alone.
"""

import enum
import struct
from dataclasses import dataclass
from typing import Optional

from .errors import PacketSizeError

WIRE_FORMAT = struct.Struct("!BQq")
PACKET_SIZE = WIRE_FORMAT.size  # 17

UNRECOGNIZED = "UNRECOGNIZED"


class Flow(enum.IntEnum):
    """Traffic classes sharing the probed link."""
    CONTROL = 1
    LOGGING = 2

    @classmethod
    def from_name(cls, name: str) -> 'Flow':
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(f"Unknown flow: {name!r} (expected 'control' or 'logging')")


@dataclass(frozen=True)
class FlowPacket:
    """One probe datagram.

    ``flow`` holds the raw tag byte so that packets from a newer or foreign
    sender survive decoding; use :meth:`classify` to map it onto :class:`Flow`.
    """
    flow: int
    sequence: int
    send_time_ns: int

    def classify(self) -> Optional[Flow]:
        """Return the known flow for this packet, or None for an unknown tag."""
        try:
            return Flow(self.flow)
        except ValueError:
            return None

    @property
    def flow_name(self) -> str:
        flow = self.classify()
        return flow.name if flow is not None else UNRECOGNIZED

    def encode(self) -> bytes:
        """Serialize to the fixed 17-byte wire layout."""
        try:
            return WIRE_FORMAT.pack(int(self.flow), self.sequence, self.send_time_ns)
        except struct.error as e:
            raise ValueError(f"FlowPacket field out of range: {e}")

    @classmethod
    def decode(cls, data: bytes) -> 'FlowPacket':
        """Parse a datagram; raises PacketSizeError unless it is exactly PACKET_SIZE bytes."""
        if len(data) != PACKET_SIZE:
            raise PacketSizeError(len(data), PACKET_SIZE)
        flow, sequence, send_time_ns = WIRE_FORMAT.unpack(data)
        return cls(flow=flow, sequence=sequence, send_time_ns=send_time_ns)
