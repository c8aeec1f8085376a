"""
Exception types for tsnprobe.
"""


class ProbeError(Exception):
    """Base class for tsnprobe errors."""


class SetupError(ProbeError):
    """Socket creation, bind or address resolution failed before any traffic."""


class DestinationError(SetupError, ValueError):
    """The destination address could not be parsed."""


class PacketSizeError(ProbeError, ValueError):
    """A datagram does not have the FlowPacket wire size."""

    def __init__(self, size: int, expected: int):
        super().__init__(f"Datagram of {size} bytes, expected {expected}")
        self.size = size
        self.expected = expected
